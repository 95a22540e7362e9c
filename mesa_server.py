#!/usr/bin/env python3
"""
Mesa Sync (v1): authoritative board server for a shared tabletop session.

- The host ("Mestre") and the players open a WebSocket to /ws and join a room.
- Every board change (tokens, fog, initiative, chat) goes through this process,
  which applies it to the room's canonical state and relays it to the others.
- State lives in memory and is written to a JSON snapshot when the host saves.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from event_router import Delivery, EventRouter, RoomSessions
from room_registry import RoomRegistry
from session_state import DEFAULT_MAP

APP_VERSION = "1"
CONFIG_FILENAME = "mesa.yaml"
OUTBOX_LIMIT = 256


def _default_data_dir() -> Path:
    override = os.getenv("MESA_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.cwd() / "data"


def _make_ops_logger(log_dir: Optional[Path] = None) -> logging.Logger:
    """Return a logger that writes to terminal + <log_dir>/operations.log."""
    lg = logging.getLogger("mesa.ops")
    if getattr(lg, "_mesa_configured", False):
        return lg

    lg.setLevel(logging.INFO)
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_dir / "operations.log", encoding="utf-8")
            fh.setLevel(logging.INFO)
            fh.setFormatter(fmt)
            lg.addHandler(fh)
        except OSError as exc:
            print(f"Cannot open operations log in {log_dir}: {exc}")

    sh = logging.StreamHandler()
    sh.setLevel(logging.INFO)
    sh.setFormatter(fmt)
    lg.addHandler(sh)

    lg.propagate = False
    setattr(lg, "_mesa_configured", True)
    return lg


# ----------------------------- config -----------------------------

@dataclass
class MesaConfig:
    host: str = "0.0.0.0"
    port: int = 4000
    data_dir: Path = field(default_factory=_default_data_dir)
    log_dir: Optional[Path] = None
    default_room: str = "mesa"
    default_map: str = DEFAULT_MAP

    def resolved_log_dir(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.data_dir / "logs"


def _read_yaml_config(path: Path, logger: logging.Logger) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring config %s: %s", path, exc)
        return {}
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring config %s: top level must be a mapping.", path)
        return {}
    return raw


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    logger: Optional[logging.Logger] = None,
) -> MesaConfig:
    """Defaults, then mesa.yaml, then MESA_* environment variables."""
    env = os.environ if environ is None else environ
    lg = logger or logging.getLogger(__name__)
    cfg = MesaConfig()
    if env.get("MESA_DATA_DIR"):
        cfg.data_dir = Path(env["MESA_DATA_DIR"]).expanduser()

    raw = _read_yaml_config(path or (cfg.data_dir / CONFIG_FILENAME), lg)
    if isinstance(raw.get("host"), str) and raw["host"].strip():
        cfg.host = raw["host"].strip()
    if raw.get("port") is not None:
        try:
            cfg.port = int(raw["port"])
        except (TypeError, ValueError):
            lg.warning("Ignoring invalid port in config: %r", raw.get("port"))
    if raw.get("data_dir") and not env.get("MESA_DATA_DIR"):
        cfg.data_dir = Path(str(raw["data_dir"])).expanduser()
    if raw.get("log_dir"):
        cfg.log_dir = Path(str(raw["log_dir"])).expanduser()
    if isinstance(raw.get("default_room"), str) and raw["default_room"].strip():
        cfg.default_room = raw["default_room"].strip()
    if isinstance(raw.get("default_map"), str) and raw["default_map"].strip():
        cfg.default_map = raw["default_map"].strip()

    if env.get("MESA_HOST"):
        cfg.host = env["MESA_HOST"]
    if env.get("MESA_PORT"):
        try:
            cfg.port = int(env["MESA_PORT"])
        except ValueError:
            lg.warning("Ignoring invalid MESA_PORT=%r", env["MESA_PORT"])
    return cfg


# ----------------------------- server -----------------------------

class MesaServer:
    """Owns the rooms, the connection registry and the router for one process."""

    def __init__(
        self,
        cfg: MesaConfig,
        sessions: Optional[RoomSessions] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cfg = cfg
        self.logger = logger or logging.getLogger("mesa.ops")
        self.sessions = sessions or RoomSessions(
            cfg.data_dir,
            default_map=cfg.default_map,
            logger=self.logger,
            default_room=cfg.default_room,
        )
        self.registry = RoomRegistry()
        self.router = EventRouter(self.sessions, self.registry, logger=self.logger)
        self._outboxes: Dict[int, asyncio.Queue] = {}  # conn_id -> queued frames

    def load_default_room(self) -> None:
        session = self.sessions.get(self.cfg.default_room)
        self.logger.info(
            "Room %s ready (snapshot %s, map %s).",
            session.room_id,
            session.snapshots.path,
            session.store.get().current_map,
        )

    def attach(self, conn_id: int, ws: Any, meta: Optional[Dict[str, Any]] = None) -> asyncio.Task:
        """Register a socket and start the task that writes its queued frames."""
        self.registry.connect(conn_id, ws, meta)
        outbox: asyncio.Queue = asyncio.Queue(maxsize=OUTBOX_LIMIT)
        self._outboxes[conn_id] = outbox
        return asyncio.create_task(self._drain(conn_id, ws, outbox))

    def detach(self, conn_id: int, close: bool = False) -> Optional[str]:
        ws = self.registry.socket_for(conn_id)
        self._outboxes.pop(conn_id, None)
        room_id = self.router.disconnect(conn_id)
        if close and ws is not None:
            asyncio.create_task(self._close_quietly(conn_id, ws))
        return room_id

    async def handle_text(self, conn_id: int, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            return
        if not isinstance(msg, dict):
            return
        typ = str(msg.get("type") or "")
        # Dispatch and enqueue never await, so events are applied and queued in arrival order.
        deliveries = self.router.dispatch(conn_id, typ, msg)
        self._enqueue(deliveries)

    def _enqueue(self, deliveries: List[Delivery]) -> None:
        to_drop: List[int] = []
        for delivery in deliveries:
            text = json.dumps(delivery.message)
            for conn_id in delivery.recipients:
                outbox = self._outboxes.get(conn_id)
                if outbox is None or conn_id in to_drop:
                    continue
                try:
                    outbox.put_nowait(text)
                except asyncio.QueueFull:
                    self.logger.warning("conn=%s is not reading (%s frames queued); dropping.", conn_id, outbox.qsize())
                    to_drop.append(conn_id)
        for conn_id in to_drop:
            self.detach(conn_id, close=True)

    async def _drain(self, conn_id: int, ws: Any, outbox: asyncio.Queue) -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send_text(text)
            except Exception as exc:
                self.logger.info("Send to conn=%s failed (%s); dropping.", conn_id, exc)
                self.detach(conn_id)
                return

    async def _close_quietly(self, conn_id: int, ws: Any) -> None:
        try:
            await ws.close(code=1011)
        except Exception as exc:
            self.logger.debug("Close of conn=%s failed: %s", conn_id, exc)

    def best_lan_url(self) -> str:
        ip = "127.0.0.1"
        try:
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                s.connect(("8.8.8.8", 80))
                ip = s.getsockname()[0]
            finally:
                s.close()
        except OSError:
            try:
                ip = socket.gethostbyname(socket.gethostname())
            except OSError:
                ip = "127.0.0.1"
        return f"http://{ip}:{self.cfg.port}/"

    def status_payload(self) -> Dict[str, Any]:
        return {
            "app": "mesa-sync",
            "version": APP_VERSION,
            "rooms": self.sessions.room_ids(),
            "members": self.registry.rooms(),
            "connections": self.registry.sessions_snapshot(),
        }


def create_app(cfg: MesaConfig, server: Optional[MesaServer] = None) -> FastAPI:
    server = server or MesaServer(cfg, logger=_make_ops_logger(cfg.resolved_log_dir()))
    server.load_default_room()

    app = FastAPI()
    app.state.mesa = server

    @app.get("/")
    async def status():
        return JSONResponse(server.status_payload())

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await ws.accept()
        conn_id = id(ws)
        client = getattr(ws, "client", None)
        host = getattr(client, "host", "?")
        port = getattr(client, "port", "")
        ua = ws.headers.get("user-agent", "")
        writer = server.attach(
            conn_id,
            ws,
            {"host": host, "port": port, "ua": ua, "connected_at": datetime.now().strftime("%Y-%m-%d %H:%M:%S")},
        )
        server.logger.info("Session connected conn=%s host=%s:%s ua=%s", conn_id, host, port, ua)
        try:
            while True:
                raw = await ws.receive_text()
                await server.handle_text(conn_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            writer.cancel()
            room_id = server.detach(conn_id)
            server.logger.info("Session disconnected conn=%s (room %s)", conn_id, room_id)

    return app


def print_lan_qr(url: str) -> None:
    """Print the join URL as a terminal QR code for phones."""
    import qrcode

    qr = qrcode.QRCode(border=2)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Mesa Sync board server.")
    parser.add_argument("--config", type=Path, help=f"YAML config file (default: <data-dir>/{CONFIG_FILENAME})")
    parser.add_argument("--host", help="Interface to bind.")
    parser.add_argument("--port", type=int, help="Port to listen on.")
    parser.add_argument("--data-dir", type=Path, help="Where snapshots and logs are kept.")
    parser.add_argument("--room", help="Room loaded at start-up.")
    parser.add_argument("--qr", action="store_true", help="Print a QR code with the LAN URL.")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    environ = dict(os.environ)
    if args.data_dir:
        environ["MESA_DATA_DIR"] = str(args.data_dir)
    cfg = load_config(args.config, environ=environ)
    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.room:
        cfg.default_room = args.room

    logger = _make_ops_logger(cfg.resolved_log_dir())
    server = MesaServer(cfg, logger=logger)
    app = create_app(cfg, server)

    url = server.best_lan_url()
    logger.info("Mesa Sync listening at %s (WebSocket endpoint /ws)", url)
    if args.qr:
        print_lan_qr(url)

    import uvicorn

    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="warning", access_log=False)


if __name__ == "__main__":
    main()
