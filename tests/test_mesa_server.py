import asyncio
import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

import event_router as router_mod
import mesa_server as server_mod

ROOM = "mesa"


class MesaConfigTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)

    def test_defaults(self):
        cfg = server_mod.load_config(environ={"MESA_DATA_DIR": str(self.root)})
        self.assertEqual(cfg.host, "0.0.0.0")
        self.assertEqual(cfg.port, 4000)
        self.assertEqual(cfg.data_dir, self.root)
        self.assertEqual(cfg.default_room, "mesa")
        self.assertEqual(cfg.resolved_log_dir(), self.root / "logs")

    def test_yaml_file_then_environment(self):
        (self.root / "mesa.yaml").write_text(
            "host: 127.0.0.1\nport: 5000\ndefault_room: campanha\ndefault_map: /maps/vila.jpg\n",
            encoding="utf-8",
        )
        cfg = server_mod.load_config(environ={"MESA_DATA_DIR": str(self.root), "MESA_PORT": "6000"})
        self.assertEqual(cfg.host, "127.0.0.1")
        self.assertEqual(cfg.port, 6000)
        self.assertEqual(cfg.default_room, "campanha")
        self.assertEqual(cfg.default_map, "/maps/vila.jpg")

    def test_explicit_config_path(self):
        path = self.root / "other.yaml"
        path.write_text("port: 4500\nlog_dir: %s\n" % (self.root / "oplogs"), encoding="utf-8")
        cfg = server_mod.load_config(path, environ={"MESA_DATA_DIR": str(self.root)})
        self.assertEqual(cfg.port, 4500)
        self.assertEqual(cfg.resolved_log_dir(), self.root / "oplogs")

    def test_broken_yaml_is_ignored(self):
        (self.root / "mesa.yaml").write_text("port: [unclosed\n", encoding="utf-8")
        with self.assertLogs(level="WARNING"):
            cfg = server_mod.load_config(environ={"MESA_DATA_DIR": str(self.root)})
        self.assertEqual(cfg.port, 4000)

    def test_bad_port_values_are_ignored(self):
        (self.root / "mesa.yaml").write_text("port: lots\n", encoding="utf-8")
        with self.assertLogs(level="WARNING"):
            cfg = server_mod.load_config(environ={"MESA_DATA_DIR": str(self.root), "MESA_PORT": "x"})
        self.assertEqual(cfg.port, 4000)

    def test_arg_parser(self):
        args = server_mod.build_arg_parser().parse_args(["--port", "4100", "--room", "sala", "--qr"])
        self.assertEqual(args.port, 4100)
        self.assertEqual(args.room, "sala")
        self.assertTrue(args.qr)


class MesaServerWebSocketTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.cfg = server_mod.MesaConfig(data_dir=Path(self.tmp.name), default_room=ROOM)
        self.server = server_mod.MesaServer(self.cfg, logger=logging.getLogger("mesa.test"))
        self.app = server_mod.create_app(self.cfg, self.server)
        self.store = self.server.sessions.get(ROOM).store
        self.store.upsert_entity({"id": 7, "name": "Lia", "type": "player", "x": 0, "y": 0})

    def _join(self, ws):
        ws.send_json({"type": "joinRoom", "roomId": ROOM})
        sync = ws.receive_json()
        self.assertEqual(sync["type"], "gameStateSync")
        return sync

    def test_status_page(self):
        with TestClient(self.app) as client:
            resp = client.get("/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["rooms"], [ROOM])
        self.assertEqual(resp.json()["members"], {})

    def test_status_page_counts_room_members(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                self._join(ws)
                resp = client.get("/")
        self.assertEqual(resp.json()["members"], {ROOM: 1})

    def test_move_is_relayed_to_other_players(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as player:
                sync = self._join(host)
                self.assertEqual(sync["entities"][0]["name"], "Lia")
                self._join(player)

                host.send_json({"type": "updateEntityPosition", "roomId": ROOM, "entityId": 7, "x": 3, "y": 4})
                # Chat echoes to everyone, so it doubles as a barrier for the host.
                host.send_json({"type": "sendMessage", "roomId": ROOM, "text": "moved"})

                moved = player.receive_json()
                self.assertEqual(moved, {"type": "entityPositionUpdated", "roomId": ROOM, "entityId": 7, "x": 3, "y": 4})
                self.assertEqual(player.receive_json()["type"], "chatMessage")
                self.assertEqual(host.receive_json()["type"], "chatMessage")

        entity = self.store.find_entity(7)
        self.assertEqual((entity["x"], entity["y"]), (3, 4))

    def test_garbage_frames_do_not_close_the_connection(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                self._join(ws)
                ws.send_text("this is not json")
                ws.send_json(["not", "an", "object"])
                ws.send_json({"type": "deleteEntity", "roomId": ROOM, "entityId": 9})
                ws.send_json({"type": "rollDice", "roomId": ROOM, "sides": 20, "result": 20})
                result = ws.receive_json()
        self.assertEqual(result["type"], "newDiceResult")
        self.assertEqual(result["result"], 20)

    def test_disconnect_leaves_room(self):
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                self._join(ws)
                self.assertEqual(len(self.server.registry.members(ROOM)), 1)
            resp = client.get("/")
        self.assertEqual(resp.json()["connections"], [])
        self.assertEqual(self.server.registry.members(ROOM), [])


class _RecordingSocket:
    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.closed_with = code


class _StalledSocket(_RecordingSocket):
    async def send_text(self, text):
        await asyncio.Event().wait()


class OutboxTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        cfg = server_mod.MesaConfig(data_dir=Path(self.tmp.name), default_room=ROOM)
        self.server = server_mod.MesaServer(cfg, logger=logging.getLogger("mesa.test"))
        self.server.load_default_room()

    def _frame(self, event_type, **payload):
        payload.update({"type": event_type, "roomId": ROOM})
        return json.dumps(payload)

    def test_stalled_reader_does_not_hold_up_the_room(self):
        async def scenario():
            stalled, reader = _StalledSocket(), _RecordingSocket()
            writers = [self.server.attach(1, stalled), self.server.attach(2, reader)]
            await self.server.handle_text(1, self._frame("joinRoom"))
            await self.server.handle_text(2, self._frame("joinRoom"))
            for n in (1, 2, 3):
                await asyncio.wait_for(self.server.handle_text(2, self._frame("rollDice", sides=20, result=n)), 1)
            for _ in range(10):
                await asyncio.sleep(0)
            for writer in writers:
                writer.cancel()
            return reader.sent

        sent = asyncio.run(scenario())
        self.assertEqual([m["type"] for m in sent], ["gameStateSync"] + ["newDiceResult"] * 3)
        self.assertEqual([m["result"] for m in sent[1:]], [1, 2, 3])

    def test_overflowing_reader_is_dropped(self):
        async def scenario():
            stalled = _StalledSocket()
            writer = self.server.attach(1, stalled)
            await self.server.handle_text(1, self._frame("joinRoom"))
            for n in range(1, 6):
                await self.server.handle_text(1, self._frame("rollDice", sides=6, result=n))
            await asyncio.sleep(0)
            writer.cancel()
            return stalled

        with mock.patch.object(server_mod, "OUTBOX_LIMIT", 2):
            with self.assertLogs("mesa.test", level="WARNING"):
                stalled = asyncio.run(scenario())
        self.assertEqual(stalled.closed_with, 1011)
        self.assertEqual(self.server.registry.members(ROOM), [])
        self.assertEqual(self.server.sessions.room_ids(), [ROOM])


class RoomSessionsInjectionTests(unittest.TestCase):
    def test_server_uses_injected_sessions(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg = server_mod.MesaConfig(data_dir=Path(tmpdir))
            sessions = router_mod.RoomSessions(Path(tmpdir), default_map="/maps/taverna.jpg")
            server = server_mod.MesaServer(cfg, sessions=sessions)
            server.load_default_room()
            self.assertIs(server.router._sessions, sessions)
            self.assertEqual(sessions.get("mesa").store.get().current_map, "/maps/taverna.jpg")


if __name__ == "__main__":
    unittest.main()
