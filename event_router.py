"""Apply inbound board events to the room's store and decide who hears about it.

The router is synchronous and transport-free: ``dispatch`` takes one decoded
message from one connection and returns the deliveries the transport should
send. One event is fully applied before the next one is dispatched.
"""

from __future__ import annotations

import copy
import hashlib
import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import event_payloads as ev
from event_payloads import PayloadError
from room_registry import (
    AUDIENCE_ROOM,
    AUDIENCE_ROOM_EXCEPT_SENDER,
    AUDIENCE_SENDER,
    RoomRegistry,
)
from session_state import DEFAULT_MAP, SessionStore
from snapshot_store import SnapshotStore

LOG = logging.getLogger(__name__)

SAVE_OK_MESSAGE = "Game saved."


@dataclass
class Outbound:
    event: str
    payload: Dict[str, Any]
    audience: str


@dataclass
class Delivery:
    recipients: List[int]
    message: Dict[str, Any]


@dataclass
class RoomSession:
    room_id: str
    store: SessionStore
    snapshots: SnapshotStore


def snapshot_filename(room_id: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", room_id).strip("-") or "room"
    if slug != room_id:
        slug = f"{slug}-{hashlib.sha1(room_id.encode('utf-8')).hexdigest()[:8]}"
    return f"{slug}.json"


class RoomSessions:
    """One store + snapshot file per room, created when a connection joins it."""

    def __init__(
        self,
        data_dir: Path,
        default_map: str = DEFAULT_MAP,
        logger: Optional[logging.Logger] = None,
        default_room: Optional[str] = None,
    ) -> None:
        self._data_dir = Path(data_dir)
        self._default_map = default_map
        self._logger = logger or LOG
        self._default_room = default_room
        self._rooms: Dict[str, RoomSession] = {}

    def get(self, room_id: str) -> RoomSession:
        session = self._rooms.get(room_id)
        if session is None:
            snapshots = SnapshotStore(
                self._data_dir / snapshot_filename(room_id),
                logger=self._logger,
                default_map=self._default_map,
            )
            store = SessionStore(snapshots.load(), logger=self._logger)
            session = RoomSession(room_id=room_id, store=store, snapshots=snapshots)
            self._rooms[room_id] = session
        return session

    def find(self, room_id: str) -> Optional[RoomSession]:
        return self._rooms.get(room_id)

    def discard(self, room_id: str) -> bool:
        """Forget a loaded room. The default room is never discarded."""
        if room_id == self._default_room:
            return False
        return self._rooms.pop(room_id, None) is not None

    def room_ids(self) -> List[str]:
        return sorted(self._rooms)


Handler = Callable[[int, RoomSession, Any], List[Outbound]]


class EventRouter:
    def __init__(
        self,
        sessions: RoomSessions,
        registry: RoomRegistry,
        logger: Optional[logging.Logger] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._logger = logger or LOG
        self._rng = rng or random.Random()
        self._handlers: Dict[str, Tuple[Any, Handler]] = {
            "joinRoom": (ev.JoinRoom, self._on_join_room),
            "checkExistingCharacter": (ev.CheckExistingCharacter, self._on_check_character),
            "changeMap": (ev.ChangeMap, self._on_change_map),
            "saveGame": (ev.SaveGame, self._on_save_game),
            "updateGlobalBrightness": (ev.UpdateGlobalBrightness, self._on_brightness),
            "updateEntityPosition": (ev.UpdateEntityPosition, self._on_entity_position),
            "updateEntityStatus": (ev.UpdateEntityStatus, self._on_entity_status),
            "createEntity": (ev.CreateEntity, self._on_create_entity),
            "deleteEntity": (ev.DeleteEntity, self._on_delete_entity),
            "updateFog": (ev.UpdateFog, self._on_update_fog),
            "syncFogGrid": (ev.SyncFogGrid, self._on_sync_fog_grid),
            "updateInitiative": (ev.UpdateInitiative, self._on_update_initiative),
            "sendMessage": (ev.SendMessage, self._on_send_message),
            "rollDice": (ev.RollDice, self._on_roll_dice),
            "triggerAudio": (ev.TriggerAudio, self._on_trigger_audio),
            "syncMapState": (ev.SyncMapState, self._on_sync_map_state),
        }

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def dispatch(self, conn_id: int, event_type: str, raw: Any) -> List[Delivery]:
        entry = self._handlers.get(event_type)
        if entry is None:
            self._logger.debug("Ignoring unknown event %r from conn=%s", event_type, conn_id)
            return []
        parser, handler = entry
        try:
            payload = parser.from_payload(raw)
        except PayloadError as exc:
            self._logger.debug("Dropped %s from conn=%s: %s", event_type, conn_id, exc)
            return []
        room_id = payload.room_id or self._registry.room_of(conn_id)
        if room_id is None:
            self._logger.debug("Dropped %s from conn=%s: no room", event_type, conn_id)
            return []
        # Only joinRoom loads a room; other events address rooms already in use.
        if isinstance(payload, ev.JoinRoom):
            session = self._sessions.get(room_id)
        else:
            session = self._sessions.find(room_id)
            if session is None:
                self._logger.debug("Dropped %s from conn=%s: room %s is not open", event_type, conn_id, room_id)
                return []
        try:
            outbound = handler(conn_id, session, payload)
        except Exception:
            self._logger.exception("Handler for %s failed (conn=%s, room=%s)", event_type, conn_id, room_id)
            return []
        deliveries: List[Delivery] = []
        for out in outbound:
            recipients = self._registry.recipients(room_id, conn_id, out.audience)
            if not recipients:
                continue
            message = {"type": out.event, "roomId": room_id}
            message.update(out.payload)
            deliveries.append(Delivery(recipients=recipients, message=message))
        return deliveries

    def disconnect(self, conn_id: int) -> Optional[str]:
        """Forget a connection and unload its room once nobody is left in it."""
        room_id = self._registry.disconnect(conn_id)
        if room_id is not None:
            self._release_if_empty(room_id)
        return room_id

    def _release_if_empty(self, room_id: str) -> None:
        if self._registry.members(room_id):
            return
        if self._sessions.discard(room_id):
            self._logger.info("Room %s is empty; unloaded.", room_id)

    # ---------- session / lobby ----------

    def _on_join_room(self, conn_id: int, session: RoomSession, payload: ev.JoinRoom) -> List[Outbound]:
        previous = self._registry.room_of(conn_id)
        self._registry.join(conn_id, session.room_id)
        self._logger.info("conn=%s joined room %s", conn_id, session.room_id)
        if previous is not None and previous != session.room_id:
            self._release_if_empty(previous)
        return [Outbound("gameStateSync", session.store.snapshot(), AUDIENCE_SENDER)]

    def _on_check_character(
        self, conn_id: int, session: RoomSession, payload: ev.CheckExistingCharacter
    ) -> List[Outbound]:
        entity = session.store.find_player_by_name(payload.name)
        if entity is None:
            return [Outbound("characterNotFound", {"name": payload.name}, AUDIENCE_SENDER)]
        return [Outbound("characterFound", {"entity": copy.deepcopy(entity)}, AUDIENCE_SENDER)]

    def _on_save_game(self, conn_id: int, session: RoomSession, payload: ev.SaveGame) -> List[Outbound]:
        session.store.apply_full_overwrite(payload.fields)
        if not session.snapshots.save(session.store.get()):
            return []
        return [Outbound("notification", {"message": SAVE_OK_MESSAGE}, AUDIENCE_ROOM)]

    # ---------- map ----------

    def _on_change_map(self, conn_id: int, session: RoomSession, payload: ev.ChangeMap) -> List[Outbound]:
        grid = session.store.set_map(payload.map_url)
        self._logger.info("Room %s map changed to %s", session.room_id, payload.map_url)
        return [
            Outbound("mapChanged", {"mapUrl": payload.map_url, "fogGrid": copy.deepcopy(grid)}, AUDIENCE_ROOM)
        ]

    def _on_brightness(
        self, conn_id: int, session: RoomSession, payload: ev.UpdateGlobalBrightness
    ) -> List[Outbound]:
        value = session.store.set_global_brightness(payload.brightness)
        return [Outbound("globalBrightnessUpdated", {"brightness": value}, AUDIENCE_ROOM)]

    def _on_sync_map_state(self, conn_id: int, session: RoomSession, payload: ev.SyncMapState) -> List[Outbound]:
        state = {"x": payload.x, "y": payload.y, "scale": payload.scale}
        return [Outbound("mapStateUpdated", state, AUDIENCE_ROOM_EXCEPT_SENDER)]

    # ---------- entities ----------

    def _on_entity_position(
        self, conn_id: int, session: RoomSession, payload: ev.UpdateEntityPosition
    ) -> List[Outbound]:
        if not session.store.patch_entity(payload.entity_id, {"x": payload.x, "y": payload.y}):
            return []
        data = {"entityId": payload.entity_id, "x": payload.x, "y": payload.y}
        return [Outbound("entityPositionUpdated", data, AUDIENCE_ROOM_EXCEPT_SENDER)]

    def _on_entity_status(
        self, conn_id: int, session: RoomSession, payload: ev.UpdateEntityStatus
    ) -> List[Outbound]:
        if not session.store.patch_entity(payload.entity_id, copy.deepcopy(payload.updates)):
            return []
        data = {"entityId": payload.entity_id, "updates": payload.updates}
        return [Outbound("entityStatusUpdated", data, AUDIENCE_ROOM_EXCEPT_SENDER)]

    def _on_create_entity(self, conn_id: int, session: RoomSession, payload: ev.CreateEntity) -> List[Outbound]:
        entity = dict(payload.entity)
        # The creator only learns a server-assigned id from the broadcast.
        assigned = not payload.has_client_id
        if assigned:
            entity["id"] = session.store.next_entity_id()
        if not session.store.upsert_entity(entity):
            return []
        audience = AUDIENCE_ROOM if assigned else AUDIENCE_ROOM_EXCEPT_SENDER
        return [Outbound("entityCreated", {"entity": copy.deepcopy(entity)}, audience)]

    def _on_delete_entity(self, conn_id: int, session: RoomSession, payload: ev.DeleteEntity) -> List[Outbound]:
        store = session.store
        before = len(store.get().initiative_list)
        if not store.remove_entity(payload.entity_id):
            return []
        out = [Outbound("entityDeleted", {"entityId": payload.entity_id}, AUDIENCE_ROOM_EXCEPT_SENDER)]
        state = store.get()
        if len(state.initiative_list) != before:
            out.append(
                Outbound(
                    "initiativeUpdated",
                    {"list": copy.deepcopy(state.initiative_list), "activeTurnId": state.active_turn_id},
                    AUDIENCE_ROOM,
                )
            )
        return out

    # ---------- fog ----------

    def _on_update_fog(self, conn_id: int, session: RoomSession, payload: ev.UpdateFog) -> List[Outbound]:
        if not session.store.set_fog_cell(payload.x, payload.y, payload.visible):
            return []
        data = {"x": payload.x, "y": payload.y, "shouldReveal": payload.visible}
        return [Outbound("fogUpdated", data, AUDIENCE_ROOM_EXCEPT_SENDER)]

    def _on_sync_fog_grid(self, conn_id: int, session: RoomSession, payload: ev.SyncFogGrid) -> List[Outbound]:
        session.store.replace_fog_grid(payload.grid)
        return [Outbound("fogGridSynced", {"grid": copy.deepcopy(payload.grid)}, AUDIENCE_ROOM_EXCEPT_SENDER)]

    # ---------- initiative / chat / ephemeral ----------

    def _on_update_initiative(
        self, conn_id: int, session: RoomSession, payload: ev.UpdateInitiative
    ) -> List[Outbound]:
        session.store.set_initiative(payload.entries, payload.active_turn_id)
        data = {"list": copy.deepcopy(payload.entries), "activeTurnId": payload.active_turn_id}
        return [Outbound("initiativeUpdated", data, AUDIENCE_ROOM_EXCEPT_SENDER)]

    def _on_send_message(self, conn_id: int, session: RoomSession, payload: ev.SendMessage) -> List[Outbound]:
        message = dict(payload.message)
        message.setdefault("sentAt", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        session.store.append_chat_message(message)
        return [Outbound("chatMessage", copy.deepcopy(message), AUDIENCE_ROOM)]

    def _on_roll_dice(self, conn_id: int, session: RoomSession, payload: ev.RollDice) -> List[Outbound]:
        result = payload.result
        if result is None:
            result = self._rng.randint(1, payload.sides)
        data: Dict[str, Any] = {"sides": payload.sides, "result": result}
        if payload.user:
            data["user"] = payload.user
        return [Outbound("newDiceResult", data, AUDIENCE_ROOM)]

    def _on_trigger_audio(self, conn_id: int, session: RoomSession, payload: ev.TriggerAudio) -> List[Outbound]:
        data = dict(payload.extra)
        data["trackId"] = payload.track_id
        return [Outbound("triggerAudio", data, AUDIENCE_ROOM)]
