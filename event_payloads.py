"""Typed inbound event payloads.

Each class parses one wire event with ``from_payload``; anything missing or
malformed raises PayloadError so the router can drop the event.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import fog_grid

ENTITY_TYPES = ("player", "enemy")


class PayloadError(ValueError):
    """Inbound event payload is missing fields or has the wrong shape."""


# ---------- field helpers ----------

def _mapping(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise PayloadError("payload must be an object")
    return raw


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise PayloadError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise PayloadError(f"{name} must be an integer")


def _opt_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    return _int(value, name)


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"{name} must be a number")
    value = float(value)
    if not math.isfinite(value):
        raise PayloadError(f"{name} must be finite")
    return value


def _text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"{name} must be a non-empty string")
    return value


def _room(raw: Dict[str, Any]) -> Optional[str]:
    room_id = raw.get("roomId")
    if isinstance(room_id, str) and room_id.strip():
        return room_id.strip()
    return None


def _entity_ref(raw: Dict[str, Any]) -> int:
    if "entityId" in raw:
        return _int(raw["entityId"], "entityId")
    if "id" in raw:
        return _int(raw["id"], "id")
    raise PayloadError("entityId is required")


def _conditions(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise PayloadError("conditions must be a list")
    seen: List[str] = []
    for tag in value:
        tag = str(tag)
        if tag not in seen:
            seen.append(tag)
    return seen


def normalize_entity(raw: Any) -> Dict[str, Any]:
    """Fill defaults for a new token. ``id`` is kept only when it is an int."""
    entity = dict(_mapping(raw))
    entity["name"] = _text(entity.get("name"), "name").strip()
    etype = entity.get("type", "enemy")
    if etype not in ENTITY_TYPES:
        raise PayloadError(f"type must be one of {ENTITY_TYPES}")
    entity["type"] = etype
    if entity.get("id") is None:
        entity.pop("id", None)
    else:
        entity["id"] = _int(entity["id"], "id")
    max_hp = _int(entity.get("maxHp", entity.get("hp", 0)), "maxHp")
    entity["maxHp"] = max_hp
    entity["hp"] = _int(entity.get("hp", max_hp), "hp")
    entity["ac"] = _int(entity.get("ac", 10), "ac")
    entity["x"] = _int(entity.get("x", 0), "x")
    entity["y"] = _int(entity.get("y", 0), "y")
    entity["rotation"] = _number(entity.get("rotation", 0), "rotation")
    entity["mirrored"] = bool(entity.get("mirrored", False))
    entity["conditions"] = _conditions(entity.get("conditions"))
    color = entity.get("color")
    entity["color"] = color if isinstance(color, str) and color else "#ffffff"
    for key in ("size", "xp", "level"):
        if key in entity and entity[key] is not None:
            entity[key] = _number(entity[key], key) if key == "size" else _int(entity[key], key)
    return entity


# ---------- session / lobby ----------

@dataclass
class JoinRoom:
    room_id: str

    @classmethod
    def from_payload(cls, raw: Any) -> "JoinRoom":
        # Older clients send the bare room id instead of an object.
        if isinstance(raw, str):
            return cls(room_id=_text(raw, "roomId").strip())
        room_id = _room(_mapping(raw))
        if room_id is None:
            raise PayloadError("roomId is required")
        return cls(room_id=room_id)


@dataclass
class CheckExistingCharacter:
    name: str
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "CheckExistingCharacter":
        raw = _mapping(raw)
        return cls(name=_text(raw.get("name"), "name").strip(), room_id=_room(raw))


@dataclass
class SaveGame:
    fields: Dict[str, Any]
    room_id: Optional[str] = None

    REQUIRED = ("entities", "fogGrid", "currentMap", "initiativeList", "activeTurnId")
    OPTIONAL = ("chatHistory", "customMonsters", "globalBrightness")

    @classmethod
    def from_payload(cls, raw: Any) -> "SaveGame":
        raw = _mapping(raw)
        missing = [key for key in cls.REQUIRED if key not in raw]
        if missing:
            raise PayloadError(f"saveGame missing {', '.join(missing)}")
        if not isinstance(raw["entities"], list) or not isinstance(raw["initiativeList"], list):
            raise PayloadError("entities and initiativeList must be lists")
        _text(raw["currentMap"], "currentMap")
        fields = {key: raw[key] for key in cls.REQUIRED + cls.OPTIONAL if key in raw}
        fields["activeTurnId"] = _opt_int(raw["activeTurnId"], "activeTurnId")
        if "globalBrightness" in fields:
            _number(fields["globalBrightness"], "globalBrightness")
        return cls(fields=fields, room_id=_room(raw))


# ---------- map ----------

@dataclass
class ChangeMap:
    map_url: str
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "ChangeMap":
        raw = _mapping(raw)
        return cls(map_url=_text(raw.get("mapUrl"), "mapUrl"), room_id=_room(raw))


@dataclass
class UpdateGlobalBrightness:
    brightness: float
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "UpdateGlobalBrightness":
        raw = _mapping(raw)
        value = raw.get("brightness", raw.get("globalBrightness"))
        return cls(brightness=_number(value, "brightness"), room_id=_room(raw))


@dataclass
class SyncMapState:
    x: float
    y: float
    scale: float = 1.0
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "SyncMapState":
        raw = _mapping(raw)
        scale = _number(raw.get("scale", 1.0), "scale")
        if scale <= 0:
            raise PayloadError("scale must be positive")
        return cls(
            x=_number(raw.get("x"), "x"),
            y=_number(raw.get("y"), "y"),
            scale=scale,
            room_id=_room(raw),
        )


# ---------- entities ----------

@dataclass
class UpdateEntityPosition:
    entity_id: int
    x: int
    y: int
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "UpdateEntityPosition":
        raw = _mapping(raw)
        return cls(
            entity_id=_entity_ref(raw),
            x=_int(raw.get("x"), "x"),
            y=_int(raw.get("y"), "y"),
            room_id=_room(raw),
        )


@dataclass
class UpdateEntityStatus:
    entity_id: int
    updates: Dict[str, Any]
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "UpdateEntityStatus":
        raw = _mapping(raw)
        updates = raw.get("updates")
        if not isinstance(updates, dict):
            raise PayloadError("updates must be an object")
        updates = {str(k): v for k, v in updates.items() if k != "id"}
        if not updates:
            raise PayloadError("updates is empty")
        return cls(entity_id=_entity_ref(raw), updates=updates, room_id=_room(raw))


@dataclass
class CreateEntity:
    entity: Dict[str, Any]
    room_id: Optional[str] = None

    @property
    def has_client_id(self) -> bool:
        return "id" in self.entity

    @classmethod
    def from_payload(cls, raw: Any) -> "CreateEntity":
        raw = _mapping(raw)
        return cls(entity=normalize_entity(raw.get("entity")), room_id=_room(raw))


@dataclass
class DeleteEntity:
    entity_id: int
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "DeleteEntity":
        raw = _mapping(raw)
        return cls(entity_id=_entity_ref(raw), room_id=_room(raw))


# ---------- fog ----------

@dataclass
class UpdateFog:
    x: int
    y: int
    visible: bool
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "UpdateFog":
        raw = _mapping(raw)
        visible = raw.get("shouldReveal")
        if not isinstance(visible, bool):
            raise PayloadError("shouldReveal must be a boolean")
        return cls(
            x=_int(raw.get("x"), "x"),
            y=_int(raw.get("y"), "y"),
            visible=visible,
            room_id=_room(raw),
        )


@dataclass
class SyncFogGrid:
    grid: fog_grid.Grid
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "SyncFogGrid":
        raw = _mapping(raw)
        grid = fog_grid.normalize_grid(raw.get("grid"))
        if grid is None:
            raise PayloadError("grid must be a list of rows")
        return cls(grid=grid, room_id=_room(raw))


# ---------- initiative / chat / ephemeral ----------

@dataclass
class UpdateInitiative:
    entries: List[Dict[str, Any]]
    active_turn_id: Optional[int]
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "UpdateInitiative":
        raw = _mapping(raw)
        entries_raw = raw.get("list")
        if not isinstance(entries_raw, list):
            raise PayloadError("list must be a list")
        entries: List[Dict[str, Any]] = []
        for item in entries_raw:
            item = dict(_mapping(item))
            item["id"] = _int(item.get("id"), "list[].id")
            item["name"] = str(item.get("name", ""))
            value = _number(item.get("value", 0), "list[].value")
            item["value"] = int(value) if value.is_integer() else value
            entries.append(item)
        return cls(
            entries=entries,
            active_turn_id=_opt_int(raw.get("activeTurnId"), "activeTurnId"),
            room_id=_room(raw),
        )


@dataclass
class SendMessage:
    message: Dict[str, Any]
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "SendMessage":
        raw = _mapping(raw)
        message = {k: v for k, v in raw.items() if k not in ("type", "roomId")}
        _text(message.get("text"), "text")
        return cls(message=message, room_id=_room(raw))


@dataclass
class RollDice:
    sides: int
    result: Optional[int] = None
    user: Optional[str] = None
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "RollDice":
        raw = _mapping(raw)
        sides = _int(raw.get("sides"), "sides")
        if sides < 1:
            raise PayloadError("sides must be positive")
        # Totals may include modifiers; not bounded by sides.
        result = _opt_int(raw.get("result"), "result")
        user = raw.get("user")
        return cls(
            sides=sides,
            result=result,
            user=user if isinstance(user, str) else None,
            room_id=_room(raw),
        )


@dataclass
class TriggerAudio:
    track_id: str
    extra: Dict[str, Any] = field(default_factory=dict)
    room_id: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Any) -> "TriggerAudio":
        raw = _mapping(raw)
        extra = {k: v for k, v in raw.items() if k not in ("type", "roomId", "trackId")}
        return cls(track_id=_text(raw.get("trackId"), "trackId"), extra=extra, room_id=_room(raw))
