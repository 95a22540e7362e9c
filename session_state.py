"""Canonical per-room session state and the store that owns it."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import fog_grid

CHAT_HISTORY_LIMIT = 50
DEFAULT_MAP = "/maps/floresta.jpg"
DEFAULT_BRIGHTNESS = 1.0

LOG = logging.getLogger(__name__)


def _clamp_brightness(value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return DEFAULT_BRIGHTNESS
    if value != value:  # NaN
        return DEFAULT_BRIGHTNESS
    return max(0.0, min(1.0, value))


def _entity_id(entity: Any) -> Optional[int]:
    if not isinstance(entity, dict):
        return None
    eid = entity.get("id")
    if isinstance(eid, bool) or not isinstance(eid, int):
        return None
    return eid


def _dict_list(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [dict(item) for item in raw if isinstance(item, dict)]


@dataclass
class SessionState:
    entities: List[Dict[str, Any]] = field(default_factory=list)
    fog_grid: fog_grid.Grid = field(default_factory=fog_grid.create_initial_grid)
    current_map: str = DEFAULT_MAP
    initiative_list: List[Dict[str, Any]] = field(default_factory=list)
    active_turn_id: Optional[int] = None
    chat_history: List[Dict[str, Any]] = field(default_factory=list)
    custom_monsters: List[Dict[str, Any]] = field(default_factory=list)
    global_brightness: float = DEFAULT_BRIGHTNESS

    def to_dict(self) -> Dict[str, Any]:
        """Wire/disk form with camelCase field names."""
        return {
            "entities": copy.deepcopy(self.entities),
            "fogGrid": copy.deepcopy(self.fog_grid),
            "currentMap": self.current_map,
            "initiativeList": copy.deepcopy(self.initiative_list),
            "activeTurnId": self.active_turn_id,
            "chatHistory": copy.deepcopy(self.chat_history),
            "customMonsters": copy.deepcopy(self.custom_monsters),
            "globalBrightness": self.global_brightness,
        }

    @classmethod
    def from_dict(
        cls,
        raw: Dict[str, Any],
        default_map: str = DEFAULT_MAP,
        logger: Optional[logging.Logger] = None,
    ) -> "SessionState":
        """Build a state from a (possibly older or partial) snapshot document.

        Newer fields are back-filled, entities without an integer id are
        dropped and the fog grid is regenerated when it is too short.
        """
        entities = [e for e in _dict_list(raw.get("entities")) if _entity_id(e) is not None]
        current_map = raw.get("currentMap")
        if not isinstance(current_map, str) or not current_map:
            current_map = default_map
        active = raw.get("activeTurnId")
        if isinstance(active, bool) or not isinstance(active, int):
            active = None
        chat = _dict_list(raw.get("chatHistory"))[-CHAT_HISTORY_LIMIT:]
        return cls(
            entities=entities,
            fog_grid=fog_grid.repair_grid(raw.get("fogGrid"), logger),
            current_map=current_map,
            initiative_list=_dict_list(raw.get("initiativeList")),
            active_turn_id=active,
            chat_history=chat,
            custom_monsters=_dict_list(raw.get("customMonsters")),
            global_brightness=_clamp_brightness(raw.get("globalBrightness", DEFAULT_BRIGHTNESS)),
        )


class SessionStore:
    """Single writer of one room's SessionState.

    Every mutation goes through a method here; ``get()`` hands out the live
    object, so readers must treat it as read-only.
    """

    def __init__(self, state: Optional[SessionState] = None, logger: Optional[logging.Logger] = None) -> None:
        self._state = state or SessionState()
        self._logger = logger or LOG
        self._next_id = self._max_entity_id() + 1

    def get(self) -> SessionState:
        return self._state

    def snapshot(self) -> Dict[str, Any]:
        return self._state.to_dict()

    # ---------- full overwrite ----------

    def apply_full_overwrite(self, partial: Dict[str, Any]) -> None:
        """Replace the top-level fields supplied in ``partial`` (saveGame)."""
        state = self._state
        if "entities" in partial:
            state.entities = [e for e in _dict_list(partial.get("entities")) if _entity_id(e) is not None]
        if "fogGrid" in partial:
            state.fog_grid = fog_grid.repair_grid(fog_grid.normalize_grid(partial.get("fogGrid")), self._logger)
        if "currentMap" in partial and isinstance(partial.get("currentMap"), str):
            state.current_map = partial["currentMap"]
        if "initiativeList" in partial:
            state.initiative_list = _dict_list(partial.get("initiativeList"))
        if "activeTurnId" in partial:
            active = partial.get("activeTurnId")
            state.active_turn_id = active if isinstance(active, int) and not isinstance(active, bool) else None
        if "chatHistory" in partial:
            state.chat_history = _dict_list(partial.get("chatHistory"))[-CHAT_HISTORY_LIMIT:]
        state.custom_monsters = _dict_list(partial.get("customMonsters"))
        state.global_brightness = _clamp_brightness(partial.get("globalBrightness", DEFAULT_BRIGHTNESS))
        self._next_id = max(self._next_id, self._max_entity_id() + 1)

    # ---------- entities ----------

    def _max_entity_id(self) -> int:
        ids = [_entity_id(e) for e in self._state.entities]
        return max([eid for eid in ids if eid is not None], default=0)

    def next_entity_id(self) -> int:
        eid = self._next_id
        self._next_id += 1
        return eid

    def find_entity(self, entity_id: int) -> Optional[Dict[str, Any]]:
        for entity in self._state.entities:
            if _entity_id(entity) == entity_id:
                return entity
        return None

    def upsert_entity(self, entity: Dict[str, Any]) -> bool:
        """Insert ``entity`` unless its id already exists; never overwrites."""
        eid = _entity_id(entity)
        if eid is None:
            return False
        if self.find_entity(eid) is not None:
            self._logger.info("Entity id=%s already exists; creation ignored.", eid)
            return False
        self._state.entities.append(entity)
        if eid >= self._next_id:
            self._next_id = eid + 1
        return True

    def patch_entity(self, entity_id: int, fields: Dict[str, Any]) -> bool:
        entity = self.find_entity(entity_id)
        if entity is None:
            return False
        for key, value in fields.items():
            if key == "id":
                continue
            entity[key] = value
        return True

    def remove_entity(self, entity_id: int) -> bool:
        """Drop the entity and its initiative entry. Returns False if absent."""
        before = len(self._state.entities)
        self._state.entities = [e for e in self._state.entities if _entity_id(e) != entity_id]
        if len(self._state.entities) == before:
            return False
        self._state.initiative_list = [
            entry for entry in self._state.initiative_list if entry.get("id") != entity_id
        ]
        return True

    def find_player_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        wanted = str(name).strip().casefold()
        if not wanted:
            return None
        for entity in self._state.entities:
            if entity.get("type") != "player":
                continue
            if str(entity.get("name", "")).strip().casefold() == wanted:
                return entity
        return None

    # ---------- fog ----------

    def set_fog_cell(self, x: int, y: int, visible: bool) -> bool:
        grid = self._state.fog_grid
        if not (0 <= y < fog_grid.ROWS) or y >= len(grid):
            return False
        row = grid[y]
        if not (0 <= x < len(row)):
            return False
        row[x] = bool(visible)
        return True

    def replace_fog_grid(self, grid: fog_grid.Grid) -> None:
        self._state.fog_grid = grid

    def reset_fog_grid(self) -> fog_grid.Grid:
        self._state.fog_grid = fog_grid.create_initial_grid()
        return self._state.fog_grid

    # ---------- map / lighting ----------

    def set_map(self, map_ref: str) -> fog_grid.Grid:
        """Switch the background map; the fog always starts over."""
        self._state.current_map = map_ref
        return self.reset_fog_grid()

    def set_global_brightness(self, value: float) -> float:
        self._state.global_brightness = _clamp_brightness(value)
        return self._state.global_brightness

    # ---------- chat / initiative ----------

    def append_chat_message(self, message: Dict[str, Any]) -> None:
        history = self._state.chat_history
        history.append(message)
        while len(history) > CHAT_HISTORY_LIMIT:
            history.pop(0)

    def set_initiative(self, entries: List[Dict[str, Any]], active_turn_id: Optional[int]) -> None:
        self._state.initiative_list = entries
        self._state.active_turn_id = active_turn_id
