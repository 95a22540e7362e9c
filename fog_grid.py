"""Fog-of-war grid over the map plane.

The grid is a list of rows, each a list of booleans where ``True`` means the
cell is visible to players. Coordinates are grid cells, never pixels.
"""

from __future__ import annotations

import logging
import math
from typing import Any, List, Optional

MAP_LIMIT = 8000
GRID_SIZE = 70
ROWS = math.ceil(MAP_LIMIT / GRID_SIZE)
COLS = math.ceil(MAP_LIMIT / GRID_SIZE)

Grid = List[List[bool]]

LOG = logging.getLogger(__name__)


def create_initial_grid() -> Grid:
    """Return a fresh ROWS x COLS grid with every cell hidden."""
    return [[False] * COLS for _ in range(ROWS)]


def validate_grid(grid: Any) -> bool:
    """True when ``grid`` has at least ROWS rows. Row width is not checked."""
    if not isinstance(grid, list) or len(grid) < ROWS:
        return False
    return all(isinstance(row, list) for row in grid)


def normalize_grid(grid: Any) -> Optional[Grid]:
    """Coerce a wire grid into lists of bools, or None if it is not list-shaped."""
    if not isinstance(grid, list):
        return None
    out: Grid = []
    for row in grid:
        if not isinstance(row, list):
            return None
        out.append([bool(cell) for cell in row])
    return out


def repair_grid(grid: Any, logger: Optional[logging.Logger] = None) -> Grid:
    """Return ``grid`` when valid, otherwise a freshly generated one."""
    if validate_grid(grid):
        return grid
    rows = len(grid) if isinstance(grid, list) else None
    (logger or LOG).warning(
        "Fog grid discarded (rows=%s, expected at least %s); regenerating.", rows, ROWS
    )
    return create_initial_grid()
