"""Grid geometry for remote video tiles.

The policy is a coarse step function with fixed breakpoints:

* 1 participant fills the surface,
* 2 participants stack vertically at half height,
* 3 or 4 participants share a 2x2 grid,
* 5 or more use a 3x3 grid. Anything past nine simply overflows.
"""
from __future__ import annotations

from typing import List, NamedTuple


class TileSize(NamedTuple):
    width: float
    height: float


def grid_divisors(count: int) -> tuple[int, int]:
    """Return (columns, rows) used to divide the surface for ``count`` tiles."""

    if count <= 0:
        return (0, 0)
    if count == 1:
        return (1, 1)
    if count == 2:
        return (1, 2)
    if count <= 4:
        return (2, 2)
    return (3, 3)


def compute_layout(count: int, surface_width: float, surface_height: float) -> List[TileSize]:
    """Map a participant count onto one tile size per participant, in order."""

    if count < 0:
        raise ValueError(f"count must be non-negative, got {count}")
    if surface_width <= 0 or surface_height <= 0:
        raise ValueError(f"surface must have a positive area, got {surface_width}x{surface_height}")
    if count == 0:
        return []
    columns, rows = grid_divisors(count)
    tile = TileSize(surface_width / columns, surface_height / rows)
    return [tile] * count
