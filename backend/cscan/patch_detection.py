"""Patch detection: segment a merged grid into connected corrosion patches.

A patch is a maximal 4-connected region (up / down / left / right) of cells
whose remaining wall is below a user-supplied threshold, as % of nominal.
Cells without a reading (no-data or merger gaps) are excluded entirely: they
never start a patch and never bridge two regions, even when every neighbour
is below threshold.

The flood fill is a breadth-first search over an explicit worklist so that
very large defects do not run into Python's recursion limit.  Seeds are
taken in row-major order, which makes patch ids (1-based, discovery order)
deterministic for a given (grid, threshold) pair.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass

import numpy as np
import pandas as pd

from cscan.grid_merge import MergedGrid
from cscan.inspection_stats import classify_condition

logger = logging.getLogger(__name__)

_NEIGHBOURS = ((0, -1), (0, 1), (-1, 0), (1, 0))   # up, down, left, right


@dataclass(frozen=True)
class BoundingBox:
    x_min: int
    x_max: int
    y_min: int
    y_max: int


@dataclass(frozen=True)
class Patch:
    id: int
    point_count: int
    min_thickness: float
    avg_thickness: float
    severity: str
    bounding_box: BoundingBox
    center: tuple[int, int]
    area_mm2: int
    member_points: tuple[tuple[int, int], ...]

    def to_dict(self, include_points: bool = True) -> dict:
        out = {
            "id": self.id,
            "point_count": self.point_count,
            "min_thickness": self.min_thickness,
            "avg_thickness": self.avg_thickness,
            "severity": self.severity,
            "bounding_box": vars(self.bounding_box).copy(),
            "center": {"x": self.center[0], "y": self.center[1]},
            "area_mm2": self.area_mm2,
        }
        if include_points:
            out["member_points"] = [{"x": x, "y": y} for x, y in self.member_points]
        return out


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def validate_patch_threshold(value) -> float:
    """Return ``value`` as a float if it lies in (0, 100] % of nominal."""
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Patch threshold must be a number, got {value!r}") from None
    if not 0 < threshold <= 100:
        raise ValueError(f"Patch threshold must be within (0, 100] % of nominal, got {value!r}")
    return threshold


def detect_patches(grid: MergedGrid, threshold_percentage: float) -> list[Patch]:
    """Find every connected region below ``threshold_percentage``.

    Returns patches sorted by ascending minimum thickness (most severe
    first); patches with equal minimum keep their discovery order.
    """
    threshold_percentage = validate_patch_threshold(threshold_percentage)
    height, width = grid.shape
    if height == 0 or width == 0:
        return []

    # NaN percentages (no reading) compare False, so they never qualify.
    with np.errstate(invalid="ignore"):
        below = grid.percentage < threshold_percentage
    below = below & grid.measured_mask
    visited = np.zeros((height, width), dtype=bool)
    effective = grid.effective
    patches = []
    next_id = 1

    for y in range(height):
        for x in range(width):
            if not below[y, x] or visited[y, x]:
                continue

            members = []
            queue = deque([(x, y)])
            visited[y, x] = True
            while queue:
                cx, cy = queue.popleft()
                members.append((cx, cy))
                for dx, dy in _NEIGHBOURS:
                    nx, ny = cx + dx, cy + dy
                    if 0 <= nx < width and 0 <= ny < height \
                            and not visited[ny, nx] and below[ny, nx]:
                        visited[ny, nx] = True
                        queue.append((nx, ny))

            patches.append(_build_patch(next_id, members, effective, grid.nominal_thickness))
            next_id += 1

    patches.sort(key=lambda p: p.min_thickness)
    logger.info("Detected %d patch(es) below %.1f%% of nominal", len(patches), threshold_percentage)
    return patches


def _build_patch(patch_id: int, members: list, effective: np.ndarray, nominal: float) -> Patch:
    xs = [m[0] for m in members]
    ys = [m[1] for m in members]
    values = np.array([effective[y, x] for x, y in members])
    x_min, x_max = min(xs), max(xs)
    y_min, y_max = min(ys), max(ys)
    min_thickness = float(values.min())

    return Patch(
        id=patch_id,
        point_count=len(members),
        min_thickness=min_thickness,
        avg_thickness=float(values.mean()),
        severity=classify_condition(100.0 * min_thickness / nominal).value,
        bounding_box=BoundingBox(x_min, x_max, y_min, y_max),
        center=(_round_half_up(x_min + (x_max - x_min) / 2),
                _round_half_up(y_min + (y_max - y_min) / 2)),
        # Bounding-box area, not member count; used for visual sizing.
        area_mm2=(x_max - x_min + 1) * (y_max - y_min + 1),
        member_points=tuple(members),
    )


def patches_to_frame(patches: list[Patch]) -> pd.DataFrame:
    """Tabular view of a patch list for reporting collaborators."""
    records = []
    for p in patches:
        records.append({
            "patch_id": p.id,
            "severity": p.severity,
            "point_count": p.point_count,
            "min_thickness": p.min_thickness,
            "avg_thickness": p.avg_thickness,
            "x_min": p.bounding_box.x_min,
            "x_max": p.bounding_box.x_max,
            "y_min": p.bounding_box.y_min,
            "y_max": p.bounding_box.y_max,
            "center_x": p.center[0],
            "center_y": p.center[1],
            "area_mm2": p.area_mm2,
        })
    return pd.DataFrame(records, columns=[
        "patch_id", "severity", "point_count", "min_thickness", "avg_thickness",
        "x_min", "x_max", "y_min", "y_max", "center_x", "center_y", "area_mm2",
    ])
