"""Grid merge: rasterize plate scans and stitch them into one coordinate grid.

Each plate arrives as a list of measurement points in its own scan-local
coordinates.  The merger places plates next to each other (left / right /
top / bottom of the grid built so far, with an optional gap or overlap) and
produces a single rectangular grid in which every cell is one of:

  - Measured  - a valid wall-thickness reading from one of the plates
  - NoData    - a cell inside a plate footprint with no valid reading
  - Gap       - a cell introduced by the merger itself (gap band between
                plates, or padding where plates have different extents)

The distinction matters downstream: gap cells count toward the grid area
but never toward a plate's no-data statistics.

Grids are immutable.  Every merge allocates a fresh ``height x width``
row-major buffer per attribute (flat index ``y * width + x``) and returns a
new ``MergedGrid``; the previous grid is never written to, so a reader
holding a stale grid can keep using it while a new one is computed.

Nominal thickness is a single grid-wide value.  Effective thickness
(``min(raw, nominal)``) and percentage of nominal are derived from the raw
readings whenever a grid is built, so changing the nominal re-derives every
previously merged plate as well.
"""

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Optional, Union

import numpy as np
import pandas as pd

from cscan.config import PLACEMENT_DIRECTIONS
from cscan.exceptions import DimensionMismatch, InvalidNominalThickness

logger = logging.getLogger(__name__)

# Cell kinds stored in the ``kind`` buffer.
MEASURED = 0
NO_DATA = 1
GAP = 2

_KIND_LABELS = {MEASURED: "measured", NO_DATA: "no_data", GAP: "gap"}


# ── Cell content (tagged union) ───────────────────────────────────────────────

@dataclass(frozen=True)
class Measured:
    value: float


@dataclass(frozen=True)
class NoData:
    pass


@dataclass(frozen=True)
class Gap:
    pass


CellContent = Union[Measured, NoData, Gap]


class GridCell(NamedTuple):
    """Flattened view of one cell for serialization and reporting."""
    source_id: Optional[str]
    raw_thickness: Optional[float]
    effective_thickness: Optional[float]
    percentage: Optional[float]


# ── Inputs ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlateScan:
    """One plate ready to merge: its points, nominal thickness and name."""
    points: list
    nominal_thickness: float
    source_id: str

    @classmethod
    def from_parsed(cls, parsed, source_id: str, nominal_thickness: Optional[float] = None):
        """Build from a ``ParsedScan``; explicit nominal wins over the detected one."""
        nominal = nominal_thickness if nominal_thickness is not None else parsed.detected_nominal_thickness
        return cls(points=list(parsed.points), nominal_thickness=nominal, source_id=source_id)


@dataclass(frozen=True)
class Placement:
    """Where a plate goes relative to the grid built so far.

    ``offset`` is the number of cells between the grid's edge and the plate
    along ``direction``: 0 places it flush, a positive value leaves a gap
    band, a negative value overlaps the existing grid.
    """
    direction: str = "right"
    offset: int = 0

    def __post_init__(self):
        if self.direction not in PLACEMENT_DIRECTIONS:
            raise ValueError(f"Placement direction must be one of {PLACEMENT_DIRECTIONS}")


def validate_nominal_thickness(value) -> float:
    """Return ``value`` as a float or raise InvalidNominalThickness."""
    if value is None:
        raise InvalidNominalThickness(
            "Nominal thickness was not supplied and could not be detected from the scan."
        )
    try:
        nominal = float(value)
    except (TypeError, ValueError):
        raise InvalidNominalThickness(f"Nominal thickness {value!r} is not a number.")
    if not math.isfinite(nominal) or nominal <= 0:
        raise InvalidNominalThickness(f"Nominal thickness must be positive, got {value!r}.")
    return nominal


# ── Merged grid ───────────────────────────────────────────────────────────────

class MergedGrid:
    """Immutable rectangular grid of merged plate readings."""

    def __init__(self, raw: np.ndarray, kind: np.ndarray, source: np.ndarray,
                 source_ids: list[str], nominal_thickness: float):
        if raw.ndim != 2 or raw.shape != kind.shape or raw.shape != source.shape:
            raise DimensionMismatch(
                f"Grid buffers disagree in shape: raw={raw.shape}, kind={kind.shape}, "
                f"source={source.shape}"
            )
        if source.size and source.max() >= len(source_ids):
            raise DimensionMismatch("Grid references a plate that is not in its source list")

        self.nominal_thickness = validate_nominal_thickness(nominal_thickness)
        self.source_ids = list(source_ids)
        self.raw = raw
        self.kind = kind
        self.source = source

        measured = kind == MEASURED
        effective = np.where(measured, np.minimum(raw, self.nominal_thickness), np.nan)
        self.effective = effective
        self.percentage = 100.0 * effective / self.nominal_thickness

        for arr in (self.raw, self.kind, self.source, self.effective, self.percentage):
            arr.flags.writeable = False

    @property
    def height(self) -> int:
        return self.raw.shape[0]

    @property
    def width(self) -> int:
        return self.raw.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return self.raw.shape

    @property
    def measured_mask(self) -> np.ndarray:
        return self.kind == MEASURED

    @property
    def no_data_mask(self) -> np.ndarray:
        return self.kind == NO_DATA

    @property
    def gap_mask(self) -> np.ndarray:
        return self.kind == GAP

    def cell(self, x: int, y: int) -> CellContent:
        kind = self.kind[y, x]
        if kind == MEASURED:
            return Measured(float(self.raw[y, x]))
        if kind == NO_DATA:
            return NoData()
        return Gap()

    def grid_cell(self, x: int, y: int) -> GridCell:
        content = self.cell(x, y)
        idx = int(self.source[y, x])
        source_id = self.source_ids[idx] if idx >= 0 else None
        if isinstance(content, Measured):
            return GridCell(source_id, content.value,
                            float(self.effective[y, x]), float(self.percentage[y, x]))
        return GridCell(source_id, None, None, None)

    def with_nominal(self, nominal_thickness: float) -> "MergedGrid":
        """Same readings re-derived against a new nominal thickness."""
        return MergedGrid(self.raw, self.kind, self.source, self.source_ids, nominal_thickness)

    def to_matrix(self) -> list[list[dict]]:
        """Row-major list of cell dicts (JSON-friendly)."""
        return [
            [self.grid_cell(x, y)._asdict() | {"kind": _KIND_LABELS[int(self.kind[y, x])]}
             for x in range(self.width)]
            for y in range(self.height)
        ]

    def __repr__(self):
        return (f"MergedGrid({self.width}x{self.height}, plates={self.source_ids}, "
                f"nominal={self.nominal_thickness})")


# ── Merge ─────────────────────────────────────────────────────────────────────

def rasterize_plate(points: list) -> tuple[np.ndarray, np.ndarray]:
    """Rasterize scan points into (raw, kind) buffers sized to their extent.

    Every (x, y) in the bounding extent without a point is no-data, as is a
    point whose reading is missing or non-positive.
    """
    if not points:
        raise DimensionMismatch("Cannot rasterize a plate with no points")

    xs = np.array([p[0] for p in points], dtype=np.int64)
    ys = np.array([p[1] for p in points], dtype=np.int64)
    values = np.array(
        [np.nan if p[2] is None else float(p[2]) for p in points], dtype=np.float64
    )
    x_min, y_min = xs.min(), ys.min()
    width = int(xs.max() - x_min + 1)
    height = int(ys.max() - y_min + 1)

    raw = np.full((height, width), np.nan)
    kind = np.full((height, width), NO_DATA, dtype=np.int8)

    valid = np.isfinite(values) & (values > 0)
    cols, rows = xs - x_min, ys - y_min
    # Later points overwrite earlier ones at the same coordinate.
    raw[rows, cols] = np.where(valid, values, np.nan)
    kind[rows, cols] = np.where(valid, MEASURED, NO_DATA)
    return raw, kind


def merge_plate(existing: Optional[MergedGrid], plate: PlateScan,
                placement: Optional[Placement] = None) -> MergedGrid:
    """Place ``plate`` into ``existing`` (or start a new grid) and return the result."""
    nominal = validate_nominal_thickness(plate.nominal_thickness)
    raw_p, kind_p = rasterize_plate(plate.points)
    h, w = raw_p.shape

    if existing is None:
        logger.info("Grid started from plate %s (%dx%d)", plate.source_id, w, h)
        source = np.zeros((h, w), dtype=np.int32)
        return MergedGrid(raw_p, kind_p, source, [plate.source_id], nominal)

    placement = placement or Placement()
    H, W = existing.shape

    # Plate origin in the existing grid's frame.
    if placement.direction == "right":
        px, py = W + placement.offset, 0
    elif placement.direction == "left":
        px, py = -(w + placement.offset), 0
    elif placement.direction == "bottom":
        px, py = 0, H + placement.offset
    else:
        px, py = 0, -(h + placement.offset)

    # Shift both frames so the canvas starts at (0, 0).
    sx, sy = max(0, -px), max(0, -py)
    ex, ey = sx, sy
    px, py = px + sx, py + sy
    width = max(ex + W, px + w)
    height = max(ey + H, py + h)

    # Fresh canvas pre-filled with gap cells: rows of plates with a smaller
    # extent end up padded, never truncated.
    raw = np.full((height, width), np.nan)
    kind = np.full((height, width), GAP, dtype=np.int8)
    source = np.full((height, width), -1, dtype=np.int32)

    raw[ey:ey + H, ex:ex + W] = existing.raw
    kind[ey:ey + H, ex:ex + W] = existing.kind
    source[ey:ey + H, ex:ex + W] = existing.source

    new_idx = len(existing.source_ids)
    region_raw = raw[py:py + h, px:px + w]
    region_kind = kind[py:py + h, px:px + w]
    region_source = source[py:py + h, px:px + w]

    # Incoming readings win inside an overlap; incoming no-data only fills gaps.
    take = (kind_p == MEASURED) | ((kind_p == NO_DATA) & (region_kind == GAP))
    region_raw[take] = raw_p[take]
    region_kind[take] = kind_p[take]
    region_source[take] = new_idx

    if not (raw.shape == kind.shape == source.shape == (height, width)):
        raise DimensionMismatch(f"Merged buffers could not be normalized to {width}x{height}")

    if nominal != existing.nominal_thickness:
        logger.info(
            "Nominal thickness changed %.3f -> %.3f; re-deriving %d merged plate(s)",
            existing.nominal_thickness, nominal, len(existing.source_ids),
        )
    logger.info(
        "Merged plate %s %s of grid (offset %d): grid now %dx%d",
        plate.source_id, placement.direction, placement.offset, width, height,
    )
    return MergedGrid(raw, kind, source, existing.source_ids + [plate.source_id], nominal)


def build_merged_grid(plates: list[PlateScan],
                      placements: Optional[list[Placement]] = None) -> MergedGrid:
    """Fold plates into one grid; ``placements[i]`` positions ``plates[i + 1]``."""
    if not plates:
        raise ValueError("At least one plate is required to build a grid")
    placements = list(placements or [])
    grid = None
    for i, plate in enumerate(plates):
        placement = None
        if i > 0:
            placement = placements[i - 1] if i - 1 < len(placements) else Placement()
        grid = merge_plate(grid, plate, placement)
    return grid


def grid_to_frame(grid: MergedGrid) -> pd.DataFrame:
    """Long-format table with one row per cell, in row-major order."""
    ys, xs = np.indices(grid.shape)
    source_ids = np.array(grid.source_ids + [None], dtype=object)
    return pd.DataFrame({
        "x": xs.ravel(),
        "y": ys.ravel(),
        "source_id": source_ids[grid.source.ravel()],
        "kind": [_KIND_LABELS[int(k)] for k in grid.kind.ravel()],
        "raw_thickness": grid.raw.ravel(),
        "effective_thickness": grid.effective.ravel(),
        "percentage": grid.percentage.ravel(),
    })
