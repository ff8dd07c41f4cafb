"""Inspection statistics: reduce a merged grid to summary figures and a condition.

Statistics are always recomputed from a grid in one full pass; they are
never updated incrementally.  Three populations of cells matter:

  - measured cells  - contribute to min / max / average thickness
  - scanned cells   - measured + in-plate no-data; denominator of the
                      "area below K %" figures
  - all cells       - including merger gap cells; the total grid area

The condition label is a pure function of the minimum remaining wall as a
percentage of nominal thickness.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

import numpy as np

from cscan.config import (
    AREA_BELOW_LEVELS, CELL_AREA_MM2, MM2_PER_M2,
    CONDITION_HEALTHY_PCT, CONDITION_MODERATE_PCT, CONDITION_SEVERE_PCT,
)
from cscan.grid_merge import MergedGrid, validate_nominal_thickness

logger = logging.getLogger(__name__)


class Condition(str, Enum):
    HEALTHY = "Healthy"
    MODERATE = "Moderate"
    SEVERE = "Severe"
    CRITICAL = "Critical"
    NOT_APPLICABLE = "N/A"


@dataclass(frozen=True)
class InspectionStats:
    min_thickness: float
    max_thickness: float
    avg_thickness: float
    min_percentage: float
    area_below_80: float
    area_below_70: float
    area_below_60: float
    no_data_count: int
    gap_count: int
    total_points: int
    worst_location: Optional[tuple[int, int]]
    grid_size: dict
    scanned_area: float
    nominal_thickness: float

    def to_dict(self) -> dict:
        out = asdict(self)
        if self.worst_location is not None:
            out["worst_location"] = {"x": self.worst_location[0], "y": self.worst_location[1]}
        return out


def classify_condition(min_percentage: Optional[float]) -> Condition:
    """Map the minimum % of nominal to a condition label.

    Bands:
      >= 95        -> Healthy
      [80, 95)     -> Moderate
      [60, 80)     -> Severe
      < 60         -> Critical
      no readings  -> N/A
    """
    if min_percentage is None or np.isnan(min_percentage):
        return Condition.NOT_APPLICABLE
    if min_percentage >= CONDITION_HEALTHY_PCT:
        return Condition.HEALTHY
    if min_percentage >= CONDITION_MODERATE_PCT:
        return Condition.MODERATE
    if min_percentage >= CONDITION_SEVERE_PCT:
        return Condition.SEVERE
    return Condition.CRITICAL


def compute_stats(grid: MergedGrid,
                  nominal_thickness: Optional[float] = None) -> tuple[InspectionStats, Condition]:
    """Compute inspection statistics and condition for ``grid``.

    When ``nominal_thickness`` differs from the grid's own nominal the grid
    is re-derived against it first (full reprocessing, never a patch-up).
    """
    if nominal_thickness is not None:
        nominal_thickness = validate_nominal_thickness(nominal_thickness)
        if nominal_thickness != grid.nominal_thickness:
            grid = grid.with_nominal(nominal_thickness)
    nominal = grid.nominal_thickness

    measured = grid.measured_mask
    no_data_count = int(grid.no_data_mask.sum())
    gap_count = int(grid.gap_mask.sum())
    valid_count = int(measured.sum())
    scanned_count = valid_count + no_data_count
    height, width = grid.shape

    if valid_count == 0:
        min_t = max_t = avg_t = 0.0
        min_pct = 0.0
        worst = None
    else:
        # Row-major flat scan: argmin returns the first occurrence on ties.
        flat = np.where(measured, grid.effective, np.inf).ravel()
        worst_idx = int(np.argmin(flat))
        min_t = float(flat[worst_idx])
        max_t = float(np.max(grid.effective[measured]))
        avg_t = float(np.mean(grid.effective[measured]))
        min_pct = float(grid.percentage.ravel()[worst_idx])
        worst = (worst_idx % width, worst_idx // width)

    pct = np.where(measured, grid.percentage, np.inf)
    area_below = {}
    for level in AREA_BELOW_LEVELS:
        below = int((pct < level).sum())
        area_below[level] = below / scanned_count * 100.0 if scanned_count else 0.0

    stats = InspectionStats(
        min_thickness=min_t,
        max_thickness=max_t,
        avg_thickness=avg_t,
        min_percentage=min_pct,
        area_below_80=area_below[80],
        area_below_70=area_below[70],
        area_below_60=area_below[60],
        no_data_count=no_data_count,
        gap_count=gap_count,
        total_points=height * width,
        worst_location=worst,
        grid_size={"width": width, "height": height},
        scanned_area=valid_count * CELL_AREA_MM2 / MM2_PER_M2,
        nominal_thickness=nominal,
    )
    condition = classify_condition(min_pct if valid_count else None)
    logger.debug("Stats: min=%.3f (%.1f%%) at %s, condition=%s",
                 min_t, min_pct, worst, condition.value)
    return stats, condition
