"""Patch selection: score detected patches and pick a bounded top-N for the report.

Every patch gets a composite score:

    score = w_severity * severity_score(tier)
          + w_area     * area / max_area
          + w_depth    * avg_depth / max_depth
          + w_flagged  * (1 if the inspector flagged it else 0)

Area and depth are normalised by the largest value in the candidate set.
With the default weights an inspector flag outweighs every other term, so a
flagged patch always makes the cut.

Ordering is fully deterministic: score, then deeper maximum depth (lower
minimum thickness), then larger area, then earlier detection index.  After
the top-N cut, every Critical patch that fell outside is swapped in for the
lowest-ranked non-Critical entry.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from cscan.config import (
    SEVERITY_SCORES, SEVERITY_SCORE_FLOOR, DEFAULT_MAX_PATCHES,
    WEIGHT_SEVERITY, WEIGHT_AREA, WEIGHT_DEPTH, WEIGHT_FLAGGED,
    MM2_PER_M2,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankingWeights:
    severity: float = WEIGHT_SEVERITY
    area: float = WEIGHT_AREA
    depth: float = WEIGHT_DEPTH
    flagged: float = WEIGHT_FLAGGED


DEFAULT_WEIGHTS = RankingWeights()


@dataclass(frozen=True)
class RankedPatchMeta:
    id: int
    severity: str
    area_m2: float
    avg_depth: float
    max_depth: float
    min_thickness: float
    flagged: bool = False
    detection_index: int = 0
    score: float = 0.0


def severity_score(severity: Optional[str]) -> float:
    return SEVERITY_SCORES.get(severity, SEVERITY_SCORE_FLOOR)


def build_patch_metas(patches: list, nominal_thickness: float,
                      flagged_ids: Iterable[int] = ()) -> list[RankedPatchMeta]:
    """Derive ranking metadata from detected patches.

    Depths are wall loss against nominal; area is the member-cell count in
    square metres; the detection index is the patch's position in the
    caller-visible list.
    """
    flagged = set(flagged_ids)
    return [
        RankedPatchMeta(
            id=p.id,
            severity=p.severity,
            area_m2=p.point_count / MM2_PER_M2,
            avg_depth=nominal_thickness - p.avg_thickness,
            max_depth=nominal_thickness - p.min_thickness,
            min_thickness=p.min_thickness,
            flagged=p.id in flagged,
            detection_index=i,
        )
        for i, p in enumerate(patches)
    ]


def score_patches(metas: list[RankedPatchMeta],
                  weights: RankingWeights = DEFAULT_WEIGHTS) -> list[RankedPatchMeta]:
    """Return the metas with ``score`` filled in, in ranking order."""
    if not metas:
        return []

    max_area = max(m.area_m2 for m in metas)
    max_depth = max(m.avg_depth for m in metas)

    scored = []
    for m in metas:
        area_term = m.area_m2 / max_area if max_area > 0 else 0.0
        depth_term = m.avg_depth / max_depth if max_depth > 0 else 0.0
        score = (weights.severity * severity_score(m.severity)
                 + weights.area * area_term
                 + weights.depth * depth_term
                 + weights.flagged * (1.0 if m.flagged else 0.0))
        scored.append(replace(m, score=score))

    scored.sort(key=_rank_key)
    return scored


def _rank_key(m: RankedPatchMeta):
    return (-m.score, -m.max_depth, m.min_thickness, -m.area_m2, m.detection_index)


def select_top_patches(metas: list[RankedPatchMeta], max_count: int = DEFAULT_MAX_PATCHES,
                       weights: RankingWeights = DEFAULT_WEIGHTS) -> list[int]:
    """Ids of at most ``max_count`` patches, best first, Criticals guaranteed."""
    if max_count <= 0 or not metas:
        return []

    scored = score_patches(metas, weights)
    top = scored[:max_count]
    selected = {m.id for m in top}

    # Every Critical left outside the cut replaces the lowest-ranked
    # non-Critical entry; once the set is all Critical nothing else moves.
    for candidate in scored[max_count:]:
        if candidate.severity != "Critical" or candidate.id in selected:
            continue
        victims = [i for i, m in enumerate(top) if m.severity != "Critical"]
        if not victims:
            logger.warning("More Critical patches than report slots (%d)", max_count)
            break
        victim = max(victims, key=lambda i: _rank_key(top[i]))
        selected.discard(top[victim].id)
        top[victim] = candidate
        selected.add(candidate.id)
        top.sort(key=_rank_key)

    logger.debug("Selected patches %s", [m.id for m in top])
    return [m.id for m in top]
