"""Configuration for the C-scan inspection engine.

This module centralises every tunable constant used by the backend:
header-detection heuristics for the scan spreadsheet, metadata keys that
carry the nominal wall thickness, condition bands, patch severity scores,
ranking weights, and the colour bands used for the visualisation buffers.
It is imported by the ingestion, merge, statistics, detection and ranking
layers so that a single edit here propagates to the entire pipeline.

A handful of operational values can be overridden from the environment via
``Settings`` (log level, default patch threshold, top-N size, CORS origins).
"""

import os

# ── Spreadsheet header detection ──────────────────────────────────────────────
# The metadata block above the coordinate header is not of fixed length, so
# the header row is located heuristically: the first row (within the scan
# window) whose cells from column 1 onward are mostly numeric.
HEADER_SCAN_ROWS = 100           # rows inspected before giving up
HEADER_MIN_FILLED_CELLS = 5      # non-empty cells must exceed this
HEADER_MIN_NUMERIC_RATIO = 0.8   # numeric / non-empty must exceed this

# Metadata keys (lower-cased, unit annotation stripped) that carry the
# nominal wall thickness.  The fallback is used only when no primary key is
# present in the sheet.
NOMINAL_THICKNESS_KEY = "nominal thickness"
NOMINAL_THICKNESS_FALLBACK_KEY = "max thickness"

# ── Condition bands ───────────────────────────────────────────────────────────
# Condition of a grid (or severity tier of a patch) as a function of the
# minimum remaining wall expressed as % of nominal thickness.
#   >= 95      -> Healthy
#   [80, 95)   -> Moderate
#   [60, 80)   -> Severe
#   < 60       -> Critical
CONDITION_HEALTHY_PCT = 95.0
CONDITION_MODERATE_PCT = 80.0
CONDITION_SEVERE_PCT = 60.0

# Area fractions reported by the stats engine (cells below K % of nominal).
AREA_BELOW_LEVELS = (80, 70, 60)

# One grid cell is one square millimetre of scanned surface.
CELL_AREA_MM2 = 1.0
MM2_PER_M2 = 1_000_000

# ── Patch detection ───────────────────────────────────────────────────────────
# Default defect threshold (% of nominal) for flood-fill segmentation, the
# report view's starting value.  Users can change it per request.
DEFAULT_PATCH_THRESHOLD_PCT = 50.0

# ── Patch ranking ─────────────────────────────────────────────────────────────
# Severity tier -> contribution to the ranking score.  Anything that is not
# one of the three defect tiers scores the floor value.
SEVERITY_SCORES = {
    "Critical": 1.0,
    "Severe": 0.85,
    "Moderate": 0.5,
}
SEVERITY_SCORE_FLOOR = 0.2

# Relative importance of each attribute when ranking patches for the report.
# The inspector flag weight is large enough to force a flagged patch into
# the selection on its own.
WEIGHT_SEVERITY = 0.5
WEIGHT_AREA = 0.25
WEIGHT_DEPTH = 0.2
WEIGHT_FLAGGED = 0.8

DEFAULT_MAX_PATCHES = 10   # patches carried into the report

# ── Visualisation buffers ─────────────────────────────────────────────────────
# "mm" colour mode: condition bands on % of nominal (upper bounds exclusive).
CONDITION_COLOR_BANDS = [
    (70.0, (255, 0, 0)),      # red
    (80.0, (255, 255, 0)),    # yellow
    (90.0, (0, 255, 0)),      # green
]
CONDITION_COLOR_DEFAULT = (0, 0, 255)   # blue
NO_DATA_COLOR = (128, 128, 128)         # grey

# "%" colour mode: normalised bands (upper bounds inclusive).
NORMALIZED_COLOR_BANDS = [
    (20.0, (255, 0, 0)),        # red
    (40.0, (255, 165, 0)),      # orange
    (60.0, (255, 255, 0)),      # yellow
    (80.0, (144, 238, 144)),    # light green
]
NORMALIZED_COLOR_DEFAULT = (0, 100, 0)  # dark green
NORMALIZED_NO_DATA_COLOR = (0, 0, 0)

COLOR_MODES = ("mm", "%")

# ── Merge placement ───────────────────────────────────────────────────────────
PLACEMENT_DIRECTIONS = ("left", "right", "top", "bottom")


class Settings:
    """Operational settings, overridable from the environment."""

    def __init__(self):
        self.log_level: str = os.getenv("CSCAN_LOG_LEVEL", "INFO")
        self.patch_threshold: float = float(
            os.getenv("CSCAN_PATCH_THRESHOLD", str(DEFAULT_PATCH_THRESHOLD_PCT))
        )
        self.max_patches: int = int(os.getenv("CSCAN_MAX_PATCHES", str(DEFAULT_MAX_PATCHES)))
        self.header_scan_rows: int = int(os.getenv("CSCAN_HEADER_SCAN_ROWS", str(HEADER_SCAN_ROWS)))
        self.cors_origins: list[str] = [
            o.strip()
            for o in os.getenv(
                "CSCAN_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
            ).split(",")
            if o.strip()
        ]

    def validate_settings(self) -> bool:
        """Reject settings that would make the pipeline meaningless."""
        if not 0 < self.patch_threshold <= 100:
            raise ValueError("Patch threshold must be within (0, 100] % of nominal")
        if self.max_patches < 1:
            raise ValueError("Max patches must be at least 1")
        if self.header_scan_rows < 1:
            raise ValueError("Header scan window must be at least 1 row")
        return True
