"""Data ingestion: load C-scan spreadsheets and parse them into measurement points.

A C-scan export is a semi-structured sheet with three parts:
  - a metadata block of variable length ("Key (unit) = value" in column 0,
    or key / value in columns 0 and 1),
  - a header row holding the X coordinate of every data column (column 0 is
    reserved for row labels),
  - data rows, each with its Y coordinate in column 0 followed by one wall
    thickness reading per header column.

Because the metadata block length differs between instruments and exports,
the header row is located heuristically (first mostly-numeric wide row) and
everything above it is treated as metadata.  The parser yields one
``MeasurementPoint`` per (x, y) cell, keeping blank / non-numeric readings as
no-data points so the grid merger can tell a sensor miss from a gap.
"""

import io
import logging
import math
import os
import re
import zipfile
from dataclasses import dataclass, field
from typing import NamedTuple, Optional

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from cscan.config import (
    HEADER_SCAN_ROWS, HEADER_MIN_FILLED_CELLS, HEADER_MIN_NUMERIC_RATIO,
    NOMINAL_THICKNESS_KEY, NOMINAL_THICKNESS_FALLBACK_KEY,
)
from cscan.exceptions import NoSheetFound, HeaderNotFound, NoDataExtracted, UnreadableWorkbook

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


class MeasurementPoint(NamedTuple):
    """One reading of the scan; ``raw_thickness`` is None for no-data."""
    x: int
    y: int
    raw_thickness: Optional[float]


@dataclass(frozen=True)
class ParsedScan:
    """Result of parsing one plate / scan sheet."""
    metadata: list[tuple[str, object]]
    points: list[MeasurementPoint]
    detected_nominal_thickness: Optional[float] = None
    header_row: int = 0
    skipped_columns: list[int] = field(default_factory=list)

    @property
    def metadata_map(self) -> dict:
        """Metadata as a dict (first occurrence of a key wins)."""
        out = {}
        for key, value in self.metadata:
            out.setdefault(key, value)
        return out

    @property
    def measured_count(self) -> int:
        return sum(1 for p in self.points if p.raw_thickness is not None)


# ── Workbook loading ──────────────────────────────────────────────────────────

def load_workbook_rows(source) -> list[list]:
    """Read the first sheet of an .xlsx workbook into raw rows.

    ``source`` may be a path, raw bytes, or a binary file-like object.  Only
    the openpyxl (.xlsx) format is read; anything else, CSV included, raises
    ``UnreadableWorkbook``.

    Cells that pandas reads as NaN are returned as None so that the parser
    sees the same "empty" marker whatever the cell formatting was.
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    try:
        xls = pd.ExcelFile(source, engine="openpyxl")
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as e:
        raise UnreadableWorkbook(f"Upload is not a readable .xlsx workbook: {e}") from e
    if not xls.sheet_names:
        raise NoSheetFound("No sheets found in the Excel file.")

    # By convention the first sheet holds the scan; header=None keeps every
    # row, including the metadata block, as data.
    df = pd.read_excel(xls, sheet_name=xls.sheet_names[0], header=None)
    rows = []
    for values in df.itertuples(index=False, name=None):
        rows.append([None if _is_blank(v) else v for v in values])
    return rows


def parse_scan_file(source, header_scan_rows: int = HEADER_SCAN_ROWS) -> ParsedScan:
    """Load a workbook and parse its first sheet."""
    label = os.fspath(source) if isinstance(source, (str, os.PathLike)) else "<upload>"
    rows = load_workbook_rows(source)
    logger.debug("Loaded %d rows from %s", len(rows), label)
    return parse_scan_rows(rows, header_scan_rows=header_scan_rows)


# ── Parsing ───────────────────────────────────────────────────────────────────

def parse_scan_rows(rows: list[list], header_scan_rows: int = HEADER_SCAN_ROWS) -> ParsedScan:
    """Parse raw sheet rows into metadata and measurement points.

    Pipeline (order matters):
      1. Header detection   - first wide, mostly-numeric row in the scan window
      2. Metadata           - every non-blank row above the header
      3. Nominal thickness  - from the "nominal thickness" key, else "max thickness"
      4. X alignment        - one X per header column; bad columns are skipped
                              for every data row without shifting the others
      5. Data rows          - numeric column 0 gives Y; each valid column gives
                              one point (reading or no-data)
    """
    header_idx = find_header_row(rows, header_scan_rows)

    metadata = extract_metadata(rows[:header_idx])
    nominal = detect_nominal_thickness(metadata)

    # X coordinate per column index; None marks an invalid header cell.  The
    # list is indexed by sheet column so data cells stay aligned even when a
    # header cell in the middle is unusable.
    header = rows[header_idx]
    x_coords: list[Optional[int]] = [None] * len(header)
    skipped = []
    for j in range(1, len(header)):
        x = _to_float(header[j])
        if x is None:
            if not _is_blank(header[j]):
                skipped.append(j)
            continue
        x_coords[j] = int(round(x))
    if skipped:
        logger.warning("Header row %d: skipping non-numeric columns %s", header_idx, skipped)

    points = []
    for row in rows[header_idx + 1:]:
        if not row:
            continue
        y = _to_float(row[0])
        if y is None:
            continue
        y = int(round(y))
        for j, x in enumerate(x_coords):
            if x is None:
                continue
            value = row[j] if j < len(row) else None
            points.append(MeasurementPoint(x, y, _to_float(value)))

    if not points or all(p.raw_thickness is None for p in points):
        raise NoDataExtracted(
            f"Coordinate header found at row {header_idx + 1} but no thickness "
            f"readings could be extracted."
        )

    logger.info(
        "Parsed scan: header row %d, %d metadata entries, %d points, nominal=%s",
        header_idx, len(metadata), len(points), nominal,
    )
    return ParsedScan(
        metadata=metadata,
        points=points,
        detected_nominal_thickness=nominal,
        header_row=header_idx,
        skipped_columns=skipped,
    )


def find_header_row(rows: list[list], header_scan_rows: int = HEADER_SCAN_ROWS) -> int:
    """Locate the X-coordinate header row.

    Only cells from column 1 onward are inspected (column 0 holds row
    labels).  The first row with more than HEADER_MIN_FILLED_CELLS non-empty
    cells, of which more than HEADER_MIN_NUMERIC_RATIO parse as finite
    numbers, is the header.
    """
    for i, row in enumerate(rows[:header_scan_rows]):
        if not row:
            continue
        filled = [c for c in row[1:] if not _is_blank(c)]
        if len(filled) <= HEADER_MIN_FILLED_CELLS:
            continue
        numeric = sum(1 for c in filled if _to_float(c) is not None)
        if numeric / len(filled) > HEADER_MIN_NUMERIC_RATIO:
            return i
    raise HeaderNotFound(
        f"Could not find the X-coordinate header row within the first "
        f"{header_scan_rows} rows."
    )


def extract_metadata(rows: list[list]) -> list[tuple[str, object]]:
    """Read ``key = value`` / ``key | value`` / two-column pairs.

    Keys are lower-cased and trimmed of unit annotations, so
    "Nominal Thickness (mm) =" becomes "nominal thickness".
    """
    metadata = []
    for row in rows:
        if not row:
            continue
        first = row[0] if len(row) > 0 else None
        second = row[1] if len(row) > 1 else None
        if _is_blank(first) and _is_blank(second):
            continue

        text = "" if _is_blank(first) else str(first).strip()
        inline_value = None
        for sep in ("=", "|"):
            if sep in text:
                text, inline_value = text.split(sep, 1)
                inline_value = inline_value.strip()
                break

        if not _is_blank(second):
            value = second.strip() if isinstance(second, str) else second
        else:
            value = inline_value or ""

        metadata.append((_clean_key(text), value))
    return metadata


def detect_nominal_thickness(metadata: list[tuple[str, object]]) -> Optional[float]:
    """Nominal thickness from metadata, falling back to the max-thickness key."""
    for wanted in (NOMINAL_THICKNESS_KEY, NOMINAL_THICKNESS_FALLBACK_KEY):
        for key, value in metadata:
            if wanted in key:
                number = _extract_number(value)
                if number is not None and number > 0:
                    return number
    return None


# ── Cell helpers ──────────────────────────────────────────────────────────────

def _clean_key(text: str) -> str:
    key = text.split("=")[0].split("(")[0]
    return key.strip().rstrip(":").strip().lower()


def _is_blank(val) -> bool:
    if val is None:
        return True
    if isinstance(val, float) and math.isnan(val):
        return True
    if isinstance(val, str) and not val.strip():
        return True
    return False


def _to_float(val) -> Optional[float]:
    """Parse a cell as a finite number; anything else is None."""
    if _is_blank(val) or isinstance(val, bool):
        return None
    if isinstance(val, str):
        try:
            num = float(val.strip())
        except ValueError:
            return None
    else:
        try:
            num = float(val)
        except (TypeError, ValueError):
            return None
    return num if math.isfinite(num) else None


def _extract_number(val) -> Optional[float]:
    """First number in a metadata value ("6.0 mm" -> 6.0)."""
    num = _to_float(val)
    if num is not None:
        return num
    if isinstance(val, str):
        match = _NUMBER_RE.search(val)
        if match:
            return _to_float(match.group(0))
    return None
