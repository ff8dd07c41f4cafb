"""Sample C-scan workbooks for demos and manual checks.

Three synthetic corrosion patterns on a square plate of nominal 6.0 mm:

  plate      healthy plate, every reading within 0.5 mm of nominal
  localized  one round pit at the centre (radius size/10) at 60-70 % of nominal
  severe     the bottom-right corner (beyond 70 % of each axis) at 40-55 %

The workbook uses the instrument layout the parser expects: 18 metadata rows,
the X-coordinate header on row 19, then one Y-labelled row per scan line.

    python -m cscan.sample_data localized 50 sample.xlsx
"""

import argparse
import datetime
import logging
from typing import Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

SAMPLE_NOMINAL_MM = 6.0
SAMPLE_PATTERNS = ("plate", "localized", "severe")
METADATA_ROWS = 18


def generate_thickness_grid(size: int, pattern: str = "plate",
                            nominal: float = SAMPLE_NOMINAL_MM,
                            seed: Optional[int] = None) -> np.ndarray:
    """``size`` x ``size`` thickness readings (row = y, column = x), 2 decimals."""
    if pattern not in SAMPLE_PATTERNS:
        raise ValueError(f"Pattern must be one of {SAMPLE_PATTERNS}, got {pattern!r}")
    if size < 1:
        raise ValueError("Sample size must be at least 1")

    rng = np.random.default_rng(seed)
    y, x = np.mgrid[0:size, 0:size]

    if pattern == "plate":
        grid = nominal - rng.random((size, size)) * 0.5
    elif pattern == "localized":
        distance = np.hypot(x - size / 2, y - size / 2)
        pit = nominal * (0.6 + rng.random((size, size)) * 0.1)
        grid = np.where(distance < size / 10, pit, nominal - rng.random((size, size)) * 0.5)
    else:
        corner = (x > size * 0.7) & (y > size * 0.7)
        loss = nominal * (0.4 + rng.random((size, size)) * 0.15)
        grid = np.where(corner, loss, nominal - rng.random((size, size)))

    return grid.round(2)


def sample_sheet_rows(size: int, pattern: str = "plate",
                      nominal: float = SAMPLE_NOMINAL_MM,
                      seed: Optional[int] = None) -> list[list]:
    """Raw sheet rows: metadata block, X header, Y-labelled data rows."""
    grid = generate_thickness_grid(size, pattern, nominal, seed)

    metadata = [
        ["Project", "Sample Project"],
        ["Asset ID", f"SAMPLE-{pattern.upper()}-{size}x{size}"],
        ["Date", datetime.date.today().isoformat()],
        ["Inspector", "cscan sample generator"],
        [f"Nominal Thickness (mm) = {nominal}"],
    ]
    rows = metadata + [[] for _ in range(METADATA_ROWS - len(metadata))]
    rows.append([""] + list(range(size)))
    for j in range(size):
        rows.append([j] + grid[j].tolist())
    return rows


def write_sample_workbook(path, size: int = 50, pattern: str = "localized",
                          nominal: float = SAMPLE_NOMINAL_MM,
                          seed: Optional[int] = None):
    """Write a sample scan to ``path`` as .xlsx and return the path."""
    rows = sample_sheet_rows(size, pattern, nominal, seed)
    df = pd.DataFrame(rows)
    df.to_excel(path, sheet_name="C-Scan Data", header=False, index=False, engine="openpyxl")
    logger.info("Wrote %s sample (%dx%d) to %s", pattern, size, size, path)
    return path


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate a sample C-scan workbook.")
    parser.add_argument("pattern", choices=SAMPLE_PATTERNS)
    parser.add_argument("size", type=int)
    parser.add_argument("output")
    parser.add_argument("--nominal", type=float, default=SAMPLE_NOMINAL_MM)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)
    write_sample_workbook(args.output, args.size, args.pattern, args.nominal, args.seed)


if __name__ == "__main__":
    main()
