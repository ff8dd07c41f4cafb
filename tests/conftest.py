import openpyxl
import pytest

from cscan.data_ingestion import MeasurementPoint
from cscan.grid_merge import PlateScan, merge_plate


def scan_rows(values, metadata=None, x_start=0, y_start=0, header_label=""):
    """Sheet rows in the instrument layout: metadata, X header, Y-labelled data."""
    if metadata is None:
        metadata = [
            ["Project", "Tank 4 floor"],
            ["Asset ID", "T4-PLATE-01"],
            ["Nominal Thickness (mm) = 10"],
            ["Inspector", "R. Vega"],
        ]
    width = max(len(r) for r in values)
    rows = [list(m) for m in metadata]
    rows.append([header_label] + [x_start + i for i in range(width)])
    for j, row in enumerate(values):
        rows.append([y_start + j] + list(row))
    return rows


def write_workbook(path, rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "C-Scan Data"
    for row in rows:
        ws.append([None if v == "" else v for v in row])
    wb.save(path)
    return path


def points_from_values(values):
    """x = column, y = row; None is a no-data reading."""
    return [
        MeasurementPoint(x, y, v)
        for y, row in enumerate(values)
        for x, v in enumerate(row)
    ]


def grid_from_values(values, nominal=10.0, source_id="plate-1"):
    return merge_plate(None, PlateScan(points_from_values(values), nominal, source_id))


@pytest.fixture
def make_workbook(tmp_path):
    def _make(values, name="plate.xlsx", **kwargs):
        return write_workbook(tmp_path / name, scan_rows(values, **kwargs))
    return _make
