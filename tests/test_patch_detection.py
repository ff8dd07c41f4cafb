import numpy as np
import pytest
from scipy import ndimage

from conftest import grid_from_values, points_from_values
from cscan.grid_merge import Placement, PlateScan, merge_plate
from cscan.patch_detection import BoundingBox, detect_patches, patches_to_frame, validate_patch_threshold


def test_two_by_two_scenario():
    # (row, col) -> value: (0,0)=10, (0,1)=10, (1,0)=3, (1,1)=3
    grid = grid_from_values([[10.0, 10.0], [3.0, 3.0]], nominal=10.0)
    patches = detect_patches(grid, 50.0)

    assert len(patches) == 1
    patch = patches[0]
    assert patch.id == 1
    assert set(patch.member_points) == {(0, 1), (1, 1)}
    assert patch.min_thickness == 3.0
    assert patch.bounding_box == BoundingBox(x_min=0, x_max=1, y_min=1, y_max=1)
    assert patch.area_mm2 == 2
    assert patch.point_count == 2
    assert patch.severity == "Critical"


def test_no_data_cell_never_joins_patch():
    grid = grid_from_values([
        [3.0, 3.0, 3.0],
        [3.0, None, 3.0],
        [3.0, 3.0, 3.0],
    ])
    patches = detect_patches(grid, 50.0)
    assert len(patches) == 1
    assert (1, 1) not in patches[0].member_points
    assert patches[0].point_count == 8


def test_no_data_does_not_bridge_regions():
    grid = grid_from_values([[3.0, None, 3.0]])
    patches = detect_patches(grid, 50.0)
    assert len(patches) == 2
    assert all(p.point_count == 1 for p in patches)


def test_gap_cells_do_not_bridge_plates():
    a = PlateScan(points_from_values([[3.0]]), 10.0, "a")
    b = PlateScan(points_from_values([[3.0]]), 10.0, "b")
    grid = merge_plate(merge_plate(None, a), b, Placement("right", 1))
    assert len(detect_patches(grid, 50.0)) == 2


def test_diagonal_cells_are_separate_patches():
    grid = grid_from_values([
        [3.0, 9.0],
        [9.0, 3.0],
    ])
    patches = detect_patches(grid, 50.0)
    assert len(patches) == 2


def test_threshold_is_strict():
    grid = grid_from_values([[5.0, 4.9]])
    patches = detect_patches(grid, 50.0)
    assert [p.member_points for p in patches] == [((1, 0),)]


def test_sorted_by_min_thickness_and_ids_in_discovery_order():
    grid = grid_from_values([
        [4.0, 9.0, 2.0],
        [9.0, 9.0, 9.0],
        [3.0, 9.0, 9.0],
    ])
    patches = detect_patches(grid, 50.0)
    assert [p.min_thickness for p in patches] == [2.0, 3.0, 4.0]
    # Discovery is row-major: (0,0) -> 1, (2,0) -> 2, (0,2) -> 3.
    assert [p.id for p in patches] == [2, 3, 1]


def test_center_and_area_use_bounding_box():
    grid = grid_from_values([
        [3.0, 3.0, 3.0, 3.0],
        [3.0, 9.0, 9.0, 9.0],
    ])
    patch = detect_patches(grid, 50.0)[0]
    assert patch.point_count == 5
    assert patch.area_mm2 == 8
    # x: 0 + 3/2 = 1.5 -> 2 (half rounds up); y: 0 + 1/2 = 0.5 -> 1
    assert patch.center == (2, 1)
    assert patch.avg_thickness == pytest.approx(3.0)


def test_severity_tiers():
    grid = grid_from_values([[8.5, 9.9, 7.0, 9.9, 5.0]], nominal=10.0)
    patches = detect_patches(grid, 90.0)
    assert {p.min_thickness: p.severity for p in patches} == {
        5.0: "Critical", 7.0: "Severe", 8.5: "Moderate",
    }


def test_detection_is_deterministic():
    rng = np.random.default_rng(7)
    values = rng.uniform(2.0, 10.0, size=(25, 30)).round(2).tolist()
    grid = grid_from_values(values)
    assert detect_patches(grid, 60.0) == detect_patches(grid, 60.0)


def test_connectivity_matches_component_labelling():
    rng = np.random.default_rng(11)
    values = rng.uniform(2.0, 10.0, size=(40, 40))
    values[rng.random(values.shape) < 0.1] = np.nan
    grid = grid_from_values([[None if np.isnan(v) else float(v) for v in row] for row in values])
    threshold = 55.0
    patches = detect_patches(grid, threshold)

    below = grid.measured_mask & (np.nan_to_num(grid.percentage, nan=100.0) < threshold)
    labels, count = ndimage.label(below)
    assert len(patches) == count

    owner = np.zeros(grid.shape, dtype=int)
    for p in patches:
        for x, y in p.member_points:
            assert owner[y, x] == 0, "cell assigned to two patches"
            owner[y, x] = p.id
    # Every below-threshold cell belongs to exactly one patch.
    assert np.array_equal(owner > 0, below)
    # A patch is exactly one labelled component.
    for p in patches:
        component_labels = {labels[y, x] for x, y in p.member_points}
        assert len(component_labels) == 1
        assert (labels == component_labels.pop()).sum() == p.point_count


def test_large_region_does_not_recurse():
    grid = grid_from_values([[1.0] * 300 for _ in range(300)])
    patches = detect_patches(grid, 50.0)
    assert len(patches) == 1
    assert patches[0].point_count == 90_000


def test_empty_result_above_threshold():
    grid = grid_from_values([[9.0, 9.5]])
    assert detect_patches(grid, 50.0) == []
    assert patches_to_frame([]).empty


def test_patches_to_frame():
    grid = grid_from_values([[3.0, 9.0, 2.0]])
    df = patches_to_frame(detect_patches(grid, 50.0))
    assert list(df["patch_id"]) == [2, 1]
    assert list(df["min_thickness"]) == [2.0, 3.0]


@pytest.mark.parametrize("threshold", [0.0, -1.0, 100.01, float("nan"), "high", None])
def test_threshold_outside_range_rejected(threshold):
    grid = grid_from_values([[3.0, 9.0]])
    with pytest.raises(ValueError):
        detect_patches(grid, threshold)


def test_threshold_of_one_hundred_is_allowed():
    assert validate_patch_threshold(100) == 100.0
    grid = grid_from_values([[3.0, 10.0]], nominal=10.0)
    assert [p.min_thickness for p in detect_patches(grid, 100.0)] == [3.0]
