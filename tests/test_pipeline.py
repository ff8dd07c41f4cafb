import gc
import threading
import weakref

import numpy as np
import pytest

from cscan.config import Settings
from conftest import grid_from_values, write_workbook
from cscan.grid_merge import Placement
from cscan.inspection_stats import Condition, compute_stats
from cscan.pipeline import (
    DoneMessage, ErrorMessage, InspectionPipeline, ProcessRequest, ProgressMessage,
    RecolorRequest, ReprocessRequest, ScanFile, build_display_buffers, run_request,
    scan_files_from_paths,
)


PLATE_A = [
    [9.8, 9.7, 9.9, 9.6, 9.8, 9.9],
    [9.7, 4.0, 4.5, 9.5, 9.8, 9.9],
    [9.6, 4.2, "", 9.4, 9.7, 9.8],
]
PLATE_B = [
    [9.9, 9.9, 9.9, 9.9, 9.9, 9.9],
    [9.9, 9.9, 9.9, 9.9, 7.0, 7.2],
]


def _collect(emit_log):
    def emit(percent, message):
        emit_log.append((percent, message))
    return emit


def test_display_buffers_mm_mode():
    grid = grid_from_values([[9.5, 8.5, 7.5, 6.5, None]], nominal=10.0)
    displacement, color = build_display_buffers(grid, "mm")
    assert displacement.dtype == np.float32
    assert displacement.tolist() == pytest.approx([9.5, 8.5, 7.5, 6.5, 10.0])
    assert color.dtype == np.uint8
    assert color.reshape(-1, 3).tolist() == [
        [0, 0, 255], [0, 255, 0], [255, 255, 0], [255, 0, 0], [128, 128, 128],
    ]


def test_display_buffers_percent_mode():
    grid = grid_from_values([[1.5, 4.0, 5.5, 8.0, 9.0, None]], nominal=10.0)
    _, color = build_display_buffers(grid, "%")
    assert color.reshape(-1, 3).tolist() == [
        [255, 0, 0], [255, 165, 0], [255, 255, 0], [144, 238, 144], [0, 100, 0], [0, 0, 0],
    ]


def test_display_buffers_reject_unknown_mode():
    with pytest.raises(ValueError):
        build_display_buffers(grid_from_values([[9.0]]), "rainbow")


def test_run_process_merges_files(make_workbook):
    a = make_workbook(PLATE_A, name="a.xlsx")
    b = make_workbook(PLATE_B, name="b.xlsx")
    log = []
    request = ProcessRequest(
        files=scan_files_from_paths([a, b]),
        placements=[Placement("bottom", 1)],
        patch_threshold=80.0,
    )
    done = run_request(request, _collect(log))

    assert isinstance(done, DoneMessage)
    assert done.grid.shape == (6, 6)
    assert done.grid.source_ids == ["a.xlsx", "b.xlsx"]
    assert done.grid.nominal_thickness == 10.0      # detected from metadata
    assert done.stats.gap_count == 6
    assert done.stats.no_data_count == 1
    assert done.condition == Condition.CRITICAL
    assert [p.min_thickness for p in done.patches] == [4.0, 7.0]
    assert done.displacement_buffer.size == 36
    assert done.color_buffer.size == 36 * 3
    percents = [p for p, _ in log]
    assert percents == sorted(percents)


def test_run_reprocess_uses_new_nominal():
    grid = grid_from_values([[9.0, 6.0]], nominal=10.0)
    done = run_request(ReprocessRequest(grid, 6.0, patch_threshold=50.0), _collect([]))
    assert done.grid.nominal_thickness == 6.0
    assert done.stats.min_percentage == 100.0
    assert done.condition == Condition.HEALTHY
    assert done.patches == []
    assert grid.nominal_thickness == 10.0


def test_run_recolor_keeps_stats():
    grid = grid_from_values([[9.0, 6.0]], nominal=10.0)
    stats, condition = compute_stats(grid)
    done = run_request(RecolorRequest(grid, 10.0, stats, "%"), _collect([]))
    assert done.stats is stats
    assert done.condition == condition
    assert done.patches is None
    assert done.color_mode == "%"


def test_pipeline_message_stream(make_workbook):
    path = make_workbook(PLATE_A)
    with InspectionPipeline() as pipeline:
        job = pipeline.submit(ProcessRequest(files=scan_files_from_paths([path])))
        messages = list(job.messages(timeout=30))

    assert all(isinstance(m, ProgressMessage) for m in messages[:-1])
    assert isinstance(messages[-1], DoneMessage)
    assert pipeline.current is messages[-1]
    assert job.progress["status"] == "completed"


def test_pipeline_error_leaves_previous_result(make_workbook):
    path = make_workbook(PLATE_A)
    with InspectionPipeline() as pipeline:
        good = pipeline.submit(ProcessRequest(files=scan_files_from_paths([path]))).result(30)
        assert isinstance(good, DoneMessage)

        bad = pipeline.submit(ProcessRequest(files=[ScanFile("broken.xlsx", b"not a workbook")]))
        terminal = bad.result(30)

    assert isinstance(terminal, ErrorMessage)
    assert terminal.message
    assert pipeline.current is good
    assert bad.progress["status"] == "error"


def test_pipeline_invalid_nominal_is_error(make_workbook):
    path = make_workbook(PLATE_A)
    with InspectionPipeline() as pipeline:
        job = pipeline.submit(ProcessRequest(files=scan_files_from_paths([path]),
                                             nominal_thickness=-1.0))
        terminal = job.result(30)
    assert isinstance(terminal, ErrorMessage)
    assert "positive" in terminal.message
    assert pipeline.current is None


def test_header_not_found_is_error(tmp_path):
    path = write_workbook(tmp_path / "text.xlsx", [["Report"], ["no data here"]])
    with InspectionPipeline() as pipeline:
        terminal = pipeline.submit(ProcessRequest(files=scan_files_from_paths([path]),
                                                  nominal_thickness=10.0)).result(30)
    assert isinstance(terminal, ErrorMessage)
    assert "header" in terminal.message


def test_jobs_run_one_at_a_time_in_submission_order(monkeypatch):
    from cscan import pipeline as pipeline_module

    grid = grid_from_values([[9.0, 6.0]], nominal=10.0)
    real_run = pipeline_module.run_request
    gate = threading.Event()
    lock = threading.Lock()
    active = []
    peak = []
    order = []

    def tracked(request, emit, settings=None):
        with lock:
            active.append(request)
            peak.append(len(active))
            order.append(request.nominal_thickness)
        gate.wait(10)
        try:
            return real_run(request, emit, settings)
        finally:
            with lock:
                active.remove(request)

    monkeypatch.setattr(pipeline_module, "run_request", tracked)

    nominals = [6.0, 7.0, 8.0, 9.0, 10.0]
    with InspectionPipeline() as pipeline:
        jobs = [pipeline.submit(ReprocessRequest(grid, n)) for n in nominals]
        assert jobs[-1].progress["status"] == "queued"
        gate.set()
        for job in jobs:
            assert isinstance(job.result(30), DoneMessage)

    assert max(peak) == 1
    assert order == nominals
    # Last submitted job is the committed one.
    assert pipeline.current.grid.nominal_thickness == 10.0


def test_older_result_never_overwrites_newer_commit():
    grid = grid_from_values([[9.0, 6.0]], nominal=10.0)
    with InspectionPipeline() as pipeline:
        first = pipeline.submit(ReprocessRequest(grid, 10.0))
        second = pipeline.submit(ReprocessRequest(grid, 8.0))
        first_done = first.result(30)
        second.result(30)
        # A late commit from an earlier job is ignored.
        assert pipeline._commit(first, first_done) is first_done
    assert pipeline.current.grid.nominal_thickness == 8.0


def test_finished_jobs_are_not_retained():
    grid = grid_from_values([[9.0, 6.0]], nominal=10.0)
    with InspectionPipeline() as pipeline:
        first = pipeline.submit(ReprocessRequest(grid, 10.0))
        first.result(30)
        first_ref = weakref.ref(first)
        del first

        last = None
        for _ in range(50):
            last = pipeline.submit(ReprocessRequest(grid, 10.0))
            last.result(30)
        gc.collect()

        assert first_ref() is None
        assert pipeline.latest_job is last


def test_close_stops_worker():
    pipeline = InspectionPipeline()
    worker = pipeline._worker
    pipeline.close(timeout=5.0)
    assert not worker.is_alive()


def test_default_patch_threshold_is_fifty(monkeypatch):
    monkeypatch.delenv("CSCAN_PATCH_THRESHOLD", raising=False)
    assert Settings().patch_threshold == 50.0
    grid = grid_from_values([[9.0, 5.5, 4.9]], nominal=10.0)
    done = run_request(ReprocessRequest(grid, 10.0), _collect([]))
    assert done.patch_threshold == 50.0
    assert [p.min_thickness for p in done.patches] == [4.9]


@pytest.mark.parametrize("threshold", [0.0, -5.0, 100.5, float("nan")])
def test_out_of_range_threshold_is_error(threshold):
    grid = grid_from_values([[9.0, 6.0]], nominal=10.0)
    with InspectionPipeline() as pipeline:
        terminal = pipeline.submit(
            ReprocessRequest(grid, 10.0, patch_threshold=threshold)).result(30)
    assert isinstance(terminal, ErrorMessage)
    assert "threshold" in terminal.message.lower()
    assert pipeline.current is None


def test_recolor_commit_keeps_patches():
    grid = grid_from_values([[9.0, 3.0]], nominal=10.0)
    with InspectionPipeline() as pipeline:
        processed = pipeline.submit(ReprocessRequest(grid, 10.0, patch_threshold=50.0)).result(30)
        pipeline.submit(RecolorRequest(processed.grid, 10.0, processed.stats, "%")).result(30)
    assert pipeline.current.color_mode == "%"
    assert pipeline.current.patches == processed.patches


def test_closed_pipeline_rejects_requests():
    pipeline = InspectionPipeline()
    pipeline.close()
    with pytest.raises(RuntimeError):
        pipeline.submit(ReprocessRequest(grid_from_values([[9.0]]), 10.0))


def test_settings_threshold_used_by_default(monkeypatch):
    monkeypatch.setenv("CSCAN_PATCH_THRESHOLD", "95")
    grid = grid_from_values([[9.0, 9.9]], nominal=10.0)
    done = run_request(ReprocessRequest(grid, 10.0), _collect([]), Settings())
    assert done.patch_threshold == 95.0
    assert [p.min_thickness for p in done.patches] == [9.0]
