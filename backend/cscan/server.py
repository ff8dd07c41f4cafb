"""REST API layer for the C-scan inspection engine.

The FastAPI app wraps one ``InspectionPipeline``: uploads are parsed,
merged and analysed on the pipeline's background thread while the frontend
polls for progress, then reads statistics, condition and patches from the
committed result.  Re-thresholding and nominal-thickness edits are
submitted as full REPROCESS runs of the merged grid; colour-mode changes as
RECOLOR runs.

Endpoints cover: upload + process, progress status, statistics, the merged
grid, the patch list, top-N patch selection for the report (with inspector
flags), reprocess and recolor.

``create_app`` takes the pipeline as a parameter so tests can inject their
own; the module-level ``app`` is what uvicorn serves (``uvicorn cscan.server:app``).
"""

from typing import Optional

import numpy as np
import pandas as pd
from fastapi import FastAPI, HTTPException, UploadFile, File as FastAPIFile, Form
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel

from cscan.config import Settings
from cscan.grid_merge import Placement
from cscan.logging_utils import setup_logger
from cscan.patch_detection import patches_to_frame, validate_patch_threshold
from cscan.patch_selection import RankingWeights, build_patch_metas, score_patches, select_top_patches
from cscan.pipeline import (
    InspectionPipeline, ProcessRequest, ReprocessRequest, RecolorRequest,
    ScanFile, DoneMessage, ErrorMessage,
)


def _nan_to_none(obj):
    """Recursively convert NaN and numpy scalars to Python-native types.

    numpy NaN is not valid JSON and numpy int64/float64/bool_ are not
    natively serializable; this walks dicts/lists/tuples and converts
    everything to None, int, float, or bool.
    """
    if isinstance(obj, dict):
        return {k: _nan_to_none(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_nan_to_none(v) for v in obj]
    if isinstance(obj, float) and np.isnan(obj):
        return None
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        v = float(obj)
        return None if np.isnan(v) else v
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    return obj


def _df_to_records(df: pd.DataFrame) -> list[dict]:
    if df is None or df.empty:
        return []
    records = df.replace({np.nan: None}).to_dict(orient="records")
    return [_nan_to_none(r) for r in records]


def _summary(done: DoneMessage) -> dict:
    """Lightweight view of a committed result (no buffers, no cells)."""
    return _nan_to_none({
        "stats": done.stats.to_dict(),
        "condition": done.condition.value,
        "grid": {
            "width": done.grid.width,
            "height": done.grid.height,
            "plates": done.grid.source_ids,
            "nominal_thickness": done.grid.nominal_thickness,
        },
        "patch_count": len(done.patches or []),
        "patch_threshold": done.patch_threshold,
        "color_mode": done.color_mode,
        "buffers": {
            "displacement_length": int(done.displacement_buffer.size),
            "color_length": int(done.color_buffer.size),
        },
    })


# Pydantic request model for re-running the merged grid (nominal / threshold).
class ReprocessBody(BaseModel):
    nominal_thickness: Optional[float] = None
    patch_threshold: Optional[float] = None
    color_mode: Optional[str] = None
    wait: bool = False


# Pydantic request model for changing the colour mode of the buffers.
class RecolorBody(BaseModel):
    color_mode: str
    wait: bool = False


# Pydantic request model for the report's top-N patch selection.
class TopPatchesBody(BaseModel):
    max_count: Optional[int] = None
    flagged_ids: list[int] = []
    weights: Optional[dict] = None


def create_app(pipeline: Optional[InspectionPipeline] = None,
               settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (pipeline.settings if pipeline else Settings())
    settings.validate_settings()
    logger = setup_logger("cscan", settings.log_level)
    pipeline = pipeline or InspectionPipeline(settings, logger)

    app = FastAPI(title="C-Scan Inspection API")
    app.state.pipeline = pipeline

    # CORS middleware: allow the frontend dev server to call this API
    # without browser cross-origin errors during local development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _current() -> DoneMessage:
        if pipeline.current is None:
            raise HTTPException(status_code=404, detail="No inspection has been processed yet")
        return pipeline.current

    def _started_or_result(job, wait: bool, terminal=None) -> dict:
        if not wait:
            return {"status": "started", "job": job.seq}
        terminal = terminal or job.result()
        if isinstance(terminal, ErrorMessage):
            raise HTTPException(status_code=422, detail=terminal.message)
        return {"status": "completed", "job": job.seq, **_summary(terminal)}

    # ── Processing ────────────────────────────────────────────────────────────

    # --- Upload + process: parse, merge, stats and patches on the worker ---

    @app.post("/api/process")
    async def api_process(
        files: list[UploadFile] = FastAPIFile(...),
        nominal_thickness: Optional[float] = Form(None),
        color_mode: str = Form("mm"),
        direction: str = Form("right"),
        offset: int = Form(0),
        patch_threshold: Optional[float] = Form(None),
        wait: bool = Form(False),
    ):
        """Process one or more uploaded scan workbooks into a merged grid."""
        try:
            placement = Placement(direction, offset)
            if patch_threshold is not None:
                validate_patch_threshold(patch_threshold)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        scan_files = []
        for f in files:
            scan_files.append(ScanFile(f.filename or "upload.xlsx", await f.read()))

        request = ProcessRequest(
            files=scan_files,
            nominal_thickness=nominal_thickness,
            color_mode=color_mode,
            placements=[placement] * (len(scan_files) - 1),
            patch_threshold=patch_threshold,
        )
        job = pipeline.submit(request)
        terminal = await run_in_threadpool(job.result) if wait else None
        return _started_or_result(job, wait, terminal)

    # --- Status: polled by the frontend to track the background run ---

    @app.get("/api/process/status")
    def api_status():
        """Progress of the most recently submitted job."""
        job = pipeline.latest_job
        if job is None:
            return {"status": "idle", "job": None}
        return {"job": job.seq, "kind": job.request.kind, **job.progress}

    # --- Reprocess: new nominal thickness or patch threshold ---

    @app.post("/api/reprocess")
    def api_reprocess(body: ReprocessBody):
        """Re-run stats and patch detection on the merged grid."""
        current = _current()
        if body.patch_threshold is not None:
            try:
                validate_patch_threshold(body.patch_threshold)
            except ValueError as e:
                raise HTTPException(status_code=422, detail=str(e))
        request = ReprocessRequest(
            grid=current.grid,
            nominal_thickness=body.nominal_thickness if body.nominal_thickness is not None
            else current.grid.nominal_thickness,
            color_mode=body.color_mode or current.color_mode,
            patch_threshold=body.patch_threshold if body.patch_threshold is not None
            else current.patch_threshold,
        )
        return _started_or_result(pipeline.submit(request), body.wait)

    # --- Recolor: switch between condition (mm) and normalised (%) colours ---

    @app.post("/api/recolor")
    def api_recolor(body: RecolorBody):
        """Rebuild the display buffers in another colour mode."""
        current = _current()
        request = RecolorRequest(
            grid=current.grid,
            nominal_thickness=current.grid.nominal_thickness,
            stats=current.stats,
            color_mode=body.color_mode,
        )
        return _started_or_result(pipeline.submit(request), body.wait)

    # ── Results ───────────────────────────────────────────────────────────────

    @app.get("/api/stats")
    def api_stats():
        """Inspection statistics and condition of the committed result."""
        return _summary(_current())

    @app.get("/api/grid")
    def api_grid():
        """Merged grid cells, row-major."""
        current = _current()
        return _nan_to_none({
            "width": current.grid.width,
            "height": current.grid.height,
            "cells": current.grid.to_matrix(),
        })

    @app.get("/api/patches")
    def api_patches(include_points: bool = False):
        """Detected patches, most severe first."""
        current = _current()
        patches = current.patches or []
        return _nan_to_none({
            "threshold": current.patch_threshold,
            "patches": [p.to_dict(include_points=include_points) for p in patches],
            "table": _df_to_records(patches_to_frame(patches)),
        })

    @app.post("/api/patches/top")
    def api_top_patches(body: TopPatchesBody):
        """Top-N patches for the report, Critical patches always included."""
        current = _current()
        try:
            weights = RankingWeights(**body.weights) if body.weights else RankingWeights()
        except TypeError as e:
            raise HTTPException(status_code=422, detail=f"Invalid ranking weights: {e}")
        metas = build_patch_metas(current.patches or [], current.grid.nominal_thickness,
                                  body.flagged_ids)
        max_count = body.max_count if body.max_count is not None else settings.max_patches
        ids = select_top_patches(metas, max_count, weights)
        scores = {m.id: m.score for m in score_patches(metas, weights)}
        return _nan_to_none({
            "ids": ids,
            "selected": [{"id": i, "score": scores[i]} for i in ids],
        })

    @app.on_event("shutdown")
    def shutdown():
        pipeline.close(timeout=5.0)

    return app


app = create_app()
