from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException

from fleetci.archive import RunArchive
from fleetci.runner import Orchestrator, load_workflow
from fleetci.schemas import RunOut, TriggerRequest, TriggerResponse
from fleetci.settings import Settings


def create_app(orchestrator: Orchestrator, archive: Optional[RunArchive] = None) -> FastAPI:
    """
    Control plane for one pipeline. A single Orchestrator (and so a single
    concurrency controller) is shared by every request.
    """
    app = FastAPI(title="fleetci control plane")
    app.state.orchestrator = orchestrator
    app.state.archive = archive

    # -------------------- Endpoints --------------------

    @app.get("/health")
    def health() -> dict:
        return {"ok": True, "pipeline": orchestrator.pipeline.name}

    @app.post("/triggers", response_model=TriggerResponse, status_code=202)
    def trigger(req: TriggerRequest) -> TriggerResponse:
        outcome = orchestrator.trigger(req.to_event())
        if outcome.run is None:
            return TriggerResponse(created=False, reason=outcome.reason)

        run = outcome.run
        t = threading.Thread(
            target=orchestrator.execute,
            args=(run,),
            name=f"fleetci-run-{run.id}",
            daemon=True,
        )
        t.start()
        return TriggerResponse(
            created=True,
            reason=outcome.reason,
            run_id=run.id,
            group_key=run.group_key,
            cancelled=[r.id for r in outcome.cancelled],
        )

    @app.get("/runs", response_model=list[RunOut])
    def list_runs(limit: int = 50) -> list[RunOut]:
        live = [RunOut.from_run(r) for r in orchestrator.runs()]
        seen = {r.id for r in live}
        archived = archive.list(limit=limit) if archive is not None else []
        merged = live + [r for r in archived if r.id not in seen]
        merged.sort(key=lambda r: r.started_at, reverse=True)
        return merged[:limit]

    @app.get("/runs/{run_id}", response_model=RunOut)
    def get_run(run_id: str) -> RunOut:
        run = orchestrator.get_run(run_id)
        if run is not None:
            return RunOut.from_run(run)
        if archive is not None:
            stored = archive.get(run_id)
            if stored is not None:
                return stored
        raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str) -> dict:
        run = orchestrator.get_run(run_id)
        if run is None:
            stored = archive.get(run_id) if archive is not None else None
            if stored is not None:
                raise HTTPException(status_code=409, detail=f"Run already {stored.status}")
            raise HTTPException(status_code=404, detail="Run not found")
        if not orchestrator.cancel(run_id):
            raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")
        return {"ok": True, "run_id": run_id}

    return app


def app_from_env() -> FastAPI:
    """
    uvicorn --factory fleetci.cloud.app:app_from_env

    Reads FLEETCI_* settings; FLEETCI_WORKFLOW defaults to fleetci_workflow.py.
    """
    settings = Settings.from_env()
    pipeline = load_workflow(settings.workflow or "fleetci_workflow.py")
    archive = RunArchive(settings.archive_url) if settings.archive_url else None
    orchestrator = Orchestrator(
        pipeline,
        source_root=Path(".").resolve(),
        settings=settings,
        archive=archive,
    )
    return create_app(orchestrator, archive)
