"""Pipeline control and observation endpoints."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from cinesum.api.dependencies import get_orchestrator
from cinesum.models.pipeline import PipelineRun
from cinesum.pipeline.manager import PipelineOrchestrator

router = APIRouter(prefix="/api/v1/pipeline", tags=["pipeline"])


class StartRequest(BaseModel):
    media_input: str | None = None


@router.get("", response_model=PipelineRun)
async def get_pipeline(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Current snapshot of the run."""
    return orchestrator.snapshot()


@router.post("/start", status_code=202, response_model=PipelineRun)
async def start_pipeline(
    request: StartRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Start processing a media input. Returns once the run is Processing."""
    return orchestrator.start(request.media_input)


@router.post("/cancel")
async def cancel_pipeline(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Cancel the running pipeline (no-op when nothing is running)."""
    cancelled = orchestrator.cancel()
    return {"cancelled": cancelled, "status": orchestrator.status.value}


@router.post("/reset", response_model=PipelineRun)
async def reset_pipeline(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Discard the current run and return to Idle. The log is kept."""
    return orchestrator.reset()


@router.get("/logs")
async def get_logs(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return [entry.model_dump(mode="json") for entry in orchestrator.snapshot().log]


@router.delete("/logs", status_code=204)
async def clear_logs(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    orchestrator.clear_log()


@router.get("/events")
async def stream_events(
    request: Request,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Server-sent events of everything the orchestrator publishes."""

    async def event_source():
        async for event in orchestrator.events.stream():
            if await request.is_disconnected():
                break
            yield f"event: {event.kind}\ndata: {event.model_dump_json()}\n\n"

    return StreamingResponse(event_source(), media_type="text/event-stream")
