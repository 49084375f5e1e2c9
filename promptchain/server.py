"""FastAPI server — HTTP and WebSocket surface over the chain orchestrator."""

from __future__ import annotations

import logging
from typing import Any, Literal

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from promptchain.config import SERVER_HOST, SERVER_PORT
from promptchain.errors import ChainNotFoundError
from promptchain.models import Chain, Feedback, TaskGraph
from promptchain.orchestrator import ChainOrchestrator

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="PromptChain", version="1.0", description="Prompt-chain execution engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator: ChainOrchestrator | None = None


def get_orchestrator() -> ChainOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ChainOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: ChainOrchestrator | None):
    global _orchestrator
    _orchestrator = orchestrator


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class TaskRequest(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    kind: str = "feature"
    dependencies: list[str] = Field(default_factory=list)
    prompt: str | None = None
    prompt_template: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)
    requires_previous_results: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubmitChainRequest(BaseModel):
    name: str = ""
    description: str = ""
    root_id: str | None = None
    tasks: list[TaskRequest]
    metadata: dict[str, Any] = Field(default_factory=dict)
    start: bool = False


class FeedbackRequest(BaseModel):
    kind: Literal["clarification", "manual_artifact", "skip", "retry"]
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Chain Lifecycle
# ---------------------------------------------------------------------------


@app.post("/chains")
async def submit_chain(req: SubmitChainRequest) -> dict:
    """Submit a task graph. Planning errors are rejected with 422."""
    orchestrator = get_orchestrator()
    graph = TaskGraph.from_dict(req.model_dump(exclude={"start"}))
    chain_id = orchestrator.submit(graph, name=req.name or None)
    chain = orchestrator.get_chain(chain_id)
    if chain.error_category == "planning":
        raise HTTPException(status_code=422, detail={"chain_id": chain_id, "error": chain.error})

    if req.start:
        return await orchestrator.start(chain_id)
    return orchestrator.get_state(chain_id)


@app.post("/chains/{chain_id}/start")
async def start_chain(chain_id: str) -> dict:
    _get_chain(chain_id)
    return await get_orchestrator().start(chain_id)


@app.get("/chains")
async def list_chains() -> list[dict]:
    return get_orchestrator().list_chains()


@app.get("/chains/{chain_id}")
async def get_chain(chain_id: str) -> dict:
    _get_chain(chain_id)
    return get_orchestrator().get_state(chain_id)


@app.get("/chains/{chain_id}/plan")
async def get_plan(chain_id: str) -> dict:
    _get_chain(chain_id)
    orchestrator = get_orchestrator()
    plan = orchestrator.get_plan(chain_id)
    if plan is None:
        raise HTTPException(status_code=404, detail=f"Chain {chain_id} has no execution plan")
    return {**plan, "visualization": orchestrator.visualize(chain_id)}


@app.post("/chains/{chain_id}/pause")
async def pause_chain(chain_id: str) -> dict:
    _get_chain(chain_id)
    changed = get_orchestrator().pause(chain_id)
    return {"id": chain_id, "paused": True, "changed": changed}


@app.post("/chains/{chain_id}/resume")
async def resume_chain(chain_id: str) -> dict:
    _get_chain(chain_id)
    changed = get_orchestrator().resume(chain_id)
    return {"id": chain_id, "paused": False, "changed": changed}


@app.post("/chains/{chain_id}/cancel")
async def cancel_chain(chain_id: str) -> dict:
    _get_chain(chain_id)
    changed = get_orchestrator().cancel(chain_id)
    return {"id": chain_id, "cancelled": changed}


# ---------------------------------------------------------------------------
# History / Escalation
# ---------------------------------------------------------------------------


@app.get("/chains/{chain_id}/history")
async def get_history(chain_id: str) -> list[dict]:
    _get_chain(chain_id)
    return await get_orchestrator().get_history(chain_id)


@app.get("/chains/{chain_id}/paused")
async def get_paused(chain_id: str) -> list[dict]:
    _get_chain(chain_id)
    return [p.to_dict() for p in get_orchestrator().escalation.get_paused_tasks(chain_id)]


@app.post("/chains/{chain_id}/tasks/{task_id}/feedback")
async def provide_feedback(chain_id: str, task_id: str, req: FeedbackRequest) -> dict:
    """Answer a clarification request for a paused task."""
    _get_chain(chain_id)
    feedback = Feedback(kind=req.kind, content=req.content, metadata=req.metadata)
    if not get_orchestrator().provide_feedback(chain_id, task_id, feedback):
        raise HTTPException(status_code=409, detail=f"Task {task_id} is not awaiting input")
    return {"status": "delivered", "task_id": task_id, "kind": req.kind}


# ---------------------------------------------------------------------------
# Events (WebSocket + Polling)
# ---------------------------------------------------------------------------


@app.websocket("/chains/{chain_id}/events")
async def event_stream(websocket: WebSocket, chain_id: str):
    """WebSocket stream of one chain's events."""
    await websocket.accept()
    orchestrator = get_orchestrator()
    if chain_id not in orchestrator.registry:
        await websocket.close(code=4004, reason="Chain not found")
        return

    queue = orchestrator.subscribe(chain_id)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        orchestrator.unsubscribe(queue)


@app.get("/chains/{chain_id}/events")
async def get_events(chain_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    """Get recent events (polling fallback)."""
    _get_chain(chain_id)
    events = get_orchestrator().event_bus.recent(limit=limit, offset=offset, chain_id=chain_id)
    return [e.to_dict() for e in events]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_chain(chain_id: str) -> Chain:
    try:
        return get_orchestrator().get_chain(chain_id)
    except ChainNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chain {chain_id} not found")


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the PromptChain server."""
    logger.info(f"Starting PromptChain server on {SERVER_HOST}:{SERVER_PORT}")
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
