"""HTTP API for orchestration sessions.

Sessions run as background asyncio tasks inside the server process.  Review
requests are answered over HTTP, and progress is streamed to the browser
via Server-Sent Events.

Usage:
    auto-ml-orchestrator-server               # starts on http://localhost:8000
    auto-ml-orchestrator-server --port 9000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from auto_ml_orchestrator.config import Settings, load_settings
from auto_ml_orchestrator.context import OrchestrationOptions, generate_session_id
from auto_ml_orchestrator.events import EventChannel, HitlRequested, event_to_dict
from auto_ml_orchestrator.memory import JsonPatternMemory
from auto_ml_orchestrator.orchestrator import Collaborators, Orchestrator
from auto_ml_orchestrator.policy import CheckpointPolicy, HitlAnswer
from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery
from auto_ml_orchestrator.serde import to_jsonable
from auto_ml_orchestrator.session_store import SessionStore
from auto_ml_orchestrator.state import SessionStatus, WorkflowState

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0
_POLL_SECONDS = 0.1


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class StartRequest(BaseModel):
    data_path: str
    target_column: str = ""
    task_type: str = ""
    max_training_time: int | None = None
    auto_approval_threshold: float | None = None
    skip_hitl: bool = False
    output_dir: str = ""
    random_seed: int = 42


class AnswerRequest(BaseModel):
    option_id: str
    comment: str = ""


# ---------------------------------------------------------------------------
# Live session state
# ---------------------------------------------------------------------------

@dataclass
class SessionRun:
    """A session currently driven by this server process."""

    session_id: str
    channel: EventChannel
    cancel: asyncio.Event
    task: asyncio.Task | None = None
    pending: HitlRequested | None = None
    answer: asyncio.Future | None = None
    preset: HitlAnswer | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def ask(self, request: HitlRequested) -> HitlAnswer:
        """HITL handler: wait until an answer is posted over HTTP."""
        if self.preset is not None:
            answer, self.preset = self.preset, None
            return answer
        self.pending = request
        self.answer = asyncio.get_running_loop().create_future()
        try:
            return await self.answer
        finally:
            self.pending = None
            self.answer = None


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def create_app(settings: Settings | None = None, collaborators: Collaborators | None = None) -> FastAPI:
    """Build the FastAPI application.

    *collaborators* replaces the default stage implementations for every
    session started by this app.
    """
    settings = settings or load_settings()
    store = SessionStore(settings.home)
    memory = JsonPatternMemory(settings.home)
    policy = CheckpointPolicy(settings.policy)
    runs: dict[str, SessionRun] = {}

    app = FastAPI(title="Auto-ML Orchestrator")
    app.state.store = store
    app.state.runs = runs

    def orchestrator_for(run: SessionRun) -> Orchestrator:
        return Orchestrator(
            store=store,
            policy=policy,
            collaborators=collaborators or Collaborators.defaults(memory=memory),
            memory=memory,
            discovery=ProgressiveRuleDiscovery(exception_tolerance=settings.exception_tolerance),
            channel=run.channel,
        )

    def launch(session_id: str, coro_factory, preset: HitlAnswer | None = None) -> SessionRun:
        run = SessionRun(session_id=session_id, channel=EventChannel(), cancel=asyncio.Event(), preset=preset)
        orchestrator = orchestrator_for(run)

        async def drive():
            try:
                await coro_factory(orchestrator, run)
            except Exception:
                logger.exception("Session %s stopped with an error", session_id)
            finally:
                run.channel.close()

        runs[session_id] = run
        run.task = asyncio.create_task(drive())
        return run

    # ── Start a session ───────────────────────────────────────
    @app.post("/api/sessions")
    async def start_session(body: StartRequest):
        data_path = Path(body.data_path).expanduser()
        if not data_path.exists():
            return _error(400, f"Dataset not found: {data_path}")
        options = OrchestrationOptions(
            target_column=body.target_column,
            task_type=body.task_type,
            max_training_time=body.max_training_time or settings.max_training_time,
            auto_approval_threshold=(
                body.auto_approval_threshold
                if body.auto_approval_threshold is not None
                else settings.auto_approval_threshold
            ),
            skip_hitl=body.skip_hitl or settings.skip_hitl,
            output_dir=body.output_dir,
            random_seed=body.random_seed,
        )
        session_id = generate_session_id()
        launch(session_id, lambda orch, run: orch.run(
            str(data_path.resolve()), options, handler=run.ask, cancel=run.cancel, session_id=session_id,
        ))
        return {"session_id": session_id, "status": "started"}

    # ── Queries ───────────────────────────────────────────────
    @app.get("/api/sessions")
    async def list_sessions(resumable: bool = False):
        summaries = store.list_resumable() if resumable else store.list()
        return {"sessions": to_jsonable(summaries)}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        session = store.load(session_id)
        run = runs.get(session_id)
        if session is None:
            if run is not None and run.running:
                return {"session_id": session_id, "running": True, "status": "starting"}
            return _error(404, f"Session not found: {session_id}")
        return {
            "session_id": session_id,
            "running": bool(run and run.running),
            "summary": to_jsonable(session.summary()),
            "pending_request": event_to_dict(run.pending) if run and run.pending else None,
            "context": to_jsonable(session.context),
        }

    # ── SSE event stream ──────────────────────────────────────
    @app.get("/api/sessions/{session_id}/events")
    async def event_stream(session_id: str):
        run = runs.get(session_id)
        if run is None:
            return _error(404, f"No live event stream for session {session_id}")

        async def generate():
            index = 0
            idle = 0.0
            while True:
                history = run.channel.history
                while index < len(history):
                    yield f"data: {json.dumps(event_to_dict(history[index]))}\n\n"
                    index += 1
                    idle = 0.0
                if run.channel.closed:
                    break
                await asyncio.sleep(_POLL_SECONDS)
                idle += _POLL_SECONDS
                if idle >= HEARTBEAT_SECONDS:
                    idle = 0.0
                    yield ": heartbeat\n\n"

        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # ── Review answers ────────────────────────────────────────
    @app.post("/api/sessions/{session_id}/answer")
    async def answer(session_id: str, body: AnswerRequest):
        reply = HitlAnswer(option_id=body.option_id.strip().lower(), comment=body.comment)
        run = runs.get(session_id)
        if run is not None and run.answer is not None and not run.answer.done():
            run.answer.set_result(reply)
            return {"status": "accepted", "option_id": reply.option_id}
        if run is not None and run.running:
            return _error(409, "Session is not waiting for review")

        session = store.load(session_id)
        if session is None:
            return _error(404, f"Session not found: {session_id}")
        if session.status != SessionStatus.PAUSED:
            return _error(409, f"Session is not waiting for review (status: {session.status.value})")
        # paused by an earlier process: resume with this answer for the pending checkpoint
        launch(session_id, lambda orch, r: orch.resume(session_id, handler=r.ask, cancel=r.cancel), preset=reply)
        return {"status": "resumed", "option_id": reply.option_id}

    @app.post("/api/sessions/{session_id}/resume")
    async def resume_session(session_id: str):
        run = runs.get(session_id)
        if run is not None and run.running:
            return _error(409, "Session is already running")
        session = store.load(session_id)
        if session is None:
            return _error(404, f"Session not found: {session_id}")
        if not (session.can_resume() or session.can_recover()):
            return _error(409, f"Session cannot be resumed (status: {session.status.value})")
        launch(session_id, lambda orch, r: orch.resume(session_id, handler=r.ask, cancel=r.cancel))
        return {"status": "resumed"}

    @app.post("/api/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str):
        run = runs.get(session_id)
        if run is not None and run.running:
            run.cancel.set()
            return {"status": "cancelling"}
        session = store.load(session_id)
        if session is None:
            return _error(404, f"Session not found: {session_id}")
        if not session.can_resume():
            return _error(409, f"Session already finished (status: {session.status.value})")
        state = session.context.current_state
        session.record_transition(state, WorkflowState.CANCELLED, reason="Cancelled by user")
        session.mark_cancelled("Cancelled by user")
        store.save(session)
        return {"status": "cancelled"}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str):
        run = runs.get(session_id)
        if run is not None and run.running:
            return _error(409, "Cancel the session before deleting it")
        runs.pop(session_id, None)
        if not store.delete(session_id):
            return _error(404, f"Session not found: {session_id}")
        return {"status": "deleted"}

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main():
    """Launch the API server."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Auto-ML Orchestrator — HTTP API")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--policy", default="", help="YAML file with checkpoint thresholds")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    print("=" * 50)
    print("  Auto-ML Orchestrator — HTTP API")
    print(f"  http://localhost:{args.port}")
    print("=" * 50)

    app = create_app(load_settings(args.policy or None))
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
