"""FastAPI surface: thread management, turns, and the SSE turn stream."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse
from openai import AsyncOpenAI

from .. import __version__
from ..config import Settings, SettingsStore, apply_admin_updates, redact_secret
from ..errors import RemoteAgentError
from ..orchestration.orchestrator import TurnOrchestrator
from ..orchestration.protocol import done_message, error_message, format_sse, format_sse_done
from ..orchestration.runtime import OpenAIAgentsRuntime
from ..orchestration.turn_log import TurnLogger
from ..sessions.store import SessionStore
from ..sessions.threads import ThreadStore
from .dependencies import (
    get_orchestrator,
    get_settings_store,
    set_orchestrator,
    set_settings_store,
)
from .schemas import AdminSettingsUpdate, EnsureThreadRequest, InterruptRequest, InterruptResponse, TurnRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def build_orchestrator(settings: Settings) -> TurnOrchestrator:
    """Wire the production orchestrator against the OpenAI APIs."""

    client = AsyncOpenAI(api_key=settings.api_key or None, base_url=settings.base_url or None)
    data_path = settings.data_path
    sessions = SessionStore.for_openai(
        client,
        write_retries=settings.session_write_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )
    threads = ThreadStore(data_path / "threads.json", conversations_dir=data_path / "conversations")
    turn_logger = TurnLogger(enabled=settings.turn_logging, base_dir=data_path / "logs" / "turns")
    return TurnOrchestrator(
        settings,
        runtime=OpenAIAgentsRuntime(client),
        sessions=sessions,
        threads=threads,
        turn_logger=turn_logger,
    )


def create_app(
    orchestrator: Optional[TurnOrchestrator] = None,
    *,
    settings_store: Optional[SettingsStore] = None,
) -> FastAPI:
    """Application factory; a missing orchestrator is built from stored settings on startup."""

    set_orchestrator(orchestrator)
    set_settings_store(settings_store)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if orchestrator is None:
            store = settings_store or SettingsStore()
            set_settings_store(store)
            set_orchestrator(build_orchestrator(store.load()))
        try:
            yield
        finally:
            active = get_orchestrator()
            for handle in active.cancellations.active():
                handle.abort("shutdown")

    app = FastAPI(title="MaterialSearch API", version=__version__, lifespan=lifespan)
    app.include_router(router)
    return app


# ----------------------------------------------------------------------
# Health and threads
# ----------------------------------------------------------------------
@router.get("/health")
async def health(orchestrator: TurnOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"ok": True, "version": __version__, "activeTurns": len(orchestrator.cancellations)}


@router.get("/api/threads")
async def list_threads(orchestrator: TurnOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"threads": [record.to_dict() for record in orchestrator.list_threads()]}


@router.post("/api/thread/ensure")
async def ensure_thread(
    payload: EnsureThreadRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    ensured = await orchestrator.ensure_thread(payload.thread_id, preamble=payload.preamble)
    return ensured.to_dict()


@router.get("/api/thread/{thread_id}/messages")
async def thread_messages(
    thread_id: str,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    messages = await orchestrator.read_thread_messages(thread_id)
    return {"threadId": thread_id, "messages": [message.to_dict() for message in messages]}


# ----------------------------------------------------------------------
# Turns
# ----------------------------------------------------------------------
async def _resolve_thread(orchestrator: TurnOrchestrator, thread_id: Optional[str]) -> str:
    ensured = await orchestrator.ensure_thread(thread_id)
    return ensured.thread_id


@router.post("/api/turn")
async def run_turn(
    payload: TurnRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> Any:
    thread_id = await _resolve_thread(orchestrator, payload.thread_id)
    try:
        result = await orchestrator.run_turn(thread_id, payload.text, model=payload.model)
    except RemoteAgentError as exc:
        body = exc.result.to_payload() if exc.result else {"threadId": thread_id, "status": "error", "error": str(exc)}
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body)
    return result.to_payload()


@router.post("/api/turn/stream")
async def stream_turn(
    payload: TurnRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    thread_id = await _resolve_thread(orchestrator, payload.thread_id)
    return StreamingResponse(
        _turn_event_stream(orchestrator, thread_id, payload),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def _turn_event_stream(
    orchestrator: TurnOrchestrator,
    thread_id: str,
    payload: TurnRequest,
) -> AsyncIterator[str]:
    queue: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()

    async def produce() -> None:
        try:
            result = await orchestrator.run_turn(
                thread_id,
                payload.text,
                model=payload.model,
                stream=True,
                on_event=queue.put,
            )
            await queue.put(done_message(result))
        except RemoteAgentError as exc:
            extra = {"result": exc.result.to_payload()} if exc.result else {}
            await queue.put(error_message(str(exc), **extra))
        except Exception as exc:
            logger.exception("Streamed turn failed on thread %s", thread_id)
            await queue.put(error_message(str(exc) or exc.__class__.__name__))
        finally:
            await queue.put(None)

    task = asyncio.create_task(produce())
    try:
        while True:
            message = await queue.get()
            if message is None:
                break
            yield format_sse(message)
        yield format_sse_done()
    finally:
        # client disconnects cancel the turn, which finalizes it as interrupted
        if not task.done():
            task.cancel()


@router.post("/api/turn/interrupt", response_model=InterruptResponse)
async def interrupt_turn(
    payload: InterruptRequest,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
) -> InterruptResponse:
    return InterruptResponse(interrupted=orchestrator.interrupt(payload.turn_id))


# ----------------------------------------------------------------------
# Admin settings
# ----------------------------------------------------------------------
def _settings_payload(settings: Settings) -> dict[str, Any]:
    return {
        "defaultModel": settings.default_model,
        "defaultThreadPreamble": settings.default_thread_preamble,
        "corpusRoot": settings.corpus_root,
        "reasoningEffort": settings.reasoning_effort,
        "reasoningSummary": settings.reasoning_summary,
        "maxTurns": settings.max_turns,
        "turnTimeoutSeconds": settings.turn_timeout_seconds,
        "compactionEnabled": settings.compaction_enabled,
        "compactionThreshold": settings.compaction_threshold,
        "turnLogging": settings.turn_logging,
        "apiKey": redact_secret(settings.api_key),
    }


@router.get("/api/admin/settings")
async def get_admin_settings(orchestrator: TurnOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"settings": _settings_payload(orchestrator.settings)}


@router.post("/api/admin/settings")
async def update_admin_settings(
    payload: AdminSettingsUpdate,
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    store: Optional[SettingsStore] = Depends(get_settings_store),
) -> dict[str, Any]:
    try:
        updated = apply_admin_updates(orchestrator.settings, payload.to_updates())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if store is not None:
        try:
            store.save(updated)
        except OSError as exc:
            logger.error("Failed to save settings: %s", exc)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save settings") from exc
    orchestrator.update_settings(updated)
    logger.info("Admin settings updated: %s", sorted(payload.to_updates()))
    return {"ok": True, "settings": _settings_payload(updated)}
