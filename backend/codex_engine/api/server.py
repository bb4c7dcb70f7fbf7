"""
Codex Engine API Server

aiohttp HTTP surface over the execution orchestrator.

Routes:
    POST /api/codex/sessions/{session_id}/prompt    run a prompt (NDJSON when streaming)
    POST /api/codex/sessions/{session_id}/stop      request a cooperative stop
    GET  /api/codex/sessions/{session_id}/messages  ordered message log
    GET  /api/codex/health                          liveness
"""

import json
from aiohttp import web
from typing import Any, Dict, Optional

from .. import __version__
from ..config import EngineConfig
from ..errors import SessionNotFoundError, TurnFailedError, WorktreeNotFoundError
from ..persistence import PersistenceService, SqlRepository, SqlWorktreeResolver
from ..runtime import ExecutionOrchestrator, StreamingCallbacks
from ..runtime.ports import Repository
from ...utils.logger import get_logger

logger = get_logger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"


async def _write_line(response: web.StreamResponse, payload: Dict[str, Any]) -> None:
    await response.write((json.dumps(payload, default=str) + "\n").encode("utf-8"))


def _ndjson_callbacks(response: web.StreamResponse) -> StreamingCallbacks:
    """Callbacks forwarding every notification as one NDJSON line."""

    async def on_stream_start(session_id, message_id):
        await _write_line(response, {"type": "stream_start", "data": {"message_id": message_id}})

    async def on_text_chunk(session_id, message_id, chunk):
        await _write_line(response, {"type": "text_chunk", "data": {"message_id": message_id, "chunk": chunk}})

    async def on_tool_start(session_id, tool_use):
        await _write_line(response, {"type": "tool_start", "data": tool_use.to_dict()})

    async def on_tool_complete(session_id, tool_use, message):
        data = tool_use.to_dict()
        data["message_id"] = message.message_id
        await _write_line(response, {"type": "tool_complete", "data": data})

    async def on_complete(session_id, complete, message):
        data = complete.to_dict()
        data["message_id"] = message.message_id if message else None
        await _write_line(response, {"type": "complete", "data": data})

    async def on_error(session_id, error):
        await _write_line(response, {"type": "error", "data": {"message": str(error)}})

    async def on_warning(session_id, warning):
        await _write_line(response, {"type": "warning", "data": {"message": warning}})

    async def on_stopped(session_id):
        await _write_line(response, {"type": "stopped", "data": {}})

    return StreamingCallbacks(
        on_stream_start=on_stream_start,
        on_text_chunk=on_text_chunk,
        on_tool_start=on_tool_start,
        on_tool_complete=on_tool_complete,
        on_complete=on_complete,
        on_error=on_error,
        on_warning=on_warning,
        on_stopped=on_stopped,
    )


async def prompt_handler(request: web.Request) -> web.StreamResponse:
    """
    POST /api/codex/sessions/{session_id}/prompt
    Body: {"prompt": str, "task_id"?: str, "permission_mode"?: str, "stream"?: bool}
    """
    orchestrator: ExecutionOrchestrator = request.app["orchestrator"]
    session_id = request.match_info["session_id"]

    try:
        data = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "invalid JSON body"}, status=400)

    prompt = data.get("prompt")
    if not prompt:
        return web.json_response({"error": "prompt is required"}, status=400)

    task_id = data.get("task_id")
    permission_mode = data.get("permission_mode")

    if not data.get("stream", True):
        try:
            result = await orchestrator.execute_prompt_sync(
                session_id, prompt, task_id=task_id, permission_mode=permission_mode
            )
        except (SessionNotFoundError, WorktreeNotFoundError) as e:
            return web.json_response({"error": str(e)}, status=404)
        except TurnFailedError as e:
            return web.json_response({"error": str(e)}, status=502)
        return web.json_response(result.to_dict())

    # Preconditions are checked before the stream is opened so they map to
    # plain HTTP errors.
    repository: Repository = request.app["repository"]
    if await repository.find_session(session_id) is None:
        return web.json_response({"error": f"Session {session_id} not found"}, status=404)

    response = web.StreamResponse(headers={"Content-Type": NDJSON_CONTENT_TYPE})
    await response.prepare(request)

    try:
        result = await orchestrator.execute_prompt(
            session_id,
            prompt,
            task_id=task_id,
            permission_mode=permission_mode,
            callbacks=_ndjson_callbacks(response),
        )
        await _write_line(response, {"type": "result", "data": result.to_dict()})
    except TurnFailedError:
        # Already reported through on_error
        pass
    except (SessionNotFoundError, WorktreeNotFoundError) as e:
        await _write_line(response, {"type": "error", "data": {"message": str(e)}})
    except Exception as e:
        logger.exception("Error running prompt", session_id=session_id)
        await _write_line(response, {"type": "error", "data": {"message": str(e)}})

    await response.write_eof()
    return response


async def stop_handler(request: web.Request) -> web.Response:
    """
    POST /api/codex/sessions/{session_id}/stop
    """
    orchestrator: ExecutionOrchestrator = request.app["orchestrator"]
    session_id = request.match_info["session_id"]

    result = orchestrator.stop(session_id)
    return web.json_response(result.to_dict())


async def get_messages_handler(request: web.Request) -> web.Response:
    """
    GET /api/codex/sessions/{session_id}/messages
    """
    repository: Repository = request.app["repository"]
    session_id = request.match_info["session_id"]

    if await repository.find_session(session_id) is None:
        return web.json_response({"error": "Session not found"}, status=404)

    messages = await repository.find_messages_by_session(session_id)
    return web.json_response({
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
    })


async def health_handler(request: web.Request) -> web.Response:
    """GET /api/codex/health"""
    return web.json_response({"status": "ok", "version": __version__})


async def on_startup(app: web.Application) -> None:
    """Wire persistence and the orchestrator unless they were injected."""
    config: EngineConfig = app["config"]

    if "orchestrator" not in app:
        persistence = PersistenceService(config)
        repository = SqlRepository(persistence)
        app["persistence"] = persistence
        app["repository"] = repository
        app["orchestrator"] = ExecutionOrchestrator(
            repository,
            SqlWorktreeResolver(persistence),
            config=config,
        )

    logger.info("Codex engine API server started")


async def on_cleanup(app: web.Application) -> None:
    """Cleanup on shutdown."""
    if "orchestrator" in app:
        await app["orchestrator"].close()
    if "persistence" in app:
        app["persistence"].close()

    logger.info("Codex engine API server stopped")


def create_app(
    config: EngineConfig,
    orchestrator: Optional[ExecutionOrchestrator] = None,
    repository: Optional[Repository] = None,
) -> web.Application:
    """
    Create the aiohttp application.

    Args:
        config: EngineConfig instance
        orchestrator: Pre-built orchestrator (built from ``config`` when None)
        repository: Repository backing the orchestrator; required with ``orchestrator``

    Returns:
        Configured aiohttp application
    """
    app = web.Application()
    app["config"] = config
    if orchestrator is not None:
        app["orchestrator"] = orchestrator
        app["repository"] = repository or orchestrator.repository

    app.router.add_post("/api/codex/sessions/{session_id}/prompt", prompt_handler)
    app.router.add_post("/api/codex/sessions/{session_id}/stop", stop_handler)
    app.router.add_get("/api/codex/sessions/{session_id}/messages", get_messages_handler)
    app.router.add_get("/api/codex/health", health_handler)

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    return app
