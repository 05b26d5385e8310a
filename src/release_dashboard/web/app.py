"""Web dashboard API for the release dashboard."""

import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.routing import Route

from release_dashboard.config import Config, get_config
from release_dashboard.core import actions
from release_dashboard.core.tracks import StoreWebhookStatus
from release_dashboard.integrations.http import IntegrationError
from release_dashboard.integrations.slack import SlackError
from release_dashboard.runtime import Runtime, build_runtime
from release_dashboard.state.cache import utc_now
from release_dashboard.state.events import Event, EventBus
from release_dashboard.web.dashboard import get_dashboard_html

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    pass


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BadRequest(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


def _required(body: dict, *names: str):
    missing = [n for n in names if body.get(n) in (None, "")]
    if missing:
        raise BadRequest(f"Missing field(s): {', '.join(missing)}")


def _int(body: dict, name: str) -> int:
    try:
        return int(body[name])
    except (TypeError, ValueError) as e:
        raise BadRequest(f"{name} must be an integer") from e


def _project_or_404(runtime: Runtime, project_id: str):
    project = actions.find_project(runtime.config, project_id)
    if project is None:
        return None, JSONResponse({"error": "Project not found"}, status_code=404)
    return project, None


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, BadRequest | ValueError):
        return JSONResponse({"error": str(e)}, status_code=400)
    if isinstance(e, actions.NotConfiguredError):
        return JSONResponse({"error": str(e)}, status_code=503)
    if isinstance(e, IntegrationError):
        return JSONResponse(
            {"error": str(e), "service": e.service, "upstreamStatus": e.status_code},
            status_code=502,
        )
    return JSONResponse({"error": str(e)}, status_code=502)


def handles_errors(handler):
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except (BadRequest, ValueError, actions.NotConfiguredError, IntegrationError, SlackError) as e:
            logger.warning("%s %s failed: %s", request.method, request.url.path, e)
            return _error_response(e)

    wrapper.__name__ = handler.__name__
    return wrapper


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def health(request: Request):
    runtime = _runtime(request)
    return JSONResponse({
        "status": "ok",
        "lastUpdated": runtime.state.root.last_updated,
        "refreshing": runtime.orchestrator.refreshing,
        "phase": runtime.orchestrator.phase,
        "projects": len(runtime.state.projects),
    })


async def api_builds(request: Request):
    return JSONResponse(_runtime(request).state.snapshot())


async def api_tracks(request: Request):
    state = _runtime(request).state
    return JSONResponse({
        "lastUpdated": state.root.last_updated,
        "projects": [_tracks_dict(p) for p in state.projects],
    })


async def api_refresh(request: Request):
    runtime = _runtime(request)
    full = request.query_params.get("full", "").lower() in ("1", "true", "yes")
    started = await runtime.orchestrator.refresh(full=full)
    if not started:
        await runtime.orchestrator.wait_until_idle()
    return JSONResponse(runtime.state.snapshot())


async def event_stream(bus: EventBus):
    """Yield SSE frames: ``connected`` with the current status, then bus events."""
    sub = bus.subscribe()
    try:
        yield Event("connected", {"status": bus.current_status}).to_sse()
        async for event in sub:
            yield event.to_sse()
    finally:
        sub.close()


async def api_events(request: Request):
    return StreamingResponse(
        event_stream(_runtime(request).events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@handles_errors
async def api_trigger_build(request: Request):
    runtime = _runtime(request)
    body = await _body(request)
    _required(body, "projectId")
    project, missing = _project_or_404(runtime, body["projectId"])
    if missing:
        return missing
    results = await actions.trigger_builds(
        runtime.sources,
        project,
        branch=body.get("branch") or "main",
        build_type=body.get("buildType") or "Debug",
        platforms=body.get("platforms"),
    )
    if any(r["success"] for r in results):
        runtime.orchestrator.request_refresh()
    return JSONResponse({"success": True, "results": results})


@handles_errors
async def api_build_history(request: Request):
    runtime = _runtime(request)
    body = await _body(request)
    _required(body, "projectId", "branch", "buildType")
    project, missing = _project_or_404(runtime, body["projectId"])
    if missing:
        return missing
    builds = await actions.build_history(runtime.sources, project, body["branch"], body["buildType"])
    return JSONResponse({"builds": builds})


@handles_errors
async def api_store_status(request: Request):
    runtime = _runtime(request)
    body = await _body(request)
    _required(body, "jobName", "branch", "store", "status", "track")
    runtime.state.record_store_status(
        body["jobName"],
        body["branch"],
        body["store"],
        StoreWebhookStatus(
            status=body["status"],
            track=body["track"],
            version=body.get("version") or body.get("changeset"),
            download_url=body.get("downloadUrl"),
            review_status=body.get("reviewStatus"),
            updated_at=utc_now(),
        ),
    )
    runtime.orchestrator.request_refresh()
    return JSONResponse({"success": True})


@handles_errors
async def api_promote(request: Request):
    runtime = _runtime(request)
    body = await _body(request)
    _required(body, "projectId", "fromTrack", "toTrack")
    project, missing = _project_or_404(runtime, body["projectId"])
    if missing:
        return missing
    results = await actions.promote(
        runtime.config,
        runtime.sources,
        project,
        body["fromTrack"],
        body["toTrack"],
        platforms=body.get("platforms"),
        release_notes=body.get("releaseNotes"),
    )
    if any(r.get("success") for r in results):
        runtime.orchestrator.request_refresh()
    return JSONResponse({"success": True, "results": results})


@handles_errors
async def api_rollout(request: Request):
    runtime = _runtime(request)
    body = await _body(request)
    _required(body, "projectId", "action")
    project, missing = _project_or_404(runtime, body["projectId"])
    if missing:
        return missing
    fraction = body.get("userFraction")
    result = await actions.rollout(
        runtime.sources,
        project,
        body["action"],
        user_fraction=float(fraction) if fraction is not None else None,
        from_track=body.get("fromTrack") or "storeAlpha",
        country=body.get("country"),
        release_notes=body.get("releaseNotes"),
    )
    runtime.orchestrator.request_refresh()
    return JSONResponse(result)


@handles_errors
async def api_post_release(request: Request):
    runtime = _runtime(request)
    body = await _body(request)
    _required(body, "projectId", "fromChangeset", "toChangeset")
    project, missing = _project_or_404(runtime, body["projectId"])
    if missing:
        return missing
    branch = body.get("branch") or "main"
    from_cs, to_cs = _int(body, "fromChangeset"), _int(body, "toChangeset")
    changesets = await actions.release_changesets(runtime.config, runtime.state, project, branch, from_cs, to_cs)
    message = await actions.post_release(
        runtime.config,
        project,
        branch,
        from_cs,
        to_cs,
        changesets,
        status=body.get("status") or "building",
        platforms=body.get("platforms"),
    )
    return JSONResponse({
        "success": True,
        "channel": message.channel,
        "ts": message.ts,
        "changesetCount": len(changesets),
    })


# ── Serialization ─────────────────────────────────────────────────────────────


def _tracks_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.display_name,
        "iconUrl": p.icon_url,
        "error": p.error,
        "branches": [{"branch": b.name, "tracks": b.tracks.to_dict()} for b in p.branches],
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    runtime: Runtime | None = None,
    start_scheduler: bool = True,
) -> Starlette:
    runtime = runtime or build_runtime(config or get_config())

    @asynccontextmanager
    async def lifespan(app: Starlette):
        if not runtime.state.projects:
            runtime.load_snapshot()
        if start_scheduler:
            runtime.scheduler.start()
        try:
            yield
        finally:
            await runtime.close()

    routes = [
        Route("/", index),
        Route("/health", health),
        Route("/api/builds", api_builds),
        Route("/api/tracks", api_tracks),
        Route("/api/refresh", api_refresh, methods=["POST"]),
        Route("/api/events", api_events),
        Route("/api/trigger-build", api_trigger_build, methods=["POST"]),
        Route("/api/build-history", api_build_history, methods=["POST"]),
        Route("/api/store-status", api_store_status, methods=["POST"]),
        Route("/api/promote", api_promote, methods=["POST"]),
        Route("/api/rollout", api_rollout, methods=["POST"]),
        Route("/api/post-release", api_post_release, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.runtime = runtime
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_config=None)
