import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from clear_node import __version__
from clear_node.client import VerificationClient
from clear_node.config import JOURNEY_COOKIE, NONCE_COOKIE, STATE_CLEANUP_INTERVAL, STATE_TTL, NodeConfig
from clear_node.flow import VerificationFlow
from clear_node.host import JourneyHost
from clear_node.logging_config import configure_logging
from clear_node.models import OutcomeId, ResumptionInput, StepResult

log = logging.getLogger("clear_node")


def _default_host() -> JourneyHost:
    flow = VerificationFlow(NodeConfig.from_env(), VerificationClient())
    return JourneyHost(flow)


async def _state_cleanup_task(host: JourneyHost) -> None:
    """Periodically drop suspended flows whose user never came back."""
    while True:
        await asyncio.sleep(STATE_CLEANUP_INTERVAL)
        try:
            count = await host.store.cleanup_expired()
            if count > 0:
                log.debug(f"Flow state cleanup: removed {count} expired flows")
        except Exception as e:
            log.error(f"Flow state cleanup error: {e}")


def _step_response(run_id: str, result: StepResult) -> JSONResponse | RedirectResponse:
    """Turn a step result into the user-facing response.

    Error details stay in the logs and audit channel, and verification
    results stay in the step's transient state; the body only names the
    outcome.
    """
    if result.redirect is not None:
        resp = RedirectResponse(result.redirect.url, status_code=302)
        if result.redirect.track_cookie:
            resp.set_cookie(JOURNEY_COOKIE, run_id, httponly=True, secure=True, samesite="lax")
        for name, value in result.redirect.cookies.items():
            resp.set_cookie(name, value, max_age=STATE_TTL, httponly=True, secure=True, samesite="lax")
        return resp

    resp = JSONResponse({"outcome": result.outcome.id})
    resp.delete_cookie(JOURNEY_COOKIE, httponly=True, secure=True, samesite="lax")
    resp.delete_cookie(NONCE_COOKIE, httponly=True, secure=True, samesite="lax")
    return resp


def create_app(host: Optional[JourneyHost] = None) -> FastAPI:
    """Build the HTTP surface around a journey host.

    Without a host, one is built from CLEAR_* environment settings on first use.
    """

    def get_host() -> JourneyHost:
        if app.state.host is None:
            app.state.host = _default_host()
        return app.state.host

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        log.info("Starting CLEAR verification node...")
        journey_host = get_host()
        cleanup_task = asyncio.create_task(_state_cleanup_task(journey_host))
        log.info(f"Flow state cleanup task started (interval: {STATE_CLEANUP_INTERVAL}s)")

        yield

        log.info("Shutting down CLEAR verification node...")
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await journey_host.flow.client.close()
        log.info("CLEAR verification node stopped")

    app = FastAPI(title="CLEAR Verification Node", version=__version__, lifespan=lifespan)
    app.state.host = host

    @app.middleware("http")
    async def req_log(request: Request, call_next):
        start = time.time()
        route = request.url.path
        remote = request.client.host if request.client else "-"
        resp = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        log.info(f"request_complete status={resp.status_code} duration_ms={duration_ms}",
                 extra={"route": route, "remote_addr": remote})
        return resp

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/journeys/outcomes")
    def outcomes():
        """Exits of the configured node, in declaration order."""
        return [o.model_dump() for o in get_host().flow.outcomes]

    @app.get("/journeys/clear")
    async def journey_start(request: Request):
        """Start the CLEAR node on a freshly allocated run."""
        journey_host = get_host()
        run_id = journey_host.new_run_id()
        result = await journey_host.visit(run_id, ResumptionInput(cookies=dict(request.cookies)))
        return _step_response(run_id, result)

    @app.get("/journeys/{run_id}/clear")
    async def journey_step(run_id: str, request: Request):
        """Run the CLEAR node for a journey run."""
        journey_host = get_host()
        resumption = ResumptionInput.from_query(request.url.query, dict(request.cookies))
        # Only the browser the run was started in may resume it
        if (
            journey_host.flow.presented_nonce(resumption, run_id) is not None
            and request.cookies.get(JOURNEY_COOKIE) != run_id
        ):
            log.warning(
                "CLEAR resumption without matching journey cookie",
                extra={"run_id": run_id, "route": request.url.path},
            )
            return JSONResponse({"outcome": OutcomeId.CLIENT_ERROR})
        result = await journey_host.visit(run_id, resumption)
        return _step_response(run_id, result)

    @app.get("/callback")
    async def callback(request: Request):
        """Landing point of the CLEAR redirect; the run comes from the tracking cookie."""
        run_id = request.cookies.get(JOURNEY_COOKIE)
        if not run_id:
            log.warning("CLEAR callback without journey cookie", extra={"route": "/callback"})
            return JSONResponse({"outcome": OutcomeId.CLIENT_ERROR})
        resumption = ResumptionInput.from_query(request.url.query, dict(request.cookies))
        result = await get_host().visit(run_id, resumption)
        return _step_response(run_id, result)

    return app


configure_logging()
app = create_app()
