from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.alerting.config import load_config
from src.alerting.errors import GENERIC_ERROR_MESSAGE, RuleManagementError, http_status_for
from src.alerting.routers import health, rules
from src.alerting.schemas.common import ErrorResponse
from src.alerting.services.watcher import exit_on_watch_termination, watch_loop
from src.alerting.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and Kubernetes connectivity."},
    {"name": "Rules", "description": "Create, read, relabel and delete Prometheus alerting rules."},
]

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Alerting Rules Management API",
    description=(
        "Manages Prometheus alerting rules stored in PrometheusRule resources. "
        "Rules are addressed by a content-derived id; platform-managed rules are changed "
        "only through AlertRelabelConfig overlays."
    ),
    version="0.1.0",
    openapi_tags=openapi_tags,
)

# Initialize typed app state (config + Kubernetes client + indexes)
_config = load_config()
logging.getLogger().setLevel(_config.log_level)
init_state(app, _config)


@app.exception_handler(RuleManagementError)
async def _rule_management_error_handler(request: Request, exc: RuleManagementError) -> JSONResponse:
    status_code, code = http_status_for(exc)
    detail = str(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
        detail = GENERIC_ERROR_MESSAGE
    body = ErrorResponse(detail=detail, code=code, meta={})
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.on_event("startup")
async def _on_startup() -> None:
    """Startup hook: connect to the API server, validate connectivity and start both watch consumers."""
    state = get_state(app)

    # Verify early so a misconfigured cluster connection fails the pod instead of serving empty indexes.
    state.kube.connect()
    if not await state.kube.ping():
        raise RuntimeError(
            "Kubernetes API connectivity check failed during startup. "
            "Verify KUBE_API_URL/KUBE_TOKEN or the in-cluster service account."
        )

    app.state._watch_shutdown = asyncio.Event()
    state.rule_watch_task = asyncio.create_task(
        watch_loop(state.rule_watch, state.rule_index, app.state._watch_shutdown)
    )
    state.rule_watch_task.add_done_callback(exit_on_watch_termination)

    state.relabel_watch_task = asyncio.create_task(
        watch_loop(state.relabel_watch, state.relabel_index, app.state._watch_shutdown)
    )
    state.relabel_watch_task.add_done_callback(exit_on_watch_termination)


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    """Shutdown hook: stop the watch consumers and close the Kubernetes client."""
    state = get_state(app)

    watch_shutdown = getattr(app.state, "_watch_shutdown", None)
    if watch_shutdown is not None:
        watch_shutdown.set()

    for name, task in (("rule watch", state.rule_watch_task), ("relabel watch", state.relabel_watch_task)):
        if task is None:
            continue
        # A watch may be parked on a quiet stream; cancel instead of waiting for the next event.
        task.remove_done_callback(exit_on_watch_termination)
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Error stopping %s task", name)

    await state.kube.close()


app.include_router(health.router)
app.include_router(rules.router)
