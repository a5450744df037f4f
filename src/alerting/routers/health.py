from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.alerting.config import mask_token
from src.alerting.schemas.common import HealthResponse, utc_now
from src.alerting.state import get_state

router = APIRouter(tags=["Health"])


class KubeHealthResponse(BaseModel):
    """Response model for backend↔Kubernetes connectivity and index diagnostics."""

    ok: bool = Field(..., description="Whether the backend can reach the Kubernetes API server.")
    kube_api_url: str = Field(..., description="Effective API server URL.")
    kube_api_url_source: str = Field(..., description="Which source provided the API server URL.")
    kube_token_source: str = Field(..., description="Which source provided the bearer token.")
    kube_token_masked: str = Field(..., description="Bearer token with all but the last characters masked.")
    watch_namespace: str = Field(..., description="Namespace scope of the watches; empty means all.")
    indexed_rules: int = Field(..., ge=0, description="Distinct alert rule ids in the rule index.")
    indexed_prometheus_rules: int = Field(..., ge=0, description="PrometheusRule resources seen by the watch.")
    indexed_relabel_configs: int = Field(..., ge=0, description="AlertRelabelConfig resources seen by the watch.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional debug metadata.")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/v1/alerting/health",
    response_model=KubeHealthResponse,
    summary="Kubernetes connectivity check",
    description=(
        "Pings the Kubernetes API server and reports how the connection was configured "
        "along with index sizes. The bearer token is masked."
    ),
    operation_id="kube_connectivity_check",
)
async def kube_connectivity_check(request: Request) -> KubeHealthResponse:
    """Connectivity check endpoint validating backend↔Kubernetes and reporting index sizes."""
    state = get_state(request.app)
    cfg = state.config
    ok = await state.kube.ping()
    return KubeHealthResponse(
        ok=ok,
        kube_api_url=cfg.kube_api_url,
        kube_api_url_source=cfg.kube_api_url_source,
        kube_token_source=cfg.kube_token_source,
        kube_token_masked=mask_token(cfg.kube_token),
        watch_namespace=cfg.watch_namespace,
        indexed_rules=len(state.rule_index),
        indexed_prometheus_rules=state.rule_index.resource_count(),
        indexed_relabel_configs=state.relabel_index.resource_count(),
        timestamp=utc_now().isoformat(),
        meta={"platform_rule_prefix": cfg.platform_rule_prefix},
    )
