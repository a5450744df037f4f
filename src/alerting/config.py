from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _env_int(name: str, default: int) -> int:
    """Parse an int env var with a default."""
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return int(default)


def _env_bool(name: str, default: bool = False) -> bool:
    """Parse a bool env var (true/false/1/0/yes/no/on/off)."""
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    val = raw.strip().lower()
    if val in ("1", "true", "yes", "y", "on"):
        return True
    if val in ("0", "false", "no", "n", "off"):
        return False
    return bool(default)


def _clamp_int(v: int, lo: int, hi: int) -> int:
    """Clamp integer to [lo, hi]."""
    return max(lo, min(hi, int(v)))


@dataclass(frozen=True)
class BackendConfig:
    """Runtime configuration loaded from env and the pod's service-account mount."""

    kube_api_url: str
    kube_token: str
    kube_ca_file: Optional[str]
    kube_verify_tls: bool
    kube_request_timeout_sec: int

    # "" watches every namespace.
    watch_namespace: str

    # PrometheusRules whose name starts with this prefix are platform-managed.
    platform_rule_prefix: str
    default_rule_group: str

    log_level: str

    # Diagnostics: how kube_api_url/kube_token were resolved
    kube_api_url_source: str
    kube_token_source: str


def _read_file(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except OSError:
        logger.exception("Failed reading %s", str(path))
        return None


def _resolve_api_url() -> Tuple[Optional[str], str]:
    """
    Resolve the API server URL.

    Priority:
      1) KUBE_API_URL
      2) in-cluster: https://$KUBERNETES_SERVICE_HOST:$KUBERNETES_SERVICE_PORT
    """
    env_url = os.getenv("KUBE_API_URL")
    if env_url:
        return env_url.rstrip("/"), "KUBE_API_URL"

    host = os.getenv("KUBERNETES_SERVICE_HOST")
    port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
    if host:
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"https://{host}:{port}", "in-cluster"

    return None, "unset"


def _resolve_token() -> Tuple[str, str]:
    env_token = os.getenv("KUBE_TOKEN")
    if env_token:
        return env_token.strip(), "KUBE_TOKEN"

    token_file = Path(os.getenv("KUBE_TOKEN_FILE") or SERVICE_ACCOUNT_DIR / "token")
    file_token = _read_file(token_file)
    if file_token:
        return file_token, str(token_file)

    return "", "unset"


def _resolve_ca_file() -> Optional[str]:
    env_ca = os.getenv("KUBE_CA_FILE")
    if env_ca:
        return env_ca
    default_ca = SERVICE_ACCOUNT_DIR / "ca.crt"
    return str(default_ca) if default_ca.exists() else None


# PUBLIC_INTERFACE
def mask_token(token: str) -> str:
    """Mask a bearer token for logs and diagnostics, keeping only the last 4 characters."""
    if not token:
        return ""
    return "***" + token[-4:] if len(token) > 8 else "***"


# PUBLIC_INTERFACE
def load_config() -> BackendConfig:
    """Load BackendConfig from env vars, falling back to in-cluster service-account settings."""
    api_url, api_url_source = _resolve_api_url()
    if not api_url:
        # Keep failure explicit and actionable; startup will log the exception.
        raise RuntimeError(
            "Kubernetes API URL not configured. Set KUBE_API_URL or run in-cluster "
            "(KUBERNETES_SERVICE_HOST/KUBERNETES_SERVICE_PORT)."
        )
    if not api_url.startswith(("http://", "https://")):
        raise RuntimeError(f"Kubernetes API URL must start with http:// or https://. source={api_url_source}")

    token, token_source = _resolve_token()

    logger.info(
        "Resolved Kubernetes API url=%s source=%s token_source=%s token=%s",
        api_url,
        api_url_source,
        token_source,
        mask_token(token),
    )

    request_timeout = _clamp_int(_env_int("KUBE_REQUEST_TIMEOUT_SEC", 15), 1, 300)

    platform_prefix = os.getenv("PLATFORM_RULE_PREFIX", "openshift-").strip()
    default_group = (os.getenv("DEFAULT_RULE_GROUP") or "user-defined-rules").strip()
    log_level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        log_level = "INFO"

    return BackendConfig(
        kube_api_url=api_url,
        kube_token=token,
        kube_ca_file=_resolve_ca_file(),
        kube_verify_tls=_env_bool("KUBE_VERIFY_TLS", True),
        kube_request_timeout_sec=request_timeout,
        watch_namespace=(os.getenv("WATCH_NAMESPACE") or "").strip(),
        platform_rule_prefix=platform_prefix,
        default_rule_group=default_group or "user-defined-rules",
        log_level=log_level,
        kube_api_url_source=api_url_source,
        kube_token_source=token_source,
    )
