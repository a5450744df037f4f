from __future__ import annotations

import copy
from collections.abc import AsyncIterator
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from src.alerting.config import BackendConfig
from src.alerting.k8s.client import KubeApiError, KubeNotFoundError
from src.alerting.schemas.monitoring import (
    AlertRelabelConfig,
    PrometheusRule,
    ResourceRef,
    Rule,
    RuleGroup,
    WatchEvent,
    WatchEventType,
)
from src.alerting.state import AppState, build_state

_PARSERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "prometheusrules": PrometheusRule.from_k8s,
    "alertrelabelconfigs": AlertRelabelConfig.from_k8s,
}

_GROUPS = {
    "prometheusrules": "monitoring.coreos.com",
    "alertrelabelconfigs": "monitoring.openshift.io",
}


def _split_path(path: str) -> Tuple[str, str, str]:
    """Return (plural, namespace, name) for /apis/{group}/{version}/[namespaces/{ns}/]{plural}[/{name}]."""
    rest = path.strip("/").split("/")[3:]
    namespace = ""
    if rest and rest[0] == "namespaces":
        namespace, rest = rest[1], rest[2:]
    plural = rest[0]
    name = rest[1] if len(rest) > 1 else ""
    return plural, namespace, name


class FakeKube:
    """
    In-memory stand-in for the Kubernetes API behind KubeManager.request.

    Writes are stored as JSON the way the API server would keep them and, with auto_sync on,
    immediately delivered as watch events to the registered indexes. With auto_sync off the
    events queue up until flush(), which models the watch lagging behind writes.
    """

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.sinks: Dict[str, Any] = {}
        self.pending: List[Tuple[str, WatchEvent]] = []
        self.auto_sync = True
        self.healthy = True
        self._failures: Dict[str, KubeApiError] = {}
        self._interleaved: Dict[str, Callable[[], Any]] = {}
        self._rv = 0

    # KubeManager surface

    def connect(self) -> None:
        return None

    async def ping(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        return None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self.calls.append((method, path))
        concurrent = self._interleaved.pop(method, None)
        if concurrent is not None:
            concurrent()
        failure = self._failures.pop(method, None)
        if failure is not None:
            raise failure
        if path == "/version":
            return {"gitVersion": "v1.30.0"}

        plural, namespace, name = _split_path(path)
        if method == "GET" and not name:
            items = [
                copy.deepcopy(obj)
                for (p, ns, _), obj in sorted(self.objects.items())
                if p == plural and (not namespace or ns == namespace)
            ]
            return {"metadata": {"resourceVersion": str(self._rv)}, "items": items}

        key = (plural, namespace, name or (json or {}).get("metadata", {}).get("name", ""))
        if method == "GET":
            return copy.deepcopy(self._existing(key))
        if method == "POST":
            if (json or {}).get("metadata", {}).get("resourceVersion"):
                raise KubeApiError(422, "resourceVersion should not be set on objects to be created")
            if key in self.objects:
                raise KubeApiError(409, f'{plural}.{_GROUPS[plural]} "{key[2]}" already exists')
            return self._store(key, json or {}, WatchEventType.added)
        if method == "PUT":
            current = self._existing(key)["metadata"]["resourceVersion"]
            sent = (json or {}).get("metadata", {}).get("resourceVersion")
            if not sent:
                raise KubeApiError(422, "metadata.resourceVersion: Invalid value: 0x0: must be specified for an update")
            if sent != current:
                raise KubeApiError(
                    409,
                    f'Operation cannot be fulfilled on {plural}.{_GROUPS[plural]} "{key[2]}": '
                    "the object has been modified; please apply your changes to the latest version and try again",
                )
            return self._store(key, json or {}, WatchEventType.modified)
        if method == "DELETE":
            obj = self._existing(key)
            del self.objects[key]
            self._emit(plural, WatchEventType.deleted, obj)
            return {"kind": "Status", "status": "Success"}
        raise KubeApiError(405, f"method {method} not supported")

    # Test helpers

    def fail_next(self, method: str, status_code: int = 500, message: str = "etcdserver: request timed out") -> None:
        self._failures[method] = KubeApiError(status_code, message)

    def interleave(self, method: str, write: Callable[[], Any]) -> None:
        """Run `write` just before the next `method` call, like another client racing this one."""
        self._interleaved[method] = write

    def writes(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("POST", "PUT", "DELETE")]

    def get_object(self, plural: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.objects.get((plural, namespace, name))

    def put_object(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Seed a resource directly, as if another client created it."""
        plural = "prometheusrules" if obj["kind"] == "PrometheusRule" else "alertrelabelconfigs"
        meta = obj["metadata"]
        key = (plural, meta["namespace"], meta["name"])
        event = WatchEventType.modified if key in self.objects else WatchEventType.added
        return self._store(key, obj, event)

    def flush(self) -> None:
        pending, self.pending = self.pending, []
        for plural, event in pending:
            self._deliver(plural, event)

    def _existing(self, key: Tuple[str, str, str]) -> Dict[str, Any]:
        obj = self.objects.get(key)
        if obj is None:
            plural, _, name = key
            raise KubeNotFoundError(404, f'{plural}.{_GROUPS[plural]} "{name}" not found')
        return obj

    def _store(self, key: Tuple[str, str, str], obj: Dict[str, Any], event: WatchEventType) -> Dict[str, Any]:
        self._rv += 1
        stored = copy.deepcopy(obj)
        stored.setdefault("metadata", {})["resourceVersion"] = str(self._rv)
        self.objects[key] = stored
        self._emit(key[0], event, stored)
        return copy.deepcopy(stored)

    def _emit(self, plural: str, event_type: WatchEventType, obj: Dict[str, Any]) -> None:
        event = WatchEvent(event_type, _PARSERS[plural](copy.deepcopy(obj)))
        if self.auto_sync:
            self._deliver(plural, event)
        else:
            self.pending.append((plural, event))

    def _deliver(self, plural: str, event: WatchEvent) -> None:
        sink = self.sinks.get(plural)
        if sink is not None:
            sink.apply(event)


def make_rule(
    alert: str = "HighErrorRate",
    expr: str = 'rate(http_requests_total{code=~"5.."}[5m]) > 0.1',
    for_: Optional[str] = "5m",
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Rule:
    return Rule(
        alert=alert,
        expr=expr,
        for_=for_,
        labels={"severity": "warning"} if labels is None else labels,
        annotations={"summary": "error rate above 10%"} if annotations is None else annotations,
    )


def prometheus_rule(namespace: str, name: str, groups: Dict[str, List[Rule]]) -> Dict[str, Any]:
    ref = ResourceRef(namespace=namespace, name=name)
    return PrometheusRule.new(ref, [RuleGroup(name=g, rules=rules) for g, rules in groups.items()]).to_k8s()


def make_config(**overrides: Any) -> BackendConfig:
    values: Dict[str, Any] = dict(
        kube_api_url="http://kube.test",
        kube_token="sha256~abcdefghijklmnop",
        kube_ca_file=None,
        kube_verify_tls=False,
        kube_request_timeout_sec=5,
        watch_namespace="",
        platform_rule_prefix="openshift-",
        default_rule_group="user-defined-rules",
        log_level="DEBUG",
        kube_api_url_source="KUBE_API_URL",
        kube_token_source="KUBE_TOKEN",
    )
    values.update(overrides)
    return BackendConfig(**values)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def state(kube: FakeKube) -> AppState:
    """AppState wired to FakeKube, with writes fed straight back into the indexes."""
    app_state = build_state(make_config(), kube)  # type: ignore[arg-type]
    kube.sinks["prometheusrules"] = app_state.rule_index
    kube.sinks["alertrelabelconfigs"] = app_state.relabel_index
    return app_state


@pytest.fixture
def mutator(state: AppState):
    return state.mutator


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch, state: AppState):
    """
    FastAPI app fixture bound to the fake-backed AppState.

    httpx ASGITransport does not run lifespan events, so no watch tasks are started;
    the fake delivers events to the indexes instead.
    """
    monkeypatch.setenv("KUBE_API_URL", "http://kube.test")
    monkeypatch.setenv("KUBE_TOKEN", "sha256~abcdefghijklmnop")

    from src.alerting.main import app as fastapi_app

    previous = fastapi_app.state.state
    fastapi_app.state.state = state
    yield fastapi_app
    fastapi_app.state.state = previous


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
