from __future__ import annotations

from typing import Union

from src.alerting.schemas.monitoring import ResourceRef

# PrometheusRules shipped by the base monitoring stack are named with this prefix.
PLATFORM_RULE_PREFIX = "openshift-"


# PUBLIC_INTERFACE
def is_platform_resource(resource: Union[ResourceRef, str], prefix: str = PLATFORM_RULE_PREFIX) -> bool:
    """True if the PrometheusRule is platform-managed (read-only to users), judged by its name alone."""
    name = resource.name if isinstance(resource, ResourceRef) else resource
    return bool(prefix) and name.startswith(prefix)
