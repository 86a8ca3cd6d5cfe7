from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, DiscoveryV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

LOAD_BALANCER_ID_ANNOTATION = "inspur.com/load-balancer-id"
LOAD_BALANCER_OLD_ID_ANNOTATION = "inspur.com/load-balancer-old-id"
SERVICE_FINALIZER = "service.kubernetes.io/load-balancer-cleanup"
ENDPOINT_SLICE_FINALIZER = "endpointslice.kubernetes.io/load-balancer-cleanup"
SERVICE_NAME_LABEL = "kubernetes.io/service-name"
SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
IP_ADDRESS_TYPES = frozenset({"IPv4", "IPv6"})


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, DiscoveryV1Api]:
    """Return CoreV1 and DiscoveryV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.DiscoveryV1Api()


# ---------------------------------------------------------------------------
# Object accessors
# ---------------------------------------------------------------------------


def _metadata(obj: Any) -> Any:
    return getattr(obj, "metadata", None)


def object_uid(obj: Any) -> str | None:
    return getattr(_metadata(obj), "uid", None)


def finalizers(obj: Any) -> list[str]:
    return list(getattr(_metadata(obj), "finalizers", None) or [])


def annotations(obj: Any) -> dict[str, str]:
    return dict(getattr(_metadata(obj), "annotations", None) or {})


def labels(obj: Any) -> dict[str, str]:
    return dict(getattr(_metadata(obj), "labels", None) or {})


def is_deleting(obj: Any) -> bool:
    return getattr(_metadata(obj), "deletion_timestamp", None) is not None


def namespaced_key(obj: Any) -> str:
    """Return the ``namespace/name`` key for *obj*, or just ``name`` when cluster scoped."""
    metadata = _metadata(obj)
    name = getattr(metadata, "name", None)
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key; cluster-scoped keys yield an empty namespace."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, client.ApiException) and exc.status == 404


# ---------------------------------------------------------------------------
# Service predicates
# ---------------------------------------------------------------------------


def wants_load_balancer(service: Any) -> bool:
    """A Service wants a provider load balancer unless it opted out via ``loadBalancerClass``."""
    spec = getattr(service, "spec", None)
    return (
        getattr(spec, "type", None) == SERVICE_TYPE_LOAD_BALANCER
        and getattr(spec, "load_balancer_class", None) is None
    )


def has_load_balancer_finalizer(service: Any) -> bool:
    return SERVICE_FINALIZER in finalizers(service)


def needs_cleanup(service: Any) -> bool:
    """True when the finalizer is held but the load balancer should go away."""
    if not has_load_balancer_finalizer(service):
        return False
    return is_deleting(service) or not wants_load_balancer(service)


def owes_load_balancer_cleanup(service: Any) -> bool:
    """True when a load balancer may have been provisioned for *service*.

    The finalizer is always added before the first provider call, so a
    Service that neither wants a load balancer nor holds the finalizer never
    had one created by this controller.
    """
    return wants_load_balancer(service) or has_load_balancer_finalizer(service)


class MigrationState(enum.Enum):
    NONE = "none"
    PENDING = "pending"


@dataclass(frozen=True)
class LoadBalancerIds:
    """Provider load-balancer identifiers carried on a Service.

    ``old`` marks a load balancer that must be torn down before the Service
    moves over to ``current``.  The migration is consumed once: the old
    load balancer is deleted and its annotation stripped in the same pass.
    """

    current: str | None = None
    old: str | None = None

    @classmethod
    def from_service(cls, service: Any) -> LoadBalancerIds:
        values = annotations(service)
        return cls(
            current=values.get(LOAD_BALANCER_ID_ANNOTATION) or None,
            old=values.get(LOAD_BALANCER_OLD_ID_ANNOTATION) or None,
        )

    @property
    def migration(self) -> MigrationState:
        return MigrationState.PENDING if self.old else MigrationState.NONE

    @property
    def empty(self) -> bool:
        return not self.current and not self.old


# ---------------------------------------------------------------------------
# EndpointSlice predicates
# ---------------------------------------------------------------------------


def endpoint_slice_service_name(endpoint_slice: Any) -> str | None:
    return labels(endpoint_slice).get(SERVICE_NAME_LABEL) or None


def endpoint_slice_has_finalizer(endpoint_slice: Any) -> bool:
    return ENDPOINT_SLICE_FINALIZER in finalizers(endpoint_slice)


def endpoint_slice_needs_cleanup(endpoint_slice: Any) -> bool:
    return endpoint_slice_has_finalizer(endpoint_slice) and is_deleting(endpoint_slice)


def endpoint_slice_supports_ip(endpoint_slice: Any) -> bool:
    return getattr(endpoint_slice, "address_type", None) in IP_ADDRESS_TYPES


# ---------------------------------------------------------------------------
# Load balancer status
# ---------------------------------------------------------------------------


def load_balancer_status(service: Any) -> Any:
    return getattr(getattr(service, "status", None), "load_balancer", None)


def _ingress(status: Any) -> list[Any]:
    return list(getattr(status, "ingress", None) or [])


def _ingress_identity(ingress: Any) -> tuple[Any, Any, Any]:
    # Providers may report "" for unset fields; the API server stores them as absent.
    return (
        getattr(ingress, "ip", None) or None,
        getattr(ingress, "hostname", None) or None,
        getattr(ingress, "ip_mode", None) or None,
    )


def load_balancer_status_equal(left: Any, right: Any) -> bool:
    """Compare two load balancer statuses ingress by ingress (ip, hostname, ipMode)."""
    left_ingress = _ingress(left)
    right_ingress = _ingress(right)
    if len(left_ingress) != len(right_ingress):
        return False
    return all(
        _ingress_identity(lhs) == _ingress_identity(rhs)
        for lhs, rhs in zip(left_ingress, right_ingress)
    )


def _ingress_body(ingress: Any) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for attribute, wire_name in (("ip", "ip"), ("hostname", "hostname"), ("ip_mode", "ipMode")):
        value = getattr(ingress, attribute, None)
        if value:
            body[wire_name] = value
    ports = getattr(ingress, "ports", None) or []
    if ports:
        body["ports"] = [
            {
                key: value
                for key, value in (
                    ("port", getattr(port, "port", None)),
                    ("protocol", getattr(port, "protocol", None)),
                    ("error", getattr(port, "error", None)),
                )
                if value is not None
            }
            for port in ports
        ]
    return body


# ---------------------------------------------------------------------------
# Diff-based patches
# ---------------------------------------------------------------------------


def _finalizer_changes(old: Any, new: Any) -> dict[str, Any]:
    old_finalizers = finalizers(old)
    new_finalizers = finalizers(new)
    changes: dict[str, Any] = {}
    added = [item for item in new_finalizers if item not in old_finalizers]
    removed = [item for item in old_finalizers if item not in new_finalizers]
    if added:
        changes["finalizers"] = added
    if removed:
        # ``finalizers`` uses the merge strategy, so removals need the directive.
        changes["$deleteFromPrimitiveList/finalizers"] = removed
    return changes


def _annotation_changes(old: Any, new: Any) -> dict[str, str | None]:
    old_annotations = annotations(old)
    new_annotations = annotations(new)
    changes: dict[str, str | None] = {
        key: value for key, value in new_annotations.items() if old_annotations.get(key) != value
    }
    for key in old_annotations:
        if key not in new_annotations:
            changes[key] = None
    return changes


def metadata_patch_body(old: Any, new: Any) -> dict[str, Any]:
    """Build a strategic-merge patch covering finalizer and annotation changes.

    Returns an empty dict when nothing changed so callers can skip the write.
    """
    metadata = _finalizer_changes(old, new)
    annotation_changes = _annotation_changes(old, new)
    if annotation_changes:
        metadata["annotations"] = annotation_changes
    if not metadata:
        return {}
    return {"metadata": metadata}


def status_patch_body(previous_status: Any, new_status: Any) -> dict[str, Any]:
    if load_balancer_status_equal(previous_status, new_status):
        return {}
    ingress = [_ingress_body(item) for item in _ingress(new_status)]
    # A null ingress clears the field; an empty list would be kept verbatim.
    return {"status": {"loadBalancer": {"ingress": ingress or None}}}


def patch_service(core_api: CoreV1Api, old_service: Any, new_service: Any) -> Any:
    """Write finalizer/annotation differences between two copies of a Service."""
    body = metadata_patch_body(old_service, new_service)
    if not body:
        return None
    namespace, name = old_service.metadata.namespace, old_service.metadata.name
    return core_api.patch_namespaced_service(name=name, namespace=namespace, body=body)


def patch_service_status(
    core_api: CoreV1Api,
    service: Any,
    previous_status: Any,
    new_status: Any,
) -> Any:
    body = status_patch_body(previous_status, new_status)
    if not body:
        return None
    return core_api.patch_namespaced_service_status(
        name=service.metadata.name,
        namespace=service.metadata.namespace,
        body=body,
    )


def patch_endpoint_slice(discovery_api: DiscoveryV1Api, old_slice: Any, new_slice: Any) -> Any:
    body = metadata_patch_body(old_slice, new_slice)
    if not body:
        return None
    return discovery_api.patch_namespaced_endpoint_slice(
        name=old_slice.metadata.name,
        namespace=old_slice.metadata.namespace,
        body=body,
    )
