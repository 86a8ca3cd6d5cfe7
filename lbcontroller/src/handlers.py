"""Cluster change notifications and the classifier that turns them into queue keys."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Protocol, Union

from lbcontroller.src.kube import (
    LoadBalancerIds,
    endpoint_slice_needs_cleanup,
    endpoint_slice_service_name,
    endpoint_slice_supports_ip,
    namespaced_key,
    needs_cleanup,
    wants_load_balancer,
)
from lbcontroller.src.nodes import should_sync_updated_node


@dataclass(frozen=True)
class ServiceAdded:
    service: Any


@dataclass(frozen=True)
class ServiceUpdated:
    old: Any
    new: Any


@dataclass(frozen=True)
class NodeAdded:
    node: Any


@dataclass(frozen=True)
class NodeUpdated:
    old: Any
    new: Any


@dataclass(frozen=True)
class NodeDeleted:
    node: Any


@dataclass(frozen=True)
class EndpointSliceAdded:
    endpoint_slice: Any


@dataclass(frozen=True)
class EndpointSliceUpdated:
    old: Any
    new: Any


ClusterEvent = Union[
    ServiceAdded,
    ServiceUpdated,
    NodeAdded,
    NodeUpdated,
    NodeDeleted,
    EndpointSliceAdded,
    EndpointSliceUpdated,
]


class QueueName(enum.Enum):
    SERVICE = "service"
    NODE = "node"


@dataclass(frozen=True)
class Enqueue:
    queue: QueueName
    key: str


class ServiceGetter(Protocol):
    def get(self, key: str) -> Any: ...


def _is_load_balancer_relevant(service: Any) -> bool:
    return wants_load_balancer(service) or needs_cleanup(service)


def endpoint_slice_needs_update(old_slice: Any, new_slice: Any) -> bool:
    """True when the addresses, ports or address type of an IP slice changed."""
    if not endpoint_slice_supports_ip(old_slice) and not endpoint_slice_supports_ip(new_slice):
        return False
    for attribute in ("address_type", "ports", "endpoints"):
        if getattr(old_slice, attribute, None) != getattr(new_slice, attribute, None):
            return True
    return False


@dataclass(frozen=True)
class ServiceChange:
    """First load-balancer relevant difference between two Service versions.

    ``reason`` is None for differences that matter to the provider but are
    not announced as events (ports, session affinity, annotations).
    """

    reason: str | None
    message: str = ""


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    return "" if value is None else str(value)


def _transition(reason: str, old: Any, new: Any) -> ServiceChange:
    return ServiceChange(reason, f"{_format_value(old)} -> {_format_value(new)}")


def _port_identity(port: Any) -> tuple[Any, ...]:
    return tuple(
        getattr(port, attribute, None)
        for attribute in ("name", "protocol", "port", "node_port", "target_port", "app_protocol")
    )


def _ports_equal(old_ports: Any, new_ports: Any) -> bool:
    old_ports = old_ports or []
    new_ports = new_ports or []
    if len(old_ports) != len(new_ports):
        return False
    return all(_port_identity(lhs) == _port_identity(rhs) for lhs, rhs in zip(old_ports, new_ports))


def service_change(old: Any, new: Any) -> ServiceChange | None:
    """Return the first difference between *old* and *new* a load balancer cares about.

    Fields are checked in a fixed order and only the first difference is
    reported, so one update produces at most one event.
    """
    old_wants = wants_load_balancer(old)
    new_wants = wants_load_balancer(new)
    if not old_wants and not new_wants:
        return None
    old_spec = getattr(old, "spec", None)
    new_spec = getattr(new, "spec", None)

    if old_wants != new_wants:
        return _transition("Type", getattr(old_spec, "type", None), getattr(new_spec, "type", None))

    old_ranges = getattr(old_spec, "load_balancer_source_ranges", None) or []
    new_ranges = getattr(new_spec, "load_balancer_source_ranges", None) or []
    if new_wants and old_ranges != new_ranges:
        return _transition("LoadBalancerSourceRanges", old_ranges, new_ranges)

    if not _ports_equal(getattr(old_spec, "ports", None), getattr(new_spec, "ports", None)):
        return ServiceChange(None)
    if getattr(old_spec, "session_affinity", None) != getattr(new_spec, "session_affinity", None):
        return ServiceChange(None)
    if getattr(old_spec, "session_affinity_config", None) != getattr(
        new_spec, "session_affinity_config", None
    ):
        return ServiceChange(None)

    old_ip = getattr(old_spec, "load_balancer_ip", None) or ""
    new_ip = getattr(new_spec, "load_balancer_ip", None) or ""
    if old_ip != new_ip:
        return _transition("LoadbalancerIP", old_ip, new_ip)

    old_external = getattr(old_spec, "external_i_ps", None) or []
    new_external = getattr(new_spec, "external_i_ps", None) or []
    if len(old_external) != len(new_external):
        return ServiceChange("ExternalIP", f"Count: {len(old_external)} -> {len(new_external)}")
    for old_address, new_address in zip(old_external, new_external):
        if old_address != new_address:
            return ServiceChange("ExternalIP", f"Added: {new_address}")

    old_annotations = getattr(getattr(old, "metadata", None), "annotations", None) or {}
    new_annotations = getattr(getattr(new, "metadata", None), "annotations", None) or {}
    if old_annotations != new_annotations:
        return ServiceChange(None)

    old_uid = getattr(getattr(old, "metadata", None), "uid", None)
    new_uid = getattr(getattr(new, "metadata", None), "uid", None)
    if old_uid != new_uid:
        return _transition("UID", old_uid, new_uid)

    for reason, attribute in (
        ("ExternalTrafficPolicy", "external_traffic_policy"),
        ("HealthCheckNodePort", "health_check_node_port"),
    ):
        old_value = getattr(old_spec, attribute, None)
        new_value = getattr(new_spec, attribute, None)
        if old_value != new_value:
            return _transition(reason, old_value, new_value)

    old_families = getattr(old_spec, "ip_families", None) or []
    new_families = getattr(new_spec, "ip_families", None) or []
    if len(old_families) != len(new_families):
        return ServiceChange("IPFamilies", f"Count: {len(old_families)} -> {len(new_families)}")
    return None


def service_needs_update(old: Any, new: Any) -> bool:
    return service_change(old, new) is not None


def _classify_service_update(old: Any, new: Any) -> Enqueue | None:
    if (
        LoadBalancerIds.from_service(old).empty
        and LoadBalancerIds.from_service(new).empty
        and not _is_load_balancer_relevant(new)
    ):
        return None
    return Enqueue(QueueName.SERVICE, namespaced_key(new))


def _classify_endpoint_slice(
    endpoint_slice: Any,
    service_name: str | None,
    services: ServiceGetter,
    *,
    cleanup: bool,
) -> Enqueue | None:
    if not service_name:
        return None
    namespace = getattr(getattr(endpoint_slice, "metadata", None), "namespace", None) or ""
    key = f"{namespace}/{service_name}"
    service = services.get(key)
    if service is None:
        # The service is gone; a pass is still needed to release the slice finalizer.
        return Enqueue(QueueName.SERVICE, key) if cleanup else None
    if not _is_load_balancer_relevant(service):
        return None
    return Enqueue(QueueName.SERVICE, key)


def classify(event: ClusterEvent, services: ServiceGetter, stable_node_set: bool) -> Enqueue | None:
    """Decide whether *event* requires a reconciliation and on which queue.

    Service deletions are not classified: services that own a load balancer
    hold the cleanup finalizer, so their deletion arrives as an update
    carrying the deletion timestamp.
    """
    if isinstance(event, ServiceAdded):
        # Checking cleanup here recovers services whose cleanup was interrupted
        # by a controller restart.
        if _is_load_balancer_relevant(event.service):
            return Enqueue(QueueName.SERVICE, namespaced_key(event.service))
        return None

    if isinstance(event, ServiceUpdated):
        return _classify_service_update(event.old, event.new)

    if isinstance(event, (NodeAdded, NodeDeleted)):
        return Enqueue(QueueName.NODE, namespaced_key(event.node))

    if isinstance(event, NodeUpdated):
        if not should_sync_updated_node(event.old, event.new, stable_node_set):
            return None
        return Enqueue(QueueName.NODE, namespaced_key(event.new))

    if isinstance(event, EndpointSliceAdded):
        return _classify_endpoint_slice(
            event.endpoint_slice,
            endpoint_slice_service_name(event.endpoint_slice),
            services,
            cleanup=False,
        )

    if isinstance(event, EndpointSliceUpdated):
        service_name = endpoint_slice_service_name(event.new) or endpoint_slice_service_name(
            event.old
        )
        cleanup = endpoint_slice_needs_cleanup(event.new)
        if not (endpoint_slice_needs_update(event.old, event.new) or cleanup):
            return None
        return _classify_endpoint_slice(event.new, service_name, services, cleanup=cleanup)

    raise TypeError(f"Unsupported event type: {type(event)!r}")
