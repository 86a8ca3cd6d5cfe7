from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any

# Taint placed by the cluster autoscaler shortly before it removes a node.
TO_BE_DELETED_TAINT = "ToBeDeletedByClusterAutoscaler"
EXCLUDE_BALANCERS_LABEL = "node.kubernetes.io/exclude-from-external-load-balancers"
EXTERNAL_TRAFFIC_POLICY_LOCAL = "Local"
MAX_NODE_NAMES_TO_LOG = 20

NodePredicate = Callable[[Any], bool]


def _metadata(node: Any) -> Any:
    return getattr(node, "metadata", None)


def node_name(node: Any) -> str:
    return getattr(_metadata(node), "name", None) or ""


def node_provider_id(node: Any) -> str:
    return getattr(getattr(node, "spec", None), "provider_id", None) or ""


def node_included(node: Any) -> bool:
    """A node is a candidate only when it is not labelled for exclusion."""
    labels = getattr(_metadata(node), "labels", None) or {}
    return EXCLUDE_BALANCERS_LABEL not in labels


def node_untainted(node: Any) -> bool:
    """Reject nodes the cluster autoscaler has tainted for deletion."""
    taints = getattr(getattr(node, "spec", None), "taints", None) or []
    return all(getattr(taint, "key", None) != TO_BE_DELETED_TAINT for taint in taints)


def node_ready(node: Any) -> bool:
    """Accept a node only when its ``Ready`` condition is ``True``.

    A node that reports no ``Ready`` condition at all is treated as not ready.
    """
    conditions = getattr(getattr(node, "status", None), "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "Ready":
            return getattr(condition, "status", None) == "True"
    return False


def node_not_deleted(node: Any) -> bool:
    return getattr(_metadata(node), "deletion_timestamp", None) is None


ALL_NODE_PREDICATES: tuple[NodePredicate, ...] = (
    node_included,
    node_untainted,
    node_ready,
)

# Readiness is left to the provider health checks for externalTrafficPolicy=Local.
ETP_LOCAL_NODE_PREDICATES: tuple[NodePredicate, ...] = (
    node_included,
    node_untainted,
)

STABLE_NODE_SET_PREDICATES: tuple[NodePredicate, ...] = (
    node_not_deleted,
    node_included,
    # Tainted nodes are only dropped when something else forces a sync;
    # adding the taint alone does not trigger one (see should_sync_updated_node).
    node_untainted,
)


def respects_predicates(node: Any, predicates: Iterable[NodePredicate]) -> bool:
    return all(predicate(node) for predicate in predicates)


def filter_nodes(nodes: Iterable[Any] | None, predicates: Sequence[NodePredicate]) -> list[Any]:
    """Return the nodes that satisfy every predicate.

    Order follows the input but is not significant; callers compare results
    with :func:`nodes_sufficiently_equal`.
    """
    return [node for node in nodes or () if respects_predicates(node, predicates)]


def predicates_for_service(service: Any, stable_node_set: bool) -> tuple[NodePredicate, ...]:
    """Pick the predicate set used to compute backends for *service*."""
    if stable_node_set:
        return STABLE_NODE_SET_PREDICATES
    policy = getattr(getattr(service, "spec", None), "external_traffic_policy", None)
    if policy == EXTERNAL_TRAFFIC_POLICY_LOCAL:
        return ETP_LOCAL_NODE_PREDICATES
    return ALL_NODE_PREDICATES


def should_sync_updated_node(old_node: Any, new_node: Any, stable_node_set: bool) -> bool:
    """Decide whether a node update warrants a global backend resync.

    The exclusion predicate is evaluated on its own first: a NotReady node
    that gains the exclusion label must still trigger a sync so that
    externalTrafficPolicy=Local services, which ignore readiness, drop it.
    Services whose eligible set did not change are skipped later by the
    per-service comparison, so over-triggering here is harmless.
    """
    if node_included(old_node) != node_included(new_node):
        return True
    if node_provider_id(old_node) != node_provider_id(new_node):
        return True
    if not stable_node_set:
        return respects_predicates(old_node, ALL_NODE_PREDICATES) != respects_predicates(
            new_node, ALL_NODE_PREDICATES
        )
    return False


def nodes_sufficiently_equal(old_nodes: Sequence[Any], new_nodes: Sequence[Any]) -> bool:
    """Compare two node sets by their ``name -> providerID`` projection only."""
    if len(old_nodes) != len(new_nodes):
        return False
    old_projection = {node_name(node): node_provider_id(node) for node in old_nodes}
    new_projection = {node_name(node): node_provider_id(node) for node in new_nodes}
    return old_projection == new_projection


def loggable_node_names(nodes: Sequence[Any]) -> list[str]:
    if len(nodes) > MAX_NODE_NAMES_TO_LOG:
        skipped = len(nodes) - MAX_NODE_NAMES_TO_LOG
        names = sorted({node_name(node) for node in nodes[:MAX_NODE_NAMES_TO_LOG]})
        return [*names, f"<{skipped} more>"]
    return sorted({node_name(node) for node in nodes})
