"""Cloud provider capability interface consumed by the service controller."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from importlib.metadata import entry_points
from typing import Any

LOGGER = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "lbcontroller.cloud_providers"


class ImplementedElsewhere(Exception):
    """Raised by a provider when another controller owns this load balancer.

    The service controller treats it as a successful no-op.
    """


class LoadBalancerNotFound(Exception):
    """Raised when the referenced load balancer does not exist on the provider side."""


class RetryError(Exception):
    """A failure that should be retried after an explicit delay instead of backoff."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def __str__(self) -> str:
        return f"{super().__str__()} (retry after {self.retry_after:g}s)"


def find_retry_error(exc: BaseException | None) -> RetryError | None:
    """Return the first :class:`RetryError` in *exc*'s cause/context chain."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, RetryError):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return None


class LoadBalancer(ABC):
    """Provider operations on external load balancers."""

    @abstractmethod
    def get_load_balancer(self, cluster_name: str, service: Any) -> tuple[Any, bool]:
        """Return ``(status, exists)`` for the service's load balancer."""

    @abstractmethod
    def ensure_load_balancer(
        self,
        cluster_name: str,
        service: Any,
        nodes: Sequence[Any] | None,
        endpoint_slices: Sequence[Any],
        load_balancer_id: str,
    ) -> Any:
        """Create or update the load balancer and return its ``V1LoadBalancerStatus``.

        Implementations must be idempotent; ``nodes`` is ``None`` when backend
        membership is reconciled separately through :meth:`update_load_balancer`.
        """

    @abstractmethod
    def update_load_balancer(self, cluster_name: str, service: Any, nodes: Sequence[Any]) -> None:
        """Point the load balancer at *nodes*."""

    @abstractmethod
    def ensure_load_balancer_deleted(
        self, cluster_name: str, service: Any, load_balancer_id: str
    ) -> None:
        """Delete the load balancer; raising :class:`LoadBalancerNotFound` counts as success."""


class CloudProvider(ABC):
    @abstractmethod
    def provider_name(self) -> str: ...

    @abstractmethod
    def load_balancer(self) -> LoadBalancer | None:
        """Return the load balancer capability, or ``None`` when unsupported."""


CloudProviderFactory = Callable[[], CloudProvider]

_providers: dict[str, CloudProviderFactory] = {}
_providers_lock = threading.Lock()


def register_cloud_provider(name: str, factory: CloudProviderFactory) -> None:
    with _providers_lock:
        if name in _providers:
            raise ValueError(f"cloud provider {name!r} already registered")
        _providers[name] = factory


def unregister_cloud_provider(name: str) -> None:
    with _providers_lock:
        _providers.pop(name, None)


def _discover_factory(name: str) -> CloudProviderFactory | None:
    for entry_point in entry_points(group=ENTRY_POINT_GROUP):
        if entry_point.name == name:
            LOGGER.info("Loading cloud provider %s from %s", name, entry_point.value)
            return entry_point.load()
    return None


def get_cloud_provider(name: str) -> CloudProvider | None:
    """Instantiate the provider registered as *name*, or installed under the entry-point group."""
    with _providers_lock:
        factory = _providers.get(name)
    if factory is None:
        factory = _discover_factory(name)
    if factory is None:
        return None
    return factory()
