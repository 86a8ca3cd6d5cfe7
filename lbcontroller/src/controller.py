from __future__ import annotations

import copy
import enum
import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, DiscoveryV1Api, V1LoadBalancerStatus

from lbcontroller.src.cache import CachedService, LastSyncedNodes, ServiceCache
from lbcontroller.src.cloudprovider import (
    CloudProvider,
    ImplementedElsewhere,
    LoadBalancerNotFound,
    find_retry_error,
)
from lbcontroller.src.config import STABLE_LOAD_BALANCER_NODE_SET, ControllerConfig, FeatureGates
from lbcontroller.src.handlers import (
    ClusterEvent,
    EndpointSliceAdded,
    EndpointSliceUpdated,
    NodeAdded,
    NodeDeleted,
    NodeUpdated,
    QueueName,
    ServiceAdded,
    ServiceUpdated,
    classify,
    service_change,
)
from lbcontroller.src.informer import Informer, wait_for_cache_sync
from lbcontroller.src.kube import (
    ENDPOINT_SLICE_FINALIZER,
    LOAD_BALANCER_ID_ANNOTATION,
    LOAD_BALANCER_OLD_ID_ANNOTATION,
    SERVICE_FINALIZER,
    LoadBalancerIds,
    MigrationState,
    annotations,
    endpoint_slice_has_finalizer,
    endpoint_slice_needs_cleanup,
    endpoint_slice_service_name,
    finalizers,
    has_load_balancer_finalizer,
    is_deleting,
    is_not_found,
    load_balancer_status,
    namespaced_key,
    needs_cleanup,
    object_uid,
    owes_load_balancer_cleanup,
    patch_endpoint_slice,
    patch_service,
    patch_service_status,
    split_key,
    wants_load_balancer,
)
from lbcontroller.src.metrics import METRICS
from lbcontroller.src.nodes import (
    filter_nodes,
    loggable_node_names,
    nodes_sufficiently_equal,
    predicates_for_service,
)
from lbcontroller.src.recorder import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from lbcontroller.src.workqueue import RateLimitingQueue

SERVICE_RESYNC_SECONDS = 30
ENDPOINT_SLICE_RESYNC_SECONDS = 900
NODE_RESYNC_SECONDS = 100
WORKER_RESTART_SECONDS = 1.0
SHUTDOWN_DRAIN_SECONDS = 30.0


class ControllerInitError(RuntimeError):
    """The controller cannot start: no cloud provider, or one without load balancers."""


class UnsupportedClusterError(RuntimeError):
    """The cluster runs a CNI this controller refuses to manage load balancers for."""


class ClusterIdentifierError(RuntimeError):
    """The cluster identifier passed to the provider could not be resolved."""


class LoadBalancerSyncError(RuntimeError):
    """A reconciliation step failed; the original error is kept as ``__cause__``."""


class LoadBalancerOperation(enum.Enum):
    ENSURE = "ensure"
    DELETE = "delete"


def build_informers(core_api: CoreV1Api, discovery_api: DiscoveryV1Api) -> tuple[Informer, Informer, Informer]:
    """Return the ``(services, endpointslices, nodes)`` informers the controller consumes."""
    return (
        Informer("services", core_api.list_service_for_all_namespaces, SERVICE_RESYNC_SECONDS),
        Informer(
            "endpointslices",
            discovery_api.list_endpoint_slice_for_all_namespaces,
            ENDPOINT_SLICE_RESYNC_SECONDS,
        ),
        Informer("nodes", core_api.list_node, NODE_RESYNC_SECONDS),
    )


class ServiceController:
    """Keeps provider load balancers in step with Services of type LoadBalancer.

    Service keys flow through ``service_queue`` and are reconciled by
    :meth:`sync_service`; any relevant node change puts a key on
    ``node_queue``, whose single worker resyncs the backends of every cached
    load balancer with :meth:`sync_nodes`.

    Key internal state:
        ``cache``
            Last observed copy of each Service this controller reconciled.
            An entry outlives the Service so that a deletion observed as a
            missing store entry can still be cleaned up.
        ``last_synced_nodes``
            Node set last pushed to the provider per Service; identical sets
            (by name and provider ID) are not pushed again.
    """

    def __init__(
        self,
        cloud: CloudProvider | None,
        core_api: CoreV1Api,
        discovery_api: DiscoveryV1Api,
        service_informer: Informer,
        endpoint_slice_informer: Informer,
        node_informer: Informer,
        recorder: EventRecorder,
        *,
        cluster_name: str = "kubernetes",
        cluster_info_namespace: str | None = None,
        cluster_info_name: str | None = None,
        unsupported_cnis: Iterable[str] = (),
        feature_gates: FeatureGates | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if cloud is None:
            raise ControllerInitError("no cloud provider provided, services of type LoadBalancer will fail")
        balancer = cloud.load_balancer()
        if balancer is None:
            raise ControllerInitError(
                f"the cloud provider {cloud.provider_name()} does not support external load balancers"
            )

        self.cloud = cloud
        self.balancer = balancer
        self.core_api = core_api
        self.discovery_api = discovery_api
        self.service_informer = service_informer
        self.endpoint_slice_informer = endpoint_slice_informer
        self.node_informer = node_informer
        self.recorder = recorder
        self.cluster_name = cluster_name
        self.cluster_info_namespace = cluster_info_namespace
        self.cluster_info_name = cluster_info_name
        self.unsupported_cnis = frozenset(unsupported_cnis)
        self.feature_gates = feature_gates or FeatureGates()
        self.logger = logger or logging.getLogger(__name__)

        self.cache = ServiceCache()
        self.last_synced_nodes = LastSyncedNodes()
        self.service_queue = RateLimitingQueue("service")
        self.node_queue = RateLimitingQueue("node")
        self.ready = threading.Event()

        self._register_handlers()

    @classmethod
    def from_config(
        cls,
        config: ControllerConfig,
        cloud: CloudProvider | None,
        core_api: CoreV1Api,
        discovery_api: DiscoveryV1Api,
        recorder: EventRecorder,
    ) -> ServiceController:
        service_informer, endpoint_slice_informer, node_informer = build_informers(core_api, discovery_api)
        return cls(
            cloud,
            core_api,
            discovery_api,
            service_informer,
            endpoint_slice_informer,
            node_informer,
            recorder,
            cluster_name=config.cluster_name,
            cluster_info_namespace=config.cluster_info_namespace,
            cluster_info_name=config.cluster_info_name,
            unsupported_cnis=config.unsupported_cnis,
            feature_gates=config.feature_gates,
        )

    @property
    def informers(self) -> tuple[Informer, Informer, Informer]:
        return (self.service_informer, self.endpoint_slice_informer, self.node_informer)

    @property
    def stable_node_set(self) -> bool:
        return self.feature_gates.enabled(STABLE_LOAD_BALANCER_NODE_SET)

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def _register_handlers(self) -> None:
        # Service deletions need no handler: services owning a load balancer
        # carry the cleanup finalizer, so deletion shows up as an update.
        self.service_informer.add_event_handler(
            on_add=lambda service: self.handle_event(ServiceAdded(service)),
            on_update=lambda old, new: self.handle_event(ServiceUpdated(old, new)),
        )
        self.endpoint_slice_informer.add_event_handler(
            on_add=lambda endpoint_slice: self.handle_event(EndpointSliceAdded(endpoint_slice)),
            on_update=lambda old, new: self.handle_event(EndpointSliceUpdated(old, new)),
        )
        self.node_informer.add_event_handler(
            on_add=lambda node: self.handle_event(NodeAdded(node)),
            on_update=lambda old, new: self.handle_event(NodeUpdated(old, new)),
            on_delete=lambda node: self.handle_event(NodeDeleted(node)),
        )

    def handle_event(self, event: ClusterEvent) -> None:
        if isinstance(event, ServiceUpdated):
            change = service_change(event.old, event.new)
            if change is not None and change.reason:
                self.recorder.event(event.new, EVENT_TYPE_NORMAL, change.reason, change.message)
        decision = classify(event, self.service_informer.store, self.stable_node_set)
        if decision is None:
            return
        queue = self.service_queue if decision.queue is QueueName.SERVICE else self.node_queue
        queue.add(decision.key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _process_next_service_item(self) -> bool:
        key, shutdown = self.service_queue.get()
        if shutdown or key is None:
            return False

        try:
            self.sync_service(key)
        except Exception as exc:
            METRICS.sync_errors_total.labels(queue="service").inc()
            retry_error = find_retry_error(exc)
            if retry_error is not None:
                self.logger.warning(
                    "Error processing service %s (retrying in %gs): %s",
                    key,
                    retry_error.retry_after,
                    exc,
                )
                self.service_queue.add_after(key, retry_error.retry_after)
            else:
                self.logger.error(
                    "Error processing service %s (retrying with exponential backoff): %s", key, exc
                )
                self.service_queue.add_rate_limited(key)
        else:
            self.service_queue.forget(key)
        finally:
            self.service_queue.done(key)
        return True

    def _process_next_node_item(self, workers: int) -> bool:
        key, shutdown = self.node_queue.get()
        if shutdown or key is None:
            return False

        try:
            for service_key in sorted(self.sync_nodes(workers)):
                self.service_queue.add(service_key)
            self.node_queue.forget(key)
        finally:
            self.node_queue.done(key)
        return True

    def _service_worker(self) -> None:
        while self._process_next_service_item():
            pass

    def _node_worker(self, workers: int) -> None:
        while self._process_next_node_item(workers):
            pass

    def _run_until_stopped(self, name: str, stop_event: threading.Event, work: Callable[[], None]) -> threading.Thread:
        """Run *work* in a thread, restarting it every second until *stop_event* is set."""

        def loop() -> None:
            while not stop_event.is_set():
                try:
                    work()
                except Exception:
                    self.logger.exception("Worker %s crashed; restarting", name)
                stop_event.wait(timeout=WORKER_RESTART_SECONDS)

        thread = threading.Thread(target=loop, name=name, daemon=True)
        thread.start()
        return thread

    def run(self, stop_event: threading.Event, workers: int = 1) -> None:
        """Start *workers* service workers plus one node worker and block until *stop_event* is set.

        On exit both queues are shut down with drain so in-flight passes finish.
        """
        self.recorder.start()
        self.logger.info("Starting service controller")
        threads: list[threading.Thread] = []
        try:
            if not wait_for_cache_sync("service", stop_event, *self.informers):
                return
            self._check_cluster_support()

            for index in range(workers):
                threads.append(
                    self._run_until_stopped(f"service-worker-{index}", stop_event, self._service_worker)
                )
            # A single node worker keeps backend resyncs strictly sequential.
            threads.append(
                self._run_until_stopped("node-worker", stop_event, lambda: self._node_worker(workers))
            )
            self.ready.set()
            stop_event.wait()
        finally:
            self.ready.clear()
            self.service_queue.shut_down_with_drain(SHUTDOWN_DRAIN_SECONDS)
            self.node_queue.shut_down_with_drain(SHUTDOWN_DRAIN_SECONDS)
            for thread in threads:
                thread.join(timeout=WORKER_RESTART_SECONDS * 5)
            self.recorder.shutdown()
            self.logger.info("Shutting down service controller")

    # ------------------------------------------------------------------
    # Cluster information
    # ------------------------------------------------------------------

    def _read_cluster_info(self) -> Any:
        return self.core_api.read_namespaced_config_map(
            name=self.cluster_info_name,
            namespace=self.cluster_info_namespace,
        )

    def _check_cluster_support(self) -> None:
        if not self.cluster_info_name:
            return
        try:
            config_map = self._read_cluster_info()
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.warning(
                    "Cluster info ConfigMap %s/%s not found; skipping CNI check",
                    self.cluster_info_namespace,
                    self.cluster_info_name,
                )
            else:
                self.logger.warning(
                    "Unable to read cluster info ConfigMap %s/%s (status %s); skipping CNI check",
                    self.cluster_info_namespace,
                    self.cluster_info_name,
                    exc.status,
                )
            return
        cni = ((getattr(config_map, "data", None) or {}).get("cni") or "").strip().lower()
        if cni and cni in self.unsupported_cnis:
            raise UnsupportedClusterError(f"load balancer services are not supported with CNI {cni!r}")

    def _resolve_cluster_name(self) -> str:
        """Return the cluster identifier handed to the provider on this pass."""
        if not self.cluster_info_name:
            return self.cluster_name
        location = f"{self.cluster_info_namespace}/{self.cluster_info_name}"
        try:
            config_map = self._read_cluster_info()
        except ApiException as exc:
            raise ClusterIdentifierError(f"unable to read cluster info ConfigMap {location}: {exc.reason}") from exc
        cluster_id = ((getattr(config_map, "data", None) or {}).get("clusterId") or "").strip()
        if not cluster_id:
            raise ClusterIdentifierError(f"cluster info ConfigMap {location} does not contain clusterId")
        return cluster_id

    # ------------------------------------------------------------------
    # Service reconciliation
    # ------------------------------------------------------------------

    def _endpoint_slices_for(self, namespace: str, service_name: str) -> list[Any]:
        return [
            endpoint_slice
            for endpoint_slice in self.endpoint_slice_informer.store.list()
            if getattr(endpoint_slice.metadata, "namespace", None) == namespace
            and endpoint_slice_service_name(endpoint_slice) == service_name
        ]

    def sync_service(self, key: str) -> None:
        """Reconcile the load balancer of the Service stored under *key*."""
        started = time.monotonic()
        try:
            namespace, name = split_key(key)
            cluster_name = self._resolve_cluster_name()

            service = self.service_informer.store.get(key)
            if service is None:
                self._process_service_deletion(cluster_name, key)
                return

            endpoint_slices = self._endpoint_slices_for(namespace, name)
            # Store objects are shared with every other consumer; work on a copy.
            self._process_service_create_or_update(
                cluster_name, copy.deepcopy(service), key, endpoint_slices
            )
        finally:
            self.logger.debug("Finished syncing service %s (%.3fs)", key, time.monotonic() - started)

    def _process_service_deletion(self, cluster_name: str, key: str) -> None:
        namespace, name = split_key(key)
        self._release_endpoint_slice_finalizers(namespace, name, only_needing_cleanup=False)

        cached = self.cache.get(key)
        if cached is None:
            # Either no load balancer was ever created or it is already gone.
            return

        self.logger.info("Service %s has been deleted; cleaning up load balancer resources", key)
        if cached.state is not None:
            self._delete_load_balancers(cluster_name, cached.state)
        self.cache.delete(key)
        self.last_synced_nodes.forget(key)

    def _delete_load_balancers(self, cluster_name: str, service: Any) -> None:
        """Delete the load balancers referenced by *service*: current first, then old."""
        if not owes_load_balancer_cleanup(service):
            self.logger.debug(
                "Service %s never held a load balancer; skipping provider cleanup", namespaced_key(service)
            )
            return
        ids = LoadBalancerIds.from_service(service)
        for load_balancer_id in (ids.current, ids.old):
            if load_balancer_id:
                self._process_load_balancer_delete(cluster_name, service, load_balancer_id)

    def _process_load_balancer_delete(self, cluster_name: str, service: Any, load_balancer_id: str) -> None:
        try:
            self.balancer.ensure_load_balancer_deleted(cluster_name, service, load_balancer_id)
        except LoadBalancerNotFound:
            return
        except Exception as exc:
            if "not found" in str(exc).lower():
                return
            self.recorder.event(
                service,
                EVENT_TYPE_WARNING,
                "DeleteLoadBalancerFailed",
                f"Error deleting load balancer: {exc}",
            )
            raise

    def _process_service_create_or_update(
        self,
        cluster_name: str,
        service: Any,
        key: str,
        endpoint_slices: Sequence[Any],
    ) -> None:
        cached = self.cache.get(key)
        if cached is not None and cached.state is not None and object_uid(cached.state) != object_uid(service):
            # Only possible when a Service without the finalizer is deleted
            # and re-created before the deletion was processed.
            self.logger.info("Service %s was re-created; cleaning up the previous load balancer", key)
            self._delete_load_balancers(cluster_name, cached.state)
            self.last_synced_nodes.forget(key)

        # Cached unconditionally: a later deletion without finalizer needs it.
        self.cache.set(key, CachedService(state=service))

        try:
            operation = self._sync_load_balancer_if_needed(cluster_name, service, key, endpoint_slices)
        except Exception as exc:
            self.recorder.event(
                service,
                EVENT_TYPE_WARNING,
                "SyncLoadBalancerFailed",
                f"Error syncing load balancer: {exc}",
            )
            raise

        if operation is LoadBalancerOperation.DELETE:
            self.cache.delete(key)
            self.last_synced_nodes.forget(key)

    def _sync_load_balancer_if_needed(
        self,
        cluster_name: str,
        service: Any,
        key: str,
        endpoint_slices: Sequence[Any],
    ) -> LoadBalancerOperation:
        """Create, update or delete the load balancer of *service* and record its status.

        ``ENSURE`` adds the service and endpoint slice finalizers before any
        provider call.  A pending migration deletes the old load balancer
        first and leaves the status empty for this pass.  ``DELETE`` tears
        down the old then the current load balancer before releasing the
        finalizers.
        """
        namespace, name = split_key(key)
        previous_status = copy.deepcopy(load_balancer_status(service))
        new_status: Any = None
        ids = LoadBalancerIds.from_service(service)

        if not wants_load_balancer(service) or needs_cleanup(service):
            operation = LoadBalancerOperation.DELETE
            new_status = V1LoadBalancerStatus()

            if has_load_balancer_finalizer(service):
                for load_balancer_id in (ids.old, ids.current):
                    if not load_balancer_id:
                        continue
                    try:
                        self._process_load_balancer_delete(cluster_name, service, load_balancer_id)
                    except Exception as exc:
                        raise LoadBalancerSyncError(
                            f"failed to delete load balancer {load_balancer_id}: {exc}"
                        ) from exc
                self._remove_annotation(service, LOAD_BALANCER_ID_ANNOTATION)
                self._remove_finalizer(service)
                self._release_endpoint_slice_finalizers(namespace, name, only_needing_cleanup=False)
                self.recorder.event(service, EVENT_TYPE_NORMAL, "DeletedLoadBalancer", "Deleted load balancer")
            else:
                self.logger.debug("Service %s does not hold a load balancer; nothing to delete", key)
                self._release_endpoint_slice_finalizers(namespace, name, only_needing_cleanup=False)
        else:
            operation = LoadBalancerOperation.ENSURE
            self.logger.info("Ensuring load balancer for service %s", key)

            self._add_finalizer(service)
            for endpoint_slice in endpoint_slices:
                self._add_endpoint_slice_finalizer(endpoint_slice)

            if ids.migration is MigrationState.PENDING:
                try:
                    self._process_load_balancer_delete(cluster_name, service, ids.old)
                except Exception as exc:
                    raise LoadBalancerSyncError(
                        f"failed to delete old load balancer {ids.old}: {exc}"
                    ) from exc

            if ids.current:
                try:
                    new_status = self.balancer.ensure_load_balancer(
                        cluster_name, service, None, list(endpoint_slices), ids.current
                    )
                except ImplementedElsewhere:
                    self.logger.debug(
                        "Load balancer for service %s is implemented by a different controller than %s",
                        key,
                        self.cloud.provider_name(),
                    )
                    return operation
                except Exception as exc:
                    message = str(exc).lower()
                    if "conflict" in message:
                        self.recorder.event(service, EVENT_TYPE_WARNING, "Conflict", message)
                        return operation
                    raise LoadBalancerSyncError(f"failed to ensure load balancer: {exc}") from exc
                if new_status is None:
                    raise LoadBalancerSyncError("load balancer status returned by ensure_load_balancer is None")

            if ids.migration is MigrationState.PENDING:
                # The ingress is published on the pass after the migration.
                new_status = V1LoadBalancerStatus()

            self._release_endpoint_slice_finalizers(namespace, name, only_needing_cleanup=True)

        self._remove_annotation(service, LOAD_BALANCER_OLD_ID_ANNOTATION)

        if new_status is not None:
            try:
                patch_service_status(self.core_api, service, previous_status, new_status)
            except ApiException as exc:
                # The Service may vanish right after its finalizer is removed.
                if not is_not_found(exc):
                    raise LoadBalancerSyncError(f"failed to update load balancer status: {exc.reason}") from exc

        return operation

    # ------------------------------------------------------------------
    # Finalizers and annotations
    # ------------------------------------------------------------------

    def _add_finalizer(self, service: Any) -> None:
        if has_load_balancer_finalizer(service):
            return
        updated = copy.deepcopy(service)
        updated.metadata.finalizers = [*finalizers(service), SERVICE_FINALIZER]
        self.logger.info("Adding finalizer to service %s", namespaced_key(service))
        try:
            patch_service(self.core_api, service, updated)
        except ApiException as exc:
            raise LoadBalancerSyncError(f"failed to add load balancer cleanup finalizer: {exc.reason}") from exc

    def _remove_finalizer(self, service: Any) -> None:
        if not needs_cleanup(service):
            return
        updated = copy.deepcopy(service)
        updated.metadata.finalizers = [item for item in finalizers(service) if item != SERVICE_FINALIZER]
        self.logger.info("Removing finalizer from service %s", namespaced_key(service))
        try:
            patch_service(self.core_api, service, updated)
        except ApiException as exc:
            raise LoadBalancerSyncError(
                f"failed to remove load balancer cleanup finalizer: {exc.reason}"
            ) from exc

    def _remove_annotation(self, service: Any, annotation: str) -> None:
        # A terminating Service only accepts finalizer removal.
        if is_deleting(service):
            return
        current = annotations(service)
        if annotation not in current:
            return
        updated = copy.deepcopy(service)
        updated.metadata.annotations = {key: value for key, value in current.items() if key != annotation}
        self.logger.info("Removing annotation %s from service %s", annotation, namespaced_key(service))
        try:
            patch_service(self.core_api, service, updated)
        except ApiException as exc:
            raise LoadBalancerSyncError(f"failed to remove annotation {annotation}: {exc.reason}") from exc

    def _add_endpoint_slice_finalizer(self, endpoint_slice: Any) -> None:
        # Finalizers cannot be added to an object that is already terminating.
        if endpoint_slice_has_finalizer(endpoint_slice) or is_deleting(endpoint_slice):
            return
        updated = copy.deepcopy(endpoint_slice)
        updated.metadata.finalizers = [*finalizers(endpoint_slice), ENDPOINT_SLICE_FINALIZER]
        self.logger.info("Adding finalizer to endpointslice %s", namespaced_key(endpoint_slice))
        try:
            patch_endpoint_slice(self.discovery_api, endpoint_slice, updated)
        except ApiException as exc:
            raise LoadBalancerSyncError(
                f"failed to add load balancer cleanup finalizer to endpointslice "
                f"{namespaced_key(endpoint_slice)}: {exc.reason}"
            ) from exc

    def _remove_endpoint_slice_finalizer(self, endpoint_slice: Any) -> None:
        if not endpoint_slice_has_finalizer(endpoint_slice):
            return
        updated = copy.deepcopy(endpoint_slice)
        updated.metadata.finalizers = [
            item for item in finalizers(endpoint_slice) if item != ENDPOINT_SLICE_FINALIZER
        ]
        self.logger.info("Removing finalizer from endpointslice %s", namespaced_key(endpoint_slice))
        try:
            patch_endpoint_slice(self.discovery_api, endpoint_slice, updated)
        except ApiException as exc:
            if is_not_found(exc):
                return
            raise LoadBalancerSyncError(
                f"failed to remove load balancer cleanup finalizer from endpointslice "
                f"{namespaced_key(endpoint_slice)}: {exc.reason}"
            ) from exc

    def _release_endpoint_slice_finalizers(
        self, namespace: str, service_name: str, *, only_needing_cleanup: bool
    ) -> None:
        for endpoint_slice in self._endpoint_slices_for(namespace, service_name):
            if only_needing_cleanup and not endpoint_slice_needs_cleanup(endpoint_slice):
                continue
            self._remove_endpoint_slice_finalizer(endpoint_slice)

    # ------------------------------------------------------------------
    # Node resync
    # ------------------------------------------------------------------

    def sync_nodes(self, workers: int) -> set[str]:
        """Point every cached load balancer at the current eligible nodes.

        Returns the keys of services whose update failed; the caller
        re-queues them on the service queue.
        """
        started = time.monotonic()
        services = self.cache.all_services()
        try:
            try:
                cluster_name = self._resolve_cluster_name()
            except ClusterIdentifierError as exc:
                self.logger.error("Unable to resync load balancer backends: %s", exc)
                METRICS.nodesync_error_total.inc()
                return {namespaced_key(service) for service in services if wants_load_balancer(service)}

            self.logger.info("Syncing backends for all load balancer services")
            services_to_retry = self._update_load_balancer_hosts(cluster_name, services, workers)
            self.logger.info(
                "Successfully updated %d out of %d load balancers to direct traffic "
                "to the updated set of nodes",
                len(services) - len(services_to_retry),
                len(services),
            )
            return services_to_retry
        finally:
            latency = time.monotonic() - started
            METRICS.nodesync_latency_seconds.observe(latency)
            self.logger.debug("Node resync took %.3fs", latency)

    def _update_load_balancer_hosts(self, cluster_name: str, services: Sequence[Any], workers: int) -> set[str]:
        if not services:
            return set()
        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="node-sync") as executor:
            futures = {
                executor.submit(self._node_sync_service, cluster_name, service): namespaced_key(service)
                for service in services
            }
            return {futures[future] for future in as_completed(futures) if future.result()}

    def _node_sync_service(self, cluster_name: str, service: Any) -> bool:
        """Resync one service's backends; returns ``True`` when it must be retried."""
        if service is None or not wants_load_balancer(service):
            return False
        key = namespaced_key(service)
        predicates = predicates_for_service(service, self.stable_node_set)
        new_nodes = filter_nodes(self.node_informer.store.list(), predicates)
        old_nodes = filter_nodes(self.last_synced_nodes.get(key), predicates)
        # Recorded before the provider call; failures are retried through the service queue.
        self.last_synced_nodes.store(key, new_nodes)
        if nodes_sufficiently_equal(old_nodes, new_nodes):
            return False

        try:
            self._update_service_backends(cluster_name, service, new_nodes)
        except Exception as exc:
            self.logger.error("Failed to update load balancer hosts for service %s: %s", key, exc)
            METRICS.nodesync_error_total.inc()
            return True
        return False

    def _update_service_backends(self, cluster_name: str, service: Any, hosts: list[Any]) -> None:
        key = namespaced_key(service)
        node_names = loggable_node_names(hosts)
        started = time.monotonic()
        METRICS.loadbalancer_sync_total.inc()
        self.logger.info(
            "Updating backends for load balancer %s with %d nodes: %s", key, len(hosts), node_names
        )
        try:
            self.balancer.update_load_balancer(cluster_name, service, hosts)
        except ImplementedElsewhere:
            return
        except Exception as exc:
            # Only an error if the load balancer still exists.
            try:
                _, exists = self.balancer.get_load_balancer(cluster_name, service)
            except Exception:
                self.logger.exception("Failed to check if load balancer exists for service %s", key)
            else:
                if not exists:
                    return
            self.recorder.event(
                service,
                EVENT_TYPE_WARNING,
                "UpdateLoadBalancerFailed",
                f"Error updating load balancer with new hosts {node_names} "
                f"[node names limited, total number of nodes: {len(hosts)}], error: {exc}",
            )
            raise
        else:
            if not hosts:
                self.recorder.event(
                    service,
                    EVENT_TYPE_WARNING,
                    "UnAvailableLoadBalancer",
                    "There are no available nodes for LoadBalancer",
                )
            else:
                self.recorder.event(
                    service, EVENT_TYPE_NORMAL, "UpdatedLoadBalancer", "Updated load balancer with new hosts"
                )
        finally:
            latency = time.monotonic() - started
            METRICS.update_loadbalancer_host_latency_seconds.observe(latency)
            self.logger.debug("Updating load balancer hosts for %s took %.3fs", key, latency)
