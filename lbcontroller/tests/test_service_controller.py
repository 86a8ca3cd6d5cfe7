from __future__ import annotations

import logging
import threading
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException, V1LoadBalancerIngress, V1LoadBalancerStatus

from lbcontroller.src.cache import CachedService
from lbcontroller.src.cloudprovider import ImplementedElsewhere, LoadBalancerNotFound, RetryError
from lbcontroller.src.controller import (
    ClusterIdentifierError,
    ControllerInitError,
    LoadBalancerOperation,
    LoadBalancerSyncError,
    ServiceController,
    UnsupportedClusterError,
)
from lbcontroller.src.handlers import ServiceUpdated
from lbcontroller.src.kube import (
    ENDPOINT_SLICE_FINALIZER,
    LOAD_BALANCER_ID_ANNOTATION,
    LOAD_BALANCER_OLD_ID_ANNOTATION,
    SERVICE_FINALIZER,
)
from lbcontroller.tests.fakes import (
    FakeCloud,
    FakeLoadBalancer,
    make_controller,
    make_endpoint_slice,
    make_node,
    make_service,
)

KEY = "default/web"


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_init_requires_cloud_provider() -> None:
    controller, *_ = make_controller()
    with pytest.raises(ControllerInitError, match="no cloud provider"):
        ServiceController(
            None,
            controller.core_api,
            controller.discovery_api,
            *controller.informers,
            controller.recorder,
        )


def test_init_requires_load_balancer_capability() -> None:
    controller, *_ = make_controller()
    with pytest.raises(ControllerInitError, match="does not support external load balancers"):
        ServiceController(
            FakeCloud(None),
            controller.core_api,
            controller.discovery_api,
            *controller.informers,
            controller.recorder,
        )


# ---------------------------------------------------------------------------
# Create / update path
# ---------------------------------------------------------------------------


def test_new_service_gets_finalizer_before_ensure_and_status_patched() -> None:
    service = make_service(load_balancer_id="lb-1")
    controller, balancer, recorder, core_api, _ = make_controller(services=[service])

    finalizers_at_ensure: list[list[list[str]]] = []
    original_ensure = balancer.ensure_load_balancer

    def tracking_ensure(*args, **kwargs):  # type: ignore[no-untyped-def]
        finalizers_at_ensure.append(core_api.finalizer_additions())
        return original_ensure(*args, **kwargs)

    balancer.ensure_load_balancer = tracking_ensure  # type: ignore[method-assign]

    controller.sync_service(KEY)

    assert finalizers_at_ensure == [[[SERVICE_FINALIZER]]]
    assert balancer.calls == [("ensure", "kubernetes", "lb-1")]
    assert core_api.status_patches == [
        (KEY, {"status": {"loadBalancer": {"ingress": [{"ip": "203.0.113.10"}]}}})
    ]
    # No old identifier means no annotation write.
    assert core_api.annotation_patches() == []
    assert controller.cache.get(KEY) is not None
    assert recorder.events == []


def test_second_pass_without_changes_writes_nothing() -> None:
    service = make_service(
        load_balancer_id="lb-1",
        finalizers=[SERVICE_FINALIZER],
        ingress_ips=["203.0.113.10"],
    )
    controller, balancer, _, core_api, _ = make_controller(services=[service])

    controller.sync_service(KEY)
    controller.sync_service(KEY)

    assert balancer.operations("ensure") == [("ensure", "kubernetes", "lb-1")] * 2
    assert core_api.service_patches == []
    assert core_api.status_patches == []


def test_provider_status_with_empty_hostname_is_not_rewritten() -> None:
    service = make_service(
        load_balancer_id="lb-1",
        finalizers=[SERVICE_FINALIZER],
        ingress_ips=["203.0.113.10"],
    )
    balancer = FakeLoadBalancer()
    balancer.status = V1LoadBalancerStatus(ingress=[V1LoadBalancerIngress(ip="203.0.113.10", hostname="")])
    controller, _, _, core_api, _ = make_controller(balancer=balancer, services=[service])

    controller.sync_service(KEY)

    assert balancer.operations("ensure") == [("ensure", "kubernetes", "lb-1")]
    assert core_api.status_patches == []


def test_service_without_identifier_only_gets_finalizer() -> None:
    service = make_service()
    controller, balancer, _, core_api, _ = make_controller(services=[service])

    controller.sync_service(KEY)

    assert balancer.calls == []
    assert core_api.finalizer_additions() == [[SERVICE_FINALIZER]]
    assert core_api.status_patches == []


def test_ensure_adds_endpoint_slice_finalizers_and_releases_terminating_ones() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    live = make_endpoint_slice(name="web-live")
    terminating = make_endpoint_slice(
        name="web-gone", finalizers=[ENDPOINT_SLICE_FINALIZER], deleting=True
    )
    unrelated = make_endpoint_slice(name="other-1", service_name="other")
    controller, _, _, _, discovery_api = make_controller(
        services=[service], endpoint_slices=[live, terminating, unrelated]
    )

    controller.sync_service(KEY)

    assert discovery_api.added() == ["default/web-live"]
    assert discovery_api.removed() == ["default/web-gone"]


def test_implemented_elsewhere_returns_without_status_or_slice_changes() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    terminating = make_endpoint_slice(finalizers=[ENDPOINT_SLICE_FINALIZER], deleting=True)
    balancer = FakeLoadBalancer()
    balancer.ensure_error = ImplementedElsewhere()
    controller, _, recorder, core_api, discovery_api = make_controller(
        balancer=balancer, services=[service], endpoint_slices=[terminating]
    )

    controller.sync_service(KEY)

    assert core_api.status_patches == []
    assert discovery_api.patches == []
    assert recorder.events == []


def test_conflict_error_emits_event_and_succeeds() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    balancer = FakeLoadBalancer()
    balancer.ensure_error = RuntimeError("Listener CONFLICT on port 80")
    controller, _, recorder, core_api, _ = make_controller(balancer=balancer, services=[service])

    controller.sync_service(KEY)

    assert recorder.events == [("Warning", "Conflict", "listener conflict on port 80")]
    assert core_api.status_patches == []


def test_none_status_from_ensure_is_an_error() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    balancer = FakeLoadBalancer()
    balancer.status = None
    controller, _, recorder, _, _ = make_controller(balancer=balancer, services=[service])

    with pytest.raises(LoadBalancerSyncError, match="is None"):
        controller.sync_service(KEY)

    assert recorder.reasons() == ["SyncLoadBalancerFailed"]


def test_ensure_failure_keeps_retry_error_in_cause_chain() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    balancer = FakeLoadBalancer()
    balancer.ensure_error = RetryError("quota exhausted", retry_after=7)
    controller, _, recorder, _, _ = make_controller(balancer=balancer, services=[service])

    with pytest.raises(LoadBalancerSyncError) as excinfo:
        controller.sync_service(KEY)

    assert isinstance(excinfo.value.__cause__, RetryError)
    assert recorder.reasons() == ["SyncLoadBalancerFailed"]


def test_status_patch_not_found_is_tolerated() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    controller, _, _, core_api, _ = make_controller(services=[service])
    core_api.status_error = ApiException(status=404, reason="Not Found")

    controller.sync_service(KEY)


def test_status_patch_failure_fails_the_pass() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    controller, _, recorder, core_api, _ = make_controller(services=[service])
    core_api.status_error = ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(LoadBalancerSyncError, match="failed to update load balancer status"):
        controller.sync_service(KEY)
    assert recorder.reasons() == ["SyncLoadBalancerFailed"]


def test_finalizer_patch_failure_prevents_provider_call() -> None:
    service = make_service(load_balancer_id="lb-1")
    controller, balancer, _, core_api, _ = make_controller(services=[service])
    core_api.patch_error = ApiException(status=409, reason="Conflict")

    with pytest.raises(LoadBalancerSyncError, match="cleanup finalizer"):
        controller.sync_service(KEY)
    assert balancer.calls == []


# ---------------------------------------------------------------------------
# Migration between identifiers
# ---------------------------------------------------------------------------


def test_migration_deletes_old_load_balancer_and_forces_empty_status() -> None:
    service = make_service(
        load_balancer_id="lb-new",
        old_load_balancer_id="lb-old",
        finalizers=[SERVICE_FINALIZER],
        ingress_ips=["198.51.100.7"],
    )
    controller, balancer, _, core_api, _ = make_controller(services=[service])

    controller.sync_service(KEY)

    assert balancer.calls == [
        ("delete", "kubernetes", "lb-old"),
        ("ensure", "kubernetes", "lb-new"),
    ]
    assert core_api.annotation_patches() == [{LOAD_BALANCER_OLD_ID_ANNOTATION: None}]
    assert core_api.status_patches == [(KEY, {"status": {"loadBalancer": {"ingress": None}}})]


def test_migration_old_delete_failure_stops_before_ensure() -> None:
    service = make_service(
        load_balancer_id="lb-new", old_load_balancer_id="lb-old", finalizers=[SERVICE_FINALIZER]
    )
    balancer = FakeLoadBalancer()
    balancer.delete_errors["lb-old"] = RuntimeError("provider unavailable")
    controller, _, recorder, core_api, _ = make_controller(balancer=balancer, services=[service])

    with pytest.raises(LoadBalancerSyncError, match="lb-old"):
        controller.sync_service(KEY)

    assert balancer.operations("ensure") == []
    assert core_api.annotation_patches() == []
    assert recorder.reasons() == ["DeleteLoadBalancerFailed", "SyncLoadBalancerFailed"]


# ---------------------------------------------------------------------------
# Delete branch
# ---------------------------------------------------------------------------


def test_type_change_to_cluster_ip_tears_down_load_balancer() -> None:
    service = make_service(
        service_type="ClusterIP",
        load_balancer_id="lb-1",
        finalizers=[SERVICE_FINALIZER],
        ingress_ips=["203.0.113.10"],
    )
    balancer = FakeLoadBalancer()
    balancer.delete_errors["lb-1"] = LoadBalancerNotFound("lb-1")
    controller, _, recorder, core_api, _ = make_controller(balancer=balancer, services=[service])
    controller.cache.set(KEY, CachedService(state=service))

    controller.sync_service(KEY)

    assert balancer.calls == [("delete", "kubernetes", "lb-1")]
    assert core_api.finalizer_removals() == [[SERVICE_FINALIZER]]
    assert core_api.annotation_patches() == [{LOAD_BALANCER_ID_ANNOTATION: None}]
    assert core_api.status_patches == [(KEY, {"status": {"loadBalancer": {"ingress": None}}})]
    assert recorder.reasons() == ["DeletedLoadBalancer"]
    assert controller.cache.get(KEY) is None


def test_terminating_service_deletes_old_then_current_and_keeps_annotations() -> None:
    service = make_service(
        load_balancer_id="lb-new",
        old_load_balancer_id="lb-old",
        finalizers=[SERVICE_FINALIZER],
        deleting=True,
    )
    slice_with_finalizer = make_endpoint_slice(finalizers=[ENDPOINT_SLICE_FINALIZER])
    controller, balancer, recorder, core_api, discovery_api = make_controller(
        services=[service], endpoint_slices=[slice_with_finalizer]
    )

    controller.sync_service(KEY)

    assert balancer.calls == [
        ("delete", "kubernetes", "lb-old"),
        ("delete", "kubernetes", "lb-new"),
    ]
    assert core_api.finalizer_removals() == [[SERVICE_FINALIZER]]
    # Terminating objects only accept finalizer removal.
    assert core_api.annotation_patches() == []
    assert discovery_api.removed() == ["default/web-abc12"]
    assert recorder.reasons() == ["DeletedLoadBalancer"]


def test_delete_tolerates_not_found_message() -> None:
    service = make_service(
        service_type="ClusterIP", load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER]
    )
    balancer = FakeLoadBalancer()
    balancer.delete_errors["lb-1"] = RuntimeError("load balancer lb-1 Not Found")
    controller, _, recorder, _, _ = make_controller(balancer=balancer, services=[service])

    controller.sync_service(KEY)

    assert recorder.reasons() == ["DeletedLoadBalancer"]


def test_delete_failure_keeps_finalizer_and_cache() -> None:
    service = make_service(
        service_type="ClusterIP", load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER]
    )
    balancer = FakeLoadBalancer()
    balancer.delete_errors["lb-1"] = RuntimeError("timeout talking to provider")
    controller, _, recorder, core_api, _ = make_controller(balancer=balancer, services=[service])

    with pytest.raises(LoadBalancerSyncError):
        controller.sync_service(KEY)

    assert core_api.finalizer_removals() == []
    assert recorder.reasons() == ["DeleteLoadBalancerFailed", "SyncLoadBalancerFailed"]
    assert controller.cache.get(KEY) is not None


def test_service_without_load_balancer_or_finalizer_never_reaches_provider() -> None:
    service = make_service(service_type="ClusterIP", load_balancer_id="lb-1")
    controller, balancer, recorder, core_api, _ = make_controller(services=[service])

    controller.sync_service(KEY)

    assert balancer.calls == []
    assert core_api.service_patches == []
    assert recorder.events == []
    assert controller.cache.get(KEY) is None


def test_load_balancer_class_opts_out_of_provider() -> None:
    service = make_service(load_balancer_id="lb-1", load_balancer_class="example.com/internal")
    controller, balancer, _, _, _ = make_controller(services=[service])

    controller.sync_service(KEY)

    assert balancer.calls == []


# ---------------------------------------------------------------------------
# Deletion path and re-creation
# ---------------------------------------------------------------------------


def test_missing_service_without_cache_entry_is_a_no_op() -> None:
    controller, balancer, _, _, _ = make_controller()

    controller.sync_service(KEY)

    assert balancer.calls == []


def test_missing_service_deletes_current_then_old_and_clears_state() -> None:
    cached = make_service(
        load_balancer_id="lb-new", old_load_balancer_id="lb-old", finalizers=[SERVICE_FINALIZER]
    )
    leftover = make_endpoint_slice(finalizers=[ENDPOINT_SLICE_FINALIZER])
    controller, balancer, _, _, discovery_api = make_controller(endpoint_slices=[leftover])
    controller.cache.set(KEY, CachedService(state=cached))
    controller.last_synced_nodes.store(KEY, [make_node("n1")])

    controller.sync_service(KEY)

    assert balancer.calls == [
        ("delete", "kubernetes", "lb-new"),
        ("delete", "kubernetes", "lb-old"),
    ]
    assert discovery_api.removed() == ["default/web-abc12"]
    assert controller.cache.get(KEY) is None
    assert controller.last_synced_nodes.get(KEY) == []


def test_recreated_service_cleans_up_previous_instance_before_ensure() -> None:
    previous = make_service(uid="uid-1", load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    current = make_service(uid="uid-2", load_balancer_id="lb-2")
    controller, balancer, _, _, _ = make_controller(services=[current])
    controller.cache.set(KEY, CachedService(state=previous))

    controller.sync_service(KEY)

    assert balancer.calls == [
        ("delete", "kubernetes", "lb-1"),
        ("ensure", "kubernetes", "lb-2"),
    ]
    cached = controller.cache.get(KEY)
    assert cached is not None
    assert cached.state.metadata.uid == "uid-2"


# ---------------------------------------------------------------------------
# Cluster identifier
# ---------------------------------------------------------------------------


def test_cluster_identifier_is_read_from_cluster_info() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    controller, balancer, _, _, _ = make_controller(
        services=[service], cluster_info={"clusterId": "c-42", "cni": "flannel"}
    )

    controller.sync_service(KEY)

    assert balancer.calls == [("ensure", "c-42", "lb-1")]


def test_missing_cluster_identifier_fails_pass_before_provider_call() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    controller, balancer, _, _, _ = make_controller(services=[service], cluster_info={"cni": "flannel"})

    with pytest.raises(ClusterIdentifierError, match="does not contain clusterId"):
        controller.sync_service(KEY)
    assert balancer.calls == []


def test_unreadable_cluster_info_fails_pass() -> None:
    service = make_service(load_balancer_id="lb-1")
    controller, balancer, _, core_api, _ = make_controller(services=[service], cluster_info={})
    core_api.cluster_info = None

    with pytest.raises(ClusterIdentifierError, match="unable to read"):
        controller.sync_service(KEY)
    assert balancer.calls == []


def test_check_cluster_support_rejects_unsupported_cni() -> None:
    controller, *_ = make_controller(cluster_info={"clusterId": "c-1", "cni": "Calico"})

    with pytest.raises(UnsupportedClusterError, match="calico"):
        controller._check_cluster_support()


def test_check_cluster_support_tolerates_missing_config_map() -> None:
    controller, _, _, core_api, _ = make_controller(cluster_info={})
    core_api.cluster_info = None

    controller._check_cluster_support()


def test_check_cluster_support_tolerates_transient_read_failure(caplog: pytest.LogCaptureFixture) -> None:
    controller, _, _, core_api, _ = make_controller(cluster_info={"clusterId": "c-1", "cni": "calico"})
    core_api.config_map_error = ApiException(status=500, reason="Internal Server Error")

    with caplog.at_level(logging.WARNING, logger="lbcontroller.src.controller"):
        controller._check_cluster_support()

    assert "Unable to read cluster info ConfigMap" in caplog.text


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


def test_service_worker_forgets_key_on_success() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    controller, *_ = make_controller(services=[service])
    controller.service_queue.rate_limiter.when(KEY)
    controller.service_queue.add(KEY)

    assert controller._process_next_service_item() is True

    assert controller.service_queue.num_requeues(KEY) == 0


def test_service_worker_honors_retry_error_delay() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    balancer = FakeLoadBalancer()
    balancer.ensure_error = RetryError("rate limited", retry_after=7)
    controller, *_ = make_controller(balancer=balancer, services=[service])
    controller.service_queue.add(KEY)

    with (
        patch.object(controller.service_queue, "add_after") as add_after,
        patch.object(controller.service_queue, "add_rate_limited") as add_rate_limited,
    ):
        assert controller._process_next_service_item() is True

    add_after.assert_called_once_with(KEY, 7)
    add_rate_limited.assert_not_called()


def test_service_worker_backs_off_on_generic_error() -> None:
    service = make_service(load_balancer_id="lb-1", finalizers=[SERVICE_FINALIZER])
    balancer = FakeLoadBalancer()
    balancer.ensure_error = RuntimeError("boom")
    controller, *_ = make_controller(balancer=balancer, services=[service])
    controller.service_queue.add(KEY)

    assert controller._process_next_service_item() is True

    assert controller.service_queue.num_requeues(KEY) == 1


def test_service_worker_stops_on_shutdown() -> None:
    controller, *_ = make_controller()
    controller.service_queue.shut_down()

    assert controller._process_next_service_item() is False


def test_node_worker_requeues_failed_services_on_service_queue() -> None:
    service = make_service(load_balancer_id="lb-1")
    balancer = FakeLoadBalancer()
    balancer.update_error = RuntimeError("backend update failed")
    controller, *_ = make_controller(balancer=balancer, nodes=[make_node("n1")])
    controller.cache.set(KEY, CachedService(state=service))
    controller.node_queue.add("n1")

    assert controller._process_next_node_item(workers=2) is True

    assert controller.service_queue.get() == (KEY, False)


# ---------------------------------------------------------------------------
# Event intake
# ---------------------------------------------------------------------------


def test_informer_events_reach_the_right_queue() -> None:
    controller, *_ = make_controller()

    controller.service_informer.handle_watch_event("ADDED", make_service())
    controller.service_informer.handle_watch_event("ADDED", make_service(name="internal", service_type="ClusterIP"))
    controller.node_informer.handle_watch_event("ADDED", make_node("n1"))

    assert len(controller.service_queue) == 1
    assert controller.service_queue.get() == (KEY, False)
    assert controller.node_queue.get() == ("n1", False)


def test_service_type_change_emits_normal_event() -> None:
    controller, _, recorder, _, _ = make_controller()

    controller.handle_event(
        ServiceUpdated(make_service(load_balancer_id="lb-1"), make_service(service_type="ClusterIP"))
    )

    assert recorder.events == [("Normal", "Type", "LoadBalancer -> ClusterIP")]
    assert controller.service_queue.get() == (KEY, False)


def test_silent_service_change_is_queued_without_event() -> None:
    old = make_service(load_balancer_id="lb-1")
    new = make_service(load_balancer_id="lb-2")
    controller, _, recorder, _, _ = make_controller()

    controller.handle_event(ServiceUpdated(old, new))

    assert recorder.events == []
    assert controller.service_queue.get() == (KEY, False)


def test_service_resync_emits_no_event() -> None:
    service = make_service()
    controller, _, recorder, _, _ = make_controller(services=[service])

    controller.handle_event(ServiceUpdated(service, service))

    assert recorder.events == []
    assert controller.service_queue.get() == (KEY, False)


def test_periodic_resync_requeues_load_balancer_services() -> None:
    controller, *_ = make_controller(services=[make_service()])

    controller.service_informer.resync()

    assert controller.service_queue.get() == (KEY, False)


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


def test_run_starts_workers_and_drains_on_stop() -> None:
    controller, _, recorder, _, _ = make_controller()
    for informer in controller.informers:
        informer.has_synced.set()
    stop = threading.Event()

    thread = threading.Thread(target=controller.run, args=(stop, 2))
    thread.start()
    assert controller.ready.wait(timeout=2)

    stop.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert not controller.ready.is_set()
    assert controller.service_queue.shutting_down
    assert recorder.started and recorder.stopped


def test_run_returns_when_stopped_before_caches_sync() -> None:
    controller, _, recorder, _, _ = make_controller()
    stop = threading.Event()
    stop.set()

    controller.run(stop, workers=1)

    assert not controller.ready.is_set()
    assert recorder.stopped


def test_run_refuses_unsupported_cluster() -> None:
    controller, *_ = make_controller(cluster_info={"clusterId": "c-1", "cni": "calico"})
    for informer in controller.informers:
        informer.has_synced.set()

    with pytest.raises(UnsupportedClusterError):
        controller.run(threading.Event(), workers=1)
    assert controller.service_queue.shutting_down


def test_delete_branch_reports_delete_operation() -> None:
    service = make_service(service_type="ClusterIP", finalizers=[SERVICE_FINALIZER])
    controller, *_ = make_controller(services=[service])

    operation = controller._sync_load_balancer_if_needed("kubernetes", service, KEY, [])

    assert operation is LoadBalancerOperation.DELETE
