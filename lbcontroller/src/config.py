from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

STABLE_LOAD_BALANCER_NODE_SET = "StableLoadBalancerNodeSet"

# Known feature gates and their defaults.
DEFAULT_FEATURE_GATES: dict[str, bool] = {
    STABLE_LOAD_BALANCER_NODE_SET: True,
}


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class FeatureGates:
    """Resolved feature gate values; unknown gates are rejected at parse time."""

    overrides: Mapping[str, bool] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str | None) -> FeatureGates:
        """Parse ``Name=true,Other=false`` into gate overrides."""
        overrides: dict[str, bool] = {}
        for part in (raw or "").split(","):
            part = part.strip()
            if not part:
                continue
            name, separator, value = part.partition("=")
            name = name.strip()
            value = value.strip().lower()
            if not separator or value not in {"true", "false"}:
                raise ConfigError(f"FEATURE_GATES entry must be Name=true|false, got: {part!r}")
            if name not in DEFAULT_FEATURE_GATES:
                raise ConfigError(f"unrecognized feature gate: {name}")
            overrides[name] = value == "true"
        return cls(overrides=overrides)

    def enabled(self, name: str) -> bool:
        if name in self.overrides:
            return self.overrides[name]
        if name not in DEFAULT_FEATURE_GATES:
            raise ConfigError(f"unrecognized feature gate: {name}")
        return DEFAULT_FEATURE_GATES[name]


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        cloud_provider: Name of the registered cloud provider to load.
        cluster_name: Cluster identifier passed to the provider when no
            cluster-info ConfigMap is configured.
        cluster_info_namespace / cluster_info_name: ConfigMap holding
            ``clusterId`` (read every pass) and ``cni`` (checked at startup).
        concurrent_service_syncs: Service workers, also the node resync fan-out.
        unsupported_cnis: CNI names that abort startup.
    """

    cloud_provider: str
    cluster_name: str = "kubernetes"
    cluster_info_namespace: str | None = "kube-system"
    cluster_info_name: str | None = "icks-cluster-info"
    concurrent_service_syncs: int = 1
    feature_gates: FeatureGates = field(default_factory=FeatureGates)
    unsupported_cnis: frozenset[str] = frozenset({"calico"})
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _parse_cluster_info(raw: str) -> tuple[str | None, str | None]:
    raw = raw.strip()
    if not raw:
        return None, None
    namespace, separator, name = raw.partition("/")
    if not separator or not namespace.strip() or not name.strip():
        raise ConfigError(f"CLUSTER_INFO_CONFIGMAP must be namespace/name, got: {raw!r}")
    return namespace.strip(), name.strip()


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``CLOUD_PROVIDER``: required provider name.
        ``CLUSTER_NAME``: ``kubernetes``.
        ``CLUSTER_INFO_CONFIGMAP``: ``kube-system/icks-cluster-info``; empty disables.
        ``CONCURRENT_SERVICE_SYNCS``: ``1``.
        ``FEATURE_GATES``: e.g. ``StableLoadBalancerNodeSet=false``.
        ``UNSUPPORTED_CNIS``: ``calico``.
        ``HEALTH_PORT``: ``8080``.
        ``LOG_LEVEL``: ``INFO``.
    """
    values = env if env is not None else os.environ

    cloud_provider = (values.get("CLOUD_PROVIDER") or "").strip()
    if not cloud_provider:
        raise ConfigError("CLOUD_PROVIDER is not set; services of type LoadBalancer cannot be reconciled")

    cluster_name = (values.get("CLUSTER_NAME") or "kubernetes").strip()
    if not cluster_name:
        raise ConfigError("CLUSTER_NAME must be a non-empty string")

    cluster_info_namespace, cluster_info_name = _parse_cluster_info(
        values.get("CLUSTER_INFO_CONFIGMAP", "kube-system/icks-cluster-info")
    )

    unsupported_cnis = frozenset(
        part.strip().lower()
        for part in values.get("UNSUPPORTED_CNIS", "calico").split(",")
        if part.strip()
    )

    return ControllerConfig(
        cloud_provider=cloud_provider,
        cluster_name=cluster_name,
        cluster_info_namespace=cluster_info_namespace,
        cluster_info_name=cluster_info_name,
        concurrent_service_syncs=env_int(values, "CONCURRENT_SERVICE_SYNCS", 1, minimum=1),
        feature_gates=FeatureGates.parse(values.get("FEATURE_GATES")),
        unsupported_cnis=unsupported_cnis,
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=(values.get("LOG_LEVEL") or "INFO").upper(),
    )
