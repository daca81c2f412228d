from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Info


class GatewayMetrics:
    """Prometheus collectors for one app instance, kept in their own registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.app_info = Info("gateway_app", "Application Info", registry=self.registry)
        self.app_info.info({"app_name": service_name})
        self.outcomes = Counter(
            "gateway_proxy_outcomes",
            "Pipeline outcomes by class and status code",
            ["outcome", "status"],
            registry=self.registry,
        )

    def record_outcome(self, outcome: str, status_code: int) -> None:
        self.outcomes.labels(outcome=outcome, status=str(status_code)).inc()
