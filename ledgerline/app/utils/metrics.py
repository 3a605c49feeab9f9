"""Prometheus metrics for the isolation layer."""

from prometheus_client import Counter

invariant_violations_total = Counter(
    "invariant_violations_total",
    "Total runtime invariant violations",
    ["code"],
)

tenant_isolation_violations_total = Counter(
    "tenant_isolation_violations_total",
    "Tenant isolation violations detected by the application guard",
    ["table", "reason"],
)

rls_bypass_activations_total = Counter(
    "rls_bypass_activations_total",
    "Break-glass row isolation bypass activations",
)

pool_scope_resets_total = Counter(
    "pool_scope_resets_total",
    "Session scope resets performed on pooled connections",
    ["reason"],
)


class PrometheusIsolationMetrics:
    """Prometheus-based isolation metrics implementation."""

    def inc_violation(self, code: str) -> None:
        invariant_violations_total.labels(code=code).inc()

    def inc_isolation_violation(self, table: str, reason: str) -> None:
        tenant_isolation_violations_total.labels(table=table, reason=reason).inc()

    def inc_bypass(self) -> None:
        rls_bypass_activations_total.inc()

    def inc_pool_reset(self, reason: str) -> None:
        pool_scope_resets_total.labels(reason=reason).inc()


metrics = PrometheusIsolationMetrics()
