import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.webhook_events = None
            self.webhook_errors = None
            self.stripe_circuit_open = None
            self.payment_transitions = None
            self.unmatched_payment_events = None
            self.watermark_results = None
            self.download_decisions = None
            self.stage_transitions = None
            self.auth_failures = None
            self.rate_limit_blocks = None
            self.http_5xx = None
            self.http_latency = None
            self.circuit_state = None
            return

        self.webhook_events = Counter(
            "webhook_events_total",
            "Webhook deliveries by acknowledged outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook rejections and failures by type (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.stripe_circuit_open = Counter(
            "stripe_circuit_open_total",
            "Stripe calls rejected by an open circuit breaker.",
            registry=self.registry,
        )
        self.payment_transitions = Counter(
            "payment_transitions_total",
            "Project payment status transitions by target status and provider.",
            ["status", "provider"],
            registry=self.registry,
        )
        self.unmatched_payment_events = Counter(
            "unmatched_payment_events_total",
            "Payment events that could not be correlated to a project.",
            ["event_type"],
            registry=self.registry,
        )
        self.watermark_results = Counter(
            "watermark_results_total",
            "Watermark pipeline outcomes by status.",
            ["status"],
            registry=self.registry,
        )
        self.download_decisions = Counter(
            "download_decisions_total",
            "Artifact gating decisions by affordance and result.",
            ["action", "result"],
            registry=self.registry,
        )
        self.stage_transitions = Counter(
            "portal_stage_transitions_total",
            "Delivery stage transitions by target stage.",
            ["stage"],
            registry=self.registry,
        )
        self.auth_failures = Counter(
            "auth_failures_total",
            "Rejected authentication attempts by caller kind and reason.",
            ["kind", "reason"],
            registry=self.registry,
        )
        self.rate_limit_blocks = Counter(
            "rate_limit_blocks_total",
            "Requests rejected by the rate limiter by path bucket.",
            ["bucket"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_webhook(self, outcome: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(outcome=outcome or "unknown").inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        self.webhook_errors.labels(type=error_type or "unknown").inc()

    def record_stripe_circuit_open(self) -> None:
        if not self.enabled or self.stripe_circuit_open is None:
            return
        self.stripe_circuit_open.inc()

    def record_payment_transition(self, status: str, provider: str | None) -> None:
        if not self.enabled or self.payment_transitions is None:
            return
        self.payment_transitions.labels(status=status, provider=provider or "unknown").inc()

    def record_unmatched_event(self, event_type: str) -> None:
        if not self.enabled or self.unmatched_payment_events is None:
            return
        self.unmatched_payment_events.labels(event_type=event_type or "unknown").inc()

    def record_watermark(self, status: str) -> None:
        if not self.enabled or self.watermark_results is None:
            return
        self.watermark_results.labels(status=status).inc()

    def record_download_decision(self, action: str, result: str) -> None:
        if not self.enabled or self.download_decisions is None:
            return
        self.download_decisions.labels(action=action, result=result).inc()

    def record_stage_transition(self, stage: str) -> None:
        if not self.enabled or self.stage_transitions is None:
            return
        self.stage_transitions.labels(stage=stage).inc()

    def record_auth_failure(self, kind: str, reason: str) -> None:
        if not self.enabled or self.auth_failures is None:
            return
        self.auth_failures.labels(kind=kind, reason=reason).inc()

    def record_rate_limit_block(self, bucket: str) -> None:
        if not self.enabled or self.rate_limit_blocks is None:
            return
        self.rate_limit_blocks.labels(bucket=bucket).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
