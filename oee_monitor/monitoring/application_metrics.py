# OEE Monitor - Application Metrics
# Prometheus metrics for the hybrid persistence gateway and the OEE rollup

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger()

CIRCUIT_STATE_VALUES = {"closed": 0, "open": 1, "half_open": 2}


class ApplicationMetrics:
    """
    Prometheus metrics collection for the OEE Monitor.
    Each instance owns its registry so tests can assert on fresh counters.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize application metrics collector."""
        self.registry = registry or CollectorRegistry()
        self._initialize_prometheus_metrics()

    def _initialize_prometheus_metrics(self):
        """Initialize Prometheus metrics."""
        # Gateway Metrics
        self.primary_failures_total = Counter(
            'oee_primary_failures_total',
            'Primary store calls that failed or timed out',
            ['collection', 'operation'],
            registry=self.registry
        )

        self.fallback_calls_total = Counter(
            'oee_fallback_calls_total',
            'Calls served by the fallback store',
            ['collection', 'operation'],
            registry=self.registry
        )

        self.terminal_failures_total = Counter(
            'oee_terminal_failures_total',
            'Calls that failed on both stores',
            ['collection', 'operation'],
            registry=self.registry
        )

        self.replication_failures_total = Counter(
            'oee_replication_failures_total',
            'Primary writes that could not be mirrored to the fallback store',
            ['collection', 'operation'],
            registry=self.registry
        )

        self.circuit_state = Gauge(
            'oee_circuit_state',
            'Primary store circuit state (0=closed, 1=open, 2=half_open)',
            registry=self.registry
        )

        self.primary_call_duration = Histogram(
            'oee_primary_call_duration_seconds',
            'Primary store call duration in seconds',
            ['operation'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=self.registry
        )

        # Production Metrics
        self.machine_oee = Gauge(
            'oee_machine_oee',
            'Rolling OEE per machine',
            ['machine_id'],
            registry=self.registry
        )

        self.production_records_written_total = Counter(
            'oee_production_records_written_total',
            'Production record writes',
            ['operation'],
            registry=self.registry
        )

    def record_circuit_state(self, state: str) -> None:
        self.circuit_state.set(CIRCUIT_STATE_VALUES.get(state, 0))

    def value(self, name: str, labels: Optional[dict] = None) -> float:
        """Current sample value, 0.0 when the series has not been touched."""
        sample = self.registry.get_sample_value(name, labels or {})
        return sample or 0.0

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)


# Global metrics instance
application_metrics = ApplicationMetrics()
