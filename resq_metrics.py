"""
RapidResQ Metrics
=================
Prometheus metrics for the command processor and a sink that publishes
ConcurrencyStats snapshots as gauges.
"""

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, generate_latest

if TYPE_CHECKING:
    from resq_concurrency import ConcurrencyStats

# ============================================
# Prometheus Metrics
# ============================================
COMMANDS_PARSED = Counter(
    "resq_commands_parsed_total", "Commands run through the parser", ["command_type", "outcome"]
)
PARSE_LATENCY = Histogram("resq_parse_duration_seconds", "Parse latency")
REQUESTS_TOTAL = Gauge("resq_requests_total", "Requests seen by the coordinator")
REQUESTS_IN_FLIGHT = Gauge("resq_requests_in_flight", "Requests currently being processed")
CONCURRENT_PEAK = Gauge("resq_concurrent_peak", "Highest number of simultaneous requests")
LOCK_CONTENTIONS = Gauge("resq_lock_contentions", "Parser lock acquisitions that had to wait")
QUEUE_OVERFLOWS = Gauge("resq_queue_overflows", "Emergency enqueue attempts rejected as full")
QUEUE_LENGTH = Gauge("resq_queue_length", "Emergencies waiting in the queue")
RACES_RESOLVED = Gauge("resq_counter_races_resolved", "Compare-and-swap retries on the ID counter")


class PrometheusStatsSink:
    """Metrics sink: mirrors a ConcurrencyStats snapshot into gauges."""

    def publish(self, stats: "ConcurrencyStats") -> None:
        REQUESTS_TOTAL.set(stats.total_requests)
        REQUESTS_IN_FLIGHT.set(stats.current_active_requests)
        CONCURRENT_PEAK.set(stats.concurrent_peak)
        LOCK_CONTENTIONS.set(stats.lock_contentions)
        QUEUE_OVERFLOWS.set(stats.queue_overflows)
        QUEUE_LENGTH.set(stats.queue_length)
        RACES_RESOLVED.set(stats.race_conditions)


def render_metrics() -> bytes:
    return generate_latest()
