"""
Metrics for the timeline store and playback.

Collectors record into an in-process registry; the Prometheus exporter
serves the registry over HTTP for scraping.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict
from collections import defaultdict

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Type of metric."""
    COUNTER = "counter"      # Monotonically increasing
    GAUGE = "gauge"          # Can go up and down
    HISTOGRAM = "histogram"  # Distribution of values


@dataclass
class MetricValue:
    """A single metric value with labels."""
    name: str
    value: float
    metric_type: MetricType
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[float] = None
    help_text: str = ""
    unit: str = ""


class MetricsRegistry:
    """
    Central registry for all metrics.

    Collectors register metrics here, exporters read from here.
    """

    def __init__(self):
        self._metrics: Dict[str, MetricValue] = {}
        self._counters: Dict[str, float] = defaultdict(float)
        self._histograms: Dict[str, list] = defaultdict(list)

    def gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        help_text: str = "",
        unit: str = "",
    ):
        """Set a gauge metric (can go up or down)."""
        key = self._make_key(name, labels)
        self._metrics[key] = MetricValue(
            name=name,
            value=value,
            metric_type=MetricType.GAUGE,
            labels=labels or {},
            timestamp=time.time(),
            help_text=help_text,
            unit=unit,
        )

    def counter(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
        help_text: str = "",
    ):
        """Increment a counter metric (monotonically increasing)."""
        key = self._make_key(name, labels)
        self._counters[key] += value
        self._metrics[key] = MetricValue(
            name=name,
            value=self._counters[key],
            metric_type=MetricType.COUNTER,
            labels=labels or {},
            timestamp=time.time(),
            help_text=help_text,
        )

    def histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        help_text: str = "",
    ):
        """Record a histogram value."""
        key = self._make_key(name, labels)
        self._histograms[key].append(value)

        # Keep last 1000 values for summary stats
        if len(self._histograms[key]) > 1000:
            self._histograms[key] = self._histograms[key][-1000:]

        values = self._histograms[key]
        self._metrics[key] = MetricValue(
            name=name,
            value=sum(values) / len(values),  # Mean for now
            metric_type=MetricType.HISTOGRAM,
            labels=labels or {},
            timestamp=time.time(),
            help_text=help_text,
        )

    def _make_key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        """Create a unique key for a metric with labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[MetricValue]:
        return self._metrics.get(self._make_key(name, labels))

    def get_all_metrics(self) -> list[MetricValue]:
        """Get all registered metrics."""
        return list(self._metrics.values())

    def clear(self):
        """Clear all metrics (useful for testing)."""
        self._metrics.clear()
        self._counters.clear()
        self._histograms.clear()


# Global registry
_registry = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    """Get the global metrics registry."""
    return _registry


class MetricsExporter(ABC):
    """Abstract base class for metrics exporters."""

    @abstractmethod
    async def start(self):
        """Start the exporter."""
        pass

    @abstractmethod
    async def stop(self):
        """Stop the exporter."""
        pass


class PrometheusExporter(MetricsExporter):
    """
    Prometheus metrics exporter.

    Exposes metrics on an HTTP endpoint for Prometheus to scrape.

    Metrics format:
    # HELP code_timeline_events_appended_total Events appended to the log
    # TYPE code_timeline_events_appended_total counter
    code_timeline_events_appended_total{kind="edit"} 42
    """

    def __init__(
        self,
        port: int = 9100,
        host: str = "0.0.0.0",
        prefix: str = "code_timeline",
        registry: Optional[MetricsRegistry] = None,
    ):
        self.port = port
        self.host = host
        self.prefix = prefix
        self.registry = registry or get_registry()
        self._runner = None

    async def start(self):
        """Start the Prometheus HTTP server."""
        from aiohttp import web

        app = web.Application()
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/health", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Prometheus exporter started on http://{self.host}:{self.port}/metrics")

    async def stop(self):
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Prometheus exporter stopped")

    async def _handle_metrics(self, request):
        from aiohttp import web

        output = self.format_metrics(self.registry.get_all_metrics())
        return web.Response(
            text=output,
            content_type="text/plain",
            charset="utf-8",
        )

    async def _handle_health(self, request):
        from aiohttp import web
        return web.json_response({"status": "ok"})

    def format_metrics(self, metrics: list[MetricValue]) -> str:
        """Format metrics in Prometheus text format."""
        lines = []
        seen_names = set()

        for metric in metrics:
            full_name = f"{self.prefix}_{metric.name}"

            # HELP and TYPE only once per metric name
            if full_name not in seen_names:
                seen_names.add(full_name)
                if metric.help_text:
                    lines.append(f"# HELP {full_name} {metric.help_text}")
                lines.append(f"# TYPE {full_name} {metric.metric_type.value}")

            if metric.labels:
                label_str = ",".join(
                    f'{k}="{v}"' for k, v in metric.labels.items()
                )
                lines.append(f"{full_name}{{{label_str}}} {metric.value}")
            else:
                lines.append(f"{full_name} {metric.value}")

        return "\n".join(lines) + "\n"


class TimelineMetricsCollector:
    """Records store, reconstruction and playback activity."""

    def __init__(self, registry: Optional[MetricsRegistry] = None, session_id: Optional[int] = None):
        self.registry = registry or get_registry()
        self._labels = {"session_id": str(session_id)} if session_id is not None else {}

    def increment_events(self, kind: str):
        self.registry.counter(
            "events_appended_total",
            1,
            {**self._labels, "kind": kind},
            help_text="Events appended to the log",
        )

    def increment_checkpoints(self):
        self.registry.counter(
            "checkpoints_total",
            1,
            self._labels,
            help_text="Full content checkpoints stored",
        )

    def increment_diffs(self):
        self.registry.counter(
            "diffs_total",
            1,
            self._labels,
            help_text="Incremental diffs stored",
        )

    def increment_rejected(self, reason: str):
        self.registry.counter(
            "writes_rejected_total",
            1,
            {**self._labels, "reason": reason},
            help_text="Writes refused by the store",
        )

    def update_stored_bytes(self, used: int):
        self.registry.gauge(
            "stored_bytes",
            used,
            self._labels,
            help_text="Bytes accounted against the storage ceiling",
            unit="bytes",
        )

    def update_reconstruction_time(self, time_ms: float, diffs_applied: int):
        self.registry.histogram(
            "reconstruction_time_ms",
            time_ms,
            self._labels,
            help_text="Time to rebuild a file's content in milliseconds",
        )
        self.registry.histogram(
            "reconstruction_diffs_applied",
            diffs_applied,
            self._labels,
            help_text="Diffs applied per reconstruction",
        )

    def increment_reconstruction_failures(self):
        self.registry.counter(
            "reconstruction_failures_total",
            1,
            self._labels,
            help_text="Reconstructions that failed to apply a diff",
        )

    def increment_playback_events(self):
        self.registry.counter(
            "playback_events_emitted_total",
            1,
            self._labels,
            help_text="Events emitted by playback sessions",
        )


def create_exporter_from_config(config: dict, registry: Optional[MetricsRegistry] = None) -> Optional[MetricsExporter]:
    """
    Create a metrics exporter from configuration.

    Config example:
    {
        "type": "prometheus",
        "port": 9100,
        "host": "0.0.0.0",
    }
    """
    exporter_type = config.get("type", "").lower()

    if exporter_type == "prometheus":
        return PrometheusExporter(
            port=config.get("port", 9100),
            host=config.get("host", "0.0.0.0"),
            prefix=config.get("prefix", "code_timeline"),
            registry=registry,
        )

    if exporter_type:
        logger.warning(f"Unknown metrics exporter type: {exporter_type}")
    return None
