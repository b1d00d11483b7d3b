"""
Prometheus metrics collection for Mems.

This module provides:
- Application metrics (requests, errors, response times)
- Media pipeline metrics (compression runs, tier attempts, engine state)
- Upload metrics (committed and rejected uploads, storage operations)
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Enum,
    Histogram,
    Info,
    generate_latest,
)

from ..core.config import settings


class MetricsCollector:
    """Central metrics collector for the application."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics collector."""
        self.registry = registry or CollectorRegistry()
        self._setup_metrics()

    def _setup_metrics(self):
        """Initialize all application metrics."""

        # Application info
        self.app_info = Info(
            'mems_info',
            'Application information',
            registry=self.registry
        )
        self.app_info.info({
            'version': settings.app.version,
            'environment': settings.app.environment,
            'name': settings.app.app_name
        })

        # HTTP request metrics
        self.http_requests_total = Counter(
            'mems_http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status_code'],
            registry=self.registry
        )

        self.http_request_duration = Histogram(
            'mems_http_request_duration_seconds',
            'HTTP request duration in seconds',
            ['method', 'endpoint'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=self.registry
        )

        # Compression pipeline metrics
        self.compressions_total = Counter(
            'mems_compressions_total',
            'Total compression runs',
            ['media_kind', 'strategy', 'outcome'],
            registry=self.registry
        )

        self.compression_tier_attempts_total = Counter(
            'mems_compression_tier_attempts_total',
            'Compression tier attempts',
            ['media_kind', 'tier', 'status'],
            registry=self.registry
        )

        self.compression_duration = Histogram(
            'mems_compression_duration_seconds',
            'Compression duration in seconds',
            ['media_kind', 'strategy'],
            buckets=[0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 180],
            registry=self.registry
        )

        self.compression_ratio = Histogram(
            'mems_compression_ratio',
            'Output size divided by input size',
            ['media_kind'],
            buckets=[0.01, 0.05, 0.1, 0.2, 0.4, 0.6, 0.8, 1.0],
            registry=self.registry
        )

        self.transcode_engine_state = Enum(
            'mems_transcode_engine_state',
            'Transcoding engine lifecycle state',
            states=['uninitialized', 'initializing', 'ready', 'failed'],
            registry=self.registry
        )

        # Upload metrics
        self.uploads_committed_total = Counter(
            'mems_uploads_committed_total',
            'Uploads committed to a mem',
            ['format'],
            registry=self.registry
        )

        self.uploads_rejected_total = Counter(
            'mems_uploads_rejected_total',
            'Uploads rejected by server-side validation',
            ['reason'],
            registry=self.registry
        )

        self.media_file_size = Histogram(
            'mems_media_file_size_bytes',
            'Committed media file sizes in bytes',
            ['format'],
            buckets=[10240, 51200, 102400, 262144, 524288, 1048576, 5242880],
            registry=self.registry
        )

        # Storage metrics
        self.storage_operations_total = Counter(
            'mems_storage_operations_total',
            'Blob storage operations',
            ['operation', 'status'],
            registry=self.registry
        )

        self.storage_operation_duration = Histogram(
            'mems_storage_operation_duration_seconds',
            'Blob storage operation duration in seconds',
            ['operation'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
            registry=self.registry
        )

        # Engagement metrics
        self.reactions_toggled_total = Counter(
            'mems_reactions_toggled_total',
            'Reaction toggles',
            ['emoji', 'active'],
            registry=self.registry
        )

    def track_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Track HTTP request metrics."""
        self.http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self.http_request_duration.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def track_compression(self, media_kind: str, strategy: str, outcome: str,
                          duration: float, input_size: int = 0, output_size: int = 0):
        """Track a finished compression run."""
        self.compressions_total.labels(
            media_kind=media_kind,
            strategy=strategy,
            outcome=outcome
        ).inc()

        self.compression_duration.labels(
            media_kind=media_kind,
            strategy=strategy
        ).observe(duration)

        if input_size and output_size:
            self.compression_ratio.labels(media_kind=media_kind).observe(output_size / input_size)

    def track_tier_attempt(self, media_kind: str, tier: str, status: str):
        """Track a single tier attempt."""
        self.compression_tier_attempts_total.labels(
            media_kind=media_kind,
            tier=tier,
            status=status
        ).inc()

    def update_engine_state(self, state: str):
        """Record the transcoding engine lifecycle state."""
        self.transcode_engine_state.state(state)

    def track_upload_committed(self, media_format: str, file_size: int):
        """Track a committed upload."""
        self.uploads_committed_total.labels(format=media_format).inc()
        self.media_file_size.labels(format=media_format).observe(file_size)

    def track_upload_rejected(self, reason: str):
        """Track an upload rejected at commit time."""
        self.uploads_rejected_total.labels(reason=reason).inc()

    def track_storage_operation(self, operation: str, success: bool, duration: float):
        """Track a blob storage operation."""
        self.storage_operations_total.labels(
            operation=operation,
            status="success" if success else "error"
        ).inc()
        self.storage_operation_duration.labels(operation=operation).observe(duration)

    def track_reaction(self, emoji: str, active: bool):
        """Track a reaction toggle."""
        self.reactions_toggled_total.labels(emoji=emoji, active=str(active).lower()).inc()

    def get_metrics(self) -> str:
        """Get all metrics in Prometheus format."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector
metrics = MetricsCollector()


@contextmanager
def track_storage_time(operation: str):
    """Context manager to time a storage operation."""
    start_time = time.time()
    success = True
    try:
        yield
    except Exception:
        success = False
        raise
    finally:
        metrics.track_storage_operation(operation, success, time.time() - start_time)


def get_metrics_response():
    """Get metrics response for HTTP endpoint."""
    content = metrics.get_metrics()
    headers = {'Content-Type': CONTENT_TYPE_LATEST}
    return content, headers
