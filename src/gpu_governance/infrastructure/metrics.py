"""Prometheus metrics endpoint for the governance engine."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, start_http_server

from gpu_governance.adapters.outbound.metrics import PrometheusExporter

_metrics: PrometheusExporter | None = None


def setup_metrics(port: int | None = None, registry: CollectorRegistry | None = None) -> PrometheusExporter:
    """Create the process-wide exporter and optionally serve it over HTTP.

    Args:
        port: Port for the /metrics endpoint; None skips the HTTP server.
        registry: Registry to export into; a private one when None.
    """
    global _metrics
    _metrics = PrometheusExporter(registry)
    if port is not None:
        start_http_server(port, registry=_metrics.registry)
    return _metrics


def get_metrics() -> PrometheusExporter:
    global _metrics
    if _metrics is None:
        _metrics = PrometheusExporter()
    return _metrics


def reset_metrics() -> None:
    global _metrics
    _metrics = None
