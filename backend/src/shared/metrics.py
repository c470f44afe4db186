from opentelemetry import metrics
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from .config import settings


def setup_metrics(app_name: str) -> MeterProvider:
    """Configure OpenTelemetry metrics.

    The Prometheus reader is always registered. The console reader is only added
    outside production, where periodic dumps to stdout are useful for debugging.
    """
    resource = Resource.create(
        {"service.name": app_name, "deployment.environment": settings.APP_ENV}
    )

    readers = [PrometheusMetricReader()]
    if settings.APP_ENV != "production":
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)
    return provider
