"""OpenTelemetry setup and span helpers.

Each FastAPI app registers a tracer provider exporting over OTLP/HTTP. The
service layer opens one span per engine operation (`visits.submit`,
`badges.claim`, ...) so ledger and content-store latency shows up under the
request that caused it.
"""

from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from pogpp.common.config import settings
from pogpp.common.errors import PogppError

tracer = trace.get_tracer("pogpp")


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider; spans are dropped when no endpoint is set."""

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics,health")


@contextmanager
def span(name: str, **attributes: Any) -> Iterator[Span]:
    """Open a span tagged with `pogpp.*` attributes.

    Typed engine outcomes (duplicates, conflicts) are recorded as the
    `pogpp.outcome` attribute rather than as span errors; anything else marks
    the span failed.
    """

    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(f"pogpp.{key}", value)
        try:
            yield current
        except PogppError as exc:
            current.set_attribute("pogpp.outcome", exc.code)
            if exc.status_code >= 500:
                current.set_status(Status(StatusCode.ERROR, exc.message))
            raise
        except Exception as exc:
            current.record_exception(exc)
            current.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
