from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping
from urllib.parse import urlparse, urlunparse

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

LOGGER = logging.getLogger(__name__)

_TRACING_CONFIGURED = False
_TRACER_NAME = "llm-gateway"


def configure_tracing(service_name: str, endpoint: str | None = None) -> bool:
    """Install an OTLP exporter once per process.

    Without an endpoint nothing is installed and spans go to the API's default
    non-recording tracer.
    """
    global _TRACING_CONFIGURED
    if _TRACING_CONFIGURED:
        return True
    resolved_endpoint = _normalize_otlp_traces_endpoint(endpoint)
    if not resolved_endpoint:
        LOGGER.info("tracing_disabled", extra={"service": service_name})
        return False
    try:
        resource = Resource.create({"service.name": service_name})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=resolved_endpoint)))
        trace.set_tracer_provider(provider)
        _TRACING_CONFIGURED = True
        return True
    except Exception:  # noqa: BLE001
        LOGGER.exception("tracing_configure_failed", extra={"service": service_name})
        return False


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def start_span(
    name: str,
    *,
    attributes: Mapping[str, Any] | None = None,
    tracer_name: str = _TRACER_NAME,
) -> Iterator[trace.Span]:
    tracer = get_tracer(tracer_name)
    with tracer.start_as_current_span(name) as span:
        set_span_attributes(span, attributes)
        try:
            yield span
        except Exception as exc:  # noqa: BLE001
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def set_span_attributes(span: trace.Span, attributes: Mapping[str, Any] | None) -> None:
    if not attributes:
        return
    for key, value in attributes.items():
        if not isinstance(key, str) or not key:
            continue
        normalized = _normalize_attribute_value(value)
        if normalized is None:
            continue
        span.set_attribute(key, normalized)


def _normalize_attribute_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        normalized_list: list[Any] = []
        for item in value:
            normalized_item = _normalize_attribute_value(item)
            if isinstance(normalized_item, (bool, int, float, str)):
                normalized_list.append(normalized_item)
        return normalized_list or None
    return str(value)


def _normalize_otlp_traces_endpoint(endpoint: str | None) -> str | None:
    if endpoint is None:
        return None
    raw = endpoint.strip()
    if not raw:
        return None
    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.netloc:
        return raw
    if parsed.path in {"", "/"}:
        path = "/v1/traces"
    elif parsed.path.endswith("/v1/traces"):
        path = parsed.path
    else:
        path = parsed.path.rstrip("/") + "/v1/traces"
    return urlunparse(parsed._replace(path=path))
