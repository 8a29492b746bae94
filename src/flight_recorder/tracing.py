"""OpenTelemetry tracing around checkpoint, scan and restore operations."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

from flight_recorder.config import TracingConfig

logger = logging.getLogger(__name__)


class NoOpSpan:
	"""Span stand-in used while tracing is disabled."""

	def set_attribute(self, key: str, value: Any) -> None:
		pass

	def record_exception(self, exception: BaseException) -> None:
		pass


class RecorderTracer:
	"""Wraps recorder operations in spans when tracing is enabled.

	With tracing disabled every ``start_*`` method yields a NoOpSpan.
	"""

	def __init__(self, config: TracingConfig | None = None) -> None:
		self._config = config or TracingConfig()
		self._tracer: Any = None

		if not self._config.enabled or self._config.exporter == "none":
			return

		resource = Resource.create({"service.name": self._config.service_name})
		provider = TracerProvider(resource=resource)

		if self._config.exporter == "otlp":
			try:
				from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
				provider.add_span_processor(
					SimpleSpanProcessor(OTLPSpanExporter(endpoint=self._config.otlp_endpoint))
				)
			except ImportError:
				logger.warning(
					"OTLP exporter not available. Install flight-recorder[otlp]"
				)
				provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
		else:
			provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

		self._tracer = provider.get_tracer("flight-recorder")

	@property
	def active(self) -> bool:
		return self._tracer is not None

	@contextmanager
	def _span(self, name: str, attributes: dict[str, Any]) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span(name) as span:
			for key, value in attributes.items():
				if value is not None:
					span.set_attribute(key, value)
			yield span

	def start_checkpoint_span(self, mission_id: str, trigger: str) -> Any:
		return self._span("checkpoint.create", {"mission.id": mission_id, "checkpoint.trigger": trigger})

	def start_scan_span(self, threshold_ms: int) -> Any:
		return self._span("recovery.scan", {"recovery.threshold_ms": threshold_ms})

	def start_restore_span(self, checkpoint_id: str, dry_run: bool) -> Any:
		return self._span("recovery.restore", {"checkpoint.id": checkpoint_id, "restore.dry_run": dry_run})


def get_current_trace_context() -> tuple[str, str]:
	"""Return (trace_id, span_id) of the current span, or ("", "") if none."""
	ctx = trace.get_current_span().get_span_context()
	if ctx is None or ctx.trace_id == 0:
		return ("", "")
	return (
		format(ctx.trace_id, "032x"),
		format(ctx.span_id, "016x"),
	)
