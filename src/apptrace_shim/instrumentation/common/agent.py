import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry.context import Context, attach, detach, get_current
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import SpanKind, get_tracer, set_span_in_context

from apptrace_shim.instrumentation.common.config import ShimConfig, load_config
from apptrace_shim.instrumentation.common.constants import (
    SHIM_INSTRUMENTOR,
    TRANSACTION_TYPE_BG,
    DIAGNOSTIC_MISUSE,
)
from apptrace_shim.instrumentation.common.context import get_current_segment
from apptrace_shim.instrumentation.common.transaction import Segment, Transaction

logger = logging.getLogger(__name__)


class AgentContext(ABC):
    """What a shim needs from the agent that owns it."""

    @abstractmethod
    def get_transaction(self) -> Optional[Transaction]:
        pass

    @abstractmethod
    def get_segment(self) -> Optional[Segment]:
        pass

    @abstractmethod
    def create_transaction(self, type: str = TRANSACTION_TYPE_BG, parent_segment: Optional[Segment] = None,
                           remote_context: Optional[Context] = None, kind: SpanKind = SpanKind.INTERNAL) -> Transaction:
        pass

    @abstractmethod
    def create_segment(self, name: str, parent: Optional[Segment] = None,
                       attributes: Optional[Dict[str, Any]] = None, kind: Optional[SpanKind] = None) -> Optional[Segment]:
        pass

    @abstractmethod
    def record_diagnostic(self, kind: str, message: str, error: Optional[BaseException] = None) -> None:
        pass

    def get_context(self) -> Context:
        return get_current()

    def set_context(self, context: Context) -> object:
        return attach(context)

    def restore_context(self, token: object) -> None:
        if token is not None:
            detach(token)


@dataclass
class DiagnosticEvent:
    kind: str
    message: str
    error: Optional[BaseException] = None
    timestamp: float = field(default_factory=time.time)


class MetricStats:
    def __init__(self):
        self.call_count = 0
        self.total_time = 0.0
        self.min_time: Optional[float] = None
        self.max_time: Optional[float] = None

    def record(self, duration: float) -> None:
        self.call_count += 1
        self.total_time += duration
        self.min_time = duration if self.min_time is None else min(self.min_time, duration)
        self.max_time = duration if self.max_time is None else max(self.max_time, duration)

    def __repr__(self):
        return f"<MetricStats count={self.call_count} total={self.total_time:.6f}>"


class MetricAggregator:
    """In-memory, per-agent aggregation of finished transactions. Reporting happens elsewhere."""

    def __init__(self):
        self._metrics: Dict[Tuple[str, Optional[str]], MetricStats] = {}

    def record(self, name: str, duration: Optional[float], scope: Optional[str] = None) -> MetricStats:
        stats = self.get_or_create_metric(name, scope)
        stats.record(duration or 0.0)
        return stats

    def get_or_create_metric(self, name: str, scope: Optional[str] = None) -> MetricStats:
        key = (name, scope)
        if key not in self._metrics:
            self._metrics[key] = MetricStats()
        return self._metrics[key]

    def get_metric(self, name: str, scope: Optional[str] = None) -> Optional[MetricStats]:
        return self._metrics.get((name, scope))

    def metric_keys(self) -> List[Tuple[str, Optional[str]]]:
        return list(self._metrics.keys())

    def clear(self) -> None:
        self._metrics.clear()


class Environment:
    def __init__(self):
        self._values: Dict[str, List[str]] = {}

    def add(self, key: str, value: str) -> None:
        values = self._values.setdefault(key, [])
        if value not in values:
            values.append(value)

    def get(self, key: str) -> List[str]:
        return list(self._values.get(key, []))


class Agent(AgentContext):
    """
    OpenTelemetry backed agent context.

    Segments are spans created by a tracer from ``tracer_provider`` (or the global
    provider). The current segment lives in the OpenTelemetry context, so it follows
    ``contextvars`` semantics: every asyncio task sees its own copy.
    """

    def __init__(self, tracer_provider: TracerProvider = None, config: ShimConfig = None):
        self.config = config or load_config()
        self.tracer = get_tracer(instrumenting_module_name=SHIM_INSTRUMENTOR, tracer_provider=tracer_provider)
        self.metrics = MetricAggregator()
        self.environment = Environment()
        self.diagnostics = deque(maxlen=self.config.max_diagnostics or None)

    def get_segment(self) -> Optional[Segment]:
        segment = get_current_segment()
        if segment is None:
            return None
        transaction = segment.transaction
        if transaction.is_active():
            return segment
        # an ended transaction never becomes current again, report the first attempt only
        if not transaction.resume_reported:
            transaction.resume_reported = True
            self.record_diagnostic(DIAGNOSTIC_MISUSE, f"cannot resume ended transaction {transaction.name}")
        return None

    def get_transaction(self) -> Optional[Transaction]:
        segment = self.get_segment()
        if segment is None:
            return None
        return segment.transaction

    def create_transaction(self, type: str = TRANSACTION_TYPE_BG, parent_segment: Optional[Segment] = None,
                           remote_context: Optional[Context] = None, kind: SpanKind = SpanKind.INTERNAL) -> Transaction:
        parent_transaction = parent_segment.transaction if parent_segment is not None else None
        transaction = Transaction(self, type=type, parent=parent_transaction)
        if parent_segment is not None and parent_segment.span is not None:
            span_context = set_span_in_context(parent_segment.span)
        elif remote_context is not None:
            span_context = remote_context
        else:
            # new trace, never inherits whatever span happens to be current
            span_context = Context()
        span = self.tracer.start_span(transaction.name, context=span_context, kind=kind)
        transaction.trace = Segment(transaction, transaction.name, span=span)
        return transaction

    def create_segment(self, name: str, parent: Optional[Segment] = None,
                       attributes: Optional[Dict[str, Any]] = None, kind: Optional[SpanKind] = None) -> Optional[Segment]:
        parent = parent or self.get_segment()
        if parent is None:
            return None
        transaction = parent.transaction
        if not transaction.can_add_segment(self.config.max_segments):
            logger.debug("Not creating segment %s, transaction %s is full or ended", name, transaction.id)
            return None
        span_context = set_span_in_context(parent.span) if parent.span is not None else None
        span = self.tracer.start_span(name, context=span_context, kind=kind or SpanKind.INTERNAL)
        segment = Segment(transaction, name, span=span, parent=parent, attributes=attributes)
        transaction.add_segment(segment)
        return segment

    def record_diagnostic(self, kind: str, message: str, error: Optional[BaseException] = None) -> None:
        self.diagnostics.append(DiagnosticEvent(kind=kind, message=message, error=error))
        if kind == DIAGNOSTIC_MISUSE:
            logger.warning("Shim misuse: %s", message)
        else:
            logger.info(f"Warning: Error occurred in instrumentation: {message}: {error}")

    def get_diagnostics(self, kind: Optional[str] = None) -> List[DiagnosticEvent]:
        return [event for event in self.diagnostics if kind is None or event.kind == kind]

    def transaction_finished(self, transaction: Transaction) -> None:
        name = transaction.name
        trace = transaction.trace
        duration = trace.duration if trace is not None else None
        self.metrics.record(name, duration)
        self.metrics.record(transaction.total_time_name, duration)
        for segment in transaction.segments:
            self.metrics.record(segment.name, segment.duration)
            self.metrics.record(segment.name, segment.duration, scope=name)
