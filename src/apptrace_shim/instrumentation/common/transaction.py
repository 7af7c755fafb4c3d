import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from opentelemetry.trace import Span
from opentelemetry.trace.status import Status, StatusCode

from apptrace_shim.instrumentation.common.constants import (
    TRANSACTION_TYPE_BG,
    TRANSACTION_TYPE_WEB,
    TRANSACTION_PREFIXES,
    TOTAL_TIME_PREFIXES,
    UNKNOWN_ROUTE,
    TRUNCATED_KEY,
    TRANSACTION_NAME_KEY,
)
from apptrace_shim.instrumentation.common.utils import set_span_attribute

logger = logging.getLogger(__name__)


class Segment:
    """
    One timed unit of work inside a transaction.

    ``parent`` is fixed at construction (``None`` for the transaction's root segment) and
    ``end_time`` can only be set once; later ``end()`` calls are no-ops.
    """

    def __init__(self, transaction: "Transaction", name: str, span: Optional[Span] = None,
                 parent: Optional["Segment"] = None, attributes: Optional[Dict[str, Any]] = None):
        self._transaction = transaction
        self._parent = parent
        self._end_time: Optional[float] = None
        self.name = name
        self.span = span
        self.start_time = time.time()
        self.attributes: Dict[str, Any] = {}
        self.children: List["Segment"] = []
        self.error: Optional[BaseException] = None
        if parent is not None:
            parent.children.append(self)
        for key, value in (attributes or {}).items():
            self.add_attribute(key, value)

    @property
    def transaction(self) -> "Transaction":
        return self._transaction

    @property
    def parent(self) -> Optional["Segment"]:
        return self._parent

    @property
    def end_time(self) -> Optional[float]:
        return self._end_time

    @property
    def duration(self) -> Optional[float]:
        if self._end_time is None:
            return None
        return self._end_time - self.start_time

    def is_ended(self) -> bool:
        return self._end_time is not None

    def add_attribute(self, key: str, value: Any) -> None:
        if value is None:
            return
        self.attributes[key] = value
        if self.span is not None:
            set_span_attribute(self.span, key, value)

    def set_name(self, name: str) -> bool:
        if self.is_ended():
            return False
        self.name = name
        if self.span is not None:
            self.span.update_name(name)
        return True

    def end(self, error: Optional[BaseException] = None) -> bool:
        if self._end_time is not None:
            return False
        self._end_time = time.time()
        if error is not None:
            self.error = error
        if self.span is not None:
            if self.error is not None:
                self.span.record_exception(self.error)
                self.span.set_status(Status(StatusCode.ERROR, str(self.error)))
            else:
                self.span.set_status(StatusCode.OK)
            self.span.end()
        return True

    def __repr__(self):
        return f"<Segment {self.name!r} ended={self.is_ended()}>"


class Transaction:
    """
    The root unit of monitored work. State moves ``active -> ended`` exactly once.

    The name is assembled from ``framework``/``verb``/``route`` for web transactions, or
    from an explicit partial name, and is frozen when the transaction ends.
    """

    ACTIVE = "active"
    ENDED = "ended"

    def __init__(self, agent, type: str = TRANSACTION_TYPE_BG, parent: Optional["Transaction"] = None):
        self.id = uuid.uuid4().hex
        self.agent = agent
        self.type = type
        self.parent = parent
        self.children: List["Transaction"] = []
        self.state = Transaction.ACTIVE
        self.trace: Optional[Segment] = None
        self.segments: List[Segment] = []
        self.errors: List[BaseException] = []
        self.framework: Optional[str] = None
        self.verb: Optional[str] = None
        self.route: Optional[str] = None
        self._partial_name: Optional[str] = None
        self._final_name: Optional[str] = None
        self.resume_reported = False
        if parent is not None:
            parent.children.append(self)

    def is_active(self) -> bool:
        return self.state == Transaction.ACTIVE

    def has_active_children(self) -> bool:
        return any(child.is_active() for child in self.children)

    @property
    def partial_name(self) -> str:
        if self._partial_name:
            return self._partial_name
        if self.type == TRANSACTION_TYPE_WEB or self.framework or self.verb:
            framework = self.framework or "Python"
            verb = (self.verb or "GET").upper()
            return f"{framework}/{verb}/{self.route or UNKNOWN_ROUTE}"
        return "Unknown"

    @property
    def name(self) -> str:
        if self._final_name is not None:
            return self._final_name
        return f"{TRANSACTION_PREFIXES.get(self.type, TRANSACTION_PREFIXES[TRANSACTION_TYPE_BG])}/{self.partial_name}"

    @property
    def total_time_name(self) -> str:
        prefix = TOTAL_TIME_PREFIXES.get(self.type, TOTAL_TIME_PREFIXES[TRANSACTION_TYPE_BG])
        return f"{prefix}/{self.name.split('/', 1)[-1]}"

    def set_partial_name(self, name: str) -> bool:
        if not self.is_active():
            return False
        self._partial_name = name
        return True

    def set_route(self, route: Optional[str]) -> bool:
        if not self.is_active() or not route:
            return False
        self.route = route
        return True

    def add_segment(self, segment: Segment) -> None:
        self.segments.append(segment)

    def can_add_segment(self, limit: Optional[int]) -> bool:
        if not self.is_active():
            return False
        return limit is None or limit <= 0 or len(self.segments) < limit

    def notice_error(self, error: BaseException) -> None:
        if self.is_active() and error is not None:
            self.errors.append(error)

    def end(self) -> bool:
        """End the transaction. Returns False, changing nothing, when already ended."""
        if self.state == Transaction.ENDED:
            return False
        self._final_name = self.name
        self.state = Transaction.ENDED
        for segment in reversed(self.segments):
            if not segment.is_ended():
                segment.add_attribute(TRUNCATED_KEY, True)
                segment.end()
        if self.trace is not None:
            self.trace.set_name(self._final_name)
            self.trace.add_attribute(TRANSACTION_NAME_KEY, self._final_name)
            error = self.errors[-1] if self.errors else None
            self.trace.end(error)
        try:
            self.agent.transaction_finished(self)
        except Exception as e:
            logger.info(f"Warning: Error occurred while finishing transaction: {e}")
        return True

    def __repr__(self):
        return f"<Transaction {self.name!r} state={self.state}>"
