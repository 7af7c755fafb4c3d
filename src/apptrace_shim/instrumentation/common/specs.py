"""
Declarative descriptions instrumentation scripts hand to a shim.

A spec tells the shim how to name the segment for one call, where the completion
callback sits in the argument list and which category specific details (query,
destination, route...) belong to it. Most ``record_*`` methods accept either a spec
instance or a callable ``(shim, fn, name, args, kwargs) -> spec`` evaluated per call.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from opentelemetry.trace import SpanKind

from apptrace_shim.instrumentation.common.constants import (
    DESTINATION_TYPE_EXCHANGE,
    MIDDLEWARE_TYPE_MIDDLEWARE,
    TRANSACTION_TYPE_BG,
)


@dataclass
class RecordSpec:
    name: Optional[str] = None
    parent: Any = None
    callback: Optional[int] = None
    promise: bool = False
    before: Optional[Callable] = None
    after: Optional[Callable] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    kind: Optional[SpanKind] = None
    record: bool = True


@dataclass
class QuerySpec(RecordSpec):
    query: Union[str, int, Callable, None] = None
    host: Optional[str] = None
    port: Optional[Union[int, str]] = None
    database: Optional[str] = None
    batch: bool = False


@dataclass
class OperationSpec(RecordSpec):
    host: Optional[str] = None
    port: Optional[Union[int, str]] = None
    database: Optional[str] = None
    collection: Optional[str] = None


@dataclass
class MessageSpec(RecordSpec):
    destination_name: Optional[str] = None
    destination_type: str = DESTINATION_TYPE_EXCHANGE
    headers: Optional[Dict[str, Any]] = None
    routing_key: Optional[str] = None
    message_handler: Optional[Callable] = None


@dataclass
class SubscribeSpec:
    consumer: int = -1
    destination_name: Optional[str] = None
    destination_type: str = DESTINATION_TYPE_EXCHANGE
    message_handler: Optional[Callable] = None


@dataclass
class TransactionSpec:
    type: str = TRANSACTION_TYPE_BG
    nest: Optional[bool] = None
    name: Optional[str] = None


@dataclass
class DispatchSpec:
    method: Optional[str] = None
    route: Optional[str] = None
    url: Optional[str] = None
    headers: Any = None
    finalize: Optional[Callable] = None


@dataclass
class MiddlewareSpec:
    type: str = MIDDLEWARE_TYPE_MIDDLEWARE
    name: Optional[str] = None
    route: Optional[str] = None
    next: Optional[int] = None


@dataclass
class MountSpec:
    route: Optional[int] = None
    type: str = MIDDLEWARE_TYPE_MIDDLEWARE
    next: Optional[int] = None
    wrapper: Optional[Callable] = None


@dataclass
class RenderSpec:
    view: Union[int, Callable] = 0
    callback: Optional[int] = None
    promise: bool = False
