import logging
from dataclasses import replace
from typing import Optional

from opentelemetry.trace import SpanKind

from apptrace_shim.instrumentation.common.constants import (
    ModuleType,
    DESTINATION_TYPE_EXCHANGE,
    DESTINATION_TYPE_QUEUE,
    ENV_MESSAGING,
    MESSAGE_BROKER_PREFIX,
    MESSAGE_TRANSACTION_PREFIX,
    MESSAGING_SYSTEM,
    MESSAGING_DESTINATION,
    MESSAGING_DESTINATION_KIND,
    MESSAGING_ROUTING_KEY,
    MESSAGING_OPERATION,
    TRANSACTION_TYPE_MESSAGE,
)
from apptrace_shim.instrumentation.common.specs import MessageSpec, SubscribeSpec
from apptrace_shim.instrumentation.common.utils import (
    extract_headers_context,
    get_function_name,
    inject_headers,
    is_coroutine,
    is_future,
    replace_arg,
    resolve_index,
)
from apptrace_shim.shim.shim import Shim

logger = logging.getLogger(__name__)

UNKNOWN_LIBRARY = "Unknown"
PRODUCE = "Produce"
CONSUME = "Consume"
PURGE = "Purge"


class MessageShim(Shim):
    """
    Shim for message broker clients.

    Produce, pull-consume and purge calls become ``MessageBroker/...`` segments of the
    current transaction. Subscribed consumers run every delivery in a fresh
    ``message`` transaction, linked to the producer through the trace context carried in
    the message headers.
    """

    _type = ModuleType.MESSAGE

    def __init__(self, agent, module_name, resolved_name=None, wrap_record=None):
        super().__init__(agent, module_name, resolved_name, wrap_record)
        self._library: Optional[str] = None

    def set_library(self, name: str) -> None:
        self._library = name
        environment = getattr(self.agent, "environment", None)
        if environment is not None:
            environment.add(ENV_MESSAGING, name)

    @property
    def library(self) -> str:
        return self._library or UNKNOWN_LIBRARY

    @staticmethod
    def _destination_path(desc) -> str:
        if desc.destination_name:
            return f"{desc.destination_type}/Named/{desc.destination_name}"
        return f"{desc.destination_type}/Temp"

    def _segment_name(self, action: str, desc) -> str:
        destination = self._destination_path(desc)
        destination_type, rest = destination.split("/", 1)
        return f"{MESSAGE_BROKER_PREFIX}/{self.library}/{destination_type}/{action}/{rest}"

    def _message_attributes(self, action: str, desc) -> dict:
        attributes = dict(desc.attributes)
        attributes[MESSAGING_SYSTEM] = self.library
        attributes[MESSAGING_OPERATION] = action.lower()
        attributes[MESSAGING_DESTINATION_KIND] = desc.destination_type
        if desc.destination_name:
            attributes[MESSAGING_DESTINATION] = desc.destination_name
        if desc.routing_key:
            attributes[MESSAGING_ROUTING_KEY] = desc.routing_key
        return attributes

    def _resolve_message_spec(self, spec, fn, name, args, kwargs) -> Optional[MessageSpec]:
        if isinstance(spec, MessageSpec):
            return replace(spec, attributes=dict(spec.attributes))
        if callable(spec):
            desc = spec(self, fn, name, args, kwargs)
            return None if desc is None else replace(desc, attributes=dict(desc.attributes))
        return MessageSpec()

    def _make_message_spec(self, spec, action: str, kind: SpanKind, destination_type: Optional[str] = None):
        shim = self

        def message_spec(_shim, fn, name, args, kwargs):
            desc = shim._resolve_message_spec(spec, fn, name, args, kwargs)
            if desc is None:
                return None
            if destination_type is not None:
                desc.destination_type = destination_type
            desc.name = shim._segment_name(action, desc)
            desc.kind = desc.kind or kind
            desc.attributes = shim._message_attributes(action, desc)
            if action == PRODUCE and desc.headers is not None:
                desc.before = shim._produce_before(desc.headers, desc.before)
            if action == CONSUME and desc.message_handler is not None:
                desc.after = shim._consume_after(desc.message_handler, desc.after)
            return desc

        return message_spec

    @staticmethod
    def _produce_before(headers, before):
        def produce_before(_shim, segment):
            inject_headers(headers)
            if before is not None:
                before(_shim, segment)

        return produce_before

    def _consume_after(self, message_handler, after):
        shim = self

        def consume_after(_shim, fn, name, error, result, segment):
            if error is None and result is not None:
                details = message_handler(shim, fn, name, result)
                if isinstance(details, MessageSpec):
                    segment.set_name(shim._segment_name(CONSUME, details))
                    for key, value in shim._message_attributes(CONSUME, details).items():
                        segment.add_attribute(key, value)
            if after is not None:
                after(_shim, fn, name, error, result, segment)

        return consume_after

    def record_produce(self, target, selector, spec):
        """
        Record publishing calls as ``MessageBroker/{library}/{type}/Produce/Named/{name}``.
        When the spec carries a ``headers`` dict the trace context is injected into it.
        """
        return self.record(target, selector, self._make_message_spec(spec, PRODUCE, SpanKind.PRODUCER))

    def record_consume(self, target, selector, spec):
        """Record pull-style consumption (``get``, ``fetch``) as a consume segment."""
        return self.record(target, selector, self._make_message_spec(spec, CONSUME, SpanKind.CONSUMER))

    def record_purge_queue(self, target, selector, spec):
        return self.record(target, selector,
                           self._make_message_spec(spec, PURGE, SpanKind.CLIENT, DESTINATION_TYPE_QUEUE))

    def record_subscribed_consume(self, target, selector, spec):
        """
        Wrap a subscribe call so the consumer callback it registers starts a new message
        transaction for every delivery. ``spec`` is a ``SubscribeSpec`` or a callable
        ``(shim, fn, name, args, kwargs)`` returning one.
        """
        shim = self

        def subscribe_wrapper(wrapped, instance, args, kwargs):
            call_args = shim._safely("wrapping consumer", shim._wrap_consumer_arg, spec, wrapped, args, kwargs)
            if call_args is None:
                return wrapped(*args, **kwargs)
            return wrapped(*call_args, **kwargs)

        return self.wrap(target, selector, subscribe_wrapper)

    def _wrap_consumer_arg(self, spec, wrapped, args, kwargs):
        desc = spec(self, wrapped, get_function_name(wrapped), args, kwargs) if callable(spec) else spec
        if not isinstance(desc, SubscribeSpec):
            return None
        index = resolve_index(args, desc.consumer)
        if index is None or not callable(args[index]):
            return None
        return replace_arg(args, index, self.wrap_consumer(args[index], desc))

    def wrap_consumer(self, consumer, spec: SubscribeSpec):
        """Wrap a delivery callback; each call runs in its own message transaction."""
        if self.is_wrapped(consumer):
            return consumer
        shim = self

        def consumer_wrapper(wrapped, instance, args, kwargs):
            delivery = shim._safely("starting message transaction", shim._start_delivery, spec, wrapped, args)
            if delivery is None:
                return wrapped(*args, **kwargs)
            transaction, token = delivery
            try:
                result = wrapped(*args, **kwargs)
            except Exception as exc:
                shim._safely("ending message transaction", shim._end_delivery, transaction, exc)
                raise
            finally:
                shim.restore_context(token)
            if is_coroutine(result):
                return shim._await_delivery(result, transaction)
            if is_future(result):
                result.add_done_callback(
                    lambda future: shim._safely("ending message transaction", shim._end_delivery, transaction,
                                                None if future.cancelled() else future.exception()))
                return result
            shim._safely("ending message transaction", shim._end_delivery, transaction, None)
            return result

        try:
            return self._new_wrapper(consumer, consumer_wrapper)
        except Exception as e:
            self._report_error("wrapping consumer", e)
            return consumer

    def _start_delivery(self, spec: SubscribeSpec, consumer, args):
        desc = None
        if spec.message_handler is not None:
            desc = spec.message_handler(self, consumer, get_function_name(consumer), args)
        if not isinstance(desc, MessageSpec):
            desc = MessageSpec(destination_name=spec.destination_name,
                               destination_type=spec.destination_type or DESTINATION_TYPE_EXCHANGE)
        remote_context = extract_headers_context(desc.headers) if desc.headers else None
        transaction = self.agent.create_transaction(type=TRANSACTION_TYPE_MESSAGE, remote_context=remote_context,
                                                    kind=SpanKind.CONSUMER)
        transaction.set_partial_name(
            f"{MESSAGE_TRANSACTION_PREFIX}/{self.library}/{self._destination_path(desc)}")
        for key, value in self._message_attributes(CONSUME, desc).items():
            transaction.trace.add_attribute(key, value)
        token = self.set_active_segment(transaction.trace)
        return transaction, token

    @staticmethod
    def _end_delivery(transaction, error) -> None:
        if error is not None:
            transaction.notice_error(error)
        transaction.end()

    async def _await_delivery(self, awaitable, transaction):
        token = self._safely("activating message transaction", self.set_active_segment, transaction.trace)
        try:
            value = await awaitable
        except Exception as exc:
            self._safely("ending message transaction", self._end_delivery, transaction, exc)
            raise
        finally:
            self.restore_context(token)
        self._safely("ending message transaction", self._end_delivery, transaction, None)
        return value
