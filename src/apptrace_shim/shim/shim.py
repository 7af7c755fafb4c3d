import functools
import inspect
import logging
from collections import namedtuple
from typing import Any, Callable, Dict, Optional

import wrapt
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind

from apptrace_shim.instrumentation.common.agent import AgentContext
from apptrace_shim.instrumentation.common.constants import (
    ModuleType,
    DIAGNOSTIC_MISUSE,
    DIAGNOSTIC_INSTRUMENTATION_ERROR,
    MODULE_NAME_KEY,
)
from apptrace_shim.instrumentation.common.context import (
    bind,
    bind_awaitable,
    context_with_segment,
    get_current_segment,
)
from apptrace_shim.instrumentation.common.specs import RecordSpec
from apptrace_shim.instrumentation.common.transaction import Segment, Transaction
from apptrace_shim.instrumentation.common.utils import (
    describe,
    get_function_name,
    is_coroutine,
    is_future,
    replace_arg,
    resolve_index,
)

logger = logging.getLogger(__name__)

_MISSING = object()
_SHIM_MARKER = "_self_apptrace_shim"

WrapEntry = namedtuple("WrapEntry", ["parent", "attribute", "original", "had_own", "wrapper"])


def is_shim_wrapper(value) -> bool:
    return isinstance(value, wrapt.FunctionWrapper) and getattr(value, _SHIM_MARKER, False) is True


def _selector_names(selector):
    if selector is None:
        return []
    if isinstance(selector, str):
        return [selector]
    return [name for name in selector if isinstance(name, str)]


def _noop(*args, **kwargs):
    return args[0] if args else None


class WrapRecord:
    """Identity keyed book of everything a shim replaced, so it can be undone."""

    def __init__(self):
        self._callables: Dict[int, WrapEntry] = {}
        self._attributes: Dict[tuple, WrapEntry] = {}

    @staticmethod
    def _key(entry: WrapEntry):
        if entry.parent is None:
            return id(entry.original)
        return id(entry.parent), entry.attribute

    def _table(self, entry: WrapEntry) -> dict:
        return self._callables if entry.parent is None else self._attributes

    def add(self, entry: WrapEntry) -> None:
        self._table(entry)[self._key(entry)] = entry

    def find_callable(self, original) -> Optional[WrapEntry]:
        entry = self._callables.get(id(original))
        return entry if entry is not None and entry.original is original else None

    def find_attribute(self, parent, attribute) -> Optional[WrapEntry]:
        entry = self._attributes.get((id(parent), attribute))
        return entry if entry is not None and entry.parent is parent else None

    def remove(self, entry: WrapEntry) -> None:
        table = self._table(entry)
        if table.get(self._key(entry)) is entry:
            del table[self._key(entry)]

    def entries(self):
        return list(self._callables.values()) + list(self._attributes.values())

    def __len__(self):
        return len(self._callables) + len(self._attributes)


class _RecordedCall:
    __slots__ = ("spec", "segment", "args", "token", "pending_callback", "name")

    def __init__(self, spec, segment, args, token, pending_callback, name):
        self.spec = spec
        self.segment = segment
        self.args = args
        self.token = token
        self.pending_callback = pending_callback
        self.name = name


class Shim:
    """
    Generic shim: wraps functions of one instrumented library and records segments for
    them inside the current transaction.

    Every bookkeeping step fails open. Errors raised while naming, creating or ending
    segments are recorded as agent diagnostics and the original call runs as if it had
    never been wrapped. Errors raised by the original are re-raised untouched.
    """

    _type = ModuleType.GENERIC

    def __init__(self, agent: AgentContext, module_name: str, resolved_name: Optional[str] = None,
                 wrap_record: Optional[WrapRecord] = None):
        if agent is None:
            raise ValueError("Shim must be initialized with an agent context")
        if not module_name:
            raise ValueError("Shim must be initialized with a module name")
        self._agent = agent
        self._module_name = module_name
        self._resolved_name = resolved_name or module_name
        self._wrap_record = wrap_record if wrap_record is not None else WrapRecord()

    @property
    def agent(self) -> AgentContext:
        return self._agent

    @property
    def module_name(self) -> str:
        return self._module_name

    @property
    def resolved_name(self) -> str:
        return self._resolved_name

    @property
    def type(self) -> ModuleType:
        return self._type

    def __getattr__(self, name):
        # only reached for attributes the class does not define
        if name.startswith("_"):
            raise AttributeError(name)
        from apptrace_shim.shim.registry import owner_of
        owner = owner_of(name)
        if owner is None:
            raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")
        self._report_misuse(f"{name} is only available on {owner.value} shims, "
                            f"{self._module_name} uses a {self.type.value} shim")
        return _noop

    def __repr__(self):
        return f"<{type(self).__name__} module={self._module_name!r}>"

    # -- diagnostics -------------------------------------------------------

    def _report_misuse(self, message: str) -> None:
        try:
            self._agent.record_diagnostic(DIAGNOSTIC_MISUSE, message)
        except Exception as e:
            logger.warning(f"Shim misuse for {self._module_name}: {message} ({e})")

    def _report_error(self, message: str, error: BaseException) -> None:
        try:
            self._agent.record_diagnostic(DIAGNOSTIC_INSTRUMENTATION_ERROR,
                                          f"{self._module_name}: {message}", error)
        except Exception as e:
            logger.info(f"Warning: Error occurred in {message}: {error} ({e})")

    def _safely(self, description: str, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            self._report_error(description, e)
            return None

    def _is_enabled(self) -> bool:
        config = getattr(self._agent, "config", None)
        return config is None or getattr(config, "enabled", True)

    # -- wrapping ----------------------------------------------------------

    def is_wrapped(self, target, selector: Optional[str] = None) -> bool:
        if selector is None:
            return is_shim_wrapper(target)
        try:
            return is_shim_wrapper(inspect.getattr_static(target, selector, None))
        except Exception:
            return False

    def wrap(self, target, selector, wrapper: Callable):
        """
        Replace ``target.<selector>`` (or ``target`` itself when ``selector`` is None) with a
        ``wrapt.FunctionWrapper`` calling ``wrapper(wrapped, instance, args, kwargs)``.

        Returns ``target`` (the wrapped function when ``selector`` is None). Already wrapped,
        missing and non-callable targets are left untouched.
        """
        if target is None:
            logger.debug("Not wrapping missing target in %s", self._module_name)
            return target
        if not self._is_enabled():
            return target
        if selector is None:
            return self._wrap_callable(target, wrapper)
        for name in _selector_names(selector):
            self._wrap_attribute(target, name, wrapper)
        return target

    def _new_wrapper(self, original, wrapper):
        proxy = wrapt.FunctionWrapper(original, wrapper)
        setattr(proxy, _SHIM_MARKER, True)
        return proxy

    def _wrap_callable(self, target, wrapper):
        if is_shim_wrapper(target):
            return target
        if not callable(target):
            self._report_misuse(f"cannot wrap non-callable {describe(target)}")
            return target
        entry = self._wrap_record.find_callable(target)
        if entry is not None:
            return entry.wrapper
        try:
            proxy = self._new_wrapper(target, wrapper)
        except Exception as e:
            self._report_error(f"wrapping {describe(target)}", e)
            return target
        self._wrap_record.add(WrapEntry(None, None, target, False, proxy))
        return proxy

    def _wrap_attribute(self, target, name, wrapper):
        try:
            raw = inspect.getattr_static(target, name, _MISSING)
        except Exception as e:
            self._report_error(f"looking up {name}", e)
            return None
        if raw is _MISSING:
            self._report_misuse(f"cannot wrap missing attribute {describe(target)}.{name}")
            return None
        if is_shim_wrapper(raw):
            return raw
        if not (callable(raw) or isinstance(raw, (staticmethod, classmethod))):
            self._report_misuse(f"cannot wrap non-callable attribute {describe(target)}.{name}")
            return None
        own_dict = getattr(target, "__dict__", None)
        had_own = own_dict is not None and name in own_dict
        original = own_dict[name] if had_own else raw
        try:
            proxy = wrapt.wrap_object(target, name, lambda wrapped: self._new_wrapper(wrapped, wrapper))
        except Exception as e:
            self._report_error(f"wrapping {describe(target)}.{name}", e)
            return None
        self._wrap_record.add(WrapEntry(target, name, original, had_own, proxy))
        return proxy

    def unwrap(self, target, selector) -> None:
        for name in _selector_names(selector):
            entry = self._wrap_record.find_attribute(target, name)
            if entry is None:
                logger.debug("Nothing to unwrap for %s.%s", describe(target), name)
                continue
            self._restore(entry)

    def unwrap_all(self) -> None:
        for entry in reversed(self._wrap_record.entries()):
            self._restore(entry)

    def _restore(self, entry: WrapEntry) -> None:
        try:
            if entry.parent is not None:
                if entry.had_own:
                    setattr(entry.parent, entry.attribute, entry.original)
                else:
                    delattr(entry.parent, entry.attribute)
        except Exception as e:
            self._report_error(f"unwrapping {entry.attribute}", e)
        self._wrap_record.remove(entry)

    def wrap_return(self, target, selector, spec: Callable):
        """Post-process return values with ``spec(shim, fn, name, result)``."""
        shim = self

        def return_wrapper(wrapped, instance, args, kwargs):
            result = wrapped(*args, **kwargs)
            try:
                replacement = spec(shim, wrapped, get_function_name(wrapped), result)
            except Exception as e:
                shim._report_error("wrap_return spec", e)
                return result
            return result if replacement is None else replacement

        return self.wrap(target, selector, return_wrapper)

    # -- recording ---------------------------------------------------------

    def record(self, target, selector, spec):
        """
        Wrap ``target.<selector>`` so every call inside a transaction records a segment.

        ``spec`` is a ``RecordSpec`` or a callable ``(shim, fn, name, args, kwargs)``
        returning one (``None`` means "do not record this call").
        """
        return self.wrap(target, selector, self._make_record_wrapper(spec))

    def _make_record_wrapper(self, spec):
        shim = self

        def record_wrapper(wrapped, instance, args, kwargs):
            call = shim._safely("starting segment", shim._start_record, spec, wrapped, args, kwargs)
            if call is None:
                return wrapped(*args, **kwargs)
            return shim._invoke(call, wrapped, kwargs)

        return record_wrapper

    def _resolve_spec(self, spec, wrapped, name, args, kwargs):
        if callable(spec):
            return spec(self, wrapped, name, args, kwargs)
        return spec

    def _start_record(self, spec, wrapped, args, kwargs) -> Optional[_RecordedCall]:
        name = get_function_name(wrapped)
        desc = self._resolve_spec(spec, wrapped, name, args, kwargs)
        if desc is None or not desc.record:
            return None
        parent = desc.parent or self.get_active_segment()
        if parent is None:
            return None
        segment = self.create_segment(desc.name or name, parent=parent, attributes=desc.attributes, kind=desc.kind)
        if segment is None:
            return None
        return self._prepare_call(desc, segment, args, name)

    def _prepare_call(self, desc, segment, args, name) -> _RecordedCall:
        call_args = args
        pending_callback = False
        index = resolve_index(args, desc.callback)
        if index is not None and callable(args[index]):
            caller_context = self._agent.get_context()
            call_args = replace_arg(args, index, self._bind_callback_segment(args[index], segment, caller_context))
            pending_callback = True
        token = self.set_active_segment(segment)
        if desc.before is not None:
            self._safely("before hook", desc.before, self, segment)
        return _RecordedCall(desc, segment, call_args, token, pending_callback, name)

    def _invoke(self, call: _RecordedCall, wrapped, kwargs):
        try:
            result = wrapped(*call.args, **kwargs)
        except Exception as exc:
            self._end_call(call, wrapped, error=exc)
            raise
        finally:
            self.restore_context(call.token)
        return self._finish_result(call, wrapped, result)

    def _finish_result(self, call: _RecordedCall, wrapped, result):
        try:
            if is_future(result):
                result.add_done_callback(lambda future: self._end_call_from_future(call, wrapped, future))
                return result
            if is_coroutine(result) or (call.spec.promise and inspect.isawaitable(result)):
                return self._await_call(call, wrapped, result)
            if not call.pending_callback:
                self._end_call(call, wrapped, result=result)
        except Exception as e:
            self._report_error("finishing segment", e)
        return result

    async def _await_call(self, call: _RecordedCall, wrapped, awaitable):
        token = self._safely("activating segment", self.set_active_segment, call.segment)
        try:
            value = await awaitable
        except Exception as exc:
            self._end_call(call, wrapped, error=exc)
            raise
        finally:
            self.restore_context(token)
        self._end_call(call, wrapped, result=value)
        return value

    def _end_call_from_future(self, call: _RecordedCall, wrapped, future):
        error = None
        result = None
        try:
            if future.cancelled():
                error = None
            else:
                error = future.exception()
                if error is None:
                    result = future.result()
        except Exception as e:
            self._report_error("reading future", e)
        self._end_call(call, wrapped, result=result, error=error)

    def _end_call(self, call: _RecordedCall, wrapped, result=None, error=None) -> None:
        after = call.spec.after
        if after is not None:
            self._safely("after hook", after, self, wrapped, call.name, error, result, call.segment)
        self._safely("ending segment", call.segment.end, error)

    def _bind_callback_segment(self, callback, segment: Segment, context: Context):
        shim = self
        bound = bind(callback, context)

        @functools.wraps(callback)
        def callback_wrapper(*args, **kwargs):
            shim._safely("ending segment from callback", segment.end)
            return bound(*args, **kwargs)

        return callback_wrapper

    def record_segment(self, name: str, work: Callable, parent: Optional[Segment] = None,
                       attributes: Optional[Dict[str, Any]] = None, kind: Optional[SpanKind] = None):
        """
        Run ``work()`` with a new segment named ``name`` as the current context and end the
        segment when ``work`` finishes, or when the coroutine/future it returns settles.
        Without an active transaction ``work`` simply runs.
        """
        call = self._safely("starting segment", self._start_segment_call, name, parent, attributes, kind)
        if call is None:
            return work()
        return self._invoke(call, work, {})

    def _start_segment_call(self, name, parent, attributes, kind):
        segment = self.create_segment(name, parent=parent, attributes=attributes, kind=kind)
        if segment is None:
            return None
        return self._prepare_call(RecordSpec(name=name), segment, (), name)

    # -- context -----------------------------------------------------------

    def bind_context(self, fn, context: Optional[Context] = None):
        """
        Return ``fn`` bound to the transaction context current now (or ``context``): whenever
        it is later invoked that context is re-established for the call and the previous one
        restored afterwards.
        """
        if not callable(fn):
            self._report_misuse(f"cannot bind non-callable {describe(fn)}")
            return fn
        try:
            return bind(fn, context if context is not None else self._agent.get_context())
        except Exception as e:
            self._report_error("binding context", e)
            return fn

    def bind_segment(self, fn, segment: Optional[Segment] = None, full: bool = False):
        if not callable(fn):
            return fn
        segment = segment or self.get_active_segment()
        if segment is None:
            return fn
        try:
            bound = bind(fn, context_with_segment(segment, self._agent.get_context()))
        except Exception as e:
            self._report_error("binding segment", e)
            return fn
        if not full:
            return bound
        shim = self

        @functools.wraps(fn)
        def full_wrapper(*args, **kwargs):
            try:
                result = bound(*args, **kwargs)
            except Exception as exc:
                shim._safely("ending segment", segment.end, exc)
                raise
            shim._safely("ending segment", segment.end)
            return result

        return full_wrapper

    def bind_promise(self, awaitable, segment: Segment):
        """End ``segment`` when ``awaitable`` settles, keeping it current while awaited."""
        if segment is None:
            return awaitable
        call = _RecordedCall(RecordSpec(name=segment.name, promise=True), segment, (), None, False, segment.name)
        if is_future(awaitable):
            awaitable.add_done_callback(lambda future: self._end_call_from_future(call, None, future))
            return awaitable
        if inspect.isawaitable(awaitable):
            return self._await_call(call, None, awaitable)
        return awaitable

    def bind_awaitable(self, awaitable, context: Optional[Context] = None):
        if not inspect.isawaitable(awaitable):
            return awaitable
        return bind_awaitable(awaitable, context if context is not None else self._agent.get_context())

    def get_segment(self) -> Optional[Segment]:
        return get_current_segment()

    def get_active_segment(self) -> Optional[Segment]:
        return self._agent.get_segment()

    def get_transaction(self) -> Optional[Transaction]:
        return self._agent.get_transaction()

    def set_active_segment(self, segment: Segment) -> object:
        return self._agent.set_context(context_with_segment(segment, self._agent.get_context()))

    def restore_context(self, token) -> None:
        if token is None:
            return
        try:
            self._agent.restore_context(token)
        except Exception as e:
            self._report_error("restoring context", e)

    def create_segment(self, name: str, parent: Optional[Segment] = None,
                       attributes: Optional[Dict[str, Any]] = None, kind: Optional[SpanKind] = None) -> Optional[Segment]:
        segment = self._agent.create_segment(name, parent=parent, attributes=attributes, kind=kind)
        if segment is not None:
            segment.add_attribute(MODULE_NAME_KEY, self._module_name)
        return segment
