import logging
import re
from dataclasses import replace
from typing import Callable, Optional

from opentelemetry.trace import SpanKind

from apptrace_shim.instrumentation.common.constants import (
    ModuleType,
    ENV_FRAMEWORK,
    HTTP_METHOD,
    HTTP_ROUTE,
    MIDDLEWARE_PREFIX,
    MIDDLEWARE_TYPE_ERRORWARE,
    MIDDLEWARE_TYPE_ROUTE,
    REQUEST_URI,
    TRANSACTION_TYPE_WEB,
    VIEW_PREFIX,
)
from apptrace_shim.instrumentation.common.specs import DispatchSpec, MiddlewareSpec, MountSpec, RecordSpec, RenderSpec
from apptrace_shim.instrumentation.common.transaction import Segment, Transaction
from apptrace_shim.instrumentation.common.utils import (
    ShimException,
    extract_headers_context,
    get_arg,
    get_function_name,
    is_coroutine,
    is_future,
    replace_arg,
    resolve_index,
)
from apptrace_shim.shim.shim import Shim, is_shim_wrapper

logger = logging.getLogger(__name__)

DEFAULT_FRAMEWORK = "Python"
ROOT_ROUTE = "/"


def default_route_parser(route) -> Optional[str]:
    if route is None:
        return None
    if isinstance(route, re.Pattern):
        return route.pattern
    if isinstance(route, (list, tuple)):
        parts = [default_route_parser(part) for part in route]
        return ",".join(part for part in parts if part)
    return str(route)


def default_error_predicate(error) -> bool:
    return isinstance(error, BaseException)


class _MiddlewareCall:
    __slots__ = ("transaction", "segment", "args", "token", "pending_next")

    def __init__(self, transaction, segment, args, token, pending_next):
        self.transaction = transaction
        self.segment = segment
        self.args = args
        self.token = token
        self.pending_next = pending_next


class WebFrameworkShim(Shim):
    """
    Shim for web frameworks.

    ``wrap_route_dispatch`` marks the point where the framework starts handling one
    request: each call opens a new web transaction. Middleware and route handlers then
    become ``Python/Middleware/...`` segments of it, and the route pattern matched by the
    router names the transaction, e.g. ``WebTransaction/Restify/GET//hello/:name``.
    """

    _type = ModuleType.WEB_FRAMEWORK

    def __init__(self, agent, module_name, resolved_name=None, wrap_record=None):
        super().__init__(agent, module_name, resolved_name, wrap_record)
        self._framework: Optional[str] = None
        self._route_parser: Callable = default_route_parser
        self._error_predicate: Callable = default_error_predicate

    def set_framework(self, name: str) -> None:
        self._framework = name
        environment = getattr(self.agent, "environment", None)
        if environment is not None:
            environment.add(ENV_FRAMEWORK, name)

    @property
    def framework(self) -> str:
        return self._framework or DEFAULT_FRAMEWORK

    def set_route_parser(self, parser: Callable) -> None:
        if not callable(parser):
            self._report_misuse("route parser must be callable")
            return
        self._route_parser = parser

    def set_error_predicate(self, predicate: Callable) -> None:
        if not callable(predicate):
            self._report_misuse("error predicate must be callable")
            return
        self._error_predicate = predicate

    def _parse_route(self, route) -> Optional[str]:
        if route is None:
            return None
        parsed = self._safely("parsing route", self._route_parser, route)
        return parsed or None

    def notice_error(self, error) -> bool:
        """Attach ``error`` to the current transaction if the error predicate accepts it."""
        transaction = self.get_transaction()
        if transaction is None:
            return False
        return bool(self._safely("noticing error", self._notice, transaction, error))

    def _notice(self, transaction: Transaction, error) -> bool:
        if error is None or not self._error_predicate(error):
            return False
        transaction.notice_error(error)
        return True

    # -- dispatch ----------------------------------------------------------

    def wrap_route_dispatch(self, target, selector, route_extractor):
        """
        Start a web transaction for every call of ``target.<selector>``.

        ``route_extractor`` is a ``DispatchSpec`` or a callable ``(shim, fn, name, args,
        kwargs)`` returning one. When the spec's ``finalize`` is set it is called with an
        ``end`` callable the framework should invoke from its response-finished and
        connection-closed hooks; otherwise the transaction ends when dispatch returns or
        the awaitable it returned settles.
        """
        shim = self

        def dispatch_wrapper(wrapped, instance, args, kwargs):
            dispatch = shim._safely("starting web transaction", shim._start_dispatch, route_extractor,
                                    wrapped, args, kwargs)
            if dispatch is None:
                return wrapped(*args, **kwargs)
            transaction, token, finalized = dispatch
            try:
                result = wrapped(*args, **kwargs)
            except Exception as exc:
                shim._safely("noticing error", shim._notice, transaction, exc)
                shim._end_web_transaction(transaction)
                raise
            finally:
                shim.restore_context(token)
            if is_coroutine(result):
                return shim._await_dispatch(result, transaction, finalized)
            if is_future(result):
                if not finalized:
                    result.add_done_callback(lambda future: shim._end_web_transaction(transaction))
                return result
            if not finalized:
                shim._end_web_transaction(transaction)
            return result

        return self.wrap(target, selector, dispatch_wrapper)

    def _resolve_dispatch_spec(self, route_extractor, wrapped, args, kwargs) -> Optional[DispatchSpec]:
        if isinstance(route_extractor, DispatchSpec):
            return replace(route_extractor)
        if callable(route_extractor):
            desc = route_extractor(self, wrapped, get_function_name(wrapped), args, kwargs)
            if desc is not None and not isinstance(desc, DispatchSpec):
                raise ShimException(f"route extractor returned {type(desc).__name__}, expected DispatchSpec")
            return desc
        return DispatchSpec()

    def _start_dispatch(self, route_extractor, wrapped, args, kwargs):
        desc = self._resolve_dispatch_spec(route_extractor, wrapped, args, kwargs)
        if desc is None:
            return None
        remote_context = extract_headers_context(desc.headers) if desc.headers else None
        # a request never nests in whatever happens to be current when it arrives
        transaction = self.agent.create_transaction(type=TRANSACTION_TYPE_WEB, remote_context=remote_context,
                                                    kind=SpanKind.SERVER)
        transaction.framework = self.framework
        transaction.verb = (desc.method or "GET").upper()
        transaction.set_route(self._parse_route(desc.route))
        transaction.trace.add_attribute(HTTP_METHOD, transaction.verb)
        if desc.url:
            transaction.trace.add_attribute(REQUEST_URI, str(desc.url))
        token = self.set_active_segment(transaction.trace)
        finalized = False
        if desc.finalize is not None:
            try:
                desc.finalize(lambda *args, **kwargs: self._end_web_transaction(transaction))
                finalized = True
            except Exception as e:
                self._report_error("registering response finalizer", e)
        return transaction, token, finalized

    def _end_web_transaction(self, transaction: Transaction) -> None:
        if not transaction.is_active():
            return
        if transaction.route:
            self._safely("tagging route", transaction.trace.add_attribute, HTTP_ROUTE, transaction.route)
        self._safely("ending web transaction", transaction.end)

    async def _await_dispatch(self, awaitable, transaction: Transaction, finalized: bool):
        token = self._safely("activating web transaction", self.set_active_segment, transaction.trace)
        try:
            value = await awaitable
        except Exception as exc:
            self._safely("noticing error", self._notice, transaction, exc)
            self._end_web_transaction(transaction)
            raise
        finally:
            self.restore_context(token)
        if not finalized:
            self._end_web_transaction(transaction)
        return value

    # -- middleware --------------------------------------------------------

    def wrap_middleware(self, handler, route=None, spec: Optional[MiddlewareSpec] = None):
        """
        Return ``handler`` wrapped so each invocation inside a transaction records a
        ``Python/Middleware/{framework}/{name}/{route}`` segment. Route handlers
        (``spec.type == ROUTE``) also name the transaction after ``route``. When
        ``spec.next`` points at a continuation argument, calling it ends the segment and
        continues in the dispatch context.
        """
        if is_shim_wrapper(handler):
            return handler
        if not callable(handler):
            self._report_misuse(f"cannot wrap non-callable middleware {handler!r}")
            return handler
        if not self._is_enabled():
            return handler
        desc = replace(spec) if spec is not None else MiddlewareSpec()
        if route is not None:
            desc.route = route
        wrapper = self._make_middleware_wrapper(desc)
        try:
            return self._new_wrapper(handler, wrapper)
        except Exception as e:
            self._report_error("wrapping middleware", e)
            return handler

    def record_middleware(self, target, selector, spec: Optional[MiddlewareSpec] = None):
        """Wrap the existing handler attribute ``target.<selector>`` as middleware."""
        desc = replace(spec) if spec is not None else MiddlewareSpec()
        return self.wrap(target, selector, self._make_middleware_wrapper(desc))

    def _make_middleware_wrapper(self, desc: MiddlewareSpec):
        shim = self

        def middleware_wrapper(wrapped, instance, args, kwargs):
            call = shim._safely("starting middleware segment", shim._start_middleware, desc, wrapped, args)
            if call is None:
                return wrapped(*args, **kwargs)
            try:
                result = wrapped(*call.args, **kwargs)
            except Exception as exc:
                shim._safely("noticing error", shim._notice, call.transaction, exc)
                shim._safely("ending middleware segment", call.segment.end, exc)
                raise
            finally:
                shim.restore_context(call.token)
            if is_coroutine(result):
                return shim._await_middleware(result, call)
            if not call.pending_next:
                shim._safely("ending middleware segment", call.segment.end)
            return result

        return middleware_wrapper

    def _middleware_route(self, desc: MiddlewareSpec) -> str:
        return self._parse_route(desc.route) or ROOT_ROUTE

    def _start_middleware(self, desc: MiddlewareSpec, wrapped, args) -> Optional[_MiddlewareCall]:
        transaction = self.get_transaction()
        if transaction is None:
            return None
        route = self._middleware_route(desc)
        if desc.type == MIDDLEWARE_TYPE_ROUTE:
            transaction.set_route(route)
        if desc.type == MIDDLEWARE_TYPE_ERRORWARE:
            self._notice(transaction, get_arg(args, {}, index=0))
        name = desc.name or get_function_name(wrapped)
        dispatch_context = self.agent.get_context()
        segment = self.create_segment(f"{MIDDLEWARE_PREFIX}/{self.framework}/{name}/{route}")
        if segment is None:
            return None
        call_args = args
        pending_next = False
        index = resolve_index(args, desc.next)
        if index is not None and callable(args[index]):
            call_args = replace_arg(args, index, self._wrap_next(args[index], transaction, segment, dispatch_context))
            pending_next = True
        token = self.set_active_segment(segment)
        return _MiddlewareCall(transaction, segment, call_args, token, pending_next)

    def _wrap_next(self, next_fn, transaction: Transaction, segment: Segment, dispatch_context):
        shim = self
        bound = self.bind_context(next_fn, dispatch_context)

        def next_wrapper(*args, **kwargs):
            error = args[0] if args else None
            shim._safely("noticing error", shim._notice, transaction, error)
            shim._safely("ending middleware segment", segment.end)
            return bound(*args, **kwargs)

        return next_wrapper

    async def _await_middleware(self, awaitable, call: _MiddlewareCall):
        token = self._safely("activating middleware segment", self.set_active_segment, call.segment)
        try:
            value = await awaitable
        except Exception as exc:
            self._safely("noticing error", self._notice, call.transaction, exc)
            self._safely("ending middleware segment", call.segment.end, exc)
            raise
        finally:
            self.restore_context(token)
        self._safely("ending middleware segment", call.segment.end)
        return value

    def wrap_middleware_mounter(self, target, selector, spec: Optional[MountSpec] = None):
        """
        Wrap a registration method (``use``, ``get``, ``route``...) so every handler it
        receives is mounted through ``wrap_middleware`` with the mount route. ``spec.route``
        is the index of the route argument, if the method takes one.
        """
        shim = self
        spec = spec or MountSpec()

        def mounter_wrapper(wrapped, instance, args, kwargs):
            mounted = shim._safely("wrapping mounted middleware", shim._wrap_mounted, spec, wrapped, args)
            if mounted is None:
                return wrapped(*args, **kwargs)
            return wrapped(*mounted, **kwargs)

        return self.wrap(target, selector, mounter_wrapper)

    def _wrap_mounted(self, spec: MountSpec, wrapped, args):
        route_index = resolve_index(args, spec.route)
        route = args[route_index] if route_index is not None else None
        if callable(route):
            route_index, route = None, None
        mounted = []
        for index, arg in enumerate(args):
            if index == route_index:
                mounted.append(arg)
            elif isinstance(arg, (list, tuple)):
                mounted.append(type(arg)(self._mount_one(spec, wrapped, item, route) for item in arg))
            else:
                mounted.append(self._mount_one(spec, wrapped, arg, route))
        return tuple(mounted)

    def _mount_one(self, spec: MountSpec, wrapped, handler, route):
        if not callable(handler):
            return handler
        if spec.wrapper is not None:
            return spec.wrapper(self, handler, get_function_name(wrapped), route)
        return self.wrap_middleware(handler, route, MiddlewareSpec(type=spec.type, next=spec.next))

    def record_render(self, target, selector, view_extractor=None):
        """Record template rendering as ``View/{view}/Rendering``."""
        shim = self
        spec = view_extractor if isinstance(view_extractor, RenderSpec) else RenderSpec()

        def render_spec(_shim, fn, name, args, kwargs):
            if callable(view_extractor) and not isinstance(view_extractor, RenderSpec):
                view = view_extractor(shim, fn, name, args, kwargs)
            elif isinstance(view_extractor, int):
                view = get_arg(args, kwargs, index=view_extractor)
            elif callable(spec.view):
                view = spec.view(shim, fn, name, args, kwargs)
            else:
                view = get_arg(args, kwargs, index=spec.view)
            if view is None:
                view = name
            return RecordSpec(name=f"{VIEW_PREFIX}/{view}/Rendering", callback=spec.callback, promise=spec.promise)

        return self.record(target, selector, render_spec)
