import functools
import inspect
import logging

from opentelemetry.context import Context, attach, create_key, detach, get_current, get_value, set_value
from opentelemetry.trace import set_span_in_context

logger = logging.getLogger(__name__)

_SEGMENT_KEY = create_key("apptrace-shim-segment")


def get_current_segment(context: Context = None):
    return get_value(_SEGMENT_KEY, context)


def context_with_segment(segment, context: Context = None) -> Context:
    """Return a copy of ``context`` (default: current) where ``segment`` is the active segment."""
    if context is None:
        context = get_current()
    context = set_value(_SEGMENT_KEY, segment, context)
    span = getattr(segment, "span", None)
    if span is not None:
        context = set_span_in_context(span, context)
    return context


def attach_context(context: Context) -> object:
    return attach(context)


def detach_context(token) -> None:
    if token is not None:
        detach(token)


async def _run_in_context(awaitable, context: Context):
    token = attach(context)
    try:
        return await awaitable
    finally:
        detach(token)


def bind_awaitable(awaitable, context: Context):
    """Wrap a coroutine so ``context`` is current every time it resumes."""
    return _run_in_context(awaitable, context)


def bind(fn, context: Context = None):
    """
    Return a variant of ``fn`` that runs with ``context`` (default: the context current
    right now) attached, restoring whatever was current before once it returns.
    Coroutine functions, and plain functions returning coroutines, stay bound while awaited.
    """
    if context is None:
        context = get_current()

    if inspect.iscoroutinefunction(fn):
        @functools.wraps(fn)
        async def bound_async(*args, **kwargs):
            token = attach(context)
            try:
                return await fn(*args, **kwargs)
            finally:
                detach(token)
        return bound_async

    @functools.wraps(fn)
    def bound(*args, **kwargs):
        token = attach(context)
        try:
            result = fn(*args, **kwargs)
        finally:
            detach(token)
        if inspect.iscoroutine(result):
            return bind_awaitable(result, context)
        return result
    return bound
