import asyncio
import concurrent.futures
import inspect
import logging
from typing import Any, Optional

from opentelemetry.context import Context, get_current
from opentelemetry.propagate import extract, inject

logger = logging.getLogger(__name__)

ANONYMOUS_NAME = "<anonymous>"


class ShimException(Exception):
    def __init__(self, err_message: str):
        """
        Error raised inside shim bookkeeping. Never escapes to instrumented code.

        Parameters:
        - err_message (str): Error message.
        """
        super().__init__(err_message)
        self.message = err_message

    def __str__(self):
        return f"[Shim Error: {self.message}]"


def dont_throw(func):
    """
    A decorator that wraps the passed in function and logs exceptions instead of throwing them.

    @param func: The function to wrap
    @return: The wrapper function
    """
    # Obtain a logger specific to the function's module
    func_logger = logging.getLogger(func.__module__)

    # pylint: disable=inconsistent-return-statements
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as ex:
            func_logger.warning("Failed to execute %s, error: %s", func.__name__, str(ex))

    return wrapper


@dont_throw
def set_span_attribute(span, name, value):
    if value is not None and value != "":
        span.set_attribute(name, value)


def get_function_name(fn) -> str:
    name = getattr(fn, "__name__", None)
    if not name or name == "<lambda>":
        return ANONYMOUS_NAME
    return name


def resolve_index(args, index: Optional[int]) -> Optional[int]:
    """Turn a possibly negative argument index into a valid positive one, or None."""
    if index is None or not isinstance(index, int):
        return None
    length = len(args)
    if index < 0:
        index = length + index
    if 0 <= index < length:
        return index
    return None


def get_arg(args, kwargs, index=None, key=None, default=None):
    if key is not None and kwargs and key in kwargs:
        return kwargs[key]
    position = resolve_index(args, index)
    if position is not None:
        return args[position]
    return default


def replace_arg(args: tuple, index: int, value) -> tuple:
    items = list(args)
    items[index] = value
    return tuple(items)


def is_future(value) -> bool:
    return isinstance(value, (asyncio.Future, concurrent.futures.Future))


def is_coroutine(value) -> bool:
    return inspect.iscoroutine(value)


def normalize_headers(headers) -> dict:
    if not headers:
        return {}
    try:
        items = headers.items() if hasattr(headers, "items") else headers
        normalized = {}
        for key, value in items:
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            normalized[str(key).lower()] = value
        return normalized
    except Exception as e:
        logger.debug(f"Unable to normalize headers: {e}")
        return {}


def extract_headers_context(headers, context: Context = None) -> Context:
    """Build a context continuing the trace carried by ``headers`` (W3C traceparent)."""
    return extract(normalize_headers(headers), context=context if context is not None else Context())


def inject_headers(headers, context: Context = None) -> None:
    if headers is None:
        return
    inject(headers, context=context if context is not None else get_current())


def describe(value: Any) -> str:
    if value is None:
        return "None"
    name = getattr(value, "__qualname__", None) or getattr(value, "__name__", None)
    if name:
        return name
    return type(value).__name__
