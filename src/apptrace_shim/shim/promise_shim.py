import inspect
import logging
from typing import Iterable, Optional, Union

from apptrace_shim.instrumentation.common.constants import ModuleType
from apptrace_shim.instrumentation.common.utils import resolve_index
from apptrace_shim.shim.shim import Shim

logger = logging.getLogger(__name__)


class PromiseShim(Shim):
    """
    Shim for promise and future libraries.

    Continuations registered through ``then``/``catch`` style methods, and work handed
    to executors, run with the context that was current when they were attached. The
    chain itself is not changed: results, exceptions and scheduling are those of the
    original library.
    """

    _type = ModuleType.PROMISE

    def __init__(self, agent, module_name, resolved_name=None, wrap_record=None):
        super().__init__(agent, module_name, resolved_name, wrap_record)
        self._class: Optional[type] = None

    def set_class(self, cls: type) -> None:
        if not inspect.isclass(cls):
            self._report_misuse("promise class must be a class")
            return
        self._class = cls

    @property
    def promise_class(self) -> Optional[type]:
        return self._class

    def is_promise(self, value) -> bool:
        if self._class is not None and isinstance(value, self._class):
            return True
        return inspect.isawaitable(value) or (callable(getattr(value, "then", None)))

    def wrap_chain_method(self, target, selector, callbacks: Union[None, Iterable[Union[int, str]]] = None):
        """
        Bind the callables passed to ``target.<selector>`` to the current context.

        ``callbacks`` picks which arguments are continuations: positional indexes and
        keyword names. By default every callable argument is bound.
        """
        shim = self
        selected = None if callbacks is None else tuple(callbacks)

        def chain_wrapper(wrapped, instance, args, kwargs):
            bound = shim._safely("binding continuations", shim._bind_continuations, selected, args, kwargs)
            if bound is None:
                return wrapped(*args, **kwargs)
            bound_args, bound_kwargs = bound
            return wrapped(*bound_args, **bound_kwargs)

        return self.wrap(target, selector, chain_wrapper)

    def _bind_continuations(self, selected, args, kwargs):
        if self.get_active_segment() is None:
            return None
        context = self.agent.get_context()
        args = list(args)
        kwargs = dict(kwargs)
        if selected is None:
            positions = range(len(args))
            names = list(kwargs)
        else:
            positions = [resolve_index(args, key) for key in selected if isinstance(key, int)]
            names = [key for key in selected if isinstance(key, str)]
        for index in positions:
            if index is not None and callable(args[index]):
                args[index] = self.bind_context(args[index], context)
        for name in names:
            if name in kwargs and callable(kwargs[name]):
                kwargs[name] = self.bind_context(kwargs[name], context)
        return tuple(args), kwargs

    def wrap_then(self, target, selector="then"):
        return self.wrap_chain_method(target, selector)

    def wrap_catch(self, target, selector="catch"):
        return self.wrap_chain_method(target, selector)

    def wrap_executor_caller(self, target, selector, index: int = 0):
        """
        Bind the work function at ``index`` of ``target.<selector>`` so pool threads run it
        in the submitting transaction (``Executor.submit`` uses 0, ``loop.run_in_executor``
        uses 1).
        """
        return self.wrap_chain_method(target, selector, callbacks=(index,))
