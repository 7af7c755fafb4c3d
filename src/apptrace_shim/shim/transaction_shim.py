import logging
from typing import Optional

from apptrace_shim.instrumentation.common.constants import (
    ModuleType,
    TRANSACTION_PREFIXES,
    TRANSACTION_TYPE_BG,
)
from apptrace_shim.instrumentation.common.context import get_current_segment
from apptrace_shim.instrumentation.common.specs import TransactionSpec
from apptrace_shim.instrumentation.common.transaction import Transaction
from apptrace_shim.instrumentation.common.utils import get_function_name, is_coroutine, is_future
from apptrace_shim.shim.shim import Shim

logger = logging.getLogger(__name__)


class TransactionHandle:
    """Opaque reference to a transaction started through a ``TransactionShim``."""

    def __init__(self, shim: "TransactionShim", transaction: Transaction, token: object):
        self._shim = shim
        self._transaction = transaction
        self._token = token

    @property
    def transaction(self) -> Transaction:
        return self._transaction

    @property
    def name(self) -> str:
        return self._transaction.name

    def is_active(self) -> bool:
        return self._transaction.is_active()

    def set_name(self, name: str) -> None:
        self._shim.set_transaction_name(self, name)

    def end(self) -> None:
        self._shim.end_transaction(self)

    def _take_token(self) -> object:
        token, self._token = self._token, None
        return token

    def __repr__(self):
        return f"<TransactionHandle {self._transaction!r}>"


class TransactionShim(Shim):
    """
    Explicit transaction boundaries for libraries that delimit their own units of work
    (job runners, task queues, schedulers).
    """

    _type = ModuleType.TRANSACTION

    def _nest_default(self) -> bool:
        config = getattr(self.agent, "config", None)
        return getattr(config, "nest_transactions", True)

    def start_transaction(self, name: Optional[str] = None, type: str = TRANSACTION_TYPE_BG,
                          nest: Optional[bool] = None) -> Optional[TransactionHandle]:
        """
        Start a transaction and make it current. When another transaction is already
        current the new one is nested under it, unless ``nest`` (or the
        ``nest_transactions`` setting) is false, in which case it replaces the current one
        until it ends.
        """
        if not self._is_enabled():
            return None
        return self._safely("starting transaction", self._start, name, type, nest)

    def _start(self, name, type, nest) -> TransactionHandle:
        if type not in TRANSACTION_PREFIXES:
            self._report_misuse(f"unknown transaction type {type!r}, using {TRANSACTION_TYPE_BG}")
            type = TRANSACTION_TYPE_BG
        if nest is None:
            nest = self._nest_default()
        parent = self.get_active_segment() if nest else None
        transaction = self.agent.create_transaction(type=type, parent_segment=parent)
        if name:
            transaction.set_partial_name(name)
        token = self.set_active_segment(transaction.trace)
        logger.debug("Started transaction %s (%s)", transaction.id, transaction.name)
        return TransactionHandle(self, transaction, token)

    def end_transaction(self, handle: TransactionHandle) -> None:
        """
        End the handle's transaction and restore the context that was current when it
        started. Ending an ended transaction, or one whose nested child is still active,
        is reported as misuse and ignored.
        """
        if not isinstance(handle, TransactionHandle):
            self._report_misuse(f"end_transaction expects a TransactionHandle, got {type(handle).__name__}")
            return
        transaction = handle.transaction
        if not transaction.is_active():
            self._report_misuse(f"transaction {transaction.id} ended twice")
            return
        if transaction.has_active_children():
            self._report_misuse(f"transaction {transaction.id} still has an active nested transaction")
            return
        current = get_current_segment()
        is_current = current is not None and current.transaction is transaction
        self._safely("ending transaction", transaction.end)
        # a collaborator ending the transaction from elsewhere must not reset a context it does not own
        if is_current:
            self.restore_context(handle._take_token())

    def set_transaction_name(self, handle: TransactionHandle, name: str) -> None:
        if not isinstance(handle, TransactionHandle):
            self._report_misuse("set_transaction_name expects a TransactionHandle")
            return
        if not handle.transaction.set_partial_name(name):
            self._report_misuse(f"cannot rename ended transaction {handle.transaction.id}")

    def get_transaction_handle(self) -> Optional[TransactionHandle]:
        transaction = self.get_transaction()
        if transaction is None:
            return None
        return TransactionHandle(self, transaction, None)

    def bind_create_transaction(self, target, selector, spec: Optional[TransactionSpec] = None):
        """Run every call of ``target.<selector>`` in a transaction of its own."""
        shim = self
        spec = spec or TransactionSpec()

        def transaction_wrapper(wrapped, instance, args, kwargs):
            name = spec.name or get_function_name(wrapped)
            handle = shim.start_transaction(name=name, type=spec.type, nest=spec.nest)
            if handle is None:
                return wrapped(*args, **kwargs)
            try:
                result = wrapped(*args, **kwargs)
            except Exception as exc:
                shim._finish(handle, exc)
                raise
            if is_coroutine(result):
                shim._release(handle)
                return shim._await_transaction(handle, result)
            if is_future(result):
                shim._release(handle)
                result.add_done_callback(
                    lambda future: shim._finish(handle, None if future.cancelled() else future.exception()))
                return result
            shim._finish(handle, None)
            return result

        return self.wrap(target, selector, transaction_wrapper)

    def _release(self, handle: TransactionHandle) -> None:
        # the call returned before its work settled: restore the caller's context now
        self.restore_context(handle._take_token())

    def _finish(self, handle: TransactionHandle, error) -> None:
        if error is not None:
            self._safely("noticing error", handle.transaction.notice_error, error)
        if handle.is_active():
            self.end_transaction(handle)
        self.restore_context(handle._take_token())

    async def _await_transaction(self, handle: TransactionHandle, awaitable):
        handle._token = self._safely("activating transaction", self.set_active_segment, handle.transaction.trace)
        try:
            value = await awaitable
        except Exception as exc:
            self._finish(handle, exc)
            raise
        self._finish(handle, None)
        return value
