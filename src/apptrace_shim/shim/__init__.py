import logging

from apptrace_shim.instrumentation.common import constants
from apptrace_shim.instrumentation.common.constants import ModuleType
from apptrace_shim.shim.shim import Shim, WrapRecord, is_shim_wrapper
from apptrace_shim.shim.conglomerate_shim import ConglomerateShim
from apptrace_shim.shim.datastore_shim import DatastoreShim, ParsedStatement
from apptrace_shim.shim.message_shim import MessageShim
from apptrace_shim.shim.promise_shim import PromiseShim
from apptrace_shim.shim.transaction_shim import TransactionShim, TransactionHandle
from apptrace_shim.shim.webframework_shim import WebFrameworkShim
from apptrace_shim.shim.registry import SHIM_TYPE_MAP, get_shim_class

logger = logging.getLogger(__name__)


def create_shim_from_type(type, agent, module_name, resolved_name=None) -> Shim:
    """
    Build the shim registered for ``type``. Unknown types get the generic ``Shim`` so a
    misdeclared library still gets baseline instrumentation.
    """
    shim_class = get_shim_class(type)
    if shim_class is Shim and type not in (ModuleType.GENERIC, ModuleType.GENERIC.value):
        logger.debug("Unknown shim type %s for %s, using generic shim", type, module_name)
    return shim_class(agent, module_name, resolved_name)


create_shim = create_shim_from_type

__all__ = [
    "constants",
    "ModuleType",
    "Shim",
    "WrapRecord",
    "is_shim_wrapper",
    "ConglomerateShim",
    "DatastoreShim",
    "ParsedStatement",
    "MessageShim",
    "PromiseShim",
    "TransactionShim",
    "TransactionHandle",
    "WebFrameworkShim",
    "SHIM_TYPE_MAP",
    "create_shim_from_type",
    "create_shim",
]
