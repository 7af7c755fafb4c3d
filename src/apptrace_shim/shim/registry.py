import inspect
import logging
from typing import Dict, Optional

from apptrace_shim.instrumentation.common.constants import ModuleType
from apptrace_shim.shim.shim import Shim
from apptrace_shim.shim.conglomerate_shim import ConglomerateShim
from apptrace_shim.shim.datastore_shim import DatastoreShim
from apptrace_shim.shim.message_shim import MessageShim
from apptrace_shim.shim.promise_shim import PromiseShim
from apptrace_shim.shim.transaction_shim import TransactionShim
from apptrace_shim.shim.webframework_shim import WebFrameworkShim

logger = logging.getLogger(__name__)

SHIM_TYPE_MAP: Dict[ModuleType, type] = {
    ModuleType.GENERIC: Shim,
    ModuleType.CONGLOMERATE: ConglomerateShim,
    ModuleType.DATASTORE: DatastoreShim,
    ModuleType.MESSAGE: MessageShim,
    ModuleType.PROMISE: PromiseShim,
    ModuleType.TRANSACTION: TransactionShim,
    ModuleType.WEB_FRAMEWORK: WebFrameworkShim,
}

_SPECIALIZED_TYPES = (
    ModuleType.DATASTORE,
    ModuleType.MESSAGE,
    ModuleType.PROMISE,
    ModuleType.TRANSACTION,
    ModuleType.WEB_FRAMEWORK,
)

_method_owners: Optional[Dict[str, ModuleType]] = None


def to_module_type(type) -> Optional[ModuleType]:
    if isinstance(type, ModuleType):
        return type
    try:
        return ModuleType(type)
    except (ValueError, TypeError):
        return None


def get_shim_class(type) -> type:
    module_type = to_module_type(type)
    if module_type is None or module_type not in SHIM_TYPE_MAP:
        return Shim
    return SHIM_TYPE_MAP[module_type]


def method_owners() -> Dict[str, ModuleType]:
    """Public methods each specialization adds on top of the generic shim."""
    global _method_owners
    if _method_owners is None:
        owners = {}
        for module_type in _SPECIALIZED_TYPES:
            shim_class = SHIM_TYPE_MAP[module_type]
            for name, member in vars(shim_class).items():
                if name.startswith("_") or hasattr(Shim, name):
                    continue
                if inspect.isfunction(member):
                    owners[name] = module_type
        _method_owners = owners
    return _method_owners


def owner_of(method_name: str) -> Optional[ModuleType]:
    return method_owners().get(method_name)
