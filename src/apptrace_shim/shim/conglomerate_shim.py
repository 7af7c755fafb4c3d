import logging
from typing import Dict, Optional, Tuple

from apptrace_shim.instrumentation.common.constants import ModuleType
from apptrace_shim.shim.shim import Shim

logger = logging.getLogger(__name__)


class ConglomerateShim(Shim):
    """
    Shim for libraries bundling several kinds of functionality (a client that is both a
    datastore and a message broker, a framework shipping its own ORM...).

    Category specific methods called on the conglomerate are routed to a specialized shim
    of the owning category. All specialized shims share the agent, the resolved name and
    the wrap record, so ``unwrap_all`` on any of them restores everything.
    """

    _type = ModuleType.CONGLOMERATE

    def __init__(self, agent, module_name, resolved_name=None, wrap_record=None):
        super().__init__(agent, module_name, resolved_name, wrap_record)
        self._specialized: Dict[Tuple[ModuleType, Optional[str]], Shim] = {}

    def make_specialized_shim(self, type, submodule: Optional[str] = None) -> Shim:
        from apptrace_shim.shim.registry import get_shim_class, to_module_type

        module_type = to_module_type(type) or ModuleType.GENERIC
        if module_type == ModuleType.CONGLOMERATE:
            self._report_misuse("a conglomerate shim cannot specialize into another conglomerate")
            return self
        key = (module_type, submodule)
        shim = self._specialized.get(key)
        if shim is None:
            shim_class = get_shim_class(module_type)
            shim = shim_class(self.agent, submodule or self.module_name, self.resolved_name, self._wrap_record)
            self._specialized[key] = shim
            logger.debug("Created %s shim for %s", module_type.value, shim.module_name)
        return shim

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        from apptrace_shim.shim.registry import owner_of

        owner = owner_of(name)
        if owner is None:
            raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")
        return getattr(self.make_specialized_shim(owner), name)
