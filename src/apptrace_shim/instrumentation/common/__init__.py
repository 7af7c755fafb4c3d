from .agent import Agent, AgentContext
from .config import ShimConfig, load_config
from .constants import ModuleType
from .instrumentor import (
    setup_shim_telemetry,
    ShimInstrumentor,
    InstrumentationDefinition
)
from .utils import ShimException
