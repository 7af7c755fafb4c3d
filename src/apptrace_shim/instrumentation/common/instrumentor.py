import importlib
import logging
from dataclasses import dataclass
from typing import Callable, Collection, Dict, List, Optional, Union

from opentelemetry import trace
from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanProcessor

from apptrace_shim.instrumentation.common.agent import Agent, AgentContext
from apptrace_shim.instrumentation.common.config import ShimConfig, load_config
from apptrace_shim.instrumentation.common.constants import ModuleType

logger = logging.getLogger(__name__)

_instruments = ()

shim_tracer_provider: TracerProvider = None


@dataclass
class InstrumentationDefinition:
    """
    Declares one instrumented library: the module to import, its category and the
    callback ``on_require(shim, module, module_name)`` that marks its entry points.
    """
    module_name: str
    type: Union[ModuleType, str] = ModuleType.GENERIC
    on_require: Optional[Callable] = None


class ShimInstrumentor(BaseInstrumentor):
    definitions: List[InstrumentationDefinition] = []
    shims: Dict[str, object] = None
    agent: AgentContext = None

    def __init__(
            self,
            definitions: List[InstrumentationDefinition] = None,
            agent: AgentContext = None,
            config: ShimConfig = None
            ) -> None:
        self.definitions = list(definitions or [])
        self.agent = agent
        self.config = config
        self.shims = {}
        super().__init__()

    def instrumentation_dependencies(self) -> Collection[str]:
        return _instruments

    def _instrument(self, **kwargs):
        # the shim package imports this module's siblings, resolve it only once instrumenting
        from apptrace_shim.shim import create_shim_from_type

        tracer_provider: TracerProvider = kwargs.get("tracer_provider")
        if self.agent is None:
            self.agent = Agent(tracer_provider=tracer_provider, config=self.config or load_config())
        for definition in self.definitions:
            try:
                module = importlib.import_module(definition.module_name)
            except ModuleNotFoundError as e:
                logger.debug(f"ignoring module {e.name}")
                continue
            resolved_name = getattr(module, "__file__", None) or definition.module_name
            shim = create_shim_from_type(definition.type, self.agent, definition.module_name, resolved_name)
            if definition.on_require is None:
                logger.debug(f"No instrumentation callback for {definition.module_name}")
                continue
            try:
                definition.on_require(shim, module, definition.module_name)
            except Exception as ex:
                logger.error(f"_instrument exception: {str(ex)} for module: {definition.module_name}")
                shim.unwrap_all()
                continue
            self.shims[definition.module_name] = shim

    def _uninstrument(self, **kwargs):
        for module_name, shim in reversed(list(self.shims.items())):
            try:
                shim.unwrap_all()
            except Exception as ex:
                logger.error(f"_uninstrument exception: {str(ex)} for module: {module_name}")
        self.shims = {}


def set_tracer_provider(tracer_provider: TracerProvider):
    global shim_tracer_provider
    shim_tracer_provider = tracer_provider


def get_tracer_provider() -> TracerProvider:
    global shim_tracer_provider
    return shim_tracer_provider


def setup_shim_telemetry(
        service_name: str,
        span_processors: List[SpanProcessor] = None,
        definitions: List[InstrumentationDefinition] = None,
        config: ShimConfig = None) -> ShimInstrumentor:
    """
    Set up shim based instrumentation for the application.

    Parameters
    ----------
    service_name : str
        The service name recorded on the telemetry resource.
    span_processors : List[SpanProcessor], optional
        Span processors receiving finished segments. If None, a BatchSpanProcessor writing
        to the console is used.
    definitions : List[InstrumentationDefinition], optional
        The libraries to instrument. Libraries that are not installed are skipped.
    config : ShimConfig, optional
        Agent settings. If None, they are read from ``APPTRACE_SHIM_*`` environment
        variables.
    """
    config = config or load_config()
    if config.log_level:
        logging.getLogger("apptrace_shim").setLevel(config.log_level)
    resource = Resource(attributes={
        SERVICE_NAME: service_name
    })
    span_processors = span_processors or [BatchSpanProcessor(ConsoleSpanExporter())]
    set_tracer_provider(TracerProvider(resource=resource))
    for processor in span_processors:
        get_tracer_provider().add_span_processor(processor)
    tracer_provider_default = trace.get_tracer_provider()
    if "Proxy" in type(tracer_provider_default).__name__:
        trace.set_tracer_provider(get_tracer_provider())
    instrumentor = ShimInstrumentor(definitions=definitions, config=config)
    if not instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.instrument(tracer_provider=get_tracer_provider())
    return instrumentor
