from contextlib import contextmanager

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from apptrace_shim.instrumentation.common.agent import Agent
from apptrace_shim.instrumentation.common.config import load_config
from apptrace_shim.instrumentation.common.constants import (
    DIAGNOSTIC_MISUSE,
    DIAGNOSTIC_INSTRUMENTATION_ERROR,
    TRANSACTION_TYPE_BG,
)
from apptrace_shim.instrumentation.common.context import context_with_segment


def setup_agent(**config_overrides):
    """
    Build an agent recording into a fresh in-memory exporter.

    Returns:
        (agent, exporter)
    """
    exporter = InMemorySpanExporter()
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))
    agent = Agent(tracer_provider=tracer_provider, config=load_config(**config_overrides))
    return agent, exporter


def get_span_names(exporter):
    return [span.name for span in exporter.get_finished_spans()]


def find_span(exporter, name):
    for span in exporter.get_finished_spans():
        if span.name == name:
            return span
    return None


def call_count(agent, name, scope=None):
    stats = agent.metrics.get_metric(name, scope)
    return stats.call_count if stats is not None else 0


def misuse_messages(agent):
    return [event.message for event in agent.get_diagnostics(DIAGNOSTIC_MISUSE)]


def error_messages(agent):
    return [event.message for event in agent.get_diagnostics(DIAGNOSTIC_INSTRUMENTATION_ERROR)]


@contextmanager
def in_transaction(agent, name="test", type=TRANSACTION_TYPE_BG):
    """Run the block inside a fresh transaction, ended (if still active) on exit."""
    transaction = agent.create_transaction(type=type)
    transaction.set_partial_name(name)
    token = agent.set_context(context_with_segment(transaction.trace))
    try:
        yield transaction
    finally:
        agent.restore_context(token)
        transaction.end()
