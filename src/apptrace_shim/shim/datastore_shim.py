import logging
import re
from dataclasses import replace
from typing import Callable, Optional

from opentelemetry.trace import SpanKind

from apptrace_shim.instrumentation.common.constants import (
    ModuleType,
    DATASTORE_NAMES,
    DATASTORE_OPERATION_PREFIX,
    DATASTORE_STATEMENT_PREFIX,
    ENV_DATASTORE,
    DB_SYSTEM,
    DB_OPERATION,
    DB_COLLECTION,
    DB_STATEMENT,
    DB_NAME,
    PEER_HOSTNAME,
    PEER_PORT,
    RECORD_SQL_OBFUSCATED,
    RECORD_SQL_RAW,
)
from apptrace_shim.instrumentation.common.specs import OperationSpec, QuerySpec
from apptrace_shim.instrumentation.common.utils import get_arg
from apptrace_shim.shim.shim import Shim

logger = logging.getLogger(__name__)

UNKNOWN_DATASTORE = "Unknown"
OTHER = "other"

_COMMENT_RE = re.compile(r"/\*.*?\*/|--[^\n]*", re.S)
_OPERATION_RE = re.compile(r"^\s*([a-zA-Z]+)")
_IDENTIFIER = r"[`\"\[]?([\w$.]+)[`\"\]]?"
_COLLECTION_RES = {
    "select": re.compile(r"\bfrom\s+" + _IDENTIFIER, re.I),
    "delete": re.compile(r"\bfrom\s+" + _IDENTIFIER, re.I),
    "insert": re.compile(r"\binto\s+" + _IDENTIFIER, re.I),
    "replace": re.compile(r"\binto\s+" + _IDENTIFIER, re.I),
    "update": re.compile(r"^\s*update\s+" + _IDENTIFIER, re.I),
    "call": re.compile(r"^\s*call\s+" + _IDENTIFIER, re.I),
    "create": re.compile(r"\b(?:table|index|view)\s+(?:if\s+not\s+exists\s+)?" + _IDENTIFIER, re.I),
    "drop": re.compile(r"\b(?:table|index|view)\s+(?:if\s+exists\s+)?" + _IDENTIFIER, re.I),
    "alter": re.compile(r"\btable\s+" + _IDENTIFIER, re.I),
}
_STRING_LITERAL_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'")
_NUMBER_LITERAL_RE = re.compile(r"(?<![\w$.])-?\d+(?:\.\d+)?\b")
_WHITESPACE_RE = re.compile(r"\s+")
_USE_QUERY_RE = re.compile(r"^\s*use\s+[`\"\[]?([^`\"\];\s]+)", re.I)


class ParsedStatement:
    def __init__(self, operation: str, collection: Optional[str] = None, raw: Optional[str] = None,
                 normalized: Optional[str] = None):
        self.operation = operation or OTHER
        self.collection = collection
        self.raw = raw
        self.normalized = normalized

    def __eq__(self, other):
        if not isinstance(other, ParsedStatement):
            return NotImplemented
        return (self.operation, self.collection, self.raw, self.normalized) == \
            (other.operation, other.collection, other.raw, other.normalized)

    def __repr__(self):
        return f"<ParsedStatement {self.operation} {self.collection}>"


def obfuscate_sql(query: str) -> str:
    """Replace literal values with ``?`` and collapse whitespace."""
    query = _STRING_LITERAL_RE.sub("?", query)
    query = _NUMBER_LITERAL_RE.sub("?", query)
    return _WHITESPACE_RE.sub(" ", query).strip()


def parse_sql(query: str) -> ParsedStatement:
    stripped = _COMMENT_RE.sub(" ", query)
    match = _OPERATION_RE.match(stripped)
    if match is None:
        return ParsedStatement(OTHER, None, query, obfuscate_sql(stripped))
    operation = match.group(1).lower()
    collection = None
    collection_re = _COLLECTION_RES.get(operation)
    if collection_re is not None:
        collection_match = collection_re.search(stripped)
        if collection_match is not None:
            collection = collection_match.group(1)
    return ParsedStatement(operation, collection, query, obfuscate_sql(stripped))


class DatastoreShim(Shim):
    """
    Shim for database and cache clients. Query methods record
    ``Datastore/statement/{product}/{collection}/{operation}`` segments, other commands
    ``Datastore/operation/{product}/{operation}``.
    """

    _type = ModuleType.DATASTORE

    def __init__(self, agent, module_name, resolved_name=None, wrap_record=None):
        super().__init__(agent, module_name, resolved_name, wrap_record)
        self._datastore: Optional[str] = None
        self._parser: Callable = parse_sql

    def set_datastore(self, name: str) -> None:
        self._datastore = DATASTORE_NAMES.get(str(name).upper(), name)
        environment = getattr(self.agent, "environment", None)
        if environment is not None:
            environment.add(ENV_DATASTORE, self._datastore)

    @property
    def datastore(self) -> str:
        return self._datastore or UNKNOWN_DATASTORE

    def set_parser(self, parser: Callable) -> None:
        if not callable(parser):
            self._report_misuse("datastore query parser must be callable")
            return
        self._parser = parser

    def parse_query(self, query) -> ParsedStatement:
        if isinstance(query, bytes):
            query = query.decode("utf-8", errors="replace")
        query = str(query)
        parsed = self._safely("parsing query", self._parser, query)
        if isinstance(parsed, dict):
            parsed = ParsedStatement(**parsed)
        if not isinstance(parsed, ParsedStatement):
            parsed = ParsedStatement(OTHER, None, query, None)
        return parsed

    def get_database_name_from_use_query(self, query) -> Optional[str]:
        match = _USE_QUERY_RE.match(str(query))
        return match.group(1) if match else None

    def capture_instance_attributes(self, host=None, port=None, database=None) -> None:
        segment = self.get_active_segment()
        if segment is None:
            return
        self._add_instance_attributes(segment.add_attribute, host, port, database)

    @staticmethod
    def _add_instance_attributes(setter, host, port, database):
        if host is not None:
            setter(PEER_HOSTNAME, str(host))
        if port is not None:
            setter(PEER_PORT, str(port))
        if database is not None:
            setter(DB_NAME, str(database))

    def _statement(self, parsed: ParsedStatement) -> Optional[str]:
        mode = getattr(getattr(self.agent, "config", None), "record_sql", RECORD_SQL_OBFUSCATED)
        if mode == RECORD_SQL_RAW:
            return parsed.raw
        if mode == RECORD_SQL_OBFUSCATED:
            return parsed.normalized
        return None

    # -- query recording ---------------------------------------------------

    def record_query(self, target, selector, query_extractor):
        """
        Record each call as a statement segment. ``query_extractor`` is a ``QuerySpec``, an
        argument index holding the query, or a callable ``(shim, fn, name, args, kwargs)``
        returning a ``QuerySpec`` or the raw query. Callback arguments are never invoked to
        find the query.
        """
        return self.record(target, selector, self._make_query_spec(query_extractor, batch=False))

    def record_batch_query(self, target, selector, query_extractor):
        return self.record(target, selector, self._make_query_spec(query_extractor, batch=True))

    def _resolve_query_spec(self, query_extractor, fn, name, args, kwargs) -> Optional[QuerySpec]:
        if isinstance(query_extractor, QuerySpec):
            return replace(query_extractor, attributes=dict(query_extractor.attributes))
        if isinstance(query_extractor, int):
            return QuerySpec(query=query_extractor)
        if callable(query_extractor):
            result = query_extractor(self, fn, name, args, kwargs)
            if isinstance(result, QuerySpec):
                return replace(result, attributes=dict(result.attributes))
            if result is None:
                return None
            return QuerySpec(query=result)
        return None

    @staticmethod
    def _extract_query(desc: QuerySpec, args, kwargs):
        query = desc.query
        if isinstance(query, int):
            return get_arg(args, kwargs, index=query)
        if callable(query):
            return query(args, kwargs)
        return query

    def _make_query_spec(self, query_extractor, batch: bool):
        shim = self

        def query_spec(_shim, fn, name, args, kwargs):
            desc = shim._resolve_query_spec(query_extractor, fn, name, args, kwargs)
            if desc is None:
                return None
            query = shim._extract_query(desc, args, kwargs)
            if query is None:
                return None
            parsed = shim.parse_query(query)
            operation = parsed.operation
            if batch or desc.batch:
                operation = f"{operation}/batch"
            collection = parsed.collection or OTHER
            desc.name = f"{DATASTORE_STATEMENT_PREFIX}/{shim.datastore}/{collection}/{operation}"
            desc.kind = desc.kind or SpanKind.CLIENT
            attributes = dict(desc.attributes)
            attributes[DB_SYSTEM] = shim.datastore
            attributes[DB_OPERATION] = operation
            attributes[DB_COLLECTION] = collection
            statement = shim._statement(parsed)
            if statement is not None:
                attributes[DB_STATEMENT] = statement
            shim._add_instance_attributes(attributes.__setitem__, desc.host, desc.port, desc.database)
            desc.attributes = attributes
            return desc

        return query_spec

    def record_operation(self, target, selector, spec):
        """Record non-query commands (``get``, ``set``, ``connect``...) as operation segments."""
        shim = self

        def operation_spec(_shim, fn, name, args, kwargs):
            if callable(spec):
                desc = spec(shim, fn, name, args, kwargs)
                if desc is None:
                    return None
            else:
                desc = spec if isinstance(spec, OperationSpec) else OperationSpec()
            desc = replace(desc, attributes=dict(desc.attributes))
            operation = desc.name or name
            desc.name = f"{DATASTORE_OPERATION_PREFIX}/{shim.datastore}/{operation}"
            desc.kind = desc.kind or SpanKind.CLIENT
            attributes = dict(desc.attributes)
            attributes[DB_SYSTEM] = shim.datastore
            attributes[DB_OPERATION] = operation
            if desc.collection:
                attributes[DB_COLLECTION] = desc.collection
            shim._add_instance_attributes(attributes.__setitem__, desc.host, desc.port, desc.database)
            desc.attributes = attributes
            return desc

        return self.record(target, selector, operation_spec)
