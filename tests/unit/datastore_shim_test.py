import asyncio
import unittest

from opentelemetry.trace import SpanKind

from common.dummy_datastore import Connection
from common.utils import call_count, error_messages, find_span, in_transaction, setup_agent
from apptrace_shim.instrumentation.common.constants import (
    ModuleType,
    DB_COLLECTION,
    DB_NAME,
    DB_OPERATION,
    DB_STATEMENT,
    DB_SYSTEM,
    ENV_DATASTORE,
    PEER_HOSTNAME,
    PEER_PORT,
)
from apptrace_shim.instrumentation.common.specs import OperationSpec, QuerySpec
from apptrace_shim.shim import ParsedStatement, create_shim_from_type
from apptrace_shim.shim.datastore_shim import obfuscate_sql, parse_sql


def connection_query(shim, fn, name, args, kwargs):
    return QuerySpec(query=0, callback=1)


class TestSqlParsing(unittest.TestCase):
    def test_parse_select(self):
        parsed = parse_sql("SELECT id, name FROM users WHERE id = 42")
        assert parsed.operation == "select"
        assert parsed.collection == "users"
        assert parsed.normalized == "SELECT id, name FROM users WHERE id = ?"

    def test_parse_statements(self):
        cases = {
            "insert into `orders` (id) values (1)": ("insert", "orders"),
            "UPDATE inventory SET count = 3": ("update", "inventory"),
            "delete from sessions where token = 'abc'": ("delete", "sessions"),
            "/* comment */ select * from public.items": ("select", "public.items"),
            "CALL refresh_totals()": ("call", "refresh_totals"),
            "CREATE TABLE IF NOT EXISTS audit (id int)": ("create", "audit"),
            "BEGIN": ("begin", None),
        }
        for query, (operation, collection) in cases.items():
            parsed = parse_sql(query)
            assert (parsed.operation, parsed.collection) == (operation, collection), query

    def test_parse_garbage(self):
        parsed = parse_sql("   ")
        assert parsed.operation == "other"
        assert parsed.collection is None

    def test_obfuscate_literals(self):
        assert obfuscate_sql("select * from t where a = 'x''y' and b = 12.5") == "select * from t where a = ? and b = ?"
        assert obfuscate_sql("select col1 from t2") == "select col1 from t2"


class TestDatastoreShim(unittest.TestCase):
    def setUp(self):
        self.agent, self.exporter = setup_agent()
        self.shim = create_shim_from_type(ModuleType.DATASTORE, self.agent, "common.dummy_datastore")
        self.shim.set_datastore("postgres")
        self.connection = Connection()

    def tearDown(self):
        self.shim.unwrap_all()

    def test_set_datastore_records_environment(self):
        assert self.shim.datastore == "Postgres"
        assert self.agent.environment.get(ENV_DATASTORE) == ["Postgres"]
        self.shim.set_datastore("CustomStore")
        assert self.shim.datastore == "CustomStore"

    def test_record_query_names_statement_segment(self):
        self.shim.record_query(Connection, "query", QuerySpec(query=0, host="db.local", port=5432,
                                                             database="shop"))
        with in_transaction(self.agent, "report") as transaction:
            assert self.connection.query("SELECT * FROM users WHERE id = 7") == [{"id": 1}]
        segment = transaction.segments[0]
        assert segment.name == "Datastore/statement/Postgres/users/select"
        span = find_span(self.exporter, segment.name)
        assert span.kind == SpanKind.CLIENT
        assert span.attributes[DB_SYSTEM] == "Postgres"
        assert span.attributes[DB_OPERATION] == "select"
        assert span.attributes[DB_COLLECTION] == "users"
        assert span.attributes[DB_STATEMENT] == "SELECT * FROM users WHERE id = ?"
        assert span.attributes[PEER_HOSTNAME] == "db.local"
        assert span.attributes[PEER_PORT] == "5432"
        assert span.attributes[DB_NAME] == "shop"
        assert call_count(self.agent, segment.name, scope="OtherTransaction/report") == 1

    def test_query_index_shorthand(self):
        self.shim.record_query(Connection, "query", 0)
        with in_transaction(self.agent) as transaction:
            self.connection.query("delete from carts")
        assert transaction.segments[0].name == "Datastore/statement/Postgres/carts/delete"

    def test_raw_and_disabled_statement_recording(self):
        for mode, expected in (("raw", "select * from t where a = 1"), ("off", None)):
            agent, exporter = setup_agent(record_sql=mode)
            shim = create_shim_from_type(ModuleType.DATASTORE, agent, "common.dummy_datastore")
            shim.record_query(Connection, "query", 0)
            try:
                with in_transaction(agent):
                    self.connection.query("select * from t where a = 1")
            finally:
                shim.unwrap_all()
            span = find_span(exporter, "Datastore/statement/Unknown/t/select")
            assert span.attributes.get(DB_STATEMENT) == expected

    def test_callback_is_opaque_completion_signal(self):
        self.shim.record_query(Connection, "query_later", connection_query)
        rows = []
        with in_transaction(self.agent) as transaction:
            self.connection.query_later("select * from items", lambda err, result: rows.extend(result))
            segment = transaction.segments[0]
            assert segment.name == "Datastore/statement/Postgres/items/select"
            assert rows == []
            assert not segment.is_ended()
            self.connection.pending()
            assert segment.is_ended()
        assert rows == [{"id": 2}]

    def test_extractor_returning_raw_query(self):
        self.shim.record_query(Connection, "query", lambda shim, fn, name, args, kwargs: args[0].upper())
        with in_transaction(self.agent) as transaction:
            self.connection.query("select * from audit")
        assert transaction.segments[0].name == "Datastore/statement/Postgres/AUDIT/select"

    def test_batch_query(self):
        self.shim.record_batch_query(Connection, "batch",
                                     lambda shim, fn, name, args, kwargs: QuerySpec(query=args[0][0]))
        with in_transaction(self.agent) as transaction:
            assert self.connection.batch(["insert into logs values (1)", "insert into logs values (2)"]) == 2
        assert transaction.segments[0].name == "Datastore/statement/Postgres/logs/insert/batch"

    def test_query_error_propagates(self):
        self.shim.record_query(Connection, "failing_query", 0)
        with in_transaction(self.agent) as transaction:
            with self.assertRaises(RuntimeError):
                self.connection.failing_query("select 1 from dual")
        assert isinstance(transaction.segments[0].error, RuntimeError)

    def test_custom_parser(self):
        self.shim.set_parser(lambda query: ParsedStatement("find", query.split()[0], query, None))
        self.shim.record_query(Connection, "query", 0)
        with in_transaction(self.agent) as transaction:
            self.connection.query("users {name: 'x'}")
        assert transaction.segments[0].name == "Datastore/statement/Postgres/users/find"

    def test_broken_parser_fails_open(self):
        def parser(query):
            raise ValueError("cannot parse")

        self.shim.set_parser(parser)
        self.shim.record_query(Connection, "query", 0)
        with in_transaction(self.agent) as transaction:
            assert self.connection.query("select * from t") == [{"id": 1}]
        assert transaction.segments[0].name == "Datastore/statement/Postgres/other/other"
        assert any("parsing query" in message for message in error_messages(self.agent))

    def test_record_operation(self):
        self.shim.set_datastore("redis")
        self.shim.record_operation(Connection, ["get", "set"], OperationSpec(host="cache", port=6379))
        with in_transaction(self.agent) as transaction:
            self.connection.set("k", "v")
            assert self.connection.get("k") == "v"
        assert [segment.name for segment in transaction.segments] == [
            "Datastore/operation/Redis/set",
            "Datastore/operation/Redis/get",
        ]
        span = find_span(self.exporter, "Datastore/operation/Redis/get")
        assert span.attributes[PEER_HOSTNAME] == "cache"
        assert span.attributes[DB_OPERATION] == "get"

    def test_extractor_spec_is_copied_per_call(self):
        shared_operation = OperationSpec(name="get")
        shared_query = QuerySpec(query=0)
        self.shim.set_datastore("redis")
        self.shim.record_operation(Connection, "get", lambda shim, fn, name, args, kwargs: shared_operation)
        self.shim.record_query(Connection, "query", lambda shim, fn, name, args, kwargs: shared_query)
        with in_transaction(self.agent) as transaction:
            self.connection.get("a")
            self.connection.get("b")
            self.connection.query("select * from users")
            self.connection.query("select * from users")
        assert [segment.name for segment in transaction.segments] == [
            "Datastore/operation/Redis/get",
            "Datastore/operation/Redis/get",
            "Datastore/statement/Redis/users/select",
            "Datastore/statement/Redis/users/select",
        ]
        assert shared_operation.name == "get"
        assert shared_operation.attributes == {}
        assert shared_query.name is None

    def test_capture_instance_attributes(self):
        with in_transaction(self.agent):
            segment = self.shim.create_segment("Datastore/operation/Postgres/connect")
            token = self.shim.set_active_segment(segment)
            self.shim.capture_instance_attributes("db.local", 5432, "shop")
            self.shim.restore_context(token)
            segment.end()
        assert segment.attributes[PEER_HOSTNAME] == "db.local"
        assert segment.attributes[DB_NAME] == "shop"

    def test_use_query(self):
        assert self.shim.get_database_name_from_use_query("USE `inventory`;") == "inventory"
        assert self.shim.get_database_name_from_use_query("select 1") is None


class TestDatastoreShimAsync(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.agent, self.exporter = setup_agent()
        self.shim = create_shim_from_type(ModuleType.DATASTORE, self.agent, "common.dummy_datastore")
        self.shim.set_datastore("mysql")

    def tearDown(self):
        self.shim.unwrap_all()

    async def test_async_query(self):
        self.shim.record_query(Connection, "aquery", 0)
        connection = Connection()
        with in_transaction(self.agent) as transaction:
            rows, _ = await asyncio.gather(connection.aquery("select * from a"), asyncio.sleep(0))
        assert rows == [{"id": 3}]
        segment = transaction.segments[0]
        assert segment.name == "Datastore/statement/MySQL/a/select"
        assert segment.is_ended()
