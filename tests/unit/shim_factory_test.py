import unittest

from common.dummy_class import DummyClass
from common.utils import in_transaction, setup_agent
from apptrace_shim.instrumentation.common.constants import ModuleType
from apptrace_shim.instrumentation.common.specs import RecordSpec
from apptrace_shim.shim import (
    SHIM_TYPE_MAP,
    ConglomerateShim,
    DatastoreShim,
    MessageShim,
    PromiseShim,
    Shim,
    TransactionShim,
    WebFrameworkShim,
    create_shim,
    create_shim_from_type,
)


class TestShimFactory(unittest.TestCase):
    def setUp(self):
        self.agent, self.exporter = setup_agent()

    def test_registered_types(self):
        expected = {
            ModuleType.GENERIC: Shim,
            ModuleType.CONGLOMERATE: ConglomerateShim,
            ModuleType.DATASTORE: DatastoreShim,
            ModuleType.MESSAGE: MessageShim,
            ModuleType.PROMISE: PromiseShim,
            ModuleType.TRANSACTION: TransactionShim,
            ModuleType.WEB_FRAMEWORK: WebFrameworkShim,
        }
        assert set(SHIM_TYPE_MAP) == set(expected)
        for module_type, shim_class in expected.items():
            shim = create_shim_from_type(module_type, self.agent, "lib", "/site-packages/lib/__init__.py")
            assert type(shim) is shim_class
            assert shim.type == module_type

    def test_plain_string_tags(self):
        assert type(create_shim_from_type("web-framework", self.agent, "lib")) is WebFrameworkShim
        assert type(create_shim_from_type("datastore", self.agent, "lib")) is DatastoreShim

    def test_unknown_tags_fall_back_to_generic(self):
        for tag in ("bogus", None, 42, ""):
            shim = create_shim_from_type(tag, self.agent, "lib")
            assert type(shim) is Shim
            assert shim.type == ModuleType.GENERIC

    def test_fallback_is_logged(self):
        with self.assertLogs("apptrace_shim.shim", level="DEBUG") as logs:
            create_shim_from_type("bogus", self.agent, "lib")
        assert any("Unknown shim type" in line for line in logs.output)

    def test_identity_is_read_only(self):
        shim = create_shim(ModuleType.DATASTORE, self.agent, "pg", "/site-packages/pg/__init__.py")
        assert shim.agent is self.agent
        assert shim.module_name == "pg"
        assert shim.resolved_name == "/site-packages/pg/__init__.py"
        with self.assertRaises(AttributeError):
            shim.module_name = "other"
        with self.assertRaises(AttributeError):
            shim.agent = None
        assert create_shim(ModuleType.GENERIC, self.agent, "pg").resolved_name == "pg"

    def test_construction_requires_agent_and_name(self):
        with self.assertRaises(ValueError):
            Shim(None, "lib")
        with self.assertRaises(ValueError):
            Shim(self.agent, "")

    def test_unknown_tag_wraps_like_generic(self):
        names = []
        for tag in (ModuleType.GENERIC, "bogus"):
            shim = create_shim_from_type(tag, self.agent, "common.dummy_class")
            shim.record(DummyClass, "double_it", RecordSpec(name="Custom/double"))
            try:
                with in_transaction(self.agent) as transaction:
                    assert DummyClass().double_it(2) == 4
                names.append([segment.name for segment in transaction.segments])
            finally:
                shim.unwrap_all()
        assert names == [["Custom/double"], ["Custom/double"]]
