import unittest

from common.dummy_datastore import Connection
from common.dummy_framework import Request, Response, Server
from common.utils import in_transaction, misuse_messages, setup_agent
from apptrace_shim.instrumentation.common.constants import ModuleType
from apptrace_shim.instrumentation.common.specs import DispatchSpec, QuerySpec
from apptrace_shim.shim import ConglomerateShim, DatastoreShim, WebFrameworkShim, create_shim_from_type


class TestConglomerateShim(unittest.TestCase):
    def setUp(self):
        self.agent, self.exporter = setup_agent()
        self.shim = create_shim_from_type(ModuleType.CONGLOMERATE, self.agent, "fullstack", "/site/fullstack")

    def tearDown(self):
        self.shim.unwrap_all()

    def test_specialized_shims_share_identity(self):
        datastore = self.shim.make_specialized_shim(ModuleType.DATASTORE)
        assert isinstance(datastore, DatastoreShim)
        assert datastore.agent is self.agent
        assert datastore.module_name == "fullstack"
        assert datastore.resolved_name == "/site/fullstack"
        assert self.shim.make_specialized_shim("datastore") is datastore

    def test_submodule_shims_are_cached_separately(self):
        web = self.shim.make_specialized_shim(ModuleType.WEB_FRAMEWORK, "fullstack.web")
        assert isinstance(web, WebFrameworkShim)
        assert web.module_name == "fullstack.web"
        assert web.resolved_name == "/site/fullstack"
        assert self.shim.make_specialized_shim(ModuleType.WEB_FRAMEWORK, "fullstack.web") is web
        assert self.shim.make_specialized_shim(ModuleType.WEB_FRAMEWORK) is not web

    def test_unknown_specialization_is_generic(self):
        shim = self.shim.make_specialized_shim("bogus")
        assert shim.type == ModuleType.GENERIC

    def test_conglomerate_cannot_nest(self):
        assert self.shim.make_specialized_shim(ModuleType.CONGLOMERATE) is self.shim
        assert misuse_messages(self.agent)

    def test_category_methods_are_dispatched(self):
        self.shim.set_datastore("postgres")
        self.shim.record_query(Connection, "query", QuerySpec(query=0))
        self.shim.set_framework("Restify")
        self.shim.wrap_route_dispatch(Server, "handle",
                                      lambda shim, fn, name, args, kwargs: DispatchSpec(method=args[0].method))
        with in_transaction(self.agent) as transaction:
            Connection().query("SELECT * FROM users")
        assert transaction.segments[0].name == "Datastore/statement/Postgres/users/select"
        assert self.shim.make_specialized_shim(ModuleType.DATASTORE).datastore == "Postgres"
        assert self.shim.make_specialized_shim(ModuleType.WEB_FRAMEWORK).framework == "Restify"
        assert misuse_messages(self.agent) == []

    def test_shared_wrap_record(self):
        self.shim.record_query(Connection, "query", QuerySpec(query=0))
        self.shim.wrap_route_dispatch(Server, "handle", DispatchSpec())
        assert self.shim.is_wrapped(Connection, "query")
        assert self.shim.is_wrapped(Server, "handle")
        self.shim.unwrap_all()
        assert not self.shim.is_wrapped(Connection, "query")
        assert not self.shim.is_wrapped(Server, "handle")
        assert Server().handle(Request("GET", "/"), Response()).status == 404

    def test_unknown_attribute_raises(self):
        with self.assertRaises(AttributeError):
            self.shim.not_a_shim_method

    def test_is_conglomerate(self):
        assert isinstance(self.shim, ConglomerateShim)
        assert self.shim.type == ModuleType.CONGLOMERATE
