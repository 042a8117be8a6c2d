"""
Tests for IntegrationRegistry and the built-in connector table.
"""

import pytest

from connectors.catalog import BUILTIN_CONNECTORS, build_registry
from connectors.errors import UnknownIntegrationError
from connectors.refresh import RefreshGate
from connectors.registry import IntegrationRegistry
from utils.schemas import AuthMethod, Connection

from conftest import KeyMockConnector, MockConnector


def _connection(integration_type="mock"):
    return Connection(id="c1", property_id="p1", integration_type=integration_type)


class TestRegistration:
    def test_lookup_is_case_insensitive(self, store):
        reg = IntegrationRegistry()
        reg.register("mock", MockConnector, MockConnector.metadata)

        connector = reg.create("MOCK", _connection(), store)

        assert isinstance(connector, MockConnector)
        assert reg.has("Mock")

    def test_unregister_then_create_fails(self, store):
        reg = IntegrationRegistry()
        reg.register("mock", MockConnector, MockConnector.metadata)

        assert reg.unregister("mock") is True
        assert reg.unregister("mock") is False
        with pytest.raises(UnknownIntegrationError) as exc_info:
            reg.create("mock", _connection(), store)
        assert exc_info.value.status_code == 400
        assert reg.get_metadata("mock") is None

    def test_unknown_type(self, store):
        with pytest.raises(UnknownIntegrationError):
            IntegrationRegistry().create("nope", _connection("nope"), store)

    def test_last_registration_wins(self, store):
        reg = IntegrationRegistry()
        reg.register("mock", MockConnector, MockConnector.metadata)
        reg.register("mock", KeyMockConnector, KeyMockConnector.metadata)

        assert isinstance(reg.create("mock", _connection(), store), KeyMockConnector)
        assert reg.get_metadata("mock").auth_method == AuthMethod.APIKEY
        assert reg.types() == ["mock"]

    def test_constructor_errors_propagate(self, store):
        def broken(connection, store, **kwargs):
            raise RuntimeError("boom")

        reg = IntegrationRegistry()
        reg.register("broken", broken, MockConnector.metadata)
        with pytest.raises(RuntimeError):
            reg.create("broken", _connection("broken"), store)


class TestSharedCollaborators:
    def test_connectors_share_gate_and_sink(self, store, sink):
        gate = RefreshGate()
        reg = IntegrationRegistry(events=sink, refresh_gate=gate)
        reg.register("mock", MockConnector, MockConnector.metadata)

        a = reg.create("mock", _connection(), store)
        b = reg.create_for(_connection(), store)

        assert a._refresh_gate is gate
        assert b._refresh_gate is gate
        assert a.events is sink

    def test_empty_gate_is_not_replaced(self):
        gate = RefreshGate()
        assert IntegrationRegistry(refresh_gate=gate).refresh_gate is gate

    def test_explicit_kwargs_override(self, store, sink):
        reg = IntegrationRegistry()
        reg.register("mock", MockConnector, MockConnector.metadata)
        connector = reg.create("mock", _connection(), store, events=sink, timeout=3.0)
        assert connector.events is sink
        assert connector.default_timeout == 3.0


class TestDiscovery:
    def test_list_available(self):
        reg = IntegrationRegistry()
        reg.register("Mock", MockConnector, MockConnector.metadata)
        reg.register("mock-key", KeyMockConnector, KeyMockConnector.metadata)

        available = {item["type"]: item for item in reg.list_available()}

        assert set(available) == {"mock", "mock-key"}
        assert available["mock"]["name"] == "Mock"
        assert available["mock"]["capabilities"] == ["contacts"]
        assert available["mock-key"]["auth_method"] == "apikey"

    def test_builtin_catalog(self):
        reg = build_registry()
        assert set(reg.types()) == {name for name, _ in BUILTIN_CONNECTORS}
        assert {"hubspot", "ga4", "wordpress"} <= set(reg.types())
        assert reg.get_metadata("wordpress").auth_method == AuthMethod.BASIC
