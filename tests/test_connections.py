"""Connection validator"""

import pytest

from agentflow.connections import ConnectionContext, is_valid_connection, source_outputs
from agentflow.normalizer import coerce_edge, coerce_node
from agentflow.schema import EXEC_IN_HANDLE, EXEC_OUT_HANDLE, InputSource


@pytest.fixture
def node(registry):
    def make(node_id, block_type, **data):
        return coerce_node({"id": node_id, "blockType": block_type, "data": data}, registry)

    return make


class TestExecution:
    def test_exec_into_action_is_valid(self, registry, node):
        verdict = is_valid_connection(node("t", "source"), node("a", "echo"), EXEC_OUT_HANDLE, EXEC_IN_HANDLE, registry)
        assert verdict.valid
        assert verdict.reason is None

    def test_exec_into_trigger_is_rejected(self, registry, node):
        verdict = is_valid_connection(node("a", "echo"), node("t", "listen"), EXEC_OUT_HANDLE, EXEC_IN_HANDLE, registry)
        assert not verdict.valid
        assert verdict.reason == "Triggers cannot have incoming connections"


class TestFailOpen:
    def test_missing_nodes(self, registry, node):
        assert is_valid_connection(None, node("a", "echo"), "value", "value", registry).valid
        assert is_valid_connection(node("t", "source"), None, "value", "value", registry).valid

    def test_unknown_blocks(self, registry, node):
        assert is_valid_connection(node("x", "mystery"), node("a", "amount"), "text", "amount", registry).valid
        assert is_valid_connection(node("t", "source"), node("x", "mystery"), "text", "anything", registry).valid

    def test_missing_target_handle(self, registry, node):
        assert is_valid_connection(node("t", "source"), node("a", "amount"), "text", None, registry).valid

    def test_untyped_output(self, registry, node):
        assert is_valid_connection(node("b", "boom"), node("a", "amount"), "never", "amount", registry).valid

    def test_input_without_accepts(self, registry, node):
        assert is_valid_connection(node("t", "source"), node("a", "echo"), "text", "note", registry).valid


class TestRejections:
    def test_unknown_input(self, registry, node):
        verdict = is_valid_connection(node("t", "source"), node("a", "echo"), "value", "nope", registry)
        assert not verdict.valid
        assert "does not exist" in verdict.reason

    def test_wallet_input(self, registry, node):
        verdict = is_valid_connection(node("t", "source"), node("s", "send"), "text", "to", registry)
        assert not verdict.valid
        assert "Wallet" in verdict.reason

    def test_type_mismatch(self, registry, node):
        verdict = is_valid_connection(node("t", "source"), node("a", "amount"), "text", "amount", registry)
        assert not verdict.valid
        assert verdict.reason.startswith("Type mismatch: string")

    def test_type_match(self, registry, node):
        assert is_valid_connection(node("t", "source"), node("a", "amount"), "value", "amount", registry).valid


class TestSourceHandle:
    def test_absent_handle_uses_first_output(self, registry, node):
        # first output of `source` is the number output
        assert is_valid_connection(node("t", "source"), node("a", "amount"), None, "amount", registry).valid

    def test_undeclared_handle_uses_first_output(self, registry, node):
        assert is_valid_connection(node("t", "source"), node("a", "amount"), "gone", "amount", registry).valid

    def test_dynamic_outputs_follow_inputs(self, registry, node):
        source = node("d", "dynamic", fields="alpha,beta")
        assert [o.name for o in source_outputs(source, registry.get("dynamic"), registry)] == ["alpha", "beta"]
        verdict = is_valid_connection(source, node("a", "amount"), "beta", "amount", registry)
        assert not verdict.valid


class TestDisplayReexport:
    def test_display_reexports_bound_producer(self, registry, node):
        producer = node("t", "source")
        display = node("d", "show")
        display = display.model_copy(update={"input_sources": {"data": InputSource(source_node_id="t", output_name="value")}})
        context = ConnectionContext([producer, display], [])

        outputs = source_outputs(display, registry.get("show"), registry, context)
        assert [o.name for o in outputs] == ["value", "text"]
        assert not is_valid_connection(display, node("a", "amount"), "text", "amount", registry, context).valid
        assert is_valid_connection(display, node("a", "amount"), "value", "amount", registry, context).valid

    def test_display_reexports_legacy_data_edge(self, registry, node):
        producer = node("t", "source")
        display = node("d", "show")
        edge = coerce_edge({"source": "t", "target": "d", "targetHandle": "data"})
        context = ConnectionContext([producer, display], [edge])

        outputs = source_outputs(display, registry.get("show"), registry, context)
        assert [o.name for o in outputs] == ["value", "text"]

    def test_unbound_display_uses_own_outputs(self, registry, node):
        outputs = source_outputs(node("d", "show"), registry.get("show"), registry, ConnectionContext([], []))
        assert [o.name for o in outputs] == ["data"]
