"""Execution engine: traversal order, input resolution, failures and side channels"""

import asyncio
import json

import pytest

from agentflow.blocks import BlockDefinition, RunContext
from agentflow.engine import (
    AgentEngine,
    CancelToken,
    NodeRunStatus,
    RunOptions,
    RunStatus,
    StartNodeError,
    compute_effective_inputs,
)
from agentflow.event_bus import EventType
from agentflow.normalizer import build_connected_model

WALLET = "0x" + "ab" * 20


def runs_of(calls, block_type):
    return [inputs for name, inputs in calls if name == block_type]


class TestInputSources:
    async def test_bound_input_receives_trigger_output(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "A", "blockType": "amount", "data": {"inputSources": {"amount": {"sourceNodeId": "T", "outputName": "value"}}}},
            ],
            [("T", "A")],
        )
        result = await engine.run_downstream_graph(model, "T", {"value": "42"})

        assert result.status == RunStatus.COMPLETED
        assert runs_of(calls, "amount") == [{"amount": "42"}]
        assert runs_of(calls, "source") == []
        assert result.outputs["A"] == {"result": "42"}

    async def test_start_node_runs_without_trigger_outputs(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "A", "blockType": "echo", "data": {"value": "{{T.value}}", "note": "{{T.text}}"}},
            ],
            [("T", "A")],
        )
        result = await engine.run_downstream_graph(model, "T")

        assert len(runs_of(calls, "source")) == 1
        assert runs_of(calls, "echo") == [{"value": "42", "note": "hello"}]
        assert result.outputs["T"] == {"value": "42", "text": "hello"}

    async def test_missing_binding_output_falls_back_to_literal(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "A", "blockType": "echo", "data": {"value": "7", "inputSources": {"value": {"sourceNodeId": "T", "outputName": "value"}}}},
            ],
            [("T", "A")],
        )
        await engine.run_downstream_graph(model, "T", {"text": "only text"})
        assert runs_of(calls, "echo")[0]["value"] == "7"

    async def test_unresolved_reference_is_passed_and_reported(self, engine, event_bus, graph, calls):
        model = graph(
            [{"id": "T", "blockType": "source"}, {"id": "A", "blockType": "echo", "data": {"value": "{{Z.value}}"}}],
            [("T", "A")],
        )
        await engine.run_downstream_graph(model, "T", {"value": "1"})

        assert runs_of(calls, "echo")[0]["value"] == "{{Z.value}}"
        events = event_bus.history(event_type=EventType.VARIABLE_UNRESOLVED)
        assert [(e.node_id, e.data["input"]) for e in events] == [("A", "value")]

    def test_defaults_and_empty_literals(self, registry, graph):
        model = graph([{"id": "L", "blockType": "listen"}, {"id": "A", "blockType": "echo"}])
        assert compute_effective_inputs(model.get_node("L"), registry.get("listen"), {}) == {"topic": "prices"}
        assert compute_effective_inputs(model.get_node("A"), registry.get("echo"), {}) == {"value": "", "note": ""}


class TestWallet:
    @pytest.mark.parametrize("literal", ["", "me", "0x123", "{{T.value}}"])
    def test_invalid_wallet_uses_context(self, registry, graph, literal):
        model = graph([{"id": "S", "blockType": "send", "data": {"to": literal}}])
        inputs = compute_effective_inputs(model.get_node("S"), registry.get("send"), {}, RunContext(wallet_address=WALLET))
        assert inputs["to"] == WALLET

    def test_valid_address_is_kept(self, registry, graph):
        other = "0x" + "cd" * 20
        model = graph([{"id": "S", "blockType": "send", "data": {"to": other}}])
        inputs = compute_effective_inputs(model.get_node("S"), registry.get("send"), {}, RunContext(wallet_address=WALLET))
        assert inputs["to"] == other

    def test_no_context_wallet(self, registry, graph):
        model = graph([{"id": "S", "blockType": "send", "data": {"to": "me"}}])
        assert compute_effective_inputs(model.get_node("S"), registry.get("send"), {})["to"] == "me"

    async def test_run_uses_context_wallet(self, engine, graph, calls):
        model = graph([{"id": "T", "blockType": "source"}, {"id": "S", "blockType": "send"}], [("T", "S")])
        result = await engine.run_downstream_graph(model, "T", {}, RunContext(wallet_address=WALLET))
        assert result.outputs["S"] == {"to": WALLET}


class TestTraversal:
    async def test_diamond_runs_each_node_once(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "L", "blockType": "echo", "data": {"value": "left"}},
                {"id": "R", "blockType": "echo", "data": {"value": "right"}},
                {"id": "J", "blockType": "echo", "data": {"value": "{{L.out}}", "note": "{{R.out}}"}},
            ],
            [("T", "L"), ("T", "R"), ("L", "J"), ("R", "J")],
        )
        result = await engine.run_downstream_graph(model, "T", {"value": "1"})

        assert len(runs_of(calls, "echo")) == 3
        assert runs_of(calls, "echo")[-1] == {"value": "left", "note": "right"}
        assert set(result.outputs) == {"T", "L", "R", "J"}

    async def test_only_downstream_nodes_run(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T1", "blockType": "source"},
                {"id": "T2", "blockType": "source"},
                {"id": "A", "blockType": "echo", "data": {"value": "a"}},
                {"id": "B", "blockType": "echo", "data": {"value": "b"}},
                {"id": "C", "blockType": "echo", "data": {"value": "c"}},
            ],
            [("T1", "A"), ("T2", "B"), ("A", "C"), ("B", "C")],
        )
        result = await engine.run_downstream_graph(model, "T1", {})

        # B is out of scope, so C only waits for A
        assert [inputs["value"] for inputs in runs_of(calls, "echo")] == ["a", "c"]
        assert set(result.outputs) == {"T1", "A", "C"}

    async def test_successor_waits_for_slow_predecessor(self, engine, graph, gate, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "W", "blockType": "slow"},
                {"id": "A", "blockType": "echo", "data": {"value": "{{W.done}}"}},
            ],
            [("T", "W"), ("W", "A")],
        )
        task = asyncio.create_task(engine.run_downstream_graph(model, "T", {}))
        while gate.entered == 0:
            await asyncio.sleep(0)
        assert runs_of(calls, "echo") == []

        gate.open()
        result = await task
        assert runs_of(calls, "echo") == [{"value": "yes", "note": ""}]
        assert result.status == RunStatus.COMPLETED

    async def test_unknown_start_node(self, engine, graph, calls):
        model = graph([{"id": "T", "blockType": "source"}])
        result = await engine.run_downstream_graph(model, "nope")
        assert result.status == RunStatus.COMPLETED
        assert result.outputs == {}
        assert calls == []

    async def test_inert_start_block(self, engine, graph, calls):
        model = graph([{"id": "X", "blockType": "mystery"}, {"id": "A", "blockType": "echo"}], [("X", "A")])
        result = await engine.run_downstream_graph(model, "X", {"value": "1"})
        assert result.outputs == {}
        assert calls == []

    async def test_unknown_block_is_skipped_with_descendants(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "X", "blockType": "mystery"},
                {"id": "A", "blockType": "echo"},
                {"id": "B", "blockType": "echo"},
            ],
            [("T", "X"), ("X", "A"), ("T", "B")],
        )
        result = await engine.run_downstream_graph(model, "T", {})
        assert sorted(result.skipped) == ["A", "X"]
        assert "B" in result.outputs

    async def test_cycle_members_are_skipped(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "A", "blockType": "echo"},
                {"id": "B", "blockType": "echo"},
                {"id": "C", "blockType": "echo"},
            ],
            [("T", "A"), ("A", "B"), ("B", "C"), ("C", "B")],
        )
        result = await engine.run_downstream_graph(model, "T", {})
        assert result.status == RunStatus.COMPLETED
        assert "A" in result.outputs
        assert sorted(result.skipped) == ["B", "C"]

    async def test_outputs_are_stringified(self, engine, graph):
        model = graph([{"id": "T", "blockType": "source"}])
        result = await engine.run_downstream_graph(model, "T", {"n": 1.5, "flag": True, "none": None, "obj": {"a": 1}})
        assert result.outputs["T"] == {"n": "1.5", "flag": "true", "none": "", "obj": '{"a": 1}'}


class TestFailures:
    async def test_failure_is_branch_local(self, engine, graph, calls):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "F", "blockType": "boom"},
                {"id": "D", "blockType": "echo", "data": {"value": "after failure"}},
                {"id": "S", "blockType": "echo", "data": {"value": "sibling"}},
            ],
            [("T", "F"), ("F", "D"), ("T", "S")],
        )
        errors = []
        options = RunOptions(on_error=lambda node_id, error: errors.append((node_id, str(error))))
        result = await engine.run_downstream_graph(model, "T", {}, options=options)

        assert result.status == RunStatus.COMPLETED
        assert [inputs["value"] for inputs in runs_of(calls, "echo")] == ["sibling"]
        assert result.failed == {"F": "boom"}
        assert result.skipped == ["D"]
        assert errors == [("F", "boom")]

        state = engine.get_run(result.run_id)
        assert state.node_status == {
            "T": NodeRunStatus.COMPLETED,
            "F": NodeRunStatus.FAILED,
            "D": NodeRunStatus.SKIPPED,
            "S": NodeRunStatus.COMPLETED,
        }

    async def test_start_node_failure_raises(self, engine, event_bus, graph, calls):
        model = graph([{"id": "F", "blockType": "boom"}, {"id": "A", "blockType": "echo"}], [("F", "A")])
        errors = []
        options = RunOptions(on_error=lambda node_id, error: errors.append(node_id))

        with pytest.raises(StartNodeError) as info:
            await engine.run_downstream_graph(model, "F", options=options)

        assert info.value.node_id == "F"
        assert isinstance(info.value.error, RuntimeError)
        assert runs_of(calls, "echo") == []
        assert errors == []
        assert engine.get_run(info.value.run_id).status == RunStatus.FAILED
        assert event_bus.history(event_type=EventType.RUN_FAILED)

    async def test_non_mapping_result_fails_node(self, registry, event_bus, exec_edge):
        weird = BlockDefinition(type="weird", run=lambda inputs, context: ["not", "a", "dict"])
        quiet = BlockDefinition(type="quiet", run=lambda inputs, context: None)
        engine = AgentEngine(event_bus, registry.with_blocks(weird, quiet))
        model = build_connected_model(
            [{"id": "T", "blockType": "source"}, {"id": "W", "blockType": "weird"}, {"id": "Q", "blockType": "quiet"}],
            [exec_edge("T", "W"), exec_edge("T", "Q")],
            engine.registry,
        )
        result = await engine.run_downstream_graph(model, "T", {})
        assert "expected a mapping" in result.failed["W"]
        assert result.outputs["Q"] == {}


class TestSideChannels:
    async def test_on_update_receives_serialized_outputs(self, engine, graph, settle):
        model = graph(
            [{"id": "T", "blockType": "source"}, {"id": "A", "blockType": "echo", "data": {"value": "x"}}],
            [("T", "A")],
        )
        updates = []
        await engine.run_downstream_graph(model, "T", {"value": "1"}, options=RunOptions(on_update=lambda node_id, data: updates.append((node_id, json.loads(data)))))
        await settle()
        assert updates == [("A", {"out": "x"})]

    async def test_async_and_raising_callbacks_do_not_break_the_run(self, engine, graph, settle):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "A", "blockType": "echo", "data": {"value": "x"}},
                {"id": "F", "blockType": "boom"},
            ],
            [("T", "A"), ("T", "F")],
        )
        seen = []

        async def on_update(node_id, data):
            seen.append(node_id)
            raise ValueError("listener broke")

        def on_error(node_id, error):
            raise ValueError("listener broke")

        result = await engine.run_downstream_graph(model, "T", {}, options=RunOptions(on_update=on_update, on_error=on_error))
        await settle()
        assert result.status == RunStatus.COMPLETED
        assert list(result.failed) == ["F"]
        assert seen == ["A"]

    async def test_events_follow_the_run(self, engine, event_bus, graph):
        model = graph(
            [{"id": "T", "blockType": "source"}, {"id": "A", "blockType": "echo", "data": {"value": "x"}}],
            [("T", "A")],
        )
        result = await engine.run_downstream_graph(model, "T", {})
        types = [e.event_type for e in event_bus.history(run_id=result.run_id)]
        assert types == [
            EventType.RUN_STARTED,
            EventType.NODE_STARTED,
            EventType.NODE_COMPLETED,
            EventType.RUN_COMPLETED,
        ]


class TestCancellation:
    async def test_cancel_stops_dispatch_and_mutes_updates(self, engine, graph, gate, calls, settle):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "W", "blockType": "slow"},
                {"id": "A", "blockType": "echo", "data": {"value": "late"}},
            ],
            [("T", "W"), ("W", "A")],
        )
        token = CancelToken()
        updates = []
        options = RunOptions(cancel_token=token, on_update=lambda node_id, data: updates.append(node_id))

        task = asyncio.create_task(engine.run_downstream_graph(model, "T", {}, options=options))
        while gate.entered == 0:
            await asyncio.sleep(0)
        token.cancel()
        gate.open()
        result = await task
        await settle()

        assert result.status == RunStatus.CANCELLED
        assert result.outputs["W"] == {"done": "yes"}
        assert runs_of(calls, "echo") == []
        assert updates == []

    async def test_cancelled_before_start(self, engine, graph, calls):
        model = graph([{"id": "T", "blockType": "source"}, {"id": "A", "blockType": "echo"}], [("T", "A")])
        token = CancelToken()
        token.cancel()
        result = await engine.run_downstream_graph(model, "T", {}, options=RunOptions(cancel_token=token))
        assert result.status == RunStatus.CANCELLED
        assert calls == []


class TestDisplay:
    async def test_display_reexports_producer_outputs(self, engine, graph):
        model = graph(
            [
                {"id": "T", "blockType": "source"},
                {"id": "D", "blockType": "show", "data": {"inputSources": {"data": {"sourceNodeId": "T", "outputName": "text"}}}},
                {"id": "A", "blockType": "echo", "data": {"value": "{{D.value}}"}},
            ],
            [("T", "D"), ("D", "A")],
        )
        result = await engine.run_downstream_graph(model, "T", {"value": "9", "text": "hi"})
        assert result.outputs["D"] == {"value": "9", "text": "hi", "data": "hi"}
        assert result.outputs["A"] == {"out": "9"}


class TestHistory:
    async def test_history_is_bounded(self, event_bus, registry, graph):
        engine = AgentEngine(event_bus, registry, max_history=2)
        model = graph([{"id": "T", "blockType": "source"}])
        ids = [(await engine.run_downstream_graph(model, "T", {})).run_id for _ in range(3)]
        assert [run.run_id for run in engine.list_runs()] == ids[1:]
        assert engine.get_run(ids[0]) is None

    async def test_runs_filtered_by_agent(self, engine, graph):
        model = graph([{"id": "T", "blockType": "source"}])
        await engine.run_downstream_graph(model, "T", {}, RunContext(agent_id="a1"))
        await engine.run_downstream_graph(model, "T", {}, RunContext(agent_id="a2"))
        assert [run.agent_id for run in engine.list_runs("a2")] == ["a2"]
