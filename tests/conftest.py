"""Pytest configuration - shared fixtures"""

import asyncio

import pytest

from agentflow.blocks import BlockDefinition, BlockRegistry
from agentflow.engine import AgentEngine
from agentflow.event_bus import EventBus, reset_event_bus
from agentflow.normalizer import build_connected_model
from agentflow.schema import (
    EXEC_IN_HANDLE,
    EXEC_OUT_HANDLE,
    BlockCategory,
    InputField,
    InputFieldKind,
    OutputField,
    OutputType,
)


class FakeListener:
    """subscribe() implementation driven by hand: tests fire triggers and errors"""

    def __init__(self):
        self.entries = []
        self.fail_next = 0

    def subscribe(self, inputs, on_trigger, on_error):
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("listener unavailable")
        entry = {
            "inputs": dict(inputs),
            "on_trigger": on_trigger,
            "on_error": on_error,
            "unsubscribed": 0,
        }
        self.entries.append(entry)

        def unsubscribe():
            entry["unsubscribed"] += 1

        return unsubscribe

    def fire(self, outputs, index=-1):
        self.entries[index]["on_trigger"](outputs)

    def fail(self, error, index=-1):
        self.entries[index]["on_error"](error)


class Gate:
    """Blocks a `slow` node until the test opens it"""

    def __init__(self):
        self.event = asyncio.Event()
        self.entered = 0

    def open(self):
        self.event.set()


@pytest.fixture(autouse=True)
def fresh_event_bus():
    """Every test starts without a global event bus"""
    reset_event_bus()
    yield
    reset_event_bus()


@pytest.fixture
def calls() -> list:
    """(block_type, inputs) for every fake block run, in call order"""
    return []


@pytest.fixture
def listener() -> FakeListener:
    return FakeListener()


@pytest.fixture
def gate() -> Gate:
    return Gate()


@pytest.fixture
def blocks(calls, listener, gate) -> list:
    """Fake block set covering every category and field kind the engine cares about"""

    def source(inputs, context):
        calls.append(("source", dict(inputs)))
        return {"value": 42, "text": "hello"}

    def listen(inputs, context):
        calls.append(("listen", dict(inputs)))
        return {"price": "1"}

    async def echo(inputs, context):
        calls.append(("echo", dict(inputs)))
        return {"out": inputs["value"]}

    def amount(inputs, context):
        calls.append(("amount", dict(inputs)))
        return {"result": inputs["amount"]}

    def boom(inputs, context):
        calls.append(("boom", dict(inputs)))
        raise RuntimeError("boom")

    def send(inputs, context):
        calls.append(("send", dict(inputs)))
        return {"to": inputs["to"]}

    def show(inputs, context):
        calls.append(("show", dict(inputs)))
        return {"data": inputs["data"]}

    async def slow(inputs, context):
        calls.append(("slow", dict(inputs)))
        gate.entered += 1
        await gate.event.wait()
        return {"done": "yes"}

    def dynamic(inputs, context):
        return {name: name for name in inputs["fields"].split(",") if name}

    def dynamic_outputs(inputs):
        names = [name.strip() for name in inputs.get("fields", "").split(",") if name.strip()]
        return [OutputField(name=name, type=OutputType.STRING) for name in names]

    return [
        BlockDefinition(
            type="source",
            category=BlockCategory.TRIGGER,
            outputs=[
                OutputField(name="value", type=OutputType.NUMBER),
                OutputField(name="text", type=OutputType.STRING),
            ],
            run=source,
        ),
        BlockDefinition(
            type="listen",
            category=BlockCategory.TRIGGER,
            service="prices",
            inputs=[InputField(name="topic", default_value="prices")],
            outputs=[OutputField(name="price", type=OutputType.NUMBER)],
            run=listen,
            subscribe=listener.subscribe,
        ),
        BlockDefinition(
            type="echo",
            category=BlockCategory.ACTION,
            inputs=[
                InputField(name="value", accepts=[OutputType.NUMBER, OutputType.STRING], allow_variable=True),
                InputField(name="note"),
            ],
            outputs=[OutputField(name="out", type=OutputType.STRING)],
            run=echo,
        ),
        BlockDefinition(
            type="amount",
            category=BlockCategory.ACTION,
            service="prices",
            inputs=[InputField(name="amount", kind=InputFieldKind.NUMBER, accepts=[OutputType.NUMBER])],
            outputs=[OutputField(name="result", type=OutputType.NUMBER)],
            run=amount,
        ),
        BlockDefinition(
            type="boom",
            category=BlockCategory.ACTION,
            outputs=[OutputField(name="never")],
            run=boom,
        ),
        BlockDefinition(
            type="send",
            category=BlockCategory.ACTION,
            inputs=[
                InputField(name="to", kind=InputFieldKind.WALLET_ADDRESS),
                InputField(name="value"),
            ],
            outputs=[OutputField(name="to", type=OutputType.ADDRESS)],
            run=send,
        ),
        BlockDefinition(
            type="show",
            category=BlockCategory.DISPLAY,
            inputs=[InputField(name="data", allow_variable=True)],
            outputs=[OutputField(name="data")],
            run=show,
        ),
        BlockDefinition(
            type="slow",
            category=BlockCategory.FILTER,
            categories=[BlockCategory.FILTER, BlockCategory.ACTION],
            outputs=[OutputField(name="done", type=OutputType.STRING)],
            run=slow,
        ),
        BlockDefinition(
            type="dynamic",
            category=BlockCategory.ACTION,
            inputs=[InputField(name="fields", default_value="")],
            run=dynamic,
            get_outputs=dynamic_outputs,
        ),
    ]


@pytest.fixture
def registry(blocks) -> BlockRegistry:
    return BlockRegistry(blocks)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(event_bus, registry) -> AgentEngine:
    return AgentEngine(event_bus, registry)


@pytest.fixture
def exec_edge():
    """Factory for canonical execution edge dicts"""

    def make(source, target, edge_id=None):
        return {
            "id": edge_id or f"{source}->{target}",
            "source": source,
            "target": target,
            "sourceHandle": EXEC_OUT_HANDLE,
            "targetHandle": EXEC_IN_HANDLE,
        }

    return make


@pytest.fixture
def graph(registry, exec_edge):
    """Factory: node dicts plus (source, target) pairs -> ConnectedModel"""

    def build(nodes, links=()):
        edges = [exec_edge(source, target) for source, target in links]
        return build_connected_model(nodes, edges, registry)

    return build


@pytest.fixture
def settle():
    """Let loop callbacks run, then wait for every run a subscription started"""

    async def wait(subscription=None, rounds=10):
        for _ in range(rounds):
            await asyncio.sleep(0)
        if subscription is not None:
            while subscription.in_flight:
                await asyncio.gather(*list(subscription._tasks), return_exceptions=True)
                await asyncio.sleep(0)

    return wait
