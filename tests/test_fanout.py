"""Tests for parallel fan-out, synthesis, and the event bus."""

from __future__ import annotations

import asyncio

import pytest

from agentloop.adapters.event_bus import EventBus
from agentloop.engine.fanout import build_synthesis_prompt, run_agents
from agentloop.engine.models import (
    AgentOptions,
    AgentResult,
    ProgressEvent,
    ResultEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptEntry,
    Usage,
)
from agentloop.engine.runtime import AgentRuntime
from agentloop.engine.stream import SessionConfig


class PerAgentStream:
    """Answers with the prompt it was given; fails for chosen agents."""

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.prompts: list[str] = []
        self.system_prompts: list[str] = []
        self.active = 0
        self.peak = 0

    async def __call__(self, history, system_prompt, tool_wrapper, environment, tool_registry, context):
        prompt = history[0].content[0].text
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            tool_id = f"tool_{len(self.prompts)}"
            yield TranscriptEntry.assistant([ToolUseBlock(id=tool_id, name="LS", input={})])
            await asyncio.sleep(0.01)
            context.cancel.raise_if_cancelled()
            yield TranscriptEntry.user([ToolResultBlock(tool_use_id=tool_id, content="ok")])
            if self.fail_on and self.fail_on in prompt and "Original task" not in prompt:
                raise RuntimeError("agent crashed")
            yield TranscriptEntry.assistant(
                f"answer {len(self.prompts)}", Usage(input_tokens=1, output_tokens=1),
            )
        finally:
            self.active -= 1


def _runtime(stream) -> AgentRuntime:
    async def _wrapper():
        return None

    async def _model():
        return "m"

    async def _system_prompt(model):
        return "default system"

    async def _env(is_non_interactive):
        return {}

    return AgentRuntime(stream, _wrapper, _model, _system_prompt, _env)


async def _collect(gen) -> list:
    return [event async for event in gen]


def test_fan_out_then_synthesis() -> None:
    stream = PerAgentStream()
    events = asyncio.run(_collect(run_agents(
        "Find the bug", 3, SessionConfig(), "msg_p", [],
        AgentOptions(system_prompt="custom"),
        runtime=_runtime(stream),
    )))

    results = [e for e in events if isinstance(e, ResultEvent)]
    assert sorted(r.data.agent_index for r in results[:3]) == [0, 1, 2]
    assert results[-1] is events[-1]
    assert results[-1].data.agent_index == 3

    progress_ids = {e.tool_use_id for e in events if isinstance(e, ProgressEvent)}
    assert progress_ids == {
        "agent_0_msg_p", "agent_1_msg_p", "agent_2_msg_p", "synthesis_msg_p",
    }

    synthesis_prompt = stream.prompts[-1]
    assert synthesis_prompt.startswith("Original task: Find the bug")
    for n in (1, 2, 3):
        assert f"== AGENT {n} RESPONSE ==" in synthesis_prompt
    assert stream.system_prompts[:3] == ["custom"] * 3
    assert stream.system_prompts[-1] == "default system"


def test_single_agent_skips_synthesis() -> None:
    stream = PerAgentStream()
    events = asyncio.run(_collect(run_agents(
        "Solo", 1, SessionConfig(), "msg", [], runtime=_runtime(stream),
    )))
    assert len(stream.prompts) == 1
    assert [e.data.agent_index for e in events if isinstance(e, ResultEvent)] == [0]


def test_synthesis_can_be_disabled() -> None:
    stream = PerAgentStream()
    events = asyncio.run(_collect(run_agents(
        "Many", 2, SessionConfig(), "msg", [],
        runtime=_runtime(stream), synthesize=False,
    )))
    assert len(stream.prompts) == 2
    assert len([e for e in events if isinstance(e, ResultEvent)]) == 2


def test_concurrency_is_bounded() -> None:
    stream = PerAgentStream()
    asyncio.run(_collect(run_agents(
        "Bound", 5, SessionConfig(), "msg", [],
        runtime=_runtime(stream), max_concurrency=2, synthesize=False,
    )))
    assert stream.peak == 2


def test_failure_propagates_and_skips_synthesis() -> None:
    stream = PerAgentStream(fail_on="Break")
    with pytest.raises(RuntimeError, match="agent crashed"):
        asyncio.run(_collect(run_agents(
            "Break things", 3, SessionConfig(), "msg", [],
            runtime=_runtime(stream),
        )))
    assert not any(p.startswith("Original task") for p in stream.prompts)


def test_count_must_be_positive() -> None:
    with pytest.raises(ValueError):
        asyncio.run(_collect(run_agents(
            "None", 0, SessionConfig(), "msg", [], runtime=_runtime(PerAgentStream()),
        )))


def test_synthesis_prompt_orders_by_agent() -> None:
    results = [
        AgentResult(0, [TextBlock(text="alpha")], 0, 0, Usage()),
        AgentResult(1, [TextBlock(text="beta")], 0, 0, Usage()),
    ]
    prompt = build_synthesis_prompt("Task", results)
    assert prompt.index("== AGENT 1 RESPONSE ==\nalpha") < prompt.index(
        "== AGENT 2 RESPONSE ==\nbeta"
    )


def test_event_bus_drains_then_closes() -> None:
    async def _go():
        bus = EventBus()
        await bus.emit("a")
        await bus.emit("b")
        await bus.close()
        await bus.emit("dropped")
        return bus.closed, [event async for event in bus.consume()]

    closed, events = asyncio.run(_go())
    assert closed
    assert events == ["a", "b"]
