"""Tests for the sub-agent orchestration loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from agentloop.engine.agent_loop import (
    parent_message_id,
    progress_tool_use_id,
    run_agent,
)
from agentloop.engine.errors import (
    AgentProtocolError,
    KnownStreamError,
    OrphanToolResultError,
)
from agentloop.engine.models import (
    AgentOptions,
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


class ScriptedStream:
    """MessageStream that replays a fixed list of events."""

    def __init__(self, events, *, error: BaseException | None = None) -> None:
        self.events = list(events)
        self.error = error
        self.calls: list[dict] = []

    async def __call__(self, history, system_prompt, tool_wrapper, environment, tool_registry, context):
        self.calls.append({
            "history": list(history),
            "system_prompt": system_prompt,
            "tool_wrapper": tool_wrapper,
            "environment": environment,
            "tool_registry": tool_registry,
            "context": context,
        })
        for event in self.events:
            context.cancel.raise_if_cancelled()
            await asyncio.sleep(0)
            yield event
        context.cancel.raise_if_cancelled()
        if self.error is not None:
            raise self.error


@dataclass
class OtherEvent:
    type: str
    content: tuple = ()


def _runtime(stream, *, persist=None, log: list[str] | None = None) -> AgentRuntime:
    log = log if log is not None else []

    async def _wrapper():
        log.append("wrapper:start")
        await asyncio.sleep(0)
        log.append("wrapper:end")
        return "tool-wrapper"

    async def _environment(is_non_interactive):
        log.append("env:start")
        await asyncio.sleep(0)
        log.append("env:end")
        return {"cwd": "/work", "is_non_interactive": is_non_interactive}

    async def _model():
        log.append("model:start")
        await asyncio.sleep(0)
        log.append("model:end")
        return "default-model"

    async def _system_prompt(model):
        return f"default prompt for {model}"

    return AgentRuntime(
        message_stream=stream,
        resolve_tool_wrapper=_wrapper,
        resolve_model=_model,
        resolve_system_prompt=_system_prompt,
        resolve_environment=_environment,
        persist=persist,
    )


def _list_files_transcript() -> list[TranscriptEntry]:
    return [
        TranscriptEntry.assistant(
            [ToolUseBlock(id="toolu_1", name="LS", input={"path": "."})],
            Usage(input_tokens=4, output_tokens=2),
        ),
        TranscriptEntry.user(
            [ToolResultBlock(tool_use_id="toolu_1", content="a.py\nb.py")]
        ),
        TranscriptEntry.assistant("Done", Usage(input_tokens=10, output_tokens=5)),
    ]


async def _collect(gen) -> list:
    return [event async for event in gen]


def _run(prompt, stream, *, index=0, parent="msg_parent", options=None,
         session_config=None, persist=None):
    return asyncio.run(_collect(run_agent(
        prompt,
        index,
        session_config or SessionConfig(),
        parent,
        [],
        options,
        runtime=_runtime(stream, persist=persist),
    )))


def test_list_files_scenario() -> None:
    events = _run("List files", ScriptedStream(_list_files_transcript()))

    progress = [e for e in events if isinstance(e, ProgressEvent)]
    results = [e for e in events if isinstance(e, ResultEvent)]
    assert len(progress) == 2
    assert len(results) == 1
    assert events[-1] is results[0]

    assert isinstance(progress[0].data.message.content[0], ToolUseBlock)
    assert isinstance(progress[1].data.message.content[0], ToolResultBlock)
    assert all(p.tool_use_id == "agent_0_msg_parent" for p in progress)
    assert all(p.data.type == "agent_progress" for p in progress)

    result = results[0].data
    assert result.content == [TextBlock(text="Done")]
    assert result.tool_use_count == 1
    assert result.tokens == 15
    assert result.agent_index == 0

    wire = results[0].to_dict()
    assert wire["type"] == "result"
    assert wire["data"]["content"] == [{"type": "text", "text": "Done"}]
    assert wire["data"]["toolUseCount"] == 1
    assert wire["data"]["tokens"] == 15


def test_progress_follows_block_order_and_counts_tool_uses() -> None:
    transcript = [
        TranscriptEntry.assistant([
            TextBlock(text="Looking around"),
            ToolUseBlock(id="a", name="Read", input={"file_path": "/x"}),
            ToolUseBlock(id="b", name="Grep", input={"pattern": "y"}),
        ]),
        TranscriptEntry.user([
            ToolResultBlock(tool_use_id="b", content="match"),
            ToolResultBlock(tool_use_id="a", content="text"),
        ]),
        TranscriptEntry.assistant([ToolUseBlock(id="c", name="LS", input={})]),
        TranscriptEntry.user([ToolResultBlock(tool_use_id="c", content="", is_error=True)]),
        TranscriptEntry.assistant("All done"),
    ]
    events = _run("Investigate", ScriptedStream(transcript))

    progress = [e for e in events if isinstance(e, ProgressEvent)]
    seen = []
    for event in progress:
        block = event.data.message.content[0]
        seen.append((block.type, getattr(block, "id", None) or block.tool_use_id))
    assert seen == [
        ("tool_use", "a"),
        ("tool_use", "b"),
        ("tool_result", "b"),
        ("tool_result", "a"),
        ("tool_use", "c"),
        ("tool_result", "c"),
    ]
    tool_uses = sum(1 for kind, _ in seen if kind == "tool_use")
    assert events[-1].data.tool_use_count == tool_uses == 3


def test_progress_carries_full_normalized_view() -> None:
    transcript = [
        TranscriptEntry.assistant([
            TextBlock(text="Plan"),
            ToolUseBlock(id="a", name="LS", input={}),
        ]),
        TranscriptEntry.user([ToolResultBlock(tool_use_id="a", content="ok")]),
        TranscriptEntry.assistant("Finished"),
    ]
    events = _run("Go", ScriptedStream(transcript))
    first, second = [e for e in events if isinstance(e, ProgressEvent)]

    assert len(first.data.normalized_messages) == 2
    assert len(second.data.normalized_messages) == 3
    assert first.data.message in first.data.normalized_messages
    # The same block keeps the same identity across recomputation
    assert first.data.normalized_messages == second.data.normalized_messages[:2]


def test_tokens_sum_all_usage_fields() -> None:
    usage = Usage(
        input_tokens=10,
        output_tokens=5,
        cache_creation_input_tokens=100,
        cache_read_input_tokens=7,
    )
    events = _run("Sum", ScriptedStream([TranscriptEntry.assistant("ok", usage)]))
    result = events[-1].data
    assert result.tokens == 122
    assert result.usage == usage
    assert result.tool_use_count == 0


def test_non_assistant_terminal_entry_raises_without_result() -> None:
    stream = ScriptedStream(_list_files_transcript()[:2])
    seen: list = []

    async def _drive():
        async for event in run_agent(
            "List files", 2, SessionConfig(), "msg_parent", [],
            runtime=_runtime(stream),
        ):
            seen.append(event)

    with pytest.raises(AgentProtocolError, match="Agent 3: Last message was not an assistant message"):
        asyncio.run(_drive())
    assert not any(isinstance(e, ResultEvent) for e in seen)
    assert len(seen) == 2


def test_synthesis_error_and_progress_namespace() -> None:
    stream = ScriptedStream(_list_files_transcript()[:2])
    seen: list = []

    async def _drive():
        async for event in run_agent(
            "Combine", 4, SessionConfig(), "msg_9", [],
            AgentOptions(is_synthesis=True),
            runtime=_runtime(stream),
        ):
            seen.append(event)

    with pytest.raises(AgentProtocolError, match="^Synthesis: Last message") as exc_info:
        asyncio.run(_drive())
    assert exc_info.value.is_synthesis is True
    assert {e.tool_use_id for e in seen} == {"synthesis_msg_9"}


def test_empty_stream_is_protocol_error() -> None:
    with pytest.raises(AgentProtocolError):
        _run("Nothing", ScriptedStream([]))


@pytest.mark.parametrize("entry", [
    TranscriptEntry.user("[Request interrupted by user]"),
    TranscriptEntry.user("[Request interrupted by user for tool use]"),
    TranscriptEntry.assistant("API Error: 529 overloaded"),
])
def test_error_sentinel_raises_known_error(entry) -> None:
    transcript = [TranscriptEntry.assistant("partial"), entry]
    with pytest.raises(KnownStreamError) as exc_info:
        _run("Work", ScriptedStream(transcript))
    assert exc_info.value.sentinel == entry.content[0].text


def test_unknown_event_types_are_dropped_and_progress_is_kept() -> None:
    persisted: list = []
    progress_entry = TranscriptEntry.progress({"tool": "Bash", "line": "..."})
    transcript = [
        OtherEvent(type="system"),
        TranscriptEntry.assistant([ToolUseBlock(id="t1", name="Bash", input={})]),
        progress_entry,
        OtherEvent(type="attachment"),
        TranscriptEntry.user([ToolResultBlock(tool_use_id="t1", content="done")]),
        TranscriptEntry.assistant("Finished"),
    ]
    events = _run("Run", ScriptedStream(transcript), persist=persisted.append)

    assert len([e for e in events if isinstance(e, ProgressEvent)]) == 2
    assert len(persisted) == 1
    types = [entry.type for entry in persisted[0]]
    assert types == ["user", "assistant", "progress", "user", "assistant"]
    assert persisted[0][2] is progress_entry


def test_persist_receives_seed_and_transcript_once() -> None:
    calls: list = []

    async def _persist(transcript):
        calls.append(transcript)

    transcript = _list_files_transcript()
    _run("List files", ScriptedStream(transcript), persist=_persist)

    assert len(calls) == 1
    seed, *rest = calls[0]
    assert seed.type == "user"
    assert seed.content == (TextBlock(text="List files"),)
    assert rest == transcript


def test_stream_exceptions_propagate_unchanged() -> None:
    boom = RuntimeError("transport failed")
    persisted: list = []
    stream = ScriptedStream(_list_files_transcript()[:1], error=boom)

    with pytest.raises(RuntimeError) as exc_info:
        _run("Fail", stream, persist=persisted.append)
    assert exc_info.value is boom
    assert persisted == []


def test_cancellation_surfaces_from_generator() -> None:
    session_config = SessionConfig()
    stream = ScriptedStream(_list_files_transcript())

    async def _drive():
        gen = run_agent(
            "List files", 0, session_config, "msg", [],
            runtime=_runtime(stream),
        )
        first = await gen.__anext__()
        assert isinstance(first, ProgressEvent)
        session_config.cancel.cancel()
        with pytest.raises(asyncio.CancelledError):
            await gen.__anext__()

    asyncio.run(_drive())
    assert session_config.cancel.reason == "Request interrupted by user"


def test_orphan_tool_result_is_rejected() -> None:
    transcript = [
        TranscriptEntry.user([ToolResultBlock(tool_use_id="ghost", content="?")]),
        TranscriptEntry.assistant("Done"),
    ]
    with pytest.raises(OrphanToolResultError) as exc_info:
        _run("Go", ScriptedStream(transcript))
    assert exc_info.value.tool_use_id == "ghost"


def test_concurrent_sessions_on_same_parent_never_collide() -> None:
    async def _both():
        first = _collect(run_agent(
            "A", 0, SessionConfig(), "msg_shared", [],
            runtime=_runtime(ScriptedStream(_list_files_transcript())),
        ))
        second = _collect(run_agent(
            "B", 1, SessionConfig(), "msg_shared", [],
            runtime=_runtime(ScriptedStream(_list_files_transcript())),
        ))
        return await asyncio.gather(first, second)

    events_a, events_b = asyncio.run(_both())
    ids_a = {e.tool_use_id for e in events_a if isinstance(e, ProgressEvent)}
    ids_b = {e.tool_use_id for e in events_b if isinstance(e, ProgressEvent)}
    assert ids_a == {"agent_0_msg_shared"}
    assert ids_b == {"agent_1_msg_shared"}
    assert ids_a.isdisjoint(ids_b)


def test_defaults_resolved_concurrently_and_forwarded() -> None:
    log: list[str] = []
    stream = ScriptedStream([TranscriptEntry.assistant("ok")])
    tracker = object()
    set_ids = lambda fn: None  # noqa: E731
    session_config = SessionConfig(
        debug=True,
        is_non_interactive=True,
        read_file_state=tracker,
        set_in_progress_tool_use_ids=set_ids,
    )

    asyncio.run(_collect(run_agent(
        "Hello", 0, session_config, "msg", ["registry"],
        runtime=_runtime(stream, log=log),
    )))

    starts = [entry for entry in log if entry.endswith(":start")]
    assert log[:3] == starts
    call = stream.calls[0]
    assert call["system_prompt"] == "default prompt for default-model"
    assert call["tool_wrapper"] == "tool-wrapper"
    assert call["environment"] == {"cwd": "/work", "is_non_interactive": True}
    assert call["tool_registry"] == ["registry"]
    assert [e.content for e in call["history"]] == [(TextBlock(text="Hello"),)]
    context = call["context"]
    assert context.model == "default-model"
    assert context.debug is True
    assert context.read_file_state is tracker
    assert context.set_in_progress_tool_use_ids is set_ids
    assert context.cancel is session_config.cancel


def test_overrides_skip_default_resolution() -> None:
    log: list[str] = []
    stream = ScriptedStream([TranscriptEntry.assistant("ok")])
    asyncio.run(_collect(run_agent(
        "Hello", 0, SessionConfig(), "msg", [],
        AgentOptions(model="override-model", system_prompt="custom prompt"),
        runtime=_runtime(stream, log=log),
    )))

    assert "model:start" not in log
    call = stream.calls[0]
    assert call["system_prompt"] == "custom prompt"
    assert call["context"].model == "override-model"


def test_each_session_gets_a_fresh_agent_id() -> None:
    stream = ScriptedStream([TranscriptEntry.assistant("ok")])
    _run("One", stream)
    _run("Two", stream)
    first, second = (call["context"].agent_id for call in stream.calls)
    assert first and second and first != second


def test_parent_message_id_sources() -> None:
    entry = TranscriptEntry.assistant("hi", message_id="msg_entry")
    assert parent_message_id(entry) == "msg_entry"
    assert parent_message_id({"message": {"id": "msg_dict"}}) == "msg_dict"
    assert parent_message_id("msg_str") == "msg_str"
    with pytest.raises(TypeError):
        parent_message_id(42)


def test_progress_tool_use_id_format() -> None:
    assert progress_tool_use_id(3, "m1") == "agent_3_m1"
    assert progress_tool_use_id(3, "m1", is_synthesis=True) == "synthesis_m1"
