"""Parallel fan-out of one prompt across several sub-agents.

Each session runs as its own task under a concurrency bound; events are
merged through an EventBus. When more than one agent ran, a synthesis
session then combines their answers. A failure in any session cancels
the others and is re-raised to the caller.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import replace
from typing import Any

from agentloop.adapters.event_bus import EventBus

from .agent_loop import run_agent
from .models import AgentEvent, AgentOptions, AgentResult, ResultEvent
from .runtime import AgentRuntime
from .stream import SessionConfig

logger = logging.getLogger(__name__)


def build_synthesis_prompt(task: str, results: Sequence[AgentResult]) -> str:
    responses = "\n\n".join(
        f"== AGENT {result.agent_index + 1} RESPONSE ==\n{result.text}"
        for result in results
    )
    return (
        f"Original task: {task}\n\n"
        "I've assigned multiple agents to tackle this task. Each agent has "
        "analyzed the problem and provided their findings.\n\n"
        f"{responses}\n\n"
        "Based on all the information provided by these agents, synthesize "
        "a comprehensive and cohesive response that:\n"
        "1. Combines the key insights from all agents\n"
        "2. Resolves any contradictions between agent findings\n"
        "3. Presents a unified solution that addresses the original task\n"
        "4. Includes all important details and code examples from the "
        "individual responses\n\n"
        "Your synthesis should be thorough but focused on the original task."
    )


async def run_agents(
    prompt: str,
    count: int,
    session_config: SessionConfig,
    parent_message: Any,
    tool_registry: Sequence[Any],
    options: AgentOptions | None = None,
    *,
    runtime: AgentRuntime,
    max_concurrency: int = 10,
    synthesize: bool = True,
) -> AsyncIterator[AgentEvent]:
    """Run ``count`` sessions on ``prompt`` and yield their merged events.

    Sub-agent results keep their own agent_index. The synthesis
    session, if any, runs with agent_index == count.
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    options = options or AgentOptions()
    bus = EventBus()
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    results: dict[int, AgentResult] = {}

    async def _one(index: int) -> None:
        async with semaphore:
            async for event in run_agent(
                prompt, index, session_config, parent_message,
                tool_registry, options, runtime=runtime,
            ):
                if isinstance(event, ResultEvent):
                    results[index] = event.data
                await bus.emit(event)

    async def _drive() -> None:
        tasks = [asyncio.create_task(_one(i)) for i in range(count)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        finally:
            await bus.close()

    logger.info("Fan-out starting agents=%d max_concurrency=%d", count, max_concurrency)
    driver = asyncio.create_task(_drive())
    try:
        async for event in bus.consume():
            yield event
    finally:
        if not driver.done():
            driver.cancel()
    await driver

    if not synthesize or count == 1:
        return

    ordered = [results[i] for i in sorted(results)]
    synthesis_options = replace(options, is_synthesis=True, system_prompt=None)
    async for event in run_agent(
        build_synthesis_prompt(prompt, ordered),
        count,
        session_config,
        parent_message,
        tool_registry,
        synthesis_options,
        runtime=runtime,
    ):
        yield event
