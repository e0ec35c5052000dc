"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTLOOP_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .models import PermissionMode

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Async callback asked when no cached rule covers a tool call.
# Signature: async def callback(request: ConfirmationRequest) -> PermissionOption | str
# Returns: "yes", "yes-dont-ask-again", or "no"
ConfirmCallback = Callable[[Any], Awaitable[Any]]

# Sink invoked once at session end with the full transcript.
# May be a plain function or a coroutine function.
PersistCallback = Callable[[list[Any]], Any]


DEFAULT_SYSTEM_PROMPT = (
    "You are an agent for {product}. Given the user's prompt, use the "
    "tools available to you to answer the user's question.\n\n"
    "Notes:\n"
    "1. IMPORTANT: Be concise. Your final message is returned verbatim "
    "to the caller, so it must contain the complete answer.\n"
    "2. Share relevant file names and code snippets. Any file paths you "
    "return MUST be absolute.\n"
    "3. You are running with model {model}."
)


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and dropping its errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Observers must never break a session
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


@dataclass
class EngineConfig:
    """Sub-agent loop configuration."""

    default_model: str = "claude-sonnet-4-5-20250929"
    # Template with {model} and {product} placeholders.
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    product_name: str = "agentloop"
    permission_mode: PermissionMode = PermissionMode.DEFAULT

    # Number of sub-agents launched by run_agents() fan-out and the cap
    # on how many stream at once.
    parallel_agent_count: int = 1
    max_concurrent_agents: int = 10

    # Optional on-disk transcript log (one JSONL file per session).
    transcript_dir: str | None = None
    # Directory holding the global allowed_rules.json.
    permission_store_dir: str | None = None

    # Logging
    log_level: str = "INFO"

    def system_prompt_for(self, model: str) -> str:
        return self.default_system_prompt.format(
            model=model, product=self.product_name,
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTLOOP_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTLOOP_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: AGENTLOOP_* env overrides: %s",
                ", ".join(sorted(env_vars)),
            )
        else:
            logger.debug("EngineConfig.from_env: no AGENTLOOP_* env vars set, using defaults")

        config = cls(
            default_model=os.getenv(
                "AGENTLOOP_DEFAULT_MODEL", cls.default_model
            ),
            default_system_prompt=os.getenv(
                "AGENTLOOP_SYSTEM_PROMPT", cls.default_system_prompt
            ),
            product_name=os.getenv(
                "AGENTLOOP_PRODUCT_NAME", cls.product_name
            ),
            permission_mode=PermissionMode(os.getenv(
                "AGENTLOOP_PERMISSION_MODE", cls.permission_mode.value
            )),
            parallel_agent_count=int(os.getenv(
                "AGENTLOOP_PARALLEL_AGENTS", str(cls.parallel_agent_count)
            )),
            max_concurrent_agents=int(os.getenv(
                "AGENTLOOP_MAX_AGENTS", str(cls.max_concurrent_agents)
            )),
            transcript_dir=os.getenv("AGENTLOOP_TRANSCRIPT_DIR") or None,
            permission_store_dir=os.getenv("AGENTLOOP_PERMISSION_DIR") or None,
            log_level=os.getenv("AGENTLOOP_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: model=%s mode=%s log_level=%s",
            config.default_model, config.permission_mode.value,
            config.log_level,
        )
        return config


def configure_logging(config: EngineConfig, *, verbose: bool = False) -> None:
    """Install a root handler at the configured level."""
    level = logging.DEBUG if verbose else getattr(
        logging, config.log_level.upper(), logging.INFO,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
