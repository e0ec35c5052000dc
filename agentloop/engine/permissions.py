"""Permission policy engine for tool invocations.

classify() → decide() → (confirmation) → apply(). The engine itself is
synchronous and never stores state: the caller owns the
PermissionContext and installs every new version through its own
setter. PermissionGate wraps the cycle in an asyncio.Lock so concurrent
sessions sharing one context never lose an allow-always update.

Precedence, first match wins:

    bypassPermissions (accepted)  → allow
    always-deny rule              → deny
    acceptEdits + edit invocation → allow
    always-allow rule             → allow
    read inside a working dir     → allow
    otherwise                     → ask (allow-once / allow-always / deny)

Invocation state machine (terminal in every branch):

    PENDING ──┬──> APPROVED_ONCE
              ├──> APPROVED_FOREVER
              └──> DENIED
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cancellation import CancellationHandle
from .config import ConfirmCallback, EventCallback, fire_event
from .errors import BypassNotAcceptedError, InvalidDecisionError
from .models import PermissionContext, PermissionMode, PermissionRule, ToolType
from .tools import bare_tool_name

logger = logging.getLogger(__name__)

OnAllow = Callable[[str, Mapping[str, Any]], None]
OnReject = Callable[[], None]


class PermissionOption(str, Enum):
    ALLOW_ONCE = "yes"
    ALLOW_ALWAYS = "yes-dont-ask-again"
    DENY = "no"


@dataclass(frozen=True)
class OptionItem:
    label: str
    value: PermissionOption


@dataclass(frozen=True)
class PermissionDecision:
    """Result of decide(). ``options`` is None when no prompt is needed."""
    tool_type: ToolType
    rule: PermissionRule
    options: tuple[OptionItem, ...] | None = None
    denied: bool = False
    reason: str = ""

    @property
    def requires_confirmation(self) -> bool:
        return self.options is not None


class InvocationState(str, Enum):
    PENDING = "pending"
    APPROVED_ONCE = "approved_once"
    APPROVED_FOREVER = "approved_forever"
    DENIED = "denied"


VALID_TRANSITIONS: dict[InvocationState, set[InvocationState]] = {
    InvocationState.PENDING: {
        InvocationState.APPROVED_ONCE,
        InvocationState.APPROVED_FOREVER,
        InvocationState.DENIED,
    },
    InvocationState.APPROVED_ONCE: set(),
    InvocationState.APPROVED_FOREVER: set(),
    InvocationState.DENIED: set(),
}

_CHOICE_STATES: dict[PermissionOption, InvocationState] = {
    PermissionOption.ALLOW_ONCE: InvocationState.APPROVED_ONCE,
    PermissionOption.ALLOW_ALWAYS: InvocationState.APPROVED_FOREVER,
    PermissionOption.DENY: InvocationState.DENIED,
}


def validate_transition(
    invocation_id: str,
    current: InvocationState,
    target: InvocationState,
) -> None:
    """Raise InvalidDecisionError unless current → target is allowed."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidDecisionError(invocation_id, current.value, target.value)


@dataclass
class PendingInvocation:
    """One tool call awaiting a decision."""
    tool_name: str
    tool_input: Mapping[str, Any]
    tool_type: ToolType
    tool_use_id: str | None = None
    invocation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: InvocationState = InvocationState.PENDING

    def transition(self, target: InvocationState) -> None:
        validate_transition(self.invocation_id, self.state, target)
        self.state = target


_TOOL_RULE_RE = re.compile(r"^([A-Za-z_][\w.\-]*)(?:\((.*)\))?$")


def parse_rule(key: str) -> PermissionRule:
    """Parse ``edit:/abs/dir``, ``read:Bash`` or ``edit:Bash(npm:*)``."""
    tool_type_raw, sep, target = key.partition(":")
    if not sep or not target:
        raise ValueError(f"Malformed permission rule: {key!r}")
    tool_type = ToolType(tool_type_raw.strip().lower())
    target = target.strip()
    match = _TOOL_RULE_RE.match(target)
    if match:
        return PermissionRule(tool_type, match.group(1), match.group(2))
    return PermissionRule(tool_type, None, os.path.abspath(os.path.expanduser(target)))


def _is_within(path: str, directory: str) -> bool:
    path = os.path.abspath(path)
    directory = os.path.abspath(directory)
    return path == directory or path.startswith(directory.rstrip(os.sep) + os.sep)


def _probe(tool: Any, name: str, tool_input: Mapping[str, Any]) -> Any:
    fn = getattr(tool, name, None)
    return fn(tool_input) if callable(fn) else None


class PermissionPolicyEngine:
    """Stateless classifier and decision maker."""

    def __init__(self, cwd: str | None = None) -> None:
        self._cwd = os.path.abspath(cwd or os.getcwd())

    @property
    def cwd(self) -> str:
        return self._cwd

    def classify(self, tool: Any, tool_input: Mapping[str, Any]) -> ToolType:
        """READ only when the tool self-reports read-only; EDIT otherwise."""
        if _probe(tool, "is_read_only", tool_input) is True:
            return ToolType.READ
        return ToolType.EDIT

    def rule_for(
        self,
        tool: Any,
        tool_input: Mapping[str, Any],
        tool_type: ToolType,
    ) -> PermissionRule:
        """The rule an allow-always decision on this call would create."""
        path = _probe(tool, "path_of", tool_input)
        if path:
            return PermissionRule(tool_type, None, self._rule_directory(path))
        pattern = _probe(tool, "pattern_of", tool_input)
        return PermissionRule(tool_type, bare_tool_name(tool.name), pattern)

    def working_directories(self, context: PermissionContext) -> list[str]:
        return [self._cwd, *sorted(context.additional_working_directories)]

    def decide(
        self,
        tool: Any,
        tool_input: Mapping[str, Any],
        tool_type: ToolType,
        context: PermissionContext,
    ) -> PermissionDecision:
        rule = self.rule_for(tool, tool_input, tool_type)

        if context.mode == PermissionMode.BYPASS:
            if not context.bypass_accepted:
                raise BypassNotAcceptedError()
            return PermissionDecision(tool_type, rule, reason="bypassPermissions mode")

        path = _probe(tool, "path_of", tool_input)
        pattern = _probe(tool, "pattern_of", tool_input)
        name = bare_tool_name(tool.name)

        denied_by = self._find_rule(
            context.always_deny_rules, name, path, pattern, tool_type, allow=False,
        )
        if denied_by is not None:
            return PermissionDecision(
                tool_type, rule, denied=True,
                reason=f"denied by rule {denied_by.key}",
            )

        if context.mode == PermissionMode.ACCEPT_EDITS and tool_type == ToolType.EDIT:
            return PermissionDecision(tool_type, rule, reason="acceptEdits mode")

        allowed_by = self._find_rule(
            context.always_allow_rules, name, path, pattern, tool_type, allow=True,
        )
        if allowed_by is not None:
            return PermissionDecision(
                tool_type, rule, reason=f"allowed by rule {allowed_by.key}",
            )

        if tool_type == ToolType.READ and path and any(
            _is_within(path, d) for d in self.working_directories(context)
        ):
            return PermissionDecision(
                tool_type, rule, reason="read inside working directory",
            )

        return PermissionDecision(
            tool_type, rule, options=self.options_for(tool, rule),
        )

    def options_for(self, tool: Any, rule: PermissionRule) -> tuple[OptionItem, ...]:
        if getattr(tool, "bulk_edit", False):
            always = "Yes, allow all edits during this session"
        elif rule.is_path_rule:
            verb = "edits" if rule.tool_type == ToolType.EDIT else "reads"
            always = f"Yes, and don't ask again for {verb} in {rule.pattern}"
        elif rule.pattern:
            always = f"Yes, and don't ask again for {rule.tool_name}({rule.pattern})"
        else:
            always = f"Yes, and don't ask again for {rule.tool_name}"
        return (
            OptionItem("Yes", PermissionOption.ALLOW_ONCE),
            OptionItem(always, PermissionOption.ALLOW_ALWAYS),
            OptionItem(
                "No, and tell the agent what to do differently",
                PermissionOption.DENY,
            ),
        )

    def apply(
        self,
        choice: PermissionOption | str,
        tool: Any,
        tool_input: Mapping[str, Any],
        tool_type: ToolType,
        context: PermissionContext,
        set_context: Callable[[PermissionContext], None],
        *,
        on_allow: OnAllow,
        on_reject: OnReject | None = None,
        invocation: PendingInvocation | None = None,
    ) -> None:
        """Apply a user choice. Mutates policy only through ``set_context``."""
        choice = PermissionOption(choice)
        if invocation is not None:
            invocation.transition(_CHOICE_STATES[choice])

        if choice == PermissionOption.ALLOW_ONCE:
            on_allow("temporary", tool_input)
            return

        if choice == PermissionOption.ALLOW_ALWAYS:
            if getattr(tool, "bulk_edit", False):
                set_context(context.with_mode(PermissionMode.ACCEPT_EDITS))
                logger.info("Permission mode -> acceptEdits via %s", tool.name)
            else:
                rule = self.rule_for(tool, tool_input, tool_type)
                updated = context.with_allow_rule(rule)
                if rule.is_path_rule and rule.pattern and not any(
                    _is_within(rule.pattern, d)
                    for d in self.working_directories(context)
                ):
                    updated = updated.with_working_directory(rule.pattern)
                set_context(updated)
                logger.info("Permission allow rule added: %s", rule.key)
            on_allow("permanent", tool_input)
            return

        if on_reject is not None:
            on_reject()

    @staticmethod
    def _rule_directory(path: str) -> str:
        resolved = os.path.abspath(os.path.expanduser(path))
        if os.path.isdir(resolved):
            return resolved
        return os.path.dirname(resolved)

    @staticmethod
    def _find_rule(
        rules: Mapping[str, PermissionRule],
        tool_name: str,
        path: str | None,
        pattern: str | None,
        tool_type: ToolType,
        *,
        allow: bool,
    ) -> PermissionRule | None:
        # An edit allowance also covers reads; a read denial also covers edits.
        broad = ToolType.EDIT if allow else ToolType.READ
        for rule in rules.values():
            if rule.tool_type != tool_type and rule.tool_type != broad:
                continue
            if rule.is_path_rule:
                if path and rule.pattern and _is_within(path, rule.pattern):
                    return rule
                continue
            if rule.tool_name != tool_name:
                continue
            if rule.pattern is None:
                return rule
            if pattern is None:
                continue
            if rule.pattern.endswith(":*"):
                if pattern.startswith(rule.pattern[:-2]):
                    return rule
            elif pattern == rule.pattern:
                return rule
        return None


class PermissionContextHolder:
    """Minimal caller-side owner of the process-wide PermissionContext."""

    def __init__(self, context: PermissionContext | None = None) -> None:
        self._context = context or PermissionContext()

    def get(self) -> PermissionContext:
        return self._context

    def set(self, context: PermissionContext) -> None:
        if context.mode != self._context.mode:
            logger.info(
                "Permission mode %s -> %s",
                self._context.mode.value, context.mode.value,
            )
        self._context = context


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the confirmation prompt needs to render a decision."""
    tool: Any
    tool_input: Mapping[str, Any]
    decision: PermissionDecision
    invocation: PendingInvocation
    agent_id: str = ""

    @property
    def tool_name(self) -> str:
        return self.tool.name

    @property
    def options(self) -> tuple[OptionItem, ...]:
        return self.decision.options or ()


@dataclass(frozen=True)
class PermissionOutcome:
    allowed: bool
    updated_input: Mapping[str, Any]
    source: str
    message: str = ""


class PermissionGate:
    """Full async permission check for one tool invocation.

    One gate is shared by every session that shares a PermissionContext.
    The lock is held across the confirmation prompt, so a rule written by
    one session's allow-always is seen by the next session's decide()
    without prompting again.
    """

    def __init__(
        self,
        get_context: Callable[[], PermissionContext],
        set_context: Callable[[PermissionContext], None],
        confirm: ConfirmCallback | None = None,
        *,
        engine: PermissionPolicyEngine | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._get_context = get_context
        self._set_context = set_context
        self._confirm = confirm
        self._engine = engine or PermissionPolicyEngine()
        self._event_callback = event_callback
        self._lock = asyncio.Lock()

    @property
    def engine(self) -> PermissionPolicyEngine:
        return self._engine

    async def check(
        self,
        tool: Any,
        tool_input: Mapping[str, Any],
        *,
        tool_use_id: str | None = None,
        agent_id: str = "",
        cancel: CancellationHandle | None = None,
    ) -> PermissionOutcome:
        if cancel is not None:
            cancel.raise_if_cancelled()

        async with self._lock:
            # Cancelled while queued behind another session's prompt
            if cancel is not None:
                cancel.raise_if_cancelled()
            context = self._get_context()
            tool_type = self._engine.classify(tool, tool_input)
            decision = self._engine.decide(tool, tool_input, tool_type, context)
            logger.info(
                "PERM_CHECK agent=%s tool=%s type=%s mode=%s ask=%s",
                agent_id[:8],
                tool.name,
                tool_type.value,
                context.mode.value,
                decision.requires_confirmation,
            )

            if decision.denied:
                outcome = PermissionOutcome(
                    False, tool_input, "config",
                    f"Permission to use {tool.name} has been denied ({decision.reason})",
                )
            elif not decision.requires_confirmation:
                outcome = PermissionOutcome(True, tool_input, "config", decision.reason)
            elif self._confirm is None:
                outcome = PermissionOutcome(
                    False, tool_input, "no_prompt",
                    f"{tool.name} requires permission and no confirmation "
                    "handler is available",
                )
            else:
                outcome = await self._ask(
                    tool, tool_input, tool_type, decision, context,
                    tool_use_id=tool_use_id, agent_id=agent_id, cancel=cancel,
                )

        await fire_event(self._event_callback, {
            "event": "permission_decision",
            "agent_id": agent_id,
            "tool_name": tool.name,
            "tool_use_id": tool_use_id,
            "allowed": outcome.allowed,
            "source": outcome.source,
        })
        return outcome

    async def _await_choice(
        self,
        request: ConfirmationRequest,
        cancel: CancellationHandle | None,
    ) -> Any:
        """Wait for the prompt, giving up as soon as ``cancel`` fires."""
        if cancel is None:
            return await self._confirm(request)

        confirm_task = asyncio.ensure_future(self._confirm(request))
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait(
                {confirm_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (confirm_task, cancel_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(confirm_task, cancel_task, return_exceptions=True)

        if cancel.cancelled:
            logger.info(
                "Permission prompt abandoned agent=%s tool=%s reason=%s",
                request.agent_id[:8], request.tool_name, cancel.reason,
            )
            raise asyncio.CancelledError(cancel.reason)
        return confirm_task.result()

    async def _ask(
        self,
        tool: Any,
        tool_input: Mapping[str, Any],
        tool_type: ToolType,
        decision: PermissionDecision,
        context: PermissionContext,
        *,
        tool_use_id: str | None,
        agent_id: str,
        cancel: CancellationHandle | None,
    ) -> PermissionOutcome:
        invocation = PendingInvocation(
            tool_name=tool.name,
            tool_input=tool_input,
            tool_type=tool_type,
            tool_use_id=tool_use_id,
        )
        choice = await self._await_choice(ConfirmationRequest(
            tool=tool,
            tool_input=tool_input,
            decision=decision,
            invocation=invocation,
            agent_id=agent_id,
        ), cancel)

        outcomes: list[PermissionOutcome] = []

        def _on_allow(kind: str, updated_input: Mapping[str, Any]) -> None:
            outcomes.append(PermissionOutcome(True, updated_input, f"user_{kind}"))

        def _on_reject() -> None:
            outcomes.append(PermissionOutcome(
                False, tool_input, "user_reject", "User denied tool call",
            ))

        self._engine.apply(
            choice, tool, tool_input, tool_type, context, self._set_context,
            on_allow=_on_allow, on_reject=_on_reject, invocation=invocation,
        )
        logger.info(
            "Permission decision agent=%s tool=%s state=%s",
            agent_id[:8], tool.name, invocation.state.value,
        )
        return outcomes[-1]
