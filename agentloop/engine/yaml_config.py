"""YAML configuration loader.

One file covering engine settings and the initial permission policy.
When no YAML is provided, EngineConfig.from_env() works as before.

Example YAML:
    engine:
      default_model: claude-sonnet-4-5-20250929
      parallel_agent_count: 3
      max_concurrent_agents: 5
      transcript_dir: ~/.agentloop/transcripts
      log_level: INFO

    permissions:
      mode: default            # default | acceptEdits | bypassPermissions
      bypass_accepted: false
      allow:
        - "read:Bash(git status)"
        - "edit:Bash(npm test:*)"
        - "edit:~/work/project/src"
      deny:
        - "edit:Bash(rm:*)"
      additional_directories:
        - ~/work/shared
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ConfigError
from .models import PermissionContext, PermissionMode, PermissionRule
from .permissions import parse_rule

logger = logging.getLogger(__name__)


@dataclass
class PermissionsConfig:
    """Initial permission policy from YAML."""
    mode: PermissionMode = PermissionMode.DEFAULT
    bypass_accepted: bool = False
    allow: list[PermissionRule] = field(default_factory=list)
    deny: list[PermissionRule] = field(default_factory=list)
    additional_directories: list[str] = field(default_factory=list)

    def build_context(self) -> PermissionContext:
        return PermissionContext(
            mode=self.mode,
            always_allow_rules={rule.key: rule for rule in self.allow},
            always_deny_rules={rule.key: rule for rule in self.deny},
            additional_working_directories=frozenset(self.additional_directories),
            bypass_accepted=self.bypass_accepted,
        )


@dataclass
class AgentLoopConfig:
    """Parsed YAML configuration."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)


def _parse_engine(raw: dict[str, Any], source: str) -> EngineConfig:
    known = {f.name for f in fields(EngineConfig)}
    unknown = set(raw) - known
    if unknown:
        logger.warning("Ignoring unknown engine keys in %s: %s", source, sorted(unknown))
    kwargs = {k: v for k, v in raw.items() if k in known}
    if "permission_mode" in kwargs:
        kwargs["permission_mode"] = PermissionMode(kwargs["permission_mode"])
    for key in ("transcript_dir", "permission_store_dir"):
        if kwargs.get(key):
            kwargs[key] = os.path.expanduser(str(kwargs[key]))
    return EngineConfig(**kwargs)


def _parse_rules(raw: Any, section: str, source: str) -> list[PermissionRule]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(source, f"permissions.{section} must be a list")
    rules = []
    for item in raw:
        try:
            rules.append(parse_rule(str(item)))
        except ValueError as exc:
            raise ConfigError(source, f"permissions.{section}: {exc}") from exc
    return rules


def _parse_permissions(raw: dict[str, Any], source: str) -> PermissionsConfig:
    try:
        mode = PermissionMode(raw.get("mode", PermissionMode.DEFAULT.value))
    except ValueError as exc:
        raise ConfigError(source, f"permissions.mode: {exc}") from exc
    return PermissionsConfig(
        mode=mode,
        bypass_accepted=bool(raw.get("bypass_accepted", False)),
        allow=_parse_rules(raw.get("allow"), "allow", source),
        deny=_parse_rules(raw.get("deny"), "deny", source),
        additional_directories=[
            os.path.abspath(os.path.expanduser(str(d)))
            for d in raw.get("additional_directories") or []
        ],
    )


def load_yaml_config(path: str | Path) -> AgentLoopConfig:
    """Load an agentloop YAML file."""
    path = Path(path)
    source = str(path)
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(source, str(exc)) from exc
    if not isinstance(raw, dict):
        raise ConfigError(source, "top level must be a mapping")

    engine_raw = raw.get("engine") or {}
    permissions_raw = raw.get("permissions") or {}
    if not isinstance(engine_raw, dict) or not isinstance(permissions_raw, dict):
        raise ConfigError(source, "engine and permissions must be mappings")

    try:
        engine = _parse_engine(engine_raw, source)
    except (TypeError, ValueError) as exc:
        raise ConfigError(source, f"engine: {exc}") from exc
    config = AgentLoopConfig(
        engine=engine,
        permissions=_parse_permissions(permissions_raw, source),
    )
    logger.info(
        "Loaded %s: model=%s mode=%s allow=%d deny=%d",
        source,
        config.engine.default_model,
        config.permissions.mode.value,
        len(config.permissions.allow),
        len(config.permissions.deny),
    )
    return config
