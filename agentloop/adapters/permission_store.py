"""Persistent storage for allow-always permission rules.

Stores rule keys at two levels:
- Global: ~/.agentloop/allowed_rules.json (applies to all projects)
- Project: {project}/.agentloop/allowed_rules.json (per-project)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path

from agentloop.engine.config import EngineConfig
from agentloop.engine.models import PermissionContext, PermissionRule
from agentloop.engine.permissions import parse_rule

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".agentloop"
FILENAME = "allowed_rules.json"


class PermissionStore:
    """Load and save allow-always rules."""

    def __init__(
        self,
        project_dir: Path | None = None,
        global_dir: Path | None = None,
    ) -> None:
        self._project_dir = project_dir
        self._global_path = (global_dir or GLOBAL_DIR) / FILENAME
        self._project_path = (
            project_dir / ".agentloop" / FILENAME if project_dir else None
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        project_dir: Path | None = None,
    ) -> PermissionStore:
        global_dir = (
            Path(config.permission_store_dir).expanduser()
            if config.permission_store_dir else None
        )
        return cls(project_dir=project_dir, global_dir=global_dir)

    def load(self) -> dict[str, PermissionRule]:
        """Load all allowed rules (global + project merged)."""
        keys: set[str] = set()
        keys |= self._load_file(self._global_path)
        if self._project_path:
            keys |= self._load_file(self._project_path)
        rules: dict[str, PermissionRule] = {}
        for key in sorted(keys):
            try:
                rule = parse_rule(key)
            except ValueError:
                logger.warning("Skipping malformed permission rule %r", key)
                continue
            rules[rule.key] = rule
        return rules

    def apply_to(self, context: PermissionContext) -> PermissionContext:
        """Return ``context`` with every stored rule added."""
        for rule in self.load().values():
            context = context.with_allow_rule(rule)
        return context

    def add_project(self, rule: PermissionRule) -> None:
        """Add a rule to the project-level allow list."""
        if not self._project_path:
            # No project context, fall back to global
            self.add_global(rule)
            return
        self._add_to_file(self._project_path, rule.key)

    def add_global(self, rule: PermissionRule) -> None:
        """Add a rule to the global allow list."""
        self._add_to_file(self._global_path, rule.key)

    def persisting_setter(
        self,
        set_context: Callable[[PermissionContext], None],
        get_context: Callable[[], PermissionContext],
    ) -> Callable[[PermissionContext], None]:
        """Wrap a context setter so newly added allow rules are saved."""
        def _set(context: PermissionContext) -> None:
            before = get_context().always_allow_rules
            set_context(context)
            for key, rule in context.always_allow_rules.items():
                if key not in before:
                    self.add_project(rule)
        return _set

    @staticmethod
    def _load_file(path: Path) -> set[str]:
        """Load a set of rule keys from a JSON file."""
        if not path.exists():
            return set()
        try:
            data = json.loads(path.read_text())
            if isinstance(data, list):
                return {str(item) for item in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return set()

    @staticmethod
    def _add_to_file(path: Path, key: str) -> None:
        """Add a rule key to a JSON file (create if needed)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = PermissionStore._load_file(path)
        existing.add(key)
        try:
            path.write_text(json.dumps(sorted(existing), indent=2) + "\n")
        except OSError:
            logger.warning("Failed to write %s", path)
