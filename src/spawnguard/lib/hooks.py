"""External program hooks with a fixed positional-argument convention.

Hooks are the intended way for host features to hand remote-party data to
an external program: the target identity and every display field travel as
separate argv entries through ``execute_argv``, never through a shell.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import structlog

from spawnguard.lib.config.settings import HookConfig, SpawnConfig
from spawnguard.lib.exec.child import ChildOptions
from spawnguard.lib.exec.execute import execute_argv

logger = structlog.get_logger(__name__)


class UnknownHookError(KeyError):
    """Raised when a hook name has no configuration entry."""


@dataclass(frozen=True, slots=True)
class ExternalProgramHook:
    name: str
    config: HookConfig
    options: ChildOptions = ChildOptions()

    def build_argv(self, target: str, values: Mapping[str, str] | None = None) -> list[str]:
        """Return ``[program, target, field1, field2, ...]`` in declared field order.

        Absent fields are passed as empty strings so later positions never
        shift. Values for undeclared fields are rejected.
        """

        provided = dict(values or {})
        unknown = sorted(set(provided) - set(self.config.fields))
        if unknown:
            raise ValueError(
                f"Hook '{self.name}' does not declare field(s): {', '.join(unknown)}."
            )
        return [
            self.config.program,
            target,
            *(provided.get(name, "") for name in self.config.fields),
        ]

    def fire(self, target: str, values: Mapping[str, str] | None = None) -> int:
        argv = self.build_argv(target, values)
        result = execute_argv(self.config.detach, self.config.program, argv, options=self.options)
        if result != 0:
            logger.info(
                "External program hook returned non-zero.",
                hook=self.name,
                program=self.config.program,
                result=result,
            )
        return result


def resolve_hook(config: SpawnConfig, name: str) -> ExternalProgramHook:
    hook_config = config.hooks.get(name)
    if hook_config is None:
        raise UnknownHookError(f"Unknown hook '{name}'.")
    return ExternalProgramHook(name=name, config=hook_config, options=config.child.to_options())
