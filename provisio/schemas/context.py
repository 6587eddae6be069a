"""
RunContext - the immutable per-run context passed to every probe and action.

Replaces the global shell variables the provisioning scripts threaded through
their functions (detected platform, chosen options, computed paths).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from provisio.refs import evaluate_condition, resolve_value


@dataclass(frozen=True)
class RunContext:
    """
    Read-only context for one provisioning run.

    Attributes:
        run_id: Identifier of the run (ULID)
        variables: Run variables, resolvable as @ctx.*
        env: Environment snapshot, resolvable as @env.*
        dry_run: Probe only, never execute actions
        work_dir: Working directory for relative paths in actions
    """
    run_id: str
    variables: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    dry_run: bool = False
    work_dir: Path = field(default_factory=Path.cwd)

    def __post_init__(self):
        # Freeze the mappings so probes and actions cannot mutate shared state
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "work_dir", Path(self.work_dir))

    @classmethod
    def create(
        cls,
        variables: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
        dry_run: bool = False,
        run_id: Optional[str] = None,
        work_dir: Optional[Path] = None,
    ) -> "RunContext":
        """Create a context, snapshotting os.environ when env is not given."""
        from provisio.utils import generate_run_id

        return cls(
            run_id=run_id or generate_run_id(),
            variables=variables or {},
            env=dict(os.environ) if env is None else env,
            dry_run=dry_run,
            work_dir=work_dir or Path.cwd(),
        )

    def resolve(self, value: Any) -> Any:
        """Resolve @ctx.* / @env.* references in a parameter value."""
        return resolve_value(value, self.variables, self.env)

    def evaluate(self, condition: str) -> bool:
        """Evaluate a step condition."""
        return evaluate_condition(condition, self.variables, self.env)

    def get(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)
