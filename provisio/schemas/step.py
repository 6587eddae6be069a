"""
Step schemas - the declarative provisioning step.

A Step is loaded once per run from a manifest and is read-only thereafter.
It names its prerequisites (depends_on), how to tell whether its effect
already holds (probe), what to do otherwise (action), and how failures are
treated (criticality, retry policy, timeout).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from provisio.errors import ManifestError


class Criticality(str, Enum):
    """Whether a step's failure aborts the run."""
    REQUIRED = "required"
    BEST_EFFORT = "best_effort"

    @classmethod
    def from_string(cls, value: str) -> "Criticality":
        """Parse a criticality from a manifest value (accepts best-effort)."""
        normalized = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            valid = [c.value for c in cls]
            raise ManifestError(f"Invalid criticality '{value}'. Valid: {valid}")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy for transient failures.

    Attributes:
        max_retries: Extra attempts after the first (0 = no retries)
        backoff_s: Base delay; retry n waits backoff_s * 2**(n-1), capped
    """
    max_retries: int = 0
    backoff_s: float = 1.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ManifestError("max_retries must be >= 0")
        if self.backoff_s < 0:
            raise ManifestError("retry_backoff_s must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_n: int, cap_s: Optional[float] = None) -> float:
        """Delay before retry number retry_n (1-indexed)."""
        delay = self.backoff_s * (2 ** (retry_n - 1))
        if cap_s is not None:
            delay = min(delay, cap_s)
        return delay


@dataclass(frozen=True)
class ProbeDef:
    """
    An idempotency probe definition.

    kind selects the probe implementation (command, path_exists,
    file_contains, service_active, service_enabled, call, all).
    Composite kinds carry their children in probes.
    """
    kind: str
    params: dict[str, Any] = field(default_factory=dict)
    probes: tuple["ProbeDef", ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind, **self.params}
        if self.probes:
            result["probes"] = [p.to_dict() for p in self.probes]
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "ProbeDef":
        if not isinstance(data, dict) or "kind" not in data:
            raise ManifestError(f"Probe definition must be a mapping with 'kind': {data!r}")
        params = {k: v for k, v in data.items() if k not in ("kind", "probes")}
        return cls(
            kind=str(data["kind"]),
            params=params,
            probes=tuple(cls.from_dict(p) for p in data.get("probes", [])),
        )


@dataclass(frozen=True)
class ActionDef:
    """
    An action definition.

    kind selects the action implementation (command, write_file, ensure_dir,
    call, sequence). A sequence carries its ordered sub-actions in actions.
    """
    kind: str
    params: dict[str, Any] = field(default_factory=dict)
    actions: tuple["ActionDef", ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind, **self.params}
        if self.actions:
            result["actions"] = [a.to_dict() for a in self.actions]
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "ActionDef":
        if not isinstance(data, dict) or "kind" not in data:
            raise ManifestError(f"Action definition must be a mapping with 'kind': {data!r}")
        params = {k: v for k, v in data.items() if k not in ("kind", "actions")}
        return cls(
            kind=str(data["kind"]),
            params=params,
            actions=tuple(cls.from_dict(a) for a in data.get("actions", [])),
        )


def _parse_when(value: Any) -> Optional[str]:
    """Normalize a step condition; YAML booleans become literal conditions."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if not isinstance(value, str) or not value.strip():
        raise ManifestError(f"'when' must be a non-empty condition string, got {value!r}")
    return value


@dataclass(frozen=True)
class Step:
    """
    A named unit of provisioning work.

    Attributes:
        name: Unique identifier, used for reporting and dependency references
        action: What to do when the probe says the effect is absent
        depends_on: Names that must reach success (or an accepted skip) first
        probe: Read-only check for whether the effect already holds
               (None means always unsatisfied; the action must be idempotent)
        criticality: REQUIRED aborts the run on failure, BEST_EFFORT does not
        retry: Retry policy for transient failures
        timeout_s: Action timeout per attempt (None = executor default)
        when: Optional condition on the run context (e.g. "@ctx.setup_ssl")
        description: Free text shown in listings
    """
    name: str
    action: ActionDef
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    probe: Optional[ProbeDef] = None
    criticality: Criticality = Criticality.REQUIRED
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_s: Optional[float] = None
    when: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ManifestError("Step name is required")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ManifestError(f"Step '{self.name}': timeout_s must be > 0")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ManifestError(f"Step '{self.name}': duplicate entries in depends_on")

    @property
    def is_required(self) -> bool:
        return self.criticality == Criticality.REQUIRED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "name": self.name,
            **({"description": self.description} if self.description else {}),
            "depends_on": list(self.depends_on),
            "criticality": self.criticality.value,
            "max_retries": self.retry.max_retries,
            "retry_backoff_s": self.retry.backoff_s,
            **({"timeout_s": self.timeout_s} if self.timeout_s is not None else {}),
            **({"when": self.when} if self.when is not None else {}),
            **({"probe": self.probe.to_dict()} if self.probe else {}),
            "action": self.action.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: Optional[dict[str, Any]] = None) -> "Step":
        """
        Deserialize from a manifest entry.

        Args:
            data: The step mapping
            defaults: Manifest-level defaults for criticality, max_retries,
                      retry_backoff_s and timeout_s

        Raises:
            ManifestError: If the entry is malformed
        """
        if not isinstance(data, dict):
            raise ManifestError(f"Step definition must be a mapping: {data!r}")
        defaults = defaults or {}
        name = data.get("name")
        if not name:
            raise ManifestError(f"Step is missing 'name': {data!r}")
        if "action" not in data:
            raise ManifestError(f"Step '{name}' is missing 'action'")

        depends_on = data.get("depends_on", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        def _get(key: str, fallback: Any) -> Any:
            return data.get(key, defaults.get(key, fallback))

        try:
            retry = RetryPolicy(
                max_retries=int(_get("max_retries", 0)),
                backoff_s=float(_get("retry_backoff_s", 1.0)),
            )
            timeout = _get("timeout_s", None)
            return cls(
                name=str(name),
                action=ActionDef.from_dict(data["action"]),
                depends_on=tuple(str(d) for d in depends_on),
                probe=ProbeDef.from_dict(data["probe"]) if data.get("probe") else None,
                criticality=Criticality.from_string(_get("criticality", "required")),
                retry=retry,
                timeout_s=float(timeout) if timeout is not None else None,
                when=_parse_when(data.get("when")),
                description=data.get("description", ""),
            )
        except ManifestError as e:
            if str(e).startswith("Step "):
                raise
            raise ManifestError(f"Step '{name}': {e}") from e
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Step '{name}': {e}") from e
