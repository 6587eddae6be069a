"""
StepRegistry - Load and validate provisioning manifests.

The registry provides:
- Loading manifests from YAML or JSON files, mappings, or bundled manifest names
- Validation of step structure, unique names and dependency references
- Cycle detection at load time (the run never starts on a cyclic manifest)
- Deterministic topological ordering (declaration order breaks ties)
"""

import heapq
import json
import logging
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence

import yaml

from provisio.errors import (
    CycleError,
    DuplicateStepError,
    ManifestError,
    UnknownDependencyError,
)
from provisio.schemas import Step

logger = logging.getLogger(__name__)

# Bundled manifests shipped with the package
MANIFESTS_DIR = Path(__file__).parent / "manifests"

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def list_bundled_manifests() -> list[str]:
    """List the names of manifests bundled with provisio."""
    if not MANIFESTS_DIR.exists():
        return []
    return sorted(
        f.stem for f in MANIFESTS_DIR.iterdir() if f.suffix.lower() in MANIFEST_SUFFIXES
    )


def find_manifest(name_or_path: str | Path) -> Path:
    """
    Resolve a manifest argument to a file path.

    Accepts an existing file path or the name of a bundled manifest
    (filename without extension).

    Raises:
        ManifestError: If nothing matches
    """
    path = Path(name_or_path)
    if path.is_file():
        return path
    for ext in MANIFEST_SUFFIXES:
        candidate = MANIFESTS_DIR / f"{name_or_path}{ext}"
        if candidate.is_file():
            return candidate
    raise ManifestError(f"Manifest not found: {name_or_path}")


def _load_file(path: Path) -> dict[str, Any]:
    """
    Load a manifest file (YAML or JSON).

    Raises:
        ManifestError: If file format is unsupported or parsing fails
    """
    suffix = path.suffix.lower()
    try:
        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ManifestError(f"Unsupported manifest format: {suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ManifestError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ManifestError(f"Failed to read {path}: {e}") from e

    if not isinstance(data, dict):
        raise ManifestError(f"Manifest {path} must be a mapping, got {type(data).__name__}")
    return data


class StepRegistry:
    """
    Ordered, validated set of steps for one manifest.

    Steps are read-only once loaded. The constructor validates the
    dependency graph, so a registry that exists is always runnable.

    Usage:
        registry = StepRegistry.load("manifests/dev-vm.yaml")
        for step in registry.topological_order():
            ...
    """

    def __init__(
        self,
        steps: Sequence[Step] = (),
        manifest_id: str = "",
        version: str = "",
        variables: Optional[Mapping[str, Any]] = None,
        description: str = "",
        source: Optional[Path] = None,
    ):
        self._steps = tuple(steps)
        self.manifest_id = manifest_id
        self.version = version
        self.variables = dict(variables or {})
        self.description = description
        self.source = source
        self._by_name: dict[str, Step] = {}
        self._index: dict[str, int] = {}

        duplicates = []
        for i, step in enumerate(self._steps):
            if step.name in self._by_name:
                duplicates.append(step.name)
            self._by_name[step.name] = step
            self._index.setdefault(step.name, i)
        if duplicates:
            raise DuplicateStepError(duplicates)

        for step in self._steps:
            for dep in step.depends_on:
                if dep not in self._by_name:
                    raise UnknownDependencyError(step.name, dep)

        self._check_cycles()
        self._order = self._compute_order()

    @classmethod
    def load(cls, manifest: Mapping[str, Any] | str | Path) -> "StepRegistry":
        """
        Load a manifest into a registry.

        Args:
            manifest: A manifest mapping, a path to a YAML/JSON file, or the
                      name of a bundled manifest

        Returns:
            The validated StepRegistry

        Raises:
            ManifestError: If the manifest is missing or malformed
            UnknownDependencyError: If a step depends on an unknown name
            CycleError: If the dependency graph contains a cycle
        """
        source = None
        if isinstance(manifest, Mapping):
            data = dict(manifest)
        else:
            source = find_manifest(manifest)
            data = _load_file(source)

        steps_data = data.get("steps")
        if not isinstance(steps_data, list):
            raise ManifestError("Manifest must contain a 'steps' list")

        defaults = data.get("defaults") or {}
        if not isinstance(defaults, dict):
            raise ManifestError("Manifest 'defaults' must be a mapping")
        variables = data.get("vars") or {}
        if not isinstance(variables, dict):
            raise ManifestError("Manifest 'vars' must be a mapping")

        steps = [Step.from_dict(s, defaults=defaults) for s in steps_data]
        registry = cls(
            steps,
            manifest_id=str(data.get("manifest_id", source.stem if source else "")),
            version=str(data.get("version", "")),
            variables=variables,
            description=data.get("description", ""),
            source=source,
        )
        logger.debug(
            f"Loaded manifest '{registry.manifest_id}' with {len(registry)} steps",
            extra={"event": "manifest_loaded"},
        )
        return registry

    @property
    def steps(self) -> tuple[Step, ...]:
        """Steps in declaration order."""
        return self._steps

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._steps)

    def get(self, name: str) -> Step:
        """
        Get a step by name.

        Raises:
            KeyError: If no step has this name
        """
        return self._by_name[name]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def topological_order(self) -> tuple[Step, ...]:
        """Steps ordered so every step follows its dependencies."""
        return self._order

    def dependents_of(self, name: str) -> set[str]:
        """Names of all steps that depend on name, directly or transitively."""
        direct: dict[str, list[str]] = {s.name: [] for s in self._steps}
        for step in self._steps:
            for dep in step.depends_on:
                direct[dep].append(step.name)

        found: set[str] = set()
        stack = list(direct.get(name, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(direct[current])
        return found

    def _check_cycles(self) -> None:
        """Depth-first search in declaration order; raise on the first back edge."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {s.name: WHITE for s in self._steps}
        path: list[str] = []

        def visit(name: str) -> None:
            color[name] = GREY
            path.append(name)
            for dep in self._by_name[name].depends_on:
                if color[dep] == GREY:
                    start = path.index(dep)
                    raise CycleError(path[start:] + [dep])
                if color[dep] == WHITE:
                    visit(dep)
            path.pop()
            color[name] = BLACK

        for step in self._steps:
            if color[step.name] == WHITE:
                visit(step.name)

    def _compute_order(self) -> tuple[Step, ...]:
        """Kahn's algorithm; among ready steps the earliest declared goes first."""
        remaining = {s.name: len(s.depends_on) for s in self._steps}
        dependents: dict[str, list[str]] = {s.name: [] for s in self._steps}
        for step in self._steps:
            for dep in step.depends_on:
                dependents[dep].append(step.name)

        ready = [self._index[name] for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[Step] = []
        while ready:
            step = self._steps[heapq.heappop(ready)]
            order.append(step)
            for child in dependents[step.name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, self._index[child])

        if len(order) != len(self._steps):
            # _check_cycles runs first, so this only guards against misuse
            unresolved = sorted(n for n, c in remaining.items() if c > 0)
            raise CycleError(unresolved)
        return tuple(order)

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to manifest form."""
        return {
            "manifest_id": self.manifest_id,
            "version": self.version,
            **({"description": self.description} if self.description else {}),
            "vars": dict(self.variables),
            "steps": [s.to_dict() for s in self._steps],
        }

    def __repr__(self) -> str:
        return f"StepRegistry(manifest_id={self.manifest_id}, steps={len(self._steps)})"
