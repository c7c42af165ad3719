"""Derivation descriptions.

A derivation is a pure description of a build step: typed inputs mounted
into a work directory, an ordered list of commands, environment variables,
generated files and the outputs to collect. Its input hash is the cache
key under which the outputs are stored.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from functools import cached_property
from typing import Any

from hubris_imagegen.builds.cache_key import compute_cache_key, compute_text_hash
from hubris_imagegen.types import InputKind, Stage

# Outputs of this kind copy a whole directory instead of matching files
TREE_OUTPUT = "tree"


@dataclass(frozen=True)
class DerivationInput:
    """One typed input of a derivation.

    Attributes:
        kind: Input kind.
        mount: Mount point relative to the work directory ('' = not mounted).
        identity: Content identity (a digest, or a child derivation's key).
        ref: The object providing the content; not part of the identity.
    """

    kind: InputKind
    mount: str
    identity: str
    ref: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_derivation(cls, derivation: Derivation, mount: str) -> DerivationInput:
        return cls(
            kind=InputKind.DERIVATION,
            mount=mount,
            identity=derivation.input_hash,
            ref=derivation,
        )

    def describe(self) -> dict[str, str]:
        return {"kind": self.kind.value, "mount": self.mount, "identity": self.identity}


@dataclass(frozen=True)
class DeclaredOutput:
    """An output pattern collected after the build steps succeed.

    Attributes:
        kind: Artifact kind, or 'tree' to copy ``root`` as a whole.
        pattern: Filename glob.
        root: Directory searched, relative to the work directory.
        path_contains: Path component every match must have below root.
    """

    kind: str
    pattern: str = "*"
    root: str = "target"
    path_contains: str | None = None

    @property
    def is_tree(self) -> bool:
        return self.kind == TREE_OUTPUT


@dataclass(frozen=True)
class Derivation:
    """A pure build description.

    Attributes:
        name: Derivation name.
        version: Version string.
        stage: Cache layer.
        inputs: Typed inputs.
        build_steps: Commands run in order inside the work directory.
        env: Extra environment variables.
        files: Generated files (path relative to workdir, text), written
            after inputs are mounted.
        declared_outputs: Outputs to collect.
        workdir: Subdirectory in which the build steps run.
    """

    name: str
    version: str
    stage: Stage
    inputs: tuple[DerivationInput, ...]
    build_steps: tuple[tuple[str, ...], ...]
    env: tuple[tuple[str, str], ...] = ()
    files: tuple[tuple[str, str], ...] = ()
    declared_outputs: tuple[DeclaredOutput, ...] = ()
    workdir: str = "src"

    @property
    def label(self) -> str:
        """Human-readable name used in logs and errors."""
        return f"{self.name}-{self.version} ({self.stage.value})"

    @property
    def children(self) -> list[Derivation]:
        """Derivations this one consumes, in input order."""
        return [i.ref for i in self.inputs if i.kind is InputKind.DERIVATION]

    def input_of(self, kind: InputKind) -> DerivationInput | None:
        """First input of a kind, if any."""
        return next((i for i in self.inputs if i.kind is kind), None)

    def describe(self) -> dict[str, Any]:
        """Canonical description; everything that affects the outputs."""
        return {
            "name": self.name,
            "version": self.version,
            "stage": self.stage.value,
            "inputs": [i.describe() for i in self.inputs],
            "build_steps": [list(step) for step in self.build_steps],
            "env": dict(sorted(self.env)),
            "files": {
                path: compute_text_hash(text) for path, text in sorted(self.files)
            },
            "declared_outputs": [asdict(o) for o in self.declared_outputs],
            "workdir": self.workdir,
        }

    @cached_property
    def input_hash(self) -> str:
        """Cache key over the description, children folded in by their keys."""
        return compute_cache_key(self.describe())


__all__ = [
    "TREE_OUTPUT",
    "DeclaredOutput",
    "Derivation",
    "DerivationInput",
]
