"""Error taxonomy for hubris_imagegen.

Every error carries a stable ``code`` for structured handling and a
``category`` that separates configuration problems (the caller must fix
something before retrying) from execution problems (the toolchain failed).
Nothing in this package retries automatically.
"""

from __future__ import annotations

from collections.abc import Sequence

CONFIGURATION = "configuration"
EXECUTION = "execution"


class HermeticBuildError(Exception):
    """Base class for all pipeline errors."""

    category: str = CONFIGURATION

    def __init__(self, message: str, code: str = "hermetic_build_error") -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_configuration_error(self) -> bool:
        """Whether the error needs caller action rather than a rebuild."""
        return self.category == CONFIGURATION


class SnapshotError(HermeticBuildError):
    """Raised when the source root is missing, unreadable, or changed."""

    def __init__(self, message: str, code: str = "snapshot_error") -> None:
        super().__init__(message, code)


class UnresolvedDependencyError(HermeticBuildError):
    """Raised when a dependency cannot be located offline or fetched."""

    def __init__(
        self,
        dependency: str,
        reason: str,
        code: str = "unresolved_dependency",
    ) -> None:
        super().__init__(f"Cannot resolve dependency {dependency}: {reason}", code)
        self.dependency = dependency
        self.reason = reason


class UnsupportedShimInvocation(HermeticBuildError):
    """Raised when a shimmed tool receives an unknown invocation."""

    def __init__(
        self,
        tool: str,
        args: Sequence[str],
        code: str = "unsupported_shim_invocation",
    ) -> None:
        rendered = " ".join(args) if args else "(no arguments)"
        super().__init__(f"{tool} shim: unsupported command: {rendered}", code)
        self.tool = tool
        self.args = tuple(args)


class PlanningError(HermeticBuildError):
    """Raised when a manifest reference cannot be turned into a derivation."""

    def __init__(
        self,
        message: str,
        manifest_path: str | None = None,
        code: str = "planning_error",
    ) -> None:
        if manifest_path:
            message = f"{manifest_path}: {message}"
        super().__init__(message, code)
        self.manifest_path = manifest_path


class ExecutionError(HermeticBuildError):
    """Raised when a build step fails.

    The toolchain output is kept verbatim in ``output`` and appended to the
    message so that it reaches the user unmodified.
    """

    category = EXECUTION

    def __init__(
        self,
        derivation: str,
        command: str,
        exit_code: int | None,
        output: str = "",
        code: str = "execution_error",
    ) -> None:
        if exit_code is None:
            header = f"{derivation}: failed to execute `{command}`"
        else:
            header = f"{derivation}: `{command}` failed with exit code {exit_code}"
        message = f"{header}\n{output}" if output else header
        super().__init__(message, code)
        self.derivation = derivation
        self.command = command
        self.exit_code = exit_code
        self.output = output


class StoreLockTimeout(ExecutionError):
    """Raised when a store key stays locked by another writer too long."""

    def __init__(self, key: str, timeout: float, code: str = "lock_timeout") -> None:
        super().__init__(
            key[:32],
            "acquire store lock",
            None,
            f"still locked after {timeout}s",
            code=code,
        )
        self.key = key
        self.timeout = timeout


__all__ = [
    "CONFIGURATION",
    "EXECUTION",
    "ExecutionError",
    "HermeticBuildError",
    "PlanningError",
    "SnapshotError",
    "StoreLockTimeout",
    "UnresolvedDependencyError",
    "UnsupportedShimInvocation",
]
