"""Derivation runner.

This module handles:
- Materialising derivation inputs into a fresh work directory
- Building a clean, offline environment with the shims first on PATH
- Executing build steps with subprocess, capturing output to a log file
- Enforcing build timeouts
- Collecting declared outputs into an output directory

The runner never touches the store; the executor decides what gets
committed.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol, assert_never

from hubris_imagegen.errors import ExecutionError
from hubris_imagegen.shims import write_shims
from hubris_imagegen.source.snapshot import copy_tree
from hubris_imagegen.types import InputKind

if TYPE_CHECKING:
    from hubris_imagegen.builds.derivation import DeclaredOutput, Derivation
    from hubris_imagegen.config import Settings

logger = logging.getLogger(__name__)

# 1980-01-01T00:00:00Z; earliest timestamp zip archives can represent
SOURCE_DATE_EPOCH = "315532800"


class Runner(Protocol):
    """Executes one derivation into an output directory."""

    def run(
        self,
        derivation: Derivation,
        inputs: Mapping[str, Path],
        out_dir: Path,
        log_path: Path,
    ) -> None:
        """Run the derivation.

        Args:
            derivation: Derivation to run.
            inputs: Committed output directory of every child derivation,
                keyed by the child's input hash.
            out_dir: Empty directory receiving the declared outputs.
            log_path: File receiving build step output.

        Raises:
            ExecutionError: If a build step fails.
        """
        ...


def compose_environment(
    work_root: Path,
    derivation: Derivation,
    path_prefix: list[Path],
    ambient_path: str | None = None,
) -> dict[str, str]:
    """Build the environment for the build steps.

    Only PATH is taken from the ambient environment, after the shims and
    the toolchain.

    Args:
        work_root: Work directory root.
        derivation: Derivation being run.
        path_prefix: Directories put first on PATH, in order.
        ambient_path: Ambient PATH (defaults to os.environ's).

    Returns:
        Environment mapping.
    """
    if ambient_path is None:
        ambient_path = os.environ.get("PATH", os.defpath)

    home = work_root / "home"
    cargo_home = work_root / "cargo-home"
    tmp = work_root / "tmp"
    for directory in (home, cargo_home, tmp):
        directory.mkdir(parents=True, exist_ok=True)

    env = {
        "PATH": os.pathsep.join([*(str(p) for p in path_prefix), ambient_path]),
        "HOME": str(home),
        "CARGO_HOME": str(cargo_home),
        "TMPDIR": str(tmp),
        "CARGO_NET_OFFLINE": "true",
        "SOURCE_DATE_EPOCH": SOURCE_DATE_EPOCH,
        "LC_ALL": "C",
        "TZ": "UTC",
    }
    env.update(dict(derivation.env))
    return env


def _within(work_root: Path, relative: str) -> Path:
    path = PurePosixPath(relative)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"Path escapes the work directory: {relative}")
    return work_root / path


def _collect_tree(source: Path, out_dir: Path, output: DeclaredOutput) -> list[str]:
    if not source.is_dir():
        return []
    copy_tree(source, out_dir / output.root)
    return [output.root]


def _collect_files(source: Path, out_dir: Path, output: DeclaredOutput) -> list[str]:
    collected: list[str] = []
    if not source.is_dir():
        return collected
    for path in sorted(source.rglob(output.pattern)):
        if not path.is_file():
            continue
        relative_dirs = path.relative_to(source).parts[:-1]
        if output.path_contains and output.path_contains not in relative_dirs:
            continue
        dest = out_dir / path.name
        if dest.exists():
            logger.warning("Output %s collected twice, keeping %s", path.name, path)
        else:
            collected.append(path.name)
        shutil.copyfile(path, dest)
        dest.chmod(0o644)
    return collected


def collect_outputs(
    build_dir: Path, out_dir: Path, outputs: tuple[DeclaredOutput, ...]
) -> dict[str, list[str]]:
    """Copy declared outputs from a finished build into out_dir.

    Tree outputs copy a directory under its own name. File outputs are
    copied flat; a pattern matching nothing is not an error.

    Args:
        build_dir: Directory the build steps ran in.
        out_dir: Output directory.
        outputs: Declared outputs.

    Returns:
        Mapping of output kind to collected names.
    """
    collected: dict[str, list[str]] = {}
    for output in outputs:
        source = _within(build_dir, output.root)
        if output.is_tree:
            names = _collect_tree(source, out_dir, output)
        else:
            names = _collect_files(source, out_dir, output)
        if not names:
            logger.debug("No outputs matched %s under %s", output.pattern, output.root)
        collected.setdefault(output.kind, []).extend(names)
    return collected


class SubprocessRunner:
    """Runs derivations as subprocesses in throwaway work directories.

    Args:
        settings: Application settings (timeouts, sandbox wrapper, tmp dir).
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _mount_inputs(
        self,
        derivation: Derivation,
        inputs: Mapping[str, Path],
        work_root: Path,
    ) -> list[Path]:
        """Materialise inputs; return PATH prefix directories."""
        shim_dirs: list[Path] = []
        tool_dirs: list[Path] = []

        for item in derivation.inputs:
            dest = _within(work_root, item.mount) if item.mount else work_root
            match item.kind:
                case InputKind.SOURCE | InputKind.SKELETON:
                    item.ref.materialize(dest)
                case InputKind.VENDOR:
                    item.ref.link_into(dest)
                case InputKind.SHIMS:
                    write_shims(item.ref, dest)
                    shim_dirs.append(dest)
                case InputKind.TOOLCHAIN:
                    tool_dirs.append(Path(item.ref) / "bin")
                case InputKind.DERIVATION:
                    copy_tree(inputs[item.identity], dest)
                case _:
                    assert_never(item.kind)

        return shim_dirs + tool_dirs

    def _write_files(self, derivation: Derivation, build_dir: Path) -> None:
        for relative, text in derivation.files:
            path = _within(build_dir, relative)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

    def _run_step(
        self,
        derivation: Derivation,
        step: tuple[str, ...],
        build_dir: Path,
        env: dict[str, str],
        log_path: Path,
    ) -> None:
        cmd = [*self.settings.sandbox_command, *step]
        cmd_str = shlex.join(cmd)
        timeout = self.settings.build_timeout
        logger.info("Executing %s: %s", derivation.label, cmd_str)

        started_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {build_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()
            output_start = log_path.stat().st_size

            try:
                result = subprocess.run(
                    cmd,
                    cwd=build_dir,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    env=env,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
                log_file.flush()
                raise ExecutionError(
                    derivation.label,
                    cmd_str,
                    None,
                    _read_from(log_path, output_start),
                    code="build_timeout",
                ) from e
            except OSError as e:
                raise ExecutionError(
                    derivation.label, cmd_str, None, str(e), code="execution_error"
                ) from e

            finished_at = datetime.now(timezone.utc)
            duration = (finished_at - started_at).total_seconds()
            log_file.flush()
            output = _read_from(log_path, output_start)
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {result.returncode}\n")
            log_file.write(f"# Duration: {duration:.1f}s\n\n")

        if result.returncode != 0:
            logger.error(
                "%s failed with exit code %d. See log: %s",
                derivation.label,
                result.returncode,
                log_path,
            )
            raise ExecutionError(derivation.label, cmd_str, result.returncode, output)

    def run(
        self,
        derivation: Derivation,
        inputs: Mapping[str, Path],
        out_dir: Path,
        log_path: Path,
    ) -> None:
        """Run a derivation; see Runner.run."""
        tmp_parent = self.settings.tmp_dir
        if tmp_parent is not None:
            tmp_parent.mkdir(parents=True, exist_ok=True)
        work_root = Path(tempfile.mkdtemp(prefix="hubris-build-", dir=tmp_parent))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("")

        try:
            path_prefix = self._mount_inputs(derivation, inputs, work_root)
            build_dir = _within(work_root, derivation.workdir)
            build_dir.mkdir(parents=True, exist_ok=True)
            self._write_files(derivation, build_dir)
            env = compose_environment(work_root, derivation, path_prefix)

            for step in derivation.build_steps:
                self._run_step(derivation, step, build_dir, env, log_path)

            collected = collect_outputs(build_dir, out_dir, derivation.declared_outputs)
            logger.info(
                "%s produced %s",
                derivation.label,
                ", ".join(f"{k}={len(v)}" for k, v in collected.items()) or "nothing",
            )
        finally:
            if self.settings.keep_build_dir:
                logger.info("Keeping work directory: %s", work_root)
            else:
                shutil.rmtree(work_root, ignore_errors=True)


def _read_from(log_path: Path, offset: int) -> str:
    with log_path.open("rb") as f:
        f.seek(offset)
        return f.read().decode("utf-8", errors="replace")


__all__ = [
    "SOURCE_DATE_EPOCH",
    "Runner",
    "SubprocessRunner",
    "collect_outputs",
    "compose_environment",
]
