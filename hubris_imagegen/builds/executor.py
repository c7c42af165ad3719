"""Build graph executor.

This module provides execute(), which turns a derivation into a committed
store entry:
- A committed entry for the input hash is reused without running anything,
  not even its child derivations
- On a miss, child derivations are executed first
- Concurrent requests for one key in this process share a single future;
  other processes are serialised by a per-key file lock
- Outputs are produced in a scratch directory and committed only after
  the whole derivation succeeded
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from hubris_imagegen.config import get_settings

if TYPE_CHECKING:
    from hubris_imagegen.builds.derivation import Derivation
    from hubris_imagegen.builds.runner import Runner
    from hubris_imagegen.config import Settings
    from hubris_imagegen.store import Store, StoredOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of executing a derivation.

    Attributes:
        key: Derivation input hash.
        name: Derivation name.
        out_path: Committed store directory.
        outputs: Top-level names in out_path.
        cache_hit: True if nothing was run for this derivation.
        shared: True if the result came from another in-flight request.
        log_path: Build log, when the derivation ran.
    """

    key: str
    name: str
    out_path: Path
    outputs: tuple[str, ...]
    cache_hit: bool
    shared: bool = False
    log_path: Path | None = None

    @classmethod
    def from_stored(
        cls,
        stored: StoredOutput,
        cache_hit: bool,
        log_path: Path | None = None,
    ) -> ExecutionResult:
        return cls(
            key=stored.key,
            name=stored.name,
            out_path=stored.path,
            outputs=stored.outputs,
            cache_hit=cache_hit,
            log_path=log_path,
        )


class BuildExecutor:
    """Executes derivations against a store with a runner.

    Args:
        store: Content-addressed store.
        runner: Runner used for derivations that are not cached.
        settings: Application settings (uses defaults if not provided).
    """

    def __init__(
        self,
        store: Store,
        runner: Runner,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.settings = settings if settings is not None else get_settings()
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future[ExecutionResult]] = {}

    def log_path(self, derivation: Derivation) -> Path:
        """Build log location for a derivation."""
        digest = derivation.input_hash.rsplit(":", 1)[-1][:32]
        return self.store.logs_dir / f"{digest}-{derivation.name}.log"

    def execute(self, derivation: Derivation) -> ExecutionResult:
        """Execute a derivation and its inputs, reusing cached outputs.

        Args:
            derivation: Derivation to execute.

        Returns:
            ExecutionResult for the derivation.

        Raises:
            ExecutionError: If a build step fails. Nothing is committed.
        """
        key = derivation.input_hash
        stored = self.store.lookup(key)
        if stored is not None:
            logger.info("Cache hit for %s (%s)", derivation.label, key[:23])
            return ExecutionResult.from_stored(stored, cache_hit=True)

        # Inputs are only needed on a miss
        inputs = {
            child.input_hash: self.execute(child).out_path
            for child in derivation.children
        }

        with self._lock:
            pending = self._in_flight.get(key)
            if pending is None:
                future: Future[ExecutionResult] = Future()
                self._in_flight[key] = future

        if pending is not None:
            logger.info("Waiting for in-flight build of %s", derivation.label)
            result = pending.result()
            return ExecutionResult(
                key=result.key,
                name=result.name,
                out_path=result.out_path,
                outputs=result.outputs,
                cache_hit=result.cache_hit,
                shared=True,
                log_path=result.log_path,
            )

        try:
            result = self._build(derivation, inputs)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def _build(
        self, derivation: Derivation, inputs: dict[str, Path]
    ) -> ExecutionResult:
        key = derivation.input_hash

        with self.store.lock(key, timeout=self.settings.lock_timeout):
            # Another process may have committed while we waited
            stored = self.store.lookup(key)
            if stored is not None:
                logger.info("Built elsewhere while waiting: %s", derivation.label)
                return ExecutionResult.from_stored(stored, cache_hit=True)

            scratch = self.store.temp_dir(prefix="out-")
            out_dir = scratch / "out"
            out_dir.mkdir()
            log_path = self.log_path(derivation)
            try:
                logger.info("Building %s (%s)", derivation.label, key[:23])
                self.runner.run(derivation, inputs, out_dir, log_path)
                stored = self.store.commit(
                    key, derivation.name, derivation.stage.value, out_dir
                )
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

        return ExecutionResult.from_stored(stored, cache_hit=False, log_path=log_path)


__all__ = ["BuildExecutor", "ExecutionResult"]
