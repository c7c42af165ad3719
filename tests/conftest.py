"""Shared fixtures for the test suite.

Provides a small Hubris-style workspace on disk, settings pointing at
tmp_path, a store backed by in-memory SQLite, a populated vendor store and
a fake runner that writes plausible outputs instead of invoking cargo.
"""

import hashlib
import threading
from pathlib import Path

import pytest

from hubris_imagegen.config import Settings
from hubris_imagegen.db import create_all_tables, get_engine, get_session_factory
from hubris_imagegen.errors import ExecutionError
from hubris_imagegen.source.snapshot import filter_source
from hubris_imagegen.store import Store
from hubris_imagegen.types import Stage
from hubris_imagegen.vendor.service import vendor

REGISTRY = "registry+https://github.com/rust-lang/crates.io-index"


def fake_checksum(name: str, version: str) -> str:
    """Deterministic stand-in for a registry checksum."""
    return hashlib.sha256(f"{name}-{version}".encode()).hexdigest()


# (name, version, dependencies) of the registry crates in the lockfile
REGISTRY_CRATES = [
    ("anyhow", "1.0.86", []),
    ("bitflags", "2.4.0", []),
    ("hash32", "0.3.1", []),
    ("heapless", "0.8.0", ["hash32"]),
]

WORKSPACE_MANIFEST = """\
[workspace]
members = ["xtask", "sys/kern", "task/ping", "task/pong"]
resolver = "2"
"""

CARGO_CONFIG = """\
[alias]
xtask = "run --package xtask --"
"""

TOOLCHAIN_FILE = """\
[toolchain]
channel = "nightly-2024-01-01"
targets = ["thumbv7em-none-eabihf"]
components = ["rustfmt", "llvm-tools"]
"""

DEMO_MANIFEST = """\
name = "demo"
board = "demo-board"
target = "thumbv7em-none-eabihf"

[kernel]
name = "kern"

[tasks.ping]
name = "task-ping"

[tasks.pong]
name = "task-pong"
"""

DEMO_DEV_MANIFEST = """\
inherit = "app.toml"
board = "demo-board-rev-b"
"""

LITE_MANIFEST = """\
name = "lite"
board = "lite-board"

[kernel]
name = "kern"

[tasks.pong]
name = "task-pong"
"""


def _lock_entry(
    name: str,
    version: str,
    dependencies: list[str],
    source: str | None = None,
) -> str:
    lines = ["[[package]]", f'name = "{name}"', f'version = "{version}"']
    if source is not None:
        lines.append(f'source = "{source}"')
        lines.append(f'checksum = "{fake_checksum(name, version)}"')
    if dependencies:
        deps = ", ".join(f'"{d}"' for d in dependencies)
        lines.append(f"dependencies = [{deps}]")
    return "\n".join(lines) + "\n"


def lockfile_text() -> str:
    """Cargo.lock of the sample workspace."""
    entries = [
        _lock_entry("kern", "0.1.0", ["bitflags"]),
        _lock_entry("task-ping", "0.1.0", ["heapless"]),
        _lock_entry("task-pong", "0.1.0", []),
        _lock_entry("xtask", "0.1.0", ["anyhow"]),
    ]
    entries.extend(
        _lock_entry(name, version, deps, REGISTRY)
        for name, version, deps in REGISTRY_CRATES
    )
    return "version = 3\n\n" + "\n".join(entries)


def _crate(root: Path, path: str, name: str, sources: dict[str, str]) -> None:
    crate_dir = root / path
    (crate_dir / "src").mkdir(parents=True, exist_ok=True)
    (crate_dir / "Cargo.toml").write_text(
        f'[package]\nname = "{name}"\nversion = "0.1.0"\nedition = "2021"\n'
    )
    for relative, text in sources.items():
        target = crate_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)


def write_project(root: Path) -> Path:
    """Write the sample workspace under root and return root."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(WORKSPACE_MANIFEST)
    (root / "Cargo.lock").write_text(lockfile_text())
    (root / "rust-toolchain.toml").write_text(TOOLCHAIN_FILE)
    (root / ".cargo").mkdir()
    (root / ".cargo" / "config.toml").write_text(CARGO_CONFIG)

    _crate(root, "xtask", "xtask", {"src/main.rs": 'fn main() { println!("dist"); }\n'})
    _crate(root, "sys/kern", "kern", {"src/lib.rs": "pub fn start() {}\n"})
    _crate(
        root,
        "task/ping",
        "task-ping",
        {"src/main.rs": "fn main() { ping(); }\n", "build.rs": "fn main() {}\n"},
    )
    _crate(root, "task/pong", "task-pong", {"src/main.rs": "fn main() {}\n"})

    (root / "app" / "demo").mkdir(parents=True)
    (root / "app" / "demo" / "app.toml").write_text(DEMO_MANIFEST)
    (root / "app" / "demo" / "app-dev.toml").write_text(DEMO_DEV_MANIFEST)
    (root / "app" / "lite").mkdir(parents=True)
    (root / "app" / "lite" / "app.toml").write_text(LITE_MANIFEST)

    # Build output and VCS metadata that filtering must drop
    (root / "target" / "debug").mkdir(parents=True)
    (root / "target" / "debug" / "stale.o").write_bytes(b"\0stale")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root


class FakeRunner:
    """Runner that records derivations and writes fake outputs.

    Stage-1 derivations produce a ``target/`` tree; image derivations
    produce an archive, final.elf and final.bin. Setting ``fail_on`` to a
    derivation name makes that derivation fail with an ExecutionError.
    """

    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.runs: list = []
        self._lock = threading.Lock()

    @property
    def names(self) -> list[str]:
        return [d.name for d in self.runs]

    def count(self, stage: Stage) -> int:
        return sum(1 for d in self.runs if d.stage is stage)

    def run(self, derivation, inputs, out_dir, log_path) -> None:
        with self._lock:
            self.runs.append(derivation)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"building {derivation.label}\n")

        if derivation.name == self.fail_on:
            (out_dir / "partial.elf").write_bytes(b"partial")
            raise ExecutionError(
                derivation.label,
                "cargo xtask dist",
                101,
                "error[E0425]: cannot find value `x` in this scope\n",
            )

        if derivation.stage is Stage.DEPS:
            release = out_dir / "target" / "release"
            release.mkdir(parents=True)
            (release / "libdeps.rlib").write_text(derivation.version)
            return

        payload = derivation.input_hash.encode()
        (out_dir / f"build-{derivation.name}.zip").write_bytes(b"PK\x03\x04" + payload)
        (out_dir / "final.elf").write_bytes(b"\x7fELF" + payload)
        (out_dir / "final.bin").write_bytes(b"\x00\x01" + payload)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in tmp_path with an in-memory database."""
    toolchain = tmp_path / "toolchain"
    (toolchain / "bin").mkdir(parents=True)
    return Settings(
        store_dir=tmp_path / "store",
        artifacts_dir=tmp_path / "artifacts",
        db_url="sqlite://",
        toolchain_dir=toolchain,
        tmp_dir=tmp_path / "tmp",
        log_level="WARNING",
    )


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory database."""
    engine = get_engine("sqlite://")
    create_all_tables(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(settings, session_factory):
    """Empty store under tmp_path."""
    return Store(settings.store_dir, session_factory)


@pytest.fixture
def project(tmp_path):
    """Sample workspace on disk."""
    return write_project(tmp_path / "project")


@pytest.fixture
def snapshot(project):
    """Filtered snapshot of the sample workspace."""
    return filter_source(project)


def populate_vendor(store: Store) -> None:
    """Commit every registry crate of the sample lockfile into the store."""
    for name, version, _ in REGISTRY_CRATES:
        tmp = store.temp_dir(prefix="vendor-")
        (tmp / "src").mkdir()
        (tmp / "Cargo.toml").write_text(
            f'[package]\nname = "{name}"\nversion = "{version}"\n'
        )
        (tmp / "src" / "lib.rs").write_text(f"// {name} {version}\n")
        store.commit_dependency(
            name, version, REGISTRY, fake_checksum(name, version), tmp
        )


@pytest.fixture
def vendor_store(store, snapshot, settings):
    """Vendor store covering every dependency of the sample workspace."""
    populate_vendor(store)
    offline = settings.model_copy(update={"offline": True})
    return vendor(snapshot, store, offline)


@pytest.fixture
def fake_runner():
    """Fresh FakeRunner."""
    return FakeRunner()
