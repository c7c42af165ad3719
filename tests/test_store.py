"""Tests for store.py module.

Tests write-once commits, lookups, tree hashing and key locks.
"""

import threading

import pytest

from hubris_imagegen.errors import StoreLockTimeout
from hubris_imagegen.store import compute_tree_hash


def _output(store, content="x"):
    tmp = store.temp_dir(prefix="out-")
    (tmp / "final.elf").write_text(content)
    return tmp


class TestComputeTreeHash:
    """Tests for compute_tree_hash function."""

    def test_same_content_same_hash(self, tmp_path):
        """Identical trees hash identically."""
        for name in ("a", "b"):
            (tmp_path / name / "sub").mkdir(parents=True)
            (tmp_path / name / "sub" / "f").write_text("data")

        assert compute_tree_hash(tmp_path / "a") == compute_tree_hash(tmp_path / "b")

    def test_executable_bit_matters(self, tmp_path):
        """The executable bit is part of the hash."""
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "f").write_text("data")
        before = compute_tree_hash(tmp_path / "a")

        (tmp_path / "a" / "f").chmod(0o755)

        assert compute_tree_hash(tmp_path / "a") != before

    def test_missing_directory(self, tmp_path):
        """A missing directory hashes like an empty one."""
        (tmp_path / "empty").mkdir()

        assert compute_tree_hash(tmp_path / "missing") == compute_tree_hash(
            tmp_path / "empty"
        )


class TestStoreOutputs:
    """Tests for derivation output commits."""

    def test_layout_created(self, store):
        """The store creates its directories on construction."""
        for directory in (
            store.derivations_dir,
            store.vendor_dir,
            store.locks_dir,
            store.logs_dir,
            store.tmp_root,
        ):
            assert directory.is_dir()

    def test_lookup_missing(self, store):
        """An unknown key has no entry."""
        assert store.lookup("sha256:" + "0" * 64) is None

    def test_commit_and_lookup(self, store):
        """A committed output can be looked up by key."""
        key = "sha256:" + "a" * 64

        stored = store.commit(key, "demo", "full", _output(store))

        found = store.lookup(key)
        assert found == stored
        assert found.outputs == ("final.elf",)
        assert (found.path / "final.elf").read_text() == "x"
        assert found.path.parent == store.derivations_dir

    def test_first_commit_wins(self, store):
        """A second commit for a key keeps the first content."""
        key = "sha256:" + "b" * 64
        first = store.commit(key, "demo", "full", _output(store, "first"))

        second_tmp = _output(store, "second")
        second = store.commit(key, "demo", "full", second_tmp)

        assert second.path == first.path
        assert (second.path / "final.elf").read_text() == "first"
        assert not second_tmp.exists()

    def test_entry_with_missing_path(self, store):
        """An entry whose directory vanished is treated as absent."""
        key = "sha256:" + "c" * 64
        stored = store.commit(key, "demo", "full", _output(store))
        (stored.path / "final.elf").unlink()
        stored.path.rmdir()

        assert store.lookup(key) is None

    def test_list_entries_by_stage(self, store):
        """Entries can be listed per cache layer."""
        store.commit("sha256:" + "1" * 64, "cargo-deps", "deps", _output(store))
        store.commit("sha256:" + "2" * 64, "demo", "full", _output(store))

        assert [e.name for e in store.list_entries("deps")] == ["cargo-deps"]
        assert len(store.list_entries()) == 2


class TestStoreDependencies:
    """Tests for vendored dependency commits."""

    def test_commit_dependency(self, store):
        """Dependencies are committed with a content digest."""
        tmp = store.temp_dir()
        (tmp / "Cargo.toml").write_text("[package]\n")

        stored = store.commit_dependency("a", "1.0.0", "registry+x", "ck", tmp)

        found = store.lookup_dependency("a", "1.0.0", "registry+x")
        assert found == stored
        assert found.digest == compute_tree_hash(found.path)
        assert found.checksum == "ck"

    def test_dependency_keyed_by_source(self, store):
        """The same name and version from another source is a different entry."""
        tmp = store.temp_dir()
        (tmp / "Cargo.toml").write_text("[package]\n")
        store.commit_dependency("a", "1.0.0", "registry+x", "ck", tmp)

        assert store.lookup_dependency("a", "1.0.0", "git+y#abc") is None


class TestStoreLock:
    """Tests for per-key locks."""

    def test_lock_timeout(self, store):
        """A held lock times out other holders with an execution error."""
        acquired = threading.Event()
        release = threading.Event()

        def hold():
            with store.lock("sha256:key"):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(StoreLockTimeout) as exc_info:
                with store.lock("sha256:key", timeout=0.2):
                    pass
        finally:
            release.set()
            thread.join()

        assert exc_info.value.code == "lock_timeout"
        assert not exc_info.value.is_configuration_error

    def test_lock_reacquired_after_release(self, store):
        """A released lock can be acquired again."""
        with store.lock("sha256:key", timeout=1):
            pass
        with store.lock("sha256:key", timeout=1):
            pass
