"""Tests for builds/cache_key.py and builds/derivation.py modules.

Tests canonical serialisation, deterministic hashing and derivation keys.
"""

from pathlib import Path

from hubris_imagegen.builds.cache_key import (
    CACHE_KEY_SCHEMA_VERSION,
    canonical_json,
    compute_cache_key,
    compute_toolchain_identity,
)
from hubris_imagegen.builds.derivation import (
    TREE_OUTPUT,
    DeclaredOutput,
    Derivation,
    DerivationInput,
)
from hubris_imagegen.types import InputKind, Stage


def _derivation(**overrides) -> Derivation:
    fields = {
        "name": "demo",
        "version": "0.1.0",
        "stage": Stage.FULL,
        "inputs": (DerivationInput(InputKind.SOURCE, "src", "abc", ref=object()),),
        "build_steps": (("cargo", "xtask", "dist", "app/demo/app.toml"),),
        "env": (("HUBRIS_CABOOSE_VERS", "0.1.0"),),
        "files": ((".cargo/config.toml", "[source.crates-io]\n"),),
        "declared_outputs": (DeclaredOutput(kind="elf", pattern="final.elf"),),
    }
    fields.update(overrides)
    return Derivation(**fields)


class TestCanonicalJson:
    """Tests for canonical_json function."""

    def test_sorted_keys(self):
        """Key order does not matter."""
        assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1})

    def test_compact(self):
        """No whitespace between tokens."""
        assert canonical_json({"a": [1, 2]}) == '{"a":[1,2]}'


class TestComputeCacheKey:
    """Tests for compute_cache_key function."""

    def test_prefix_and_length(self):
        """Keys are sha256:-prefixed hex digests."""
        key = compute_cache_key({"a": 1})

        assert key.startswith("sha256:")
        assert len(key) == len("sha256:") + 64

    def test_deterministic(self):
        """Same inputs, same key."""
        assert compute_cache_key({"a": 1, "b": [1]}) == compute_cache_key(
            {"b": [1], "a": 1}
        )

    def test_schema_version_included(self):
        """The schema version participates in the key."""
        assert CACHE_KEY_SCHEMA_VERSION
        assert compute_cache_key({"a": 1}) != compute_cache_key(
            {"a": 1, "schema_version": "0"}
        )


class TestToolchainIdentity:
    """Tests for compute_toolchain_identity function."""

    def test_directory_and_spec(self):
        """Both the directory and the description identify a toolchain."""
        spec = {"channel": "nightly-2024-01-01"}
        base = compute_toolchain_identity(Path("/opt/rust"), spec)

        assert base == compute_toolchain_identity(Path("/opt/rust"), dict(spec))
        assert base != compute_toolchain_identity(Path("/opt/other"), spec)
        assert base != compute_toolchain_identity(
            Path("/opt/rust"), {"channel": "nightly-2024-02-01"}
        )


class TestDerivationKey:
    """Tests for Derivation.input_hash."""

    def test_equal_descriptions_equal_keys(self):
        """Structurally equal derivations share a key."""
        assert _derivation().input_hash == _derivation().input_hash

    def test_ref_not_part_of_identity(self):
        """Input references do not affect the key, identities do."""
        first = _derivation(
            inputs=(DerivationInput(InputKind.SOURCE, "src", "abc", ref="one"),)
        )
        second = _derivation(
            inputs=(DerivationInput(InputKind.SOURCE, "src", "abc", ref="two"),)
        )
        third = _derivation(
            inputs=(DerivationInput(InputKind.SOURCE, "src", "abd", ref="one"),)
        )

        assert first.input_hash == second.input_hash
        assert first.input_hash != third.input_hash

    def test_every_field_matters(self):
        """Each descriptive field changes the key."""
        base = _derivation().input_hash
        variants = [
            _derivation(name="other"),
            _derivation(version="0.2.0"),
            _derivation(stage=Stage.DEPS),
            _derivation(build_steps=(("cargo", "build"),)),
            _derivation(env=(("HUBRIS_CABOOSE_VERS", "0.2.0"),)),
            _derivation(files=((".cargo/config.toml", "# changed\n"),)),
            _derivation(declared_outputs=(DeclaredOutput(kind=TREE_OUTPUT),)),
            _derivation(workdir="."),
        ]

        assert all(v.input_hash != base for v in variants)

    def test_env_order_irrelevant(self):
        """Environment variables are compared as a mapping."""
        a = _derivation(env=(("A", "1"), ("B", "2")))
        b = _derivation(env=(("B", "2"), ("A", "1")))

        assert a.input_hash == b.input_hash

    def test_child_enters_by_key(self):
        """A parent's key changes with its child's key."""
        child = _derivation(name="cargo-deps", stage=Stage.DEPS)
        other_child = _derivation(name="cargo-deps", stage=Stage.DEPS, version="2")

        parent = _derivation(inputs=(DerivationInput.from_derivation(child, "src"),))
        other_parent = _derivation(
            inputs=(DerivationInput.from_derivation(other_child, "src"),)
        )

        assert parent.children == [child]
        assert parent.input_of(InputKind.DERIVATION).identity == child.input_hash
        assert parent.input_hash != other_parent.input_hash

    def test_label(self):
        """Labels name the derivation and its stage."""
        assert _derivation().label == "demo-0.1.0 (full)"
