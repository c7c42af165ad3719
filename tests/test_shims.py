"""Tests for the shims package.

Tests the invocation table in-process and the generated scripts through
a real shell.
"""

import os
import subprocess

import pytest

from hubris_imagegen.errors import UnsupportedShimInvocation
from hubris_imagegen.shims import (
    SHIMMED_TOOLS,
    ShimInvocation,
    build_shims,
    render_script,
    write_shims,
)


@pytest.fixture
def shims(settings):
    """Shim table bound to the test toolchain."""
    return build_shims(settings.toolchain_dir, settings)


def _run(bin_dir, tool, *args):
    return subprocess.run(
        [str(bin_dir / tool), *args],
        capture_output=True,
        text=True,
        check=False,
        env={"PATH": os.defpath},
    )


class TestShimTable:
    """Tests for classification and in-process responses."""

    def test_rustup_which(self, shims, settings):
        """rustup which <tool> answers a path under the pinned toolchain."""
        response = shims.respond("rustup", ["which", "rustc"])

        assert response.exit_code == 0
        assert response.stdout == f"{settings.toolchain_dir / 'bin' / 'rustc'}\n"

    def test_git_rev_parse_head(self, shims, settings):
        """git rev-parse HEAD answers the configured sentinel."""
        response = shims.respond("git", ["rev-parse", "HEAD"])

        assert response.stdout == f"{settings.vcs_sentinel}\n"

    def test_git_diff_index_reports_clean(self, shims):
        """git diff-index reports a clean tree."""
        response = shims.respond("git", ["diff-index", "--quiet", "HEAD", "--"])

        assert response.exit_code == 0
        assert response.stdout == ""

    @pytest.mark.parametrize(
        ("tool", "args"),
        [
            ("rustup", ["which", "gdb"]),
            ("rustup", ["toolchain", "list"]),
            ("rustup", ["which"]),
            ("git", ["status"]),
            ("git", ["rev-parse", "--short", "HEAD"]),
            ("git", []),
            ("cargo", ["build"]),
        ],
    )
    def test_unsupported_invocations(self, shims, tool, args):
        """Anything outside the table raises, never a default answer."""
        with pytest.raises(UnsupportedShimInvocation) as exc_info:
            shims.classify(tool, args)

        assert exc_info.value.tool == tool
        assert str(exc_info.value).startswith(f"{tool} shim: unsupported command:")

    def test_classify(self, shims):
        """Supported invocations map to their table entry."""
        assert shims.classify("rustup", ["which", "cargo"]) is (
            ShimInvocation.RUSTUP_WHICH
        )
        assert shims.classify("git", ["rev-parse", "HEAD"]) is (
            ShimInvocation.GIT_REV_PARSE_HEAD
        )

    def test_digest_tracks_configuration(self, settings):
        """Changing the sentinel or toolchain changes the digest."""
        base = build_shims(settings.toolchain_dir, settings)
        other_sentinel = build_shims(
            settings.toolchain_dir,
            settings.model_copy(update={"vcs_sentinel": "f" * 40}),
        )
        other_dir = build_shims(settings.toolchain_dir / "other", settings)

        assert base.digest == build_shims(settings.toolchain_dir, settings).digest
        assert base.digest != other_sentinel.digest
        assert base.digest != other_dir.digest

    def test_tools_override(self, settings):
        """The locatable tools can be overridden."""
        shims = build_shims(settings.toolchain_dir, settings, tools=["rustc"])

        assert shims.tools == ("rustc",)
        with pytest.raises(UnsupportedShimInvocation):
            shims.classify("rustup", ["which", "cargo"])


class TestShimScripts:
    """Tests for the generated sh scripts."""

    def test_render_unknown_tool(self, shims):
        """Only shimmed tools can be rendered."""
        with pytest.raises(ValueError):
            render_script(shims, "cargo")

    def test_write_shims(self, shims, tmp_path):
        """One executable script per shimmed tool."""
        written = write_shims(shims, tmp_path / "bin")

        assert sorted(p.name for p in written) == sorted(SHIMMED_TOOLS)
        assert all(os.access(p, os.X_OK) for p in written)

    @pytest.mark.parametrize(
        ("tool", "args"),
        [
            ("rustup", ["which", "rustc"]),
            ("rustup", ["which", "clippy-driver"]),
            ("git", ["rev-parse", "HEAD"]),
            ("git", ["diff-index", "--quiet", "HEAD"]),
        ],
    )
    def test_scripts_match_table(self, shims, tmp_path, tool, args):
        """Scripts answer exactly what the table answers."""
        bin_dir = tmp_path / "bin"
        write_shims(shims, bin_dir)

        result = _run(bin_dir, tool, *args)
        expected = shims.respond(tool, args)

        assert result.returncode == expected.exit_code
        assert result.stdout == expected.stdout

    @pytest.mark.parametrize(
        ("tool", "args"),
        [
            ("rustup", ["show"]),
            ("rustup", ["which", "gdb"]),
            ("git", ["log", "-1"]),
            ("git", ["rev-parse", "HEAD", "extra"]),
        ],
    )
    def test_scripts_reject_unknown(self, shims, tmp_path, tool, args):
        """Unknown invocations print the error to stderr and exit 1."""
        bin_dir = tmp_path / "bin"
        write_shims(shims, bin_dir)

        result = _run(bin_dir, tool, *args)

        assert result.returncode == 1
        assert result.stdout == ""
        assert result.stderr == f"{tool} shim: unsupported command: {' '.join(args)}\n"
