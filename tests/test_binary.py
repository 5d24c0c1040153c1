"""Tests for engine binary resolution."""

from __future__ import annotations

import sys
from unittest.mock import patch

import pytest

from sidecar.binary import (
    BINARY_ENV_VAR,
    binary_name,
    engine_command,
    find_engine_binary,
)
from sidecar.errors import UnsupportedPlatformError


@pytest.fixture
def bin_dir(tmp_path):
    """Stand-in for the interpreter's bin directory."""
    path = tmp_path / "venv" / "bin"
    path.mkdir(parents=True)
    with patch.object(sys, "executable", str(path / "python")):
        yield path


def _touch(path):
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


@pytest.mark.parametrize("system, name", [
    ("Darwin", "engineproxy_darwin_amd64"),
    ("Linux", "engineproxy_linux_amd64"),
    ("Windows", "engineproxy_windows_amd64.exe"),
])
def test_binary_name(system, name):
    assert binary_name(system) == name


def test_unsupported_platform():
    with pytest.raises(UnsupportedPlatformError, match="SunOS"):
        binary_name("SunOS")


def test_explicit_path(tmp_path):
    engine = _touch(tmp_path / "engine")
    assert find_engine_binary(str(engine), environ={}) == str(engine)


def test_env_override(tmp_path):
    engine = _touch(tmp_path / "engine")
    assert find_engine_binary(environ={BINARY_ENV_VAR: str(engine)}) == str(engine)


def test_explicit_beats_env(tmp_path):
    explicit = _touch(tmp_path / "explicit")
    from_env = _touch(tmp_path / "from-env")
    found = find_engine_binary(str(explicit), environ={BINARY_ENV_VAR: str(from_env)})
    assert found == str(explicit)


def test_missing_override_is_an_error(tmp_path):
    with pytest.raises(UnsupportedPlatformError, match="not found at"):
        find_engine_binary(environ={BINARY_ENV_VAR: str(tmp_path / "missing")})


def test_interpreter_bin_dir_before_path(bin_dir):
    engine = _touch(bin_dir / "engineproxy_linux_amd64")
    with patch("sidecar.binary.shutil.which", return_value="/usr/bin/engineproxy_linux_amd64") as which:
        assert find_engine_binary(environ={}, system="Linux") == str(engine)
    which.assert_not_called()


def test_falls_back_to_path(bin_dir):
    with patch("sidecar.binary.shutil.which", return_value="/usr/bin/engineproxy_linux_amd64") as which:
        assert find_engine_binary(environ={}, system="Linux") == "/usr/bin/engineproxy_linux_amd64"
    which.assert_called_once_with("engineproxy_linux_amd64")


def test_not_installed(bin_dir):
    with patch("sidecar.binary.shutil.which", return_value=None):
        with pytest.raises(UnsupportedPlatformError, match=BINARY_ENV_VAR):
            find_engine_binary(environ={}, system="Darwin")


def test_engine_command():
    assert engine_command("/opt/engineproxy") == ["/opt/engineproxy", "-config=stdin"]
