"""Locate the engine proxy executable for the current platform."""

from __future__ import annotations

import os
import platform
import shutil
import sys
from collections.abc import Mapping
from pathlib import Path

from sidecar.errors import UnsupportedPlatformError

BINARY_ENV_VAR = "ENGINE_BINARY"
CONFIG_FROM_STDIN = "-config=stdin"

BINARY_NAMES: dict[str, str] = {
    "Darwin": "engineproxy_darwin_amd64",
    "Linux": "engineproxy_linux_amd64",
    "Windows": "engineproxy_windows_amd64.exe",
}


def binary_name(system: str | None = None) -> str:
    """Return the engine executable name for ``system`` (default: this host)."""
    system = system or platform.system()
    try:
        return BINARY_NAMES[system]
    except KeyError:
        raise UnsupportedPlatformError(f"Unsupported platform: {system}") from None


def find_engine_binary(
    explicit: str | None = None,
    environ: Mapping[str, str] | None = None,
    system: str | None = None,
) -> str:
    """Resolve the engine executable path.

    Order: explicit path, $ENGINE_BINARY, next to the running Python (same
    venv), then the system PATH.
    """
    env = os.environ if environ is None else environ
    override = explicit or env.get(BINARY_ENV_VAR)
    if override:
        if Path(override).is_file():
            return str(override)
        raise UnsupportedPlatformError(f"Engine binary not found at {override}")

    name = binary_name(system)

    venv_bin = Path(sys.executable).parent / name
    if venv_bin.is_file():
        return str(venv_bin)

    found = shutil.which(name)
    if found:
        return found
    raise UnsupportedPlatformError(
        f"{name} not found. Install the engine binary for this platform or set "
        f"{BINARY_ENV_VAR}."
    )


def engine_command(binary: str) -> list[str]:
    """Command line that makes the engine read its config from stdin."""
    return [binary, CONFIG_FROM_STDIN]
