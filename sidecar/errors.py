"""Error types raised or reported by the engine sidecar.

Construction-time errors (config loading, origin port, binary resolution)
abort ``Engine`` creation. Startup errors reject ``start()``. Runtime crash
handling reports through callbacks and logging instead of raising.
"""

from __future__ import annotations

import signal as signal_mod


class EngineError(Exception):
    """Base class for all sidecar errors."""


class ConfigLoadError(EngineError):
    """The engine configuration could not be read or parsed."""


class MissingOriginPortError(EngineError):
    """No origin port was given and none could be read from the environment."""

    def __init__(self) -> None:
        super().__init__(
            "Neither 'graphql_port' nor the PORT environment variable is set. "
            "The engine proxies requests back to your GraphQL server and needs "
            "to know which port that server listens on. Pass e.g. "
            "graphql_port=4000 when constructing the Engine."
        )


class UnsupportedPlatformError(EngineError):
    """No engine binary is available for this platform."""


class StartupError(EngineError):
    """Base class for failures that reject ``start()``."""


class StartupTimeoutError(StartupError):
    """The engine did not report readiness within the startup timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Engine did not start within {timeout:g}s")
        self.timeout = timeout


class ReadinessParseError(StartupError):
    """The readiness record did not carry a usable listening port."""

    def __init__(self, address: object) -> None:
        super().__init__(f"Could not determine engine port from address {address!r}")
        self.address = address


class FatalConfigurationError(StartupError):
    """The engine exited with the invalid-configuration exit code."""

    def __init__(self, exit_code: int) -> None:
        super().__init__("Engine crashed due to invalid configuration.")
        self.exit_code = exit_code


class RestartLimitError(EngineError):
    """The engine kept crashing without becoming ready past the restart limit."""

    def __init__(self, restarts: int) -> None:
        super().__init__(f"Engine kept crashing after {restarts} restarts in a row, giving up")
        self.restarts = restarts


class UnexpectedCrash(EngineError):
    """An engine exit that was not requested. Logged, then respawned."""

    def __init__(self, returncode: int | None) -> None:
        self.returncode = returncode
        if returncode is not None and returncode < 0:
            self.signal = -returncode
            try:
                name = signal_mod.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            message = f"Engine was killed unexpectedly by signal: {name}"
        else:
            self.signal = None
            message = f"Engine crashed unexpectedly with code: {returncode}"
        super().__init__(message)


class NotRunningError(EngineError):
    """``stop()`` was called with no engine process active."""

    def __init__(self) -> None:
        super().__init__("No engine instance running")


class AlreadyRunningError(EngineError):
    """``start()`` was called while an engine process is already active."""

    def __init__(self) -> None:
        super().__init__("Engine is already running; call stop() before start()")
