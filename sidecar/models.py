"""Data models for the engine configuration and supervisor state."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EngineLogLevel(str, enum.Enum):
    """Engine log levels, ordered from least to most severe."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @classmethod
    def at_least(cls, minimum: EngineLogLevel) -> list[EngineLogLevel]:
        """Return all levels at or above the given minimum."""
        ordered = list(cls)
        min_idx = ordered.index(minimum)
        return ordered[min_idx:]


class SupervisorState(str, enum.Enum):
    """Lifecycle of the supervised engine process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (
            SupervisorState.STARTING,
            SupervisorState.RUNNING,
            SupervisorState.CRASHED,
        )


# ---------------------------------------------------------------------------
# Engine configuration document
# ---------------------------------------------------------------------------


class EngineModel(BaseModel):
    """Base for config sections: camelCase on the wire, unknown keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class ExtensionsConfig(EngineModel):
    strip: list[str] | None = None
    blacklist: list[str] | None = None


class FrontendParams(EngineModel):
    """User-configurable fields of a frontend."""

    extensions: ExtensionsConfig | None = None


class FrontendConfig(FrontendParams):
    """A frontend the engine listens on for inbound traffic."""

    host: str | None = None
    endpoint: str | None = None
    port: int | None = None


class OriginParams(EngineModel):
    """User-configurable fields of an origin."""

    request_timeout: str | None = None
    max_concurrent_requests: int | None = None
    supports_batch: bool | None = None


class HttpOrigin(EngineModel):
    url: str
    header_secret: str = ""


class OriginConfig(OriginParams):
    """An upstream the engine forwards requests to.

    Only origins with an ``http`` section get the shared secret injected.
    Other transports are passed through as extra fields.
    """

    http: HttpOrigin | None = None


class AccessLogConfig(EngineModel):
    destination: str
    request_headers: list[str] | None = None
    response_headers: list[str] | None = None


class LoggingConfig(EngineModel):
    level: str | None = None
    request: AccessLogConfig | None = None
    query: AccessLogConfig | None = None
    format: str | None = None
    destination: str | None = None


class EngineConfig(EngineModel):
    """The full configuration document written to the engine's stdin."""

    api_key: str | None = None
    origins: list[OriginConfig] | None = None
    frontends: list[FrontendConfig] | None = None
    stores: list[dict[str, Any]] | None = None
    session_auth: dict[str, Any] | None = None
    logging: LoggingConfig | None = None
    reporting: dict[str, Any] | None = None
    query_cache: dict[str, Any] | None = None

    def to_document(self) -> dict[str, Any]:
        """Return a fresh wire-format dict (camelCase keys, unset fields omitted)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SideloadConfig(BaseModel):
    """Everything a host application passes to ``Engine``."""

    engine_config: str | Path | EngineConfig | dict[str, Any]
    endpoint: str = "/graphql"
    graphql_port: int | None = None
    dump_traffic: bool = False
    startup_timeout: float = Field(default=1.0, gt=0, description="Seconds to wait for readiness")
    origin: OriginParams = Field(default_factory=OriginParams)
    frontend: FrontendParams = Field(default_factory=FrontendParams)
    binary: str | None = Field(default=None, description="Explicit engine executable path")
    restart_delay: float = Field(default=0.0, ge=0, description="Seconds to wait before a crash respawn")
    max_restarts: int | None = Field(default=None, ge=0, description="Consecutive crash respawn limit (None = unlimited)")


# ---------------------------------------------------------------------------
# Shared runtime state
# ---------------------------------------------------------------------------


@dataclass
class MiddlewareParams:
    """State shared between the supervisor and request middleware.

    ``uri`` is empty whenever no engine process is reachable. Only the
    supervisor writes it; middleware treats the whole object as read-only.
    """

    endpoint: str = "/graphql"
    psk: str = field(default="", repr=False)
    uri: str = ""
    dump_traffic: bool = False


@dataclass
class LogRecord:
    """One JSON object decoded from the engine's stdout."""

    fields: dict[str, Any]

    @property
    def msg(self) -> Any:
        return self.fields.get("msg")

    @property
    def address(self) -> Any:
        return self.fields.get("address")

    @property
    def level(self) -> Any:
        return self.fields.get("level")


@dataclass
class OutputError:
    """Engine stdout text that could not be decoded as JSON."""

    raw: str
    reason: str = ""


class SupervisorStatus(BaseModel):
    """Status snapshot of the engine supervisor."""

    state: SupervisorState
    pid: int | None = None
    uri: str = ""
    restarts: int = 0
    started_at: datetime | None = None
    error: str | None = None
