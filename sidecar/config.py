"""Engine configuration loading and assembly.

The user's engine config is loaded once, then extended with the frontend and
origin the sidecar routes through, and the shared secret the engine presents
to the origin. The assembled config is never mutated afterwards: every
document written to the engine is rendered fresh from it.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sidecar.errors import ConfigLoadError, MissingOriginPortError
from sidecar.models import (
    EngineConfig,
    FrontendConfig,
    FrontendParams,
    HttpOrigin,
    LoggingConfig,
    MiddlewareParams,
    OriginConfig,
    OriginParams,
)

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
PSK_BYTES = 48
PORT_ENV_VAR = "PORT"
LOG_FORMAT = "JSON"
LOG_DESTINATION = "STDOUT"


def generate_psk() -> str:
    """Generate the secret the engine sends with every origin request."""
    return secrets.token_hex(PSK_BYTES)


def load_engine_config(source: str | Path | EngineConfig | Mapping[str, Any]) -> EngineConfig:
    """Load an engine config from a mapping, model instance, or JSON file path.

    Always returns a new object; the input is left untouched.
    """
    if isinstance(source, EngineConfig):
        return source.model_copy(deep=True)

    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigLoadError(f"Cannot read engine config {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigLoadError(f"Engine config {path} is not valid JSON: {e}") from e
    else:
        raw = source

    if not isinstance(raw, Mapping):
        raise ConfigLoadError(
            f"Engine config must be a JSON object, got {type(raw).__name__}"
        )

    try:
        return EngineConfig.model_validate(dict(raw))
    except ValidationError as e:
        raise ConfigLoadError(f"Invalid engine config: {e}") from e


def resolve_graphql_port(
    explicit: int | None,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Return the port the host application's GraphQL server listens on."""
    if explicit:
        return explicit

    env = os.environ if environ is None else environ
    value = env.get(PORT_ENV_VAR, "").strip()
    try:
        return int(value, 10)
    except ValueError:
        raise MissingOriginPortError() from None


def assemble_engine_config(
    base: EngineConfig,
    params: MiddlewareParams,
    graphql_port: int,
    origin_params: OriginParams | None = None,
    frontend_params: FrontendParams | None = None,
) -> EngineConfig:
    """Return a copy of ``base`` wired up for sidecar use.

    - appends a loopback frontend on an engine-chosen port
    - adds an origin pointing back at the host app, or injects the shared
      secret into every user-supplied HTTP origin
    - forces JSON logging to stdout
    """
    config = base.model_copy(deep=True)
    origin_params = origin_params or OriginParams()
    frontend_params = frontend_params or FrontendParams()

    frontend = FrontendConfig.model_validate({
        **frontend_params.model_dump(exclude_none=True),
        "host": LOOPBACK_HOST,
        "endpoint": params.endpoint,
        "port": 0,
    })
    config.frontends = [*(config.frontends or []), frontend]

    if config.origins is None:
        origin = OriginConfig.model_validate({
            **origin_params.model_dump(exclude_none=True),
            "http": HttpOrigin(
                url=f"http://{LOOPBACK_HOST}:{graphql_port}{params.endpoint}",
                header_secret=params.psk,
            ),
        })
        config.origins = [origin]
    else:
        # Trust the user for every other field of their HTTP origins
        for origin in config.origins:
            if origin.http is not None:
                origin.http.header_secret = params.psk

    config.logging = _normalize_logging(config.logging)
    return config


def _normalize_logging(logging_config: LoggingConfig | None) -> LoggingConfig:
    """The supervisor parses engine logs, so they must be JSON on stdout."""
    if logging_config is None:
        logging_config = LoggingConfig()

    if logging_config.format and logging_config.format != LOG_FORMAT:
        logger.warning(
            "Invalid logging format: %s, overridden to %s.",
            logging_config.format, LOG_FORMAT,
        )
    if logging_config.destination and logging_config.destination != LOG_DESTINATION:
        logger.warning(
            "Invalid logging destination: %s, overridden to %s.",
            logging_config.destination, LOG_DESTINATION,
        )

    logging_config.format = LOG_FORMAT
    logging_config.destination = LOG_DESTINATION
    return logging_config


def render_document(config: EngineConfig, level: str | None = None) -> bytes:
    """Serialize one newline-terminated config document for the engine's stdin.

    ``level`` overrides ``logging.level`` in the rendered copy only.
    """
    document = config.to_document()
    if level is not None:
        document.setdefault("logging", {})["level"] = level
    return (json.dumps(document, separators=(",", ":")) + "\n").encode("utf-8")
