"""Public start/stop contract for the engine sidecar.

Typical use from an ASGI app::

    engine = Engine(engine_config="engine.json", graphql_port=4000)
    app.add_middleware(EngineMiddleware, params=engine.middleware_params)

    async with engine:
        ...  # engine.middleware_params.uri now points at the running proxy
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, BinaryIO

from sidecar.binary import engine_command, find_engine_binary
from sidecar.config import (
    assemble_engine_config,
    generate_psk,
    load_engine_config,
    resolve_graphql_port,
)
from sidecar.errors import EngineError
from sidecar.models import (
    EngineConfig,
    MiddlewareParams,
    SideloadConfig,
    SupervisorState,
    SupervisorStatus,
)
from sidecar.supervisor import ChildSupervisor, ErrorCallback, RecordCallback

logger = logging.getLogger(__name__)


class Engine:
    """Runs the engine proxy alongside the host application.

    Everything that can be validated up front (config file, origin port,
    engine binary) is resolved here, so a misconfigured Engine fails at
    construction rather than on ``start()``.
    """

    def __init__(
        self,
        sideload: SideloadConfig | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        on_record: RecordCallback | None = None,
        stderr_sink: BinaryIO | None = None,
        filter_grace: float | None = None,
        **options: Any,
    ) -> None:
        if sideload is None:
            sideload = SideloadConfig(**options)
        elif options:
            sideload = SideloadConfig.model_validate({**dict(sideload), **options})
        self.sideload = sideload
        self._error_handlers: list[ErrorCallback] = []

        self._params = MiddlewareParams(
            endpoint=sideload.endpoint,
            psk=generate_psk(),
            dump_traffic=sideload.dump_traffic,
        )

        base = load_engine_config(sideload.engine_config)
        graphql_port = resolve_graphql_port(sideload.graphql_port, environ)
        self.config: EngineConfig = assemble_engine_config(
            base,
            self._params,
            graphql_port,
            origin_params=sideload.origin,
            frontend_params=sideload.frontend,
        )
        self.binary = find_engine_binary(sideload.binary, environ)
        logger.debug(
            "Engine %s: %d frontend(s), %d origin(s), origin port %d",
            self.binary, len(self.config.frontends or []), len(self.config.origins or []),
            graphql_port,
        )

        supervisor_options: dict[str, Any] = {}
        if filter_grace is not None:
            supervisor_options["filter_grace"] = filter_grace
        self.supervisor = ChildSupervisor(
            engine_command(self.binary),
            self.config,
            self._params,
            startup_timeout=sideload.startup_timeout,
            restart_delay=sideload.restart_delay,
            max_restarts=sideload.max_restarts,
            on_record=on_record,
            on_error=self._dispatch_error,
            stderr_sink=stderr_sink,
            **supervisor_options,
        )

    @property
    def middleware_params(self) -> MiddlewareParams:
        """Shared routing state for middleware. Treat as read-only."""
        return self._params

    @property
    def state(self) -> SupervisorState:
        return self.supervisor.state

    def status(self) -> SupervisorStatus:
        return self.supervisor.status()

    def on_error(self, handler: ErrorCallback) -> None:
        """Register a callback for fatal runtime errors (e.g. invalid config)."""
        self._error_handlers.append(handler)

    def middleware(self) -> tuple[type, dict[str, Any]]:
        """Return ``(middleware_class, kwargs)`` for ``app.add_middleware``."""
        from sidecar.middleware import EngineMiddleware

        return EngineMiddleware, {"params": self._params}

    async def start(self) -> int:
        """Start the engine. Returns the port it listens on."""
        return await self.supervisor.start()

    async def stop(self) -> None:
        """Stop the engine and wait for the process to exit."""
        await self.supervisor.stop()

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self.supervisor.is_running:
            await self.stop()

    def _dispatch_error(self, error: EngineError) -> None:
        for handler in self._error_handlers:
            handler(error)
