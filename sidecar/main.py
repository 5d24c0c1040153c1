"""Engine sidecar command-line entry point.

Usage:
    python3 -m sidecar --config engine.json --graphql-port 4000
    python3 -m sidecar --config engine.json --binary ./engineproxy -v

Runs the engine in the foreground until interrupted. Useful for checking an
engine config outside the host application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from sidecar.engine import Engine
from sidecar.errors import EngineError

logger = logging.getLogger("sidecar")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sidecar",
        description="Run the engine proxy as a supervised sidecar",
    )
    parser.add_argument(
        "--config", "-c", required=True,
        help="Path to the engine config JSON file",
    )
    parser.add_argument(
        "--graphql-port", type=int, default=None,
        help="Port of the GraphQL server the engine proxies to (default: $PORT)",
    )
    parser.add_argument(
        "--endpoint", default="/graphql",
        help="GraphQL endpoint path (default: /graphql)",
    )
    parser.add_argument(
        "--startup-timeout", type=float, default=1.0,
        help="Seconds to wait for the engine to start (default: 1.0)",
    )
    parser.add_argument(
        "--binary", default=None,
        help="Engine executable (default: $ENGINE_BINARY, then PATH)",
    )
    parser.add_argument(
        "--dump-traffic", action="store_true",
        help="Log requests routed through the engine",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    return parser


async def run_engine(engine: Engine) -> int:
    """Start ``engine`` and keep it up until a signal or a fatal error."""
    loop = asyncio.get_running_loop()
    done = asyncio.Event()
    failures: list[EngineError] = []

    def on_fatal(error: EngineError) -> None:
        failures.append(error)
        done.set()

    engine.on_error(on_fatal)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, done.set)
        except NotImplementedError:
            pass  # Windows

    try:
        port = await engine.start()
    except EngineError as e:
        print(f"Engine failed to start: {e}", file=sys.stderr)
        return EXIT_FAILED

    print("Engine sidecar running")
    print(f"  http://127.0.0.1:{port}{engine.middleware_params.endpoint}")
    print()

    await done.wait()
    logger.info("Shutting down engine sidecar")

    if engine.supervisor.is_running:
        await engine.stop()
    if failures:
        print(f"Engine stopped: {failures[0]}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK


def cli(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        engine = Engine(
            engine_config=args.config,
            graphql_port=args.graphql_port,
            endpoint=args.endpoint,
            startup_timeout=args.startup_timeout,
            binary=args.binary,
            dump_traffic=args.dump_traffic,
        )
    except (EngineError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        return asyncio.run(run_engine(engine))
    except KeyboardInterrupt:
        return EXIT_OK
