"""Shared fixtures: a fake engine process and a supervisor factory."""

from __future__ import annotations

import asyncio
import io
import json
import sys
from pathlib import Path

import pytest

from sidecar.config import assemble_engine_config, generate_psk
from sidecar.models import EngineConfig, MiddlewareParams
from sidecar.supervisor import ChildSupervisor

FIXTURES = Path(__file__).parent / "fixtures"
FAKE_ENGINE = FIXTURES / "fake_engine.py"


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it returns true or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


def read_documents(path: Path) -> list[dict]:
    """Config documents the fake engine received, in order."""
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


@pytest.fixture
def fake_command() -> list[str]:
    return [sys.executable, str(FAKE_ENGINE), "-config=stdin"]


@pytest.fixture
def fake_binary(tmp_path) -> Path:
    """An executable wrapper so the fake engine can be used as ``binary``."""
    path = tmp_path / "engineproxy"
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_ENGINE}" "$@"\n')
    path.chmod(0o755)
    return path


@pytest.fixture
def record_file(tmp_path) -> Path:
    return tmp_path / "documents.jsonl"


@pytest.fixture
async def make_supervisor(fake_command, record_file):
    """Build supervisors around the fake engine; stops any left running."""
    created: list[ChildSupervisor] = []

    def factory(
        fake: dict | None = None,
        level: str | None = None,
        **kwargs,
    ) -> ChildSupervisor:
        raw = {"apiKey": "service:test:key", "fake": {"record_file": str(record_file), **(fake or {})}}
        if level is not None:
            raw["logging"] = {"level": level}
        params = MiddlewareParams(psk=generate_psk())
        config = assemble_engine_config(EngineConfig.model_validate(raw), params, graphql_port=4000)

        records: list = []

        async def collect(record) -> None:
            records.append(record)

        kwargs.setdefault("startup_timeout", 10.0)
        kwargs.setdefault("on_record", collect)
        kwargs.setdefault("stderr_sink", io.BytesIO())
        supervisor = ChildSupervisor(fake_command, config, params, **kwargs)
        supervisor.records = records
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        if supervisor.is_running:
            await supervisor.stop()
