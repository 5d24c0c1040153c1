"""Run an engine proxy as a supervised sidecar of a Python web app."""

from sidecar.engine import Engine
from sidecar.models import EngineConfig, MiddlewareParams, SideloadConfig

__all__ = ["Engine", "EngineConfig", "MiddlewareParams", "SideloadConfig"]
