"""Entry point for ``python -m sidecar``."""

from __future__ import annotations

import sys

from sidecar.main import cli

if __name__ == "__main__":
    sys.exit(cli())
