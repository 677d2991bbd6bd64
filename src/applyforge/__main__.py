"""Module entrypoint for ``python -m applyforge``."""

from __future__ import annotations

from applyforge.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
