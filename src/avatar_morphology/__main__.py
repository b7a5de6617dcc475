"""Module entrypoint for ``python -m avatar_morphology``."""

from __future__ import annotations

from avatar_morphology.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
