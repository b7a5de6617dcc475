"""Process entrypoint for the ``avatar-morph`` console script."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Exit codes shared by every avatar-morph command."""

    SUCCESS = 0
    CONFIG_ERROR = 2
    SCHEMA_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run one command and map whatever escapes it onto an ``ExitCode``."""

    from avatar_morphology.cli import run_cli
    from avatar_morphology.refinement.errors import SchemaValidationError

    try:
        return run_cli(argv)
    except SystemExit as exc:
        # argparse exits 2 on usage errors and 0 after --help.
        return int(ExitCode.SUCCESS) if exc.code in (None, 0) else int(ExitCode.CONFIG_ERROR)
    except SchemaValidationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.SCHEMA_ERROR)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)
    except Exception:  # noqa: BLE001 - last line of defence before the shell.
        traceback.print_exc(file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


__all__ = ["ExitCode", "cli_entrypoint"]
