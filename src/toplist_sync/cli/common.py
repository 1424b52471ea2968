import argparse
import logging
import sys
from typing import Any, Callable, Sequence

logger = logging.getLogger(__name__)


class CliArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors raise instead of exiting with status 2."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        raise ValueError(f"{self.prog}: {message}")


def run_main(
    parser: argparse.ArgumentParser,
    command: Callable[[Any], int],
    argv: Sequence[str] | None,
) -> int:
    """Parse ``argv`` and run ``command``; any exception becomes exit code 1."""
    argv_list = list(argv) if argv is not None else sys.argv[1:]
    try:
        args = parser.parse_args(argv_list)
        return int(command(args) or 0)
    except Exception:
        logger.exception("%s failed", parser.prog)
        return 1
