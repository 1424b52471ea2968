"""Re-derive players changed since the last run into the derived cache."""

from typing import Sequence

from toplist_sync.cli.common import CliArgumentParser, run_main
from toplist_sync.commands.update_cache import run_update_cache


def build_parser() -> CliArgumentParser:
    parser = CliArgumentParser(prog="toplist-update-cache")
    parser.add_argument("--project", help="Firestore project id (defaults to FIRESTORE_PROJECT_ID)")
    parser.add_argument("--page-size", type=int, help="Documents per query page")
    parser.add_argument(
        "--refresh-candidates",
        action="store_true",
        help="Also merge derived rows into the per-server latest-candidate documents",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run_main(build_parser(), run_update_cache, argv)


if __name__ == "__main__":
    raise SystemExit(main())
