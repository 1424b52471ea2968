"""Find and delete player trees stored under legacy numeric ids."""

from typing import Sequence

from toplist_sync.cli.common import CliArgumentParser, run_main
from toplist_sync.commands.purge import run_purge_legacy_players
from toplist_sync.services.purge import MAX_NAMESPACES


def build_parser() -> CliArgumentParser:
    parser = CliArgumentParser(prog="toplist-purge-legacy")
    parser.add_argument("--project", required=True, help="Firestore project id")
    parser.add_argument("--execute", action="store_true", help="Actually delete (default: dry-run)")
    parser.add_argument(
        "--limit",
        type=int,
        default=MAX_NAMESPACES,
        help=f"Maximum number of player namespaces to discover (at most {MAX_NAMESPACES})",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run_main(build_parser(), run_purge_legacy_players, argv)


if __name__ == "__main__":
    raise SystemExit(main())
