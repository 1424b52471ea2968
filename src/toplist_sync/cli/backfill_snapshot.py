"""Rebuild a historical server toplist from raw scans in a time window."""

from typing import Sequence

from toplist_sync.cli.common import CliArgumentParser, run_main
from toplist_sync.commands.backfill import run_backfill_snapshot
from toplist_sync.services.backfill import DEFAULT_TOP_N


def build_parser() -> CliArgumentParser:
    parser = CliArgumentParser(prog="toplist-backfill")
    parser.add_argument("--server", required=True, help="Server code, e.g. EU1")
    parser.add_argument(
        "--from",
        dest="from_",
        required=True,
        help="Window start (inclusive): epoch seconds/millis or ISO-8601",
    )
    parser.add_argument("--to", required=True, help="Window end (inclusive): epoch seconds/millis or ISO-8601")
    parser.add_argument("--label", help="Snapshot label YYYY-MM (defaults to the month before --from)")
    parser.add_argument(
        "--topN",
        "--top-n",
        dest="top_n",
        type=int,
        default=DEFAULT_TOP_N,
        help="Maximum number of players to keep",
    )
    parser.add_argument("--dry-run", action="store_true", help="Compute and report without writing")
    parser.add_argument("--project", help="Firestore project id (defaults to FIRESTORE_PROJECT_ID)")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run_main(build_parser(), run_backfill_snapshot, argv)


if __name__ == "__main__":
    raise SystemExit(main())
