import logging
import sys
from typing import Any

from toplist_sync.commands.runtime import build_client, configure_runtime, to_stable_json
from toplist_sync.services.backfill import BackfillRequest, parse_window_bound, run_backfill

logger = logging.getLogger(__name__)


def build_request(args: Any) -> BackfillRequest:
    """Validate CLI arguments; raises ValueError before any I/O."""
    return BackfillRequest(
        server=args.server,
        from_sec=parse_window_bound(args.from_, "--from"),
        to_sec=parse_window_bound(args.to, "--to"),
        label=args.label,
        top_n=int(args.top_n),
        dry_run=bool(args.dry_run),
    )


def run_backfill_snapshot(args: Any) -> int:
    settings = configure_runtime()
    request = build_request(args)
    client = build_client(settings, getattr(args, "project", None))

    summary = run_backfill(client, request, page_size=settings.page_size)

    logger.info("scans read=%d in window=%d", summary.scans_read, summary.scans_in_window)
    logger.info("unique players=%d", summary.unique_players)
    logger.info("players written=%d", summary.players_written)
    for reason, count in sorted(summary.skipped.items()):
        logger.info("skipped %s=%d", reason, count)
    sys.stdout.write(to_stable_json(summary.as_dict()))
    return 0
