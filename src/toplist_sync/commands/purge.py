import logging
import sys
from typing import Any

from toplist_sync.commands.runtime import build_client, configure_runtime, to_stable_json
from toplist_sync.services.purge import MAX_NAMESPACES, run_purge

logger = logging.getLogger(__name__)


def run_purge_legacy_players(args: Any) -> int:
    settings = configure_runtime()
    limit = int(args.limit) if getattr(args, "limit", None) else MAX_NAMESPACES
    if limit <= 0:
        raise ValueError(f"--limit must be positive, got {limit}")
    client = build_client(settings, args.project)

    summary = run_purge(client, execute=bool(args.execute), limit=min(limit, MAX_NAMESPACES))

    logger.info("discovered=%d", len(summary.player_ids))
    if summary.execute:
        logger.info("players purged=%d players failed=%d", summary.players_purged, summary.players_failed)
        logger.info("deleted=%d already missing=%d failed=%d", summary.deleted, summary.already_missing, summary.failed)
    if summary.aborted:
        logger.warning("aborted: %s", summary.abort_reason)
    sys.stdout.write(to_stable_json(summary.as_dict()))
    return 0
