import logging
import sys
from typing import Any

from toplist_sync.commands.runtime import build_client, configure_runtime, to_stable_json
from toplist_sync.services.derived_cache_updater import run_update

logger = logging.getLogger(__name__)


def run_update_cache(args: Any) -> int:
    settings = configure_runtime()
    client = build_client(settings, getattr(args, "project", None))
    page_size = int(args.page_size) if getattr(args, "page_size", None) else settings.page_size

    summary = run_update(
        client,
        page_size=page_size,
        refresh_candidates=bool(getattr(args, "refresh_candidates", False)),
        candidate_limit=settings.candidate_limit,
    )

    logger.info("scanned=%d", summary.scanned)
    logger.info("derived=%d", summary.derived)
    logger.info("skipped non-player=%d", summary.skipped_non_player)
    logger.info("watermark=%s", summary.watermark_after)
    if summary.candidates_failed:
        logger.warning("candidate refresh failed servers=%s", ",".join(summary.candidates_failed))
    sys.stdout.write(to_stable_json(summary.as_dict()))
    return 0
