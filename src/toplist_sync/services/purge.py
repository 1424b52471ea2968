"""
Delete legacy numeric-id player trees.

Discovery pages through the ``scans`` collection group ordered by
``(playerId, __name__)`` and collects numeric player ids from the document
paths. Deletion removes ``scans``, ``history_weekly`` and ``history_monthly``,
then ``latest/latest``, then the player root document. Both phases are
bounded; hitting the delete budget ends the run with ``aborted=True``.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from toplist_sync.classes.backoff import DEFAULT_RETRY, RetryConfig, call_with_backoff
from toplist_sync.classes.firestore_client import FirestoreError, Query

logger = logging.getLogger(__name__)

PLAYERS_COLLECTION = "players"
SCANS_COLLECTION_ID = "scans"
SUB_COLLECTIONS = ("scans", "history_weekly", "history_monthly")
MAX_NAMESPACES = 5000
MAX_TOTAL_DELETES = 250_000
PROGRESS_EVERY = 25
PAGE_SIZE = 300

_LEGACY_ID = re.compile(r"^\d+$")


def legacy_player_id(path: str) -> Optional[str]:
    parts = path.strip("/").split("/")
    if len(parts) != 4 or parts[0] != PLAYERS_COLLECTION or parts[2] != SCANS_COLLECTION_ID:
        return None
    return parts[1] if _LEGACY_ID.match(parts[1]) else None


def discover_legacy_players(
    client,
    *,
    limit: int = MAX_NAMESPACES,
    page_size: int = PAGE_SIZE,
    retry: RetryConfig = DEFAULT_RETRY,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Return up to ``limit`` distinct legacy player ids, in query order."""
    limit = max(0, min(limit, MAX_NAMESPACES))
    found: dict[str, None] = {}
    query = Query(collection_id=SCANS_COLLECTION_ID, order_by=[("playerId", "asc")], page_size=page_size)
    pages = 0
    while len(found) < limit:
        page = call_with_backoff(
            lambda: client.run_query(query),
            config=retry,
            sleep=sleep,
            description=f"discovery page {pages + 1}",
        )
        pages += 1
        for document in page:
            player_id = legacy_player_id(document.path)
            if player_id is None or player_id in found:
                continue
            found[player_id] = None
            if len(found) >= limit:
                break
        logger.debug("discovery page=%d docs=%d players=%d", pages, len(page), len(found))
        if len(page) < page_size:
            break
        query = Query(
            collection_id=query.collection_id,
            order_by=query.order_by,
            page_size=page_size,
            start_after=query.cursor_from(page[-1]),
        )
    logger.info("discovered legacy players=%d pages=%d", len(found), pages)
    return list(found)


@dataclass
class PurgeSummary:
    execute: bool
    player_ids: list[str] = field(default_factory=list)
    players_purged: int = 0
    deleted: int = 0
    already_missing: int = 0
    failed: int = 0
    players_failed: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None

    @property
    def attempted(self) -> int:
        return self.deleted + self.already_missing + self.failed

    def as_dict(self) -> dict[str, Any]:
        return {
            "execute": self.execute,
            "discovered": len(self.player_ids),
            "playerIds": list(self.player_ids),
            "playersPurged": self.players_purged,
            "deleted": self.deleted,
            "alreadyMissing": self.already_missing,
            "failed": self.failed,
            "playersFailed": self.players_failed,
            "aborted": self.aborted,
            "abortReason": self.abort_reason,
        }


class PurgeJob:
    """
    Deletes player trees one document at a time under a global budget.

    Args:
        client: FirestoreClient (or a compatible double).
        retry (RetryConfig): backoff policy for each listing and delete.
        sleep: sleep function used between retries.
        max_total_deletes (int): delete budget for the whole run.
        page_size (int): documents listed per sub-collection page.
        progress_every (int): log progress every N players.
    """

    def __init__(
        self,
        client,
        *,
        retry: RetryConfig = DEFAULT_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        max_total_deletes: int = MAX_TOTAL_DELETES,
        page_size: int = PAGE_SIZE,
        progress_every: int = PROGRESS_EVERY,
    ) -> None:
        self.client = client
        self.retry = retry
        self.sleep = sleep
        self.max_total_deletes = max_total_deletes
        self.page_size = page_size
        self.progress_every = progress_every

    def _reserve(self, summary: PurgeSummary, batch_size: int) -> bool:
        if summary.attempted + batch_size <= self.max_total_deletes:
            return True
        summary.aborted = True
        summary.abort_reason = (
            f"delete budget {self.max_total_deletes} reached "
            f"(attempted={summary.attempted}, next_batch={batch_size})"
        )
        logger.warning("purge aborted: %s", summary.abort_reason)
        return False

    def _delete(self, summary: PurgeSummary, path: str) -> None:
        try:
            call_with_backoff(
                lambda: self.client.delete_document(path),
                config=self.retry,
                sleep=self.sleep,
                description=f"delete {path}",
            )
        except FirestoreError as exc:
            if exc.is_not_found:
                summary.already_missing += 1
                return
            if not exc.is_transient:
                raise
            summary.failed += 1
            logger.error("delete failed after retries path=%s status=%s", path, exc.status_code)
            return
        summary.deleted += 1

    def _delete_batch(self, summary: PurgeSummary, paths: list[str]) -> bool:
        if not self._reserve(summary, len(paths)):
            return False
        for path in paths:
            self._delete(summary, path)
        return True

    def _list_pages(self, root: str, collection_id: str) -> list[list[str]]:
        return call_with_backoff(
            lambda: list(self.client.list_document_paths(root, collection_id, page_size=self.page_size)),
            config=self.retry,
            sleep=self.sleep,
            description=f"list {root}/{collection_id}",
        )

    def purge_player(self, summary: PurgeSummary, player_id: str) -> bool:
        """
        Delete one player tree; False if the budget ran out on the way.

        A listing that still fails transiently after retries raises
        FirestoreError; ``run`` counts the player as failed.
        """
        root = f"{PLAYERS_COLLECTION}/{player_id}"
        for collection_id in SUB_COLLECTIONS:
            for paths in self._list_pages(root, collection_id):
                if not self._delete_batch(summary, paths):
                    return False
        if not self._delete_batch(summary, [f"{root}/latest/latest"]):
            return False
        return self._delete_batch(summary, [root])

    def run(self, player_ids: Iterable[str]) -> PurgeSummary:
        summary = PurgeSummary(execute=True, player_ids=list(player_ids))
        total = len(summary.player_ids)
        for index, player_id in enumerate(summary.player_ids, start=1):
            try:
                finished = self.purge_player(summary, player_id)
            except FirestoreError as exc:
                if not exc.is_transient:
                    raise
                summary.players_failed += 1
                logger.error("listing failed after retries player=%s status=%s", player_id, exc.status_code)
                continue
            if not finished:
                break
            summary.players_purged += 1
            if index % self.progress_every == 0:
                logger.info(
                    "purge progress players=%d/%d deleted=%d missing=%d failed=%d",
                    index,
                    total,
                    summary.deleted,
                    summary.already_missing,
                    summary.failed,
                )
        return summary


def run_purge(
    client,
    *,
    execute: bool = False,
    limit: int = MAX_NAMESPACES,
    job: Optional[PurgeJob] = None,
) -> PurgeSummary:
    job = job or PurgeJob(client)
    player_ids = discover_legacy_players(client, limit=limit, retry=job.retry, sleep=job.sleep)
    if not execute:
        logger.info("dry-run: %d legacy players would be purged", len(player_ids))
        return PurgeSummary(execute=False, player_ids=player_ids)

    summary = job.run(player_ids)
    logger.info(
        "purge finished players=%d/%d players_failed=%d deleted=%d missing=%d failed=%d aborted=%s",
        summary.players_purged,
        len(player_ids),
        summary.players_failed,
        summary.deleted,
        summary.already_missing,
        summary.failed,
        summary.aborted,
    )
    return summary
