"""
Rebuild a historical toplist for one server from raw scan history.

The job keeps the newest scan per player inside ``[from, to]``, derives and
ranks them, and merge-writes
``stats_public/toplists_players_v1/lists/history_toplists/servers/{SERVER}__{label}``.
The scan query filters on ``server`` only; the window is applied after each
scan's timestamp is resolved, so scans whose time lives in ``timestampRaw``
or the document id are still considered. It needs the collection-group
index on ``scans.server``.
"""

from __future__ import annotations

import datetime
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from toplist_sync.classes.derivation import build_snapshot_entry, derive, rank_entries
from toplist_sync.classes.firestore_client import Document, FirestoreError, Query
from toplist_sync.classes.firestore_values import SERVER_TIMESTAMP
from toplist_sync.config import DEFAULT_CANDIDATE_LIMIT, DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)

HISTORY_SERVERS_PATH = "stats_public/toplists_players_v1/lists/history_toplists/servers"
SCANS_COLLECTION_ID = "scans"
MAX_SNAPSHOT_BYTES = 1_000_000
DEFAULT_TOP_N = DEFAULT_CANDIDATE_LIMIT

_LABEL = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_DIGITS = re.compile(r"^\d+$")
_DOTTED_DATETIME = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})\s+(\d{1,2}):(\d{2})(?::(\d{2}))?$")

MISSING_INDEX_HINT = (
    "Enable the collection group index for 'scans' on field 'server' (ASC) "
    "and re-run the backfill."
)


class MissingIndexError(RuntimeError):
    """The scan query needs an index that does not exist yet."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Missing Firestore index: {MISSING_INDEX_HINT} ({detail})")
        self.detail = detail


class SnapshotTooLargeError(RuntimeError):
    """The ranked snapshot does not fit into one document."""

    def __init__(self, size_bytes: int, players: int) -> None:
        super().__init__(
            f"Snapshot is {size_bytes} bytes for {players} players "
            f"(limit {MAX_SNAPSHOT_BYTES}); lower --topN or shard the snapshot"
        )
        self.size_bytes = size_bytes
        self.players = players


def epoch_seconds_from_number(value: float) -> Optional[int]:
    if not math.isfinite(value) or value <= 0:
        return None
    if value >= 1e12:
        return int(value // 1000)
    return int(value)


def to_seconds_flexible(value: Any) -> Optional[int]:
    """
    Resolve a capture time to epoch seconds.

    Accepts epoch seconds or millis (numbers or digit strings),
    ``dd.mm.yyyy hh:mm[:ss]`` (UTC) and ISO-8601; anything else is None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return epoch_seconds_from_number(float(value))
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return int(value.timestamp())

    text = str(value).strip()
    if not text:
        return None
    if _DIGITS.match(text):
        return epoch_seconds_from_number(float(text))

    dotted = _DOTTED_DATETIME.match(text)
    if dotted:
        day, month, year, hour, minute, second = dotted.groups()
        try:
            parsed = datetime.datetime(
                int(year), int(month), int(day), int(hour), int(minute), int(second or 0),
                tzinfo=datetime.timezone.utc,
            )
        except ValueError:
            return None
        return int(parsed.timestamp())

    try:
        parsed = datetime.datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return int(parsed.timestamp())


def parse_window_bound(text: str, name: str) -> int:
    """Parse a ``--from``/``--to`` value; a date without time means 00:00:00 UTC."""
    seconds = to_seconds_flexible(text)
    if seconds is None:
        raise ValueError(f"{name} must be epoch seconds, epoch millis or ISO-8601, got {text!r}")
    return seconds


def default_label(from_sec: int) -> str:
    """Calendar month (UTC) before the month containing ``from_sec``."""
    start = datetime.datetime.fromtimestamp(from_sec, tz=datetime.timezone.utc)
    first_of_month = start.replace(day=1)
    previous = first_of_month - datetime.timedelta(days=1)
    return previous.strftime("%Y-%m")


@dataclass
class BackfillRequest:
    server: str
    from_sec: int
    to_sec: int
    label: Optional[str] = None
    top_n: int = DEFAULT_TOP_N
    dry_run: bool = False

    def __post_init__(self) -> None:
        self.server = str(self.server or "").strip().upper()
        if not self.server:
            raise ValueError("server is required")
        if self.from_sec > self.to_sec:
            raise ValueError(f"from ({self.from_sec}) must not be after to ({self.to_sec})")
        if self.top_n <= 0:
            raise ValueError(f"topN must be positive, got {self.top_n}")
        if self.label is None or not str(self.label).strip():
            self.label = default_label(self.from_sec)
        self.label = str(self.label).strip()
        if not _LABEL.match(self.label):
            raise ValueError(f"label must look like YYYY-MM, got {self.label!r}")

    @property
    def snapshot_id(self) -> str:
        return f"{self.server}__{self.label}"

    @property
    def snapshot_path(self) -> str:
        return f"{HISTORY_SERVERS_PATH}/{self.snapshot_id}"


@dataclass
class BackfillSummary:
    server: str
    label: str
    dry_run: bool
    scans_read: int = 0
    scans_in_window: int = 0
    unique_players: int = 0
    players_written: int = 0
    size_bytes: int = 0
    skipped: dict[str, int] = field(
        default_factory=lambda: {"nonPlayerDocument": 0, "missingPlayerId": 0, "unresolvedTimestamp": 0}
    )
    written_path: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "server": self.server,
            "label": self.label,
            "dryRun": self.dry_run,
            "scansRead": self.scans_read,
            "scansInWindow": self.scans_in_window,
            "uniquePlayers": self.unique_players,
            "playersWritten": self.players_written,
            "sizeBytes": self.size_bytes,
            "skipped": dict(self.skipped),
            "writtenPath": self.written_path,
        }


def is_scan_path(path: str) -> bool:
    parts = path.strip("/").split("/")
    return len(parts) == 4 and parts[0] == "players" and parts[2] == SCANS_COLLECTION_ID and bool(parts[1])


def scan_timestamp(document: Document) -> Optional[int]:
    data = document.data
    timestamp = data.get("timestamp")
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        seconds = epoch_seconds_from_number(float(timestamp))
        if seconds is not None:
            return seconds
    seconds = to_seconds_flexible(data.get("timestampRaw"))
    if seconds is not None:
        return seconds
    if _DIGITS.match(document.id):
        return epoch_seconds_from_number(float(document.id))
    return None


def build_scan_query(request: BackfillRequest, page_size: int = DEFAULT_PAGE_SIZE) -> Query:
    return Query(
        collection_id=SCANS_COLLECTION_ID,
        filters=[("server", "==", request.server)],
        page_size=page_size,
    )


def select_latest_scans(
    documents: Iterable[Document],
    summary: BackfillSummary,
    from_sec: int,
    to_sec: int,
) -> dict[str, tuple[int, Document]]:
    """Keep the newest scan per player inside ``[from_sec, to_sec]``; equal timestamps keep the first one seen."""
    latest: dict[str, tuple[int, Document]] = {}
    for document in documents:
        summary.scans_read += 1
        if not is_scan_path(document.path):
            summary.skipped["nonPlayerDocument"] += 1
            continue
        player_id = str(document.data.get("playerId") or "").strip()
        if not player_id:
            summary.skipped["missingPlayerId"] += 1
            continue
        seconds = scan_timestamp(document)
        if seconds is None:
            summary.skipped["unresolvedTimestamp"] += 1
            continue
        if not from_sec <= seconds <= to_sec:
            continue
        summary.scans_in_window += 1
        current = latest.get(player_id)
        if current is None or seconds > current[0]:
            latest[player_id] = (seconds, document)
    summary.unique_players = len(latest)
    return latest


def serialized_size(payload: dict[str, Any]) -> int:
    return len(json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8"))


def run_backfill(client, request: BackfillRequest, *, page_size: int = DEFAULT_PAGE_SIZE) -> BackfillSummary:
    """
    Build the historical snapshot described by ``request``.

    Raises:
        MissingIndexError: the scan query has no supporting index.
        SnapshotTooLargeError: the ranked list exceeds the document budget;
            nothing is written, also in dry-run mode.
    """
    summary = BackfillSummary(server=request.server, label=str(request.label), dry_run=request.dry_run)
    logger.info(
        "backfill started server=%s from=%d to=%d label=%s topN=%d dry_run=%s",
        request.server,
        request.from_sec,
        request.to_sec,
        request.label,
        request.top_n,
        request.dry_run,
    )
    try:
        latest = select_latest_scans(
            client.stream_query(build_scan_query(request, page_size)),
            summary,
            request.from_sec,
            request.to_sec,
        )
    except FirestoreError as exc:
        if exc.is_missing_index:
            raise MissingIndexError(exc.message) from exc
        raise

    entries = []
    for player_id, (seconds, document) in latest.items():
        record = derive(document.data, player_id=player_id)
        entry = build_snapshot_entry(record, last_scan=document.data.get("timestampRaw") or str(seconds))
        entry["playerId"] = player_id
        entries.append(entry)
    players = rank_entries(entries, request.top_n)
    summary.players_written = len(players)

    payload = {
        "server": request.server,
        "label": request.label,
        "window": {"from": request.from_sec, "to": request.to_sec},
        "players": players,
    }
    summary.size_bytes = serialized_size(payload)
    if summary.size_bytes > MAX_SNAPSHOT_BYTES:
        raise SnapshotTooLargeError(summary.size_bytes, len(players))

    if request.dry_run:
        logger.info("backfill dry-run players=%d size_bytes=%d", len(players), summary.size_bytes)
        return summary

    payload["updatedAt"] = SERVER_TIMESTAMP
    client.set_document(request.snapshot_path, payload, merge=True)
    summary.written_path = request.snapshot_path
    logger.info(
        "backfill written path=%s players=%d size_bytes=%d",
        request.snapshot_path,
        len(players),
        summary.size_bytes,
    )
    return summary
