"""
Pure derivation of ranking fields from a raw player record.

Nothing in here performs I/O; ``derive`` accepts whatever the ingestion
pipeline wrote (latest document or scan document) and never raises.
"""

from __future__ import annotations

import datetime
import math
import re
import sys
from dataclasses import dataclass
from typing import Any, Iterable

STRENGTH = "Base Strength"
DEXTERITY = "Base Dexterity"
INTELLIGENCE = "Base Intelligence"
CONSTITUTION = "Base Constitution"
LUCK = "Base Luck"
BASE_ATTRIBUTE_FIELDS = (STRENGTH, DEXTERITY, INTELLIGENCE, CONSTITUTION, LUCK)

MINE_FIELD = "Gem Mine"
TREASURY_FIELD = "Treasury"

CLASS_NAMES = {
    1: "Warrior",
    2: "Mage",
    3: "Scout",
    4: "Assassin",
    5: "Battle Mage",
    6: "Berserker",
    7: "Demon Hunter",
    8: "Bard",
}

MAIN_ATTRIBUTE_BY_CLASS = {
    "warrior": STRENGTH,
    "mage": INTELLIGENCE,
    "scout": DEXTERITY,
    "assassin": DEXTERITY,
    "battlemage": STRENGTH,
    "berserker": STRENGTH,
    "demonhunter": DEXTERITY,
    "druid": INTELLIGENCE,
    "bard": INTELLIGENCE,
    "necromancer": INTELLIGENCE,
    "paladin": STRENGTH,
    "plaguedoctor": INTELLIGENCE,
}
DEFAULT_MAIN_ATTRIBUTE = INTELLIGENCE

ALL_GROUP = "ALL"
ALL_SERVER_KEY = "all"
METRIC = "sum"

INT64_MAX = 2**63 - 1
INT64_MIN = -(2**63)

FIXED_SERVER_ALIASES = {"all", "*", "global", "any"}

_SERVER_CODE = re.compile(r"^([a-z]{1,4}\d+)$")
_SERVER_CODE_SUFFIX = re.compile(r"^([a-z]{1,4}\d+)[_.-]?(net|eu)$")
_SERVER_HOST = re.compile(r"^([a-z]{1,4}\d+)\.sfgame\.(net|eu|com|us)$")

# Ordered: the first matching rule wins.
_PARTITION_RULES: tuple[tuple[re.Pattern[str], str, str | None], ...] = (
    (re.compile(r"^F(\d+)$"), "FUSION", "F"),
    (re.compile(r"^(?:EU|S)(\d+)$"), "EU", "EU"),
    (re.compile(r"^(?:AM|US|NA)(\d+)$"), "US", None),
    (re.compile(r"^[A-Z]{1,4}(\d+)$"), "INT", None),
)

_WHITESPACE = re.compile(r"\s+")
_GROUPING_DOT = re.compile(r"\.(?=\d{3}(?!\d))")
_CANON_STRIP = re.compile(r"[\s_]+")


def canon(text: str) -> str:
    return _CANON_STRIP.sub("", text.lower())


def to_number_loose(value: Any) -> float:
    """
    Coerce loosely formatted numeric input to a finite float.

    ``"1.234.567"`` and ``"1 234"`` are grouped thousands, ``"12,5"`` is a
    decimal comma; ``"-"``, ``"nan"`` and anything unparseable become 0.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return 0.0
        return number if math.isfinite(number) else 0.0

    text = _WHITESPACE.sub("", str(value))
    if not text or text.lower() in ("-", "nan"):
        return 0.0
    text = _GROUPING_DOT.sub("", text)
    text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_int64(number: float) -> int:
    """Truncate to an int that fits a Firestore ``integerValue``."""
    return int(min(max(number, INT64_MIN), INT64_MAX))


def _finite_total(numbers: Iterable[float]) -> float:
    numbers = list(numbers)
    try:
        total = math.fsum(numbers)
    except OverflowError:
        total = sum(numbers)
    if math.isnan(total):
        return 0.0
    if math.isinf(total):
        return math.copysign(sys.float_info.max, total)
    return total


def _pick(values: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in values:
            return values[name]
    wanted = {canon(name) for name in names}
    for key, value in values.items():
        if canon(str(key)) in wanted:
            return value
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first_text(*candidates: Any) -> str:
    for candidate in candidates:
        text = _text(candidate)
        if text:
            return text
    return ""


def normalize_partition(server: Any) -> tuple[str, str]:
    """Map a free-form server string to ``(group, serverKey)``."""
    text = _text(server).lower()
    if not text or text in FIXED_SERVER_ALIASES:
        return ALL_GROUP, ALL_SERVER_KEY

    match = _SERVER_CODE.match(text) or _SERVER_CODE_SUFFIX.match(text) or _SERVER_HOST.match(text)
    if not match:
        return ALL_GROUP, ALL_SERVER_KEY
    code = match.group(1).upper()

    for pattern, group, prefix in _PARTITION_RULES:
        rule_match = pattern.match(code)
        if not rule_match:
            continue
        if prefix is None:
            return group, code
        return group, f"{prefix}{int(rule_match.group(1))}"
    return ALL_GROUP, ALL_SERVER_KEY


def class_name_for(value: Any) -> str:
    text = _text(value)
    if not text:
        return ""
    try:
        class_id = int(text)
    except ValueError:
        return text
    return CLASS_NAMES.get(class_id, text)


def main_attribute_for(class_name: str) -> str:
    return MAIN_ATTRIBUTE_BY_CLASS.get(canon(class_name), DEFAULT_MAIN_ATTRIBUTE)


def build_scope_id(group: str, server_key: str) -> str:
    g = (group or ALL_GROUP).upper()
    s = server_key.upper() if server_key else ALL_SERVER_KEY.upper()
    if s == ALL_SERVER_KEY.upper():
        return f"{g}_{ALL_SERVER_KEY}_{METRIC}"
    return f"{g}_{s}_{METRIC}"


@dataclass(frozen=True)
class DerivedRecord:
    player_id: str
    name: str
    class_name: str
    level: int
    server: str
    group: str
    server_key: str
    guild_id: str | None
    guild_name: str | None
    sum: float
    main_attribute: float
    main_attribute_name: str
    con: float
    ratio: float
    mine: float
    treasury: float
    timestamp: int
    last_updated_at: datetime.datetime | None

    def scope_ids(self) -> list[str]:
        scopes = [build_scope_id(ALL_GROUP, ALL_SERVER_KEY)]
        if self.group != ALL_GROUP:
            scopes.append(build_scope_id(self.group, ALL_SERVER_KEY))
        if self.server_key != ALL_SERVER_KEY:
            scopes.append(build_scope_id(self.group, self.server_key))
        return scopes

    def to_document(self) -> dict[str, Any]:
        return {
            "playerId": self.player_id,
            "name": self.name,
            "class": self.class_name,
            "level": self.level,
            "server": self.server,
            "group": self.group,
            "serverKey": self.server_key,
            "guildIdentifier": self.guild_id,
            "guildName": self.guild_name,
            "sum": self.sum,
            "mainAttribute": self.main_attribute,
            "mainAttributeName": self.main_attribute_name,
            "con": self.con,
            "ratio": self.ratio,
            "mine": self.mine,
            "treasury": self.treasury,
            "timestamp": self.timestamp,
            "lastUpdatedAt": self.last_updated_at,
        }


def derive(raw: Any, player_id: str | None = None) -> DerivedRecord:
    data: dict[str, Any] = raw if isinstance(raw, dict) else {}
    values = data.get("values")
    if not isinstance(values, dict):
        values = {}

    attributes = {field: to_number_loose(_pick(values, field)) for field in BASE_ATTRIBUTE_FIELDS}
    total = _finite_total(attributes.values())

    class_name = class_name_for(
        _first_text(data.get("className"), data.get("class"), _pick(values, "Class", "ClassID", "Class ID"))
    )
    main_attribute = main_attribute_for(class_name)

    level_raw = data.get("level")
    if level_raw in (None, ""):
        level_raw = _pick(values, "Level", "Lvl")
    level = to_int64(to_number_loose(level_raw))
    ratio = total / level if level > 0 else 0.0
    if not math.isfinite(ratio):
        ratio = 0.0

    server = _first_text(data.get("server"), _pick(values, "Server")).upper()
    group, server_key = normalize_partition(server)

    updated_at = data.get("updatedAt")
    if not isinstance(updated_at, datetime.datetime):
        updated_at = None

    return DerivedRecord(
        player_id=_first_text(data.get("playerId"), player_id, _pick(values, "ID", "Identifier")),
        name=_first_text(data.get("name"), _pick(values, "Name")),
        class_name=class_name,
        level=level,
        server=server,
        group=group,
        server_key=server_key,
        guild_id=_first_text(data.get("guildIdentifier"), _pick(values, "Guild Identifier")) or None,
        guild_name=_first_text(data.get("guildName"), _pick(values, "Guild")) or None,
        sum=total,
        main_attribute=attributes[main_attribute],
        main_attribute_name=main_attribute,
        con=attributes[CONSTITUTION],
        ratio=ratio,
        mine=to_number_loose(_pick(values, MINE_FIELD)),
        treasury=to_number_loose(_pick(values, TREASURY_FIELD)),
        timestamp=to_int64(to_number_loose(data.get("timestamp"))),
        last_updated_at=updated_at,
    )


def _finite_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def build_snapshot_entry(record: DerivedRecord, last_scan: str | None = None) -> dict[str, Any]:
    """Ranking row in the shape consumed by the toplist UIs."""
    server = record.server_key if record.server_key != ALL_SERVER_KEY else record.server
    scan = _text(last_scan) or (str(record.timestamp) if record.timestamp else "")
    return {
        "playerId": record.player_id,
        "server": server,
        "name": record.name,
        "class": record.class_name,
        "guild": record.guild_name,
        "lastScan": scan or None,
        "level": record.level,
        "con": _finite_or_none(record.con),
        "main": _finite_or_none(record.main_attribute),
        "mine": _finite_or_none(record.mine),
        "ratio": _finite_or_none(record.ratio),
        "sum": _finite_or_none(record.sum),
        "treasury": _finite_or_none(record.treasury),
        "deltaRank": None,
        "deltaSum": None,
    }


def _entry_sum(entry: dict[str, Any]) -> float:
    return to_number_loose(entry.get("sum"))


def rank_entries(entries: Iterable[dict[str, Any]], top_n: int | None = None) -> list[dict[str, Any]]:
    """Sort by sum descending, playerId ascending; optionally keep the first ``top_n``."""
    ranked = sorted(entries, key=lambda entry: (-_entry_sum(entry), str(entry.get("playerId") or "")))
    if top_n is not None:
        del ranked[top_n:]
    return ranked
