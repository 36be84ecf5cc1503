"""
Progress and location filtering.

Pure functions, no state. A species with no location tag is listed under
every filter (it has been seen on both reefs).
"""

import math
from enum import Enum
from typing import Iterable

from core.catalog import SpeciesRecord


class FilterTag(Enum):
    """Location filters offered in the grid."""
    ALL = "All Species"
    GBR = "GBR"   # Great Barrier Reef
    GSR = "GSR"   # Great Southern Reef

    @classmethod
    def parse(cls, value: str | None) -> "FilterTag":
        """Parse a query value; empty or unknown values mean ALL."""
        if not value:
            return cls.ALL
        value = value.strip()
        for tag in cls:
            if value.upper() in (tag.name, tag.value.upper()):
                return tag
        return cls.ALL

    @property
    def label(self) -> str:
        return {
            FilterTag.ALL: "All Species",
            FilterTag.GBR: "Great Barrier Reef (GBR)",
            FilterTag.GSR: "Great Southern Reef (GSR)",
        }[self]


def matches_filter(record: SpeciesRecord, tag: FilterTag) -> bool:
    if tag is FilterTag.ALL or record.location is None:
        return True
    return record.location == tag.value


def filter_catalog(records: Iterable[SpeciesRecord], tag: FilterTag) -> list[SpeciesRecord]:
    return [r for r in records if matches_filter(r, tag)]


def sort_by_name(records: Iterable[SpeciesRecord]) -> list[SpeciesRecord]:
    return sorted(records, key=lambda r: (r.name.casefold(), r.id))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def progress(filtered: Iterable[SpeciesRecord], unlocked: Iterable[str]) -> int:
    """
    Percentage of the filtered species that are unlocked.

    Unlocked ids outside the filtered set do not count. Returns 0 for an
    empty filtered set. Halves round up (12.5 -> 13).
    """
    ids = {r.id for r in filtered}
    if not ids:
        return 0
    spotted = ids & set(unlocked)
    return _round_half_up(100 * len(spotted) / len(ids))
