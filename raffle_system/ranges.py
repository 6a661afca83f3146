"""
Ticket Range Allocation
Maps every ticket of every entry to one index in a flat space [0, total_tickets)
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class EntryRange:
    """One participant's slice of the ticket index space [range_start, range_end)"""

    entry_id: int
    user_id: int
    username: str
    tickets: int
    range_start: int  # inclusive
    range_end: int  # exclusive
    source: str = 'system'

    def contains(self, index: int) -> bool:
        return self.range_start <= index < self.range_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': str(self.entry_id),
            'user_id': str(self.user_id),
            'username': self.username,
            'tickets': self.tickets,
            'range_start': self.range_start,
            'range_end': self.range_end,
            'source': self.source or 'system',
        }


def build_entry_ranges(entries: Iterable[Dict[str, Any]]) -> Tuple[List[EntryRange], int]:
    """
    Build cumulative ranges for entries, in the order given.

    Example: A (3 tickets), B (2), C (5) -> A:[0,3) B:[3,5) C:[5,10), total 10

    Args:
        entries: dicts with 'entry_id', 'user_id', 'username', 'tickets' and optional 'source'

    Returns:
        tuple: (ranges, total_tickets)
    """
    ranges = []
    cursor = 0

    for entry in entries:
        start = cursor
        end = start + entry['tickets']
        ranges.append(EntryRange(
            entry_id=entry['entry_id'],
            user_id=entry['user_id'],
            username=entry['username'],
            tickets=entry['tickets'],
            range_start=start,
            range_end=end,
            source=entry.get('source') or 'system',
        ))
        cursor = end

    return ranges, cursor


def find_entry_for_index(ranges: List[EntryRange], index: int) -> Optional[EntryRange]:
    """
    Binary search for the range containing index.

    Returns None when no range contains it, which means the index lies outside
    [0, total_tickets) for these ranges.
    """
    lo = 0
    hi = len(ranges) - 1

    while lo <= hi:
        mid = (lo + hi) // 2
        entry_range = ranges[mid]
        if entry_range.contains(index):
            return entry_range
        if index < entry_range.range_start:
            hi = mid - 1
        else:
            lo = mid + 1

    return None
