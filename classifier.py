# classifier.py
from typing import Dict, Iterable, List

from models import Item


def classify(items: Iterable[Item], standup_id: int) -> Dict[str, List[Item]]:
    """
    Group a standup's pending items by kind, oldest first.

    Items already attached to a post, or belonging to another standup, are
    dropped. Kinds are whatever strings the items carry, matched exactly.
    The sort is stable, so items sharing a date keep their input order
    (callers pass items in creation order). Kinds come out in the order of
    their oldest item.
    """
    eligible = [
        item for item in items
        if item.post_id is None and item.standup_id == standup_id
    ]
    # undated items sort first; the web shell always stamps a date
    eligible.sort(key=lambda item: (item.date is not None, item.date or 0))

    grouped: Dict[str, List[Item]] = {}
    for item in eligible:
        grouped.setdefault(item.kind, []).append(item)
    return grouped
