# aggregate.py
"""
Read model over one Standup row.

Answers the four questions the rest of the app asks of a standup: when does
it fire next, is it due right now, what is pending, and when was it last
sent.
"""
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlmodel import Session, select

from classifier import classify
from clock import TimeZoneClock, as_utc
from database import pending_items as query_pending_items
from models import Item, Post, Standup
import timing


def last_sent_at(session: Session, standup_id: int) -> Optional[datetime]:
    """Latest non-null sent_at among the standup's posts, or None for never."""
    statement = (
        select(Post.sent_at)
        .where(Post.standup_id == standup_id, Post.sent_at.is_not(None))
        .order_by(Post.sent_at.desc())
        .limit(1)
    )
    # SQLite hands timezone-aware columns back naive; they are stored as UTC
    return as_utc(session.exec(statement).first())


class StandupAggregate:
    def __init__(self, standup: Standup, session: Session, clock=None):
        self.standup = standup
        self.session = session
        self.clock = clock
        self.tz_clock = TimeZoneClock(standup.time_zone_name, clock)

    @property
    def time_zone_name_iana(self) -> str:
        return self.tz_clock.identifier

    @property
    def date_today(self) -> date:
        return self.tz_clock.today()

    @property
    def date_tomorrow(self) -> date:
        return self.date_today + timedelta(days=1)

    def standup_time_today(self) -> datetime:
        return timing.standup_time_today(self.standup, self.clock)

    def finished_today(self) -> bool:
        return timing.is_finished_today(self.standup, self.clock)

    def next_fire_time(self) -> datetime:
        return timing.next_occurrence(self.standup, self.clock)

    def last_sent_at(self) -> Optional[datetime]:
        return last_sent_at(self.session, self.standup.id)

    def sent_today(self) -> bool:
        sent_at = self.last_sent_at()
        if sent_at is None:
            return False
        return sent_at.astimezone(self.tz_clock.zone).date() == self.date_today

    def is_due_now(self) -> bool:
        return self.finished_today() and not self.sent_today()

    def pending_items(self) -> List[Item]:
        return query_pending_items(self.session, self.standup.id)

    def pending_items_by_kind(self) -> Dict[str, List[Item]]:
        return classify(self.pending_items(), self.standup.id)
