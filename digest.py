# digest.py
"""
Digest composition, sending and delivery.

send_digest is the one state transition in the app: it creates a Post,
attaches the pending items to it and stamps sent_at. Everything else here
only reads.
"""
import logging
import os
import threading
from collections import defaultdict
from datetime import timezone
from typing import Dict, List, Optional, Tuple

import requests
from sqlalchemy import update
from sqlmodel import Session

from aggregate import StandupAggregate
from clock import SystemClock
from errors import DigestAlreadySent, DigestConflict
from models import Item, Post, Standup

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_standup_locks: Dict[int, threading.Lock] = defaultdict(threading.Lock)


def _lock_for(standup_id: int) -> threading.Lock:
    with _locks_guard:
        return _standup_locks[standup_id]


def forget_standup(standup_id: int) -> None:
    """Drop the send lock of a deleted standup."""
    with _locks_guard:
        _standup_locks.pop(standup_id, None)


def subject_line(standup: Standup) -> str:
    if standup.subject_prefix:
        return f"{standup.subject_prefix} {standup.title}"
    return standup.title


def item_fields(item: Item) -> dict:
    return {
        "id": item.id,
        "title": item.title,
        "author": item.author,
        "date": item.date.isoformat() if item.date else None,
    }


def compose_digest(aggregate: StandupAggregate, grouped: Optional[Dict[str, List[Item]]] = None) -> dict:
    """Build the payload handed to the mailer."""
    standup = aggregate.standup
    if grouped is None:
        grouped = aggregate.pending_items_by_kind()
    return {
        "to": standup.to_address,
        "subject": subject_line(standup),
        "date": aggregate.date_today.isoformat(),
        "standup": {
            "id": standup.id,
            "title": standup.title,
            "closing_message": standup.closing_message,
            "image_urls": list(standup.image_urls or []),
            "image_days": list(standup.image_days or []),
        },
        "items": {kind: [item_fields(i) for i in items] for kind, items in grouped.items()},
    }


def send_digest(
    session: Session,
    standup: Standup,
    clock=None,
    require_due: bool = True,
) -> Optional[Tuple[Post, dict]]:
    """
    Compose today's digest and mark it sent.

    Returns (post, payload), or None when require_due is set and today's
    standup time has not passed yet. Raises DigestAlreadySent if a digest
    already went out today, and DigestConflict if another composition
    claimed any of the pending items first. Neither case leaves a Post
    behind.
    """
    clock = clock or SystemClock()

    with _lock_for(standup.id):
        aggregate = StandupAggregate(standup, session, clock)
        if aggregate.sent_today():
            raise DigestAlreadySent(f"standup {standup.id} already sent on {aggregate.date_today}")
        if require_due and not aggregate.finished_today():
            logger.info("Standup %s not due until %s", standup.id, aggregate.next_fire_time())
            return None

        grouped = aggregate.pending_items_by_kind()
        item_ids = [item.id for items in grouped.values() for item in items]
        payload = compose_digest(aggregate, grouped)

        post = Post(standup_id=standup.id, title=payload["subject"])
        session.add(post)
        session.flush()

        if item_ids:
            claimed = session.exec(
                update(Item)
                .where(Item.id.in_(item_ids), Item.post_id.is_(None))
                .values(post_id=post.id)
            ).rowcount
            if claimed != len(item_ids):
                session.rollback()
                raise DigestConflict(
                    f"standup {standup.id}: claimed {claimed} of {len(item_ids)} items"
                )

        # another process may have sent while we were composing
        if aggregate.sent_today():
            session.rollback()
            raise DigestAlreadySent(f"standup {standup.id} already sent on {aggregate.date_today}")

        post.sent_at = clock.now(timezone.utc)
        session.add(post)
        session.commit()
        session.refresh(post)

    logger.info("Sent digest post %s for standup %s with %d items", post.id, standup.id, len(item_ids))
    return post, payload


def deliver_digest(payload: dict, webhook_url: Optional[str] = None) -> bool:
    """POST the payload to the mail relay webhook. Returns True on a 2xx."""
    webhook_url = webhook_url or os.getenv("DIGEST_WEBHOOK_URL")
    if not webhook_url:
        logger.warning("DIGEST_WEBHOOK_URL not configured; skipping delivery of %r", payload["subject"])
        return False

    try:
        r = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        logger.warning("Digest delivery failed: %s", e)
        return False
    if not r.ok:
        logger.warning("Digest delivery failed: %s - %s", r.status_code, r.text)
        return False
    logger.info("Delivered %r to %s", payload["subject"], payload["to"])
    return True
