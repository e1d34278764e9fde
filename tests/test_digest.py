"""
Tests for composing, sending and delivering digests.
"""

import threading
from datetime import date, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlmodel import Session, SQLModel, create_engine, select

from aggregate import StandupAggregate
from clock import FixedClock
from conftest import chicago
import digest
from digest import compose_digest, deliver_digest, forget_standup, send_digest, subject_line
from errors import DigestAlreadySent, DigestConflict
from models import Item, Post, Standup


@pytest.fixture
def after_standup():
    return FixedClock(chicago(2001, 1, 1, 10, 0))


@pytest.fixture
def standup_with_items(session, make_standup):
    standup = make_standup(image_urls=["http://example.com/cat.gif"], image_days=["Mon"])
    for kind, title, day in [
        ("Help", "Flaky CI", date(2000, 12, 31)),
        ("Event", "Lunch talk", date(2001, 1, 1)),
        ("Help", "VPN broken", date(2000, 12, 28)),
    ]:
        session.add(Item(standup_id=standup.id, kind=kind, title=title, author="Barney", date=day))
    session.commit()
    return standup


class TestComposeDigest:
    """Tests for the mailer payload."""

    def test_payload_shape(self, session, standup_with_items, clock):
        payload = compose_digest(StandupAggregate(standup_with_items, session, clock))
        assert payload["to"] == "standup@example.com"
        assert payload["subject"] == "[Standup] Chicago Standup"
        assert payload["date"] == "2001-01-01"
        assert payload["standup"]["closing_message"] == "STRETCH!"
        assert payload["standup"]["image_urls"] == ["http://example.com/cat.gif"]
        assert list(payload["items"]) == ["Help", "Event"]
        assert [i["title"] for i in payload["items"]["Help"]] == ["VPN broken", "Flaky CI"]
        assert payload["items"]["Help"][0]["date"] == "2000-12-28"

    def test_subject_without_prefix(self, make_standup):
        assert subject_line(make_standup(subject_prefix=None)) == "Chicago Standup"


class TestSendDigest:
    """Tests for send_digest()."""

    def test_claims_pending_items_and_stamps_sent_at(self, session, standup_with_items, after_standup):
        post, payload = send_digest(session, standup_with_items, after_standup)

        assert post.sent_at is not None
        assert post.title == "[Standup] Chicago Standup"
        items = session.exec(select(Item).where(Item.standup_id == standup_with_items.id)).all()
        assert {i.post_id for i in items} == {post.id}
        assert sum(len(v) for v in payload["items"].values()) == 3

        aggregate = StandupAggregate(standup_with_items, session, after_standup)
        assert aggregate.pending_items_by_kind() == {}
        assert aggregate.last_sent_at() == chicago(2001, 1, 1, 10, 0).astimezone(timezone.utc)

    def test_not_due_yet_sends_nothing(self, session, standup_with_items, clock):
        assert send_digest(session, standup_with_items, clock) is None
        assert session.exec(select(Post)).all() == []

    def test_forced_send_before_start_time(self, session, standup_with_items, clock):
        post, _ = send_digest(session, standup_with_items, clock, require_due=False)
        assert post.sent_at is not None

    def test_second_send_same_day_is_refused(self, session, standup_with_items, after_standup):
        send_digest(session, standup_with_items, after_standup)
        with pytest.raises(DigestAlreadySent):
            send_digest(session, standup_with_items, after_standup, require_due=False)
        assert len(session.exec(select(Post)).all()) == 1

    def test_sends_again_the_next_day(self, session, standup_with_items, after_standup):
        send_digest(session, standup_with_items, after_standup)
        session.add(Item(standup_id=standup_with_items.id, kind="Event", title="Demo", date=date(2001, 1, 2)))
        session.commit()

        post, payload = send_digest(session, standup_with_items, FixedClock(chicago(2001, 1, 2, 9, 30)))
        assert list(payload["items"]) == ["Event"]
        assert len(session.exec(select(Post)).all()) == 2

    def test_empty_digest_still_sends(self, session, make_standup, after_standup):
        post, payload = send_digest(session, make_standup(), after_standup)
        assert payload["items"] == {}
        assert post.sent_at is not None

    def test_items_claimed_elsewhere_conflict(self, session, make_standup, after_standup, monkeypatch):
        standup = make_standup()
        other_post = Post(standup_id=standup.id)
        session.add(other_post)
        session.commit()
        claimed = Item(standup_id=standup.id, kind="Help", title="Taken", date=date(2001, 1, 1),
                       post_id=other_post.id)
        session.add(claimed)
        session.commit()

        # a stale read that still thinks the item is pending
        stale = Item(id=claimed.id, standup_id=standup.id, kind="Help", title="Taken", date=date(2001, 1, 1))
        monkeypatch.setattr(StandupAggregate, "pending_items_by_kind", lambda self: {"Help": [stale]})

        with pytest.raises(DigestConflict):
            send_digest(session, standup, after_standup)
        posts = session.exec(select(Post)).all()
        assert [p.id for p in posts] == [other_post.id]
        assert session.get(Item, claimed.id).post_id == other_post.id


class TestDeliverDigest:
    """Tests for webhook delivery."""

    PAYLOAD = {"to": "standup@example.com", "subject": "[Standup] Chicago Standup", "items": {}}

    def test_skips_without_webhook(self, monkeypatch):
        monkeypatch.delenv("DIGEST_WEBHOOK_URL", raising=False)
        with patch("digest.requests.post") as mock_post:
            assert deliver_digest(self.PAYLOAD) is False
        mock_post.assert_not_called()

    def test_posts_json_to_webhook(self):
        with patch("digest.requests.post") as mock_post:
            mock_post.return_value = MagicMock(ok=True, status_code=200)
            assert deliver_digest(self.PAYLOAD, "http://relay.test/digest") is True
        mock_post.assert_called_once_with("http://relay.test/digest", json=self.PAYLOAD, timeout=10)

    def test_reads_webhook_from_env(self, monkeypatch):
        monkeypatch.setenv("DIGEST_WEBHOOK_URL", "http://relay.test/env")
        with patch("digest.requests.post") as mock_post:
            mock_post.return_value = MagicMock(ok=True, status_code=200)
            deliver_digest(self.PAYLOAD)
        assert mock_post.call_args[0][0] == "http://relay.test/env"

    def test_connection_error_returns_false(self):
        with patch("digest.requests.post", side_effect=requests.ConnectionError("refused")):
            assert deliver_digest(self.PAYLOAD, "http://relay.test/digest") is False

    def test_failed_delivery_returns_false(self):
        with patch("digest.requests.post") as mock_post:
            mock_post.return_value = MagicMock(ok=False, status_code=500, text="boom")
            assert deliver_digest(self.PAYLOAD, "http://relay.test/digest") is False


class TestConcurrentSends:
    """Two compositions racing for the same standup."""

    @pytest.fixture
    def file_engine(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'digest.db'}", connect_args={"check_same_thread": False}
        )
        SQLModel.metadata.create_all(engine)
        yield engine
        engine.dispose()

    def test_only_one_send_claims_the_items(self, file_engine, after_standup):
        with Session(file_engine) as session:
            standup = Standup(
                title="Chicago Standup",
                to_address="standup@example.com",
                time_zone_name="America/Chicago",
                start_time_string="9:00am",
            )
            session.add(standup)
            session.commit()
            for n in range(5):
                session.add(Item(standup_id=standup.id, kind="Help", title=f"help {n}", date=date(2001, 1, 1)))
            session.commit()
            standup_id = standup.id

        barrier = threading.Barrier(2)
        outcomes = []

        def compose():
            with Session(file_engine) as session:
                standup = session.get(Standup, standup_id)
                barrier.wait()
                try:
                    post, _ = send_digest(session, standup, after_standup)
                    outcomes.append(post.id)
                except (DigestAlreadySent, DigestConflict) as e:
                    outcomes.append(e)

        threads = [threading.Thread(target=compose) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        sent = [o for o in outcomes if isinstance(o, int)]
        refused = [o for o in outcomes if isinstance(o, (DigestAlreadySent, DigestConflict))]
        assert len(sent) == 1
        assert len(refused) == 1

        with Session(file_engine) as session:
            posts = session.exec(select(Post)).all()
            assert [p.id for p in posts if p.sent_at is not None] == sent
            items = session.exec(select(Item)).all()
            assert {i.post_id for i in items} == set(sent)


class TestForgetStandup:
    def test_drops_the_send_lock(self, session, make_standup, after_standup):
        standup = make_standup()
        send_digest(session, standup, after_standup)
        assert standup.id in digest._standup_locks
        forget_standup(standup.id)
        assert standup.id not in digest._standup_locks
