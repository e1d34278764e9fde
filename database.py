# database.py
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import delete
from sqlmodel import SQLModel, create_engine, Session, select

from errors import NotFound
from models import Item, Post, Standup

load_dotenv()
logger = logging.getLogger(__name__)

# SQLite database file unless DATABASE_URL says otherwise
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./standup.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# create engine
engine = create_engine(DATABASE_URL, echo=SQL_ECHO, connect_args=_connect_args)


# initialize DB
def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)


# session generator
def get_session():
    with Session(engine) as session:
        yield session


def load_standup(session: Session, standup_id: int) -> Standup:
    standup = session.get(Standup, standup_id)
    if standup is None:
        raise NotFound("Standup", standup_id)
    return standup


def load_post(session: Session, standup_id: int, post_id: int) -> Post:
    post = session.get(Post, post_id)
    if post is None or post.standup_id != standup_id:
        raise NotFound("Post", post_id)
    return post


def load_item(session: Session, item_id: int) -> Item:
    item = session.get(Item, item_id)
    if item is None:
        raise NotFound("Item", item_id)
    return item


def pending_items(session: Session, standup_id: int):
    """Items of a standup not yet attached to a post, in creation order."""
    statement = (
        select(Item)
        .where(Item.standup_id == standup_id, Item.post_id.is_(None))
        .order_by(Item.id)
    )
    return session.exec(statement).all()


def delete_standup(session: Session, standup_id: int) -> None:
    """Delete a standup, its items and its posts in one transaction.

    Items go first since they reference posts; the standup row goes last.
    """
    standup = load_standup(session, standup_id)
    session.exec(delete(Item).where(Item.standup_id == standup_id))
    session.exec(delete(Post).where(Post.standup_id == standup_id))
    session.delete(standup)
    session.commit()
    logger.info("Deleted standup %s with its items and posts", standup_id)
