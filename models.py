# models.py
import os
import datetime as dt
from datetime import datetime, timezone
from typing import Any, List, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field

from clock import canonical_time_zone_name
from timing import parse_start_time

load_dotenv()
DEFAULT_TIME_ZONE = os.getenv("DEFAULT_TIME_ZONE", "UTC")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StandupBase(SQLModel):
    title: str = Field(min_length=1)
    to_address: str = Field(min_length=1)
    subject_prefix: Optional[str] = None
    closing_message: Optional[str] = None
    time_zone_name: str = DEFAULT_TIME_ZONE
    start_time_string: str


class Standup(StandupBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    image_days: List[Any] = Field(default_factory=list, sa_column=Column(JSON))


def _check_time_zone(value):
    if value is not None:
        canonical_time_zone_name(value)
    return value


def _check_start_time(value):
    if value is not None:
        parse_start_time(value)
    return value


def _check_not_null(value):
    # omitted fields stay as they are; an explicit null would blank a NOT NULL column
    if value is None:
        raise ValueError("may be omitted but not null")
    return value


class StandupCreate(StandupBase):
    image_urls: List[str] = []
    image_days: List[Any] = []

    check_time_zone = field_validator("time_zone_name")(_check_time_zone)
    check_start_time = field_validator("start_time_string")(_check_start_time)


class StandupUpdate(SQLModel):
    title: Optional[str] = Field(default=None, min_length=1)
    to_address: Optional[str] = Field(default=None, min_length=1)
    subject_prefix: Optional[str] = None
    closing_message: Optional[str] = None
    time_zone_name: Optional[str] = None
    start_time_string: Optional[str] = None
    image_urls: Optional[List[str]] = None
    image_days: Optional[List[Any]] = None

    check_not_null = field_validator(
        "title", "to_address", "time_zone_name", "start_time_string"
    )(_check_not_null)
    check_time_zone = field_validator("time_zone_name")(_check_time_zone)
    check_start_time = field_validator("start_time_string")(_check_start_time)


class Post(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    standup_id: int = Field(foreign_key="standup.id", index=True)
    title: Optional[str] = None
    sent_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )
    created_at: datetime = Field(default_factory=utcnow)


class ItemBase(SQLModel):
    kind: str = Field(min_length=1)
    title: str = Field(min_length=1)
    author: Optional[str] = None
    date: Optional[dt.date] = None


class Item(ItemBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    standup_id: int = Field(foreign_key="standup.id", index=True)
    post_id: Optional[int] = Field(default=None, foreign_key="post.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)


class ItemCreate(ItemBase):
    post_id: Optional[int] = None


class ItemUpdate(SQLModel):
    kind: Optional[str] = Field(default=None, min_length=1)
    title: Optional[str] = Field(default=None, min_length=1)
    author: Optional[str] = None
    date: Optional[dt.date] = None
    post_id: Optional[int] = None

    check_not_null = field_validator("kind", "title", "date")(_check_not_null)
