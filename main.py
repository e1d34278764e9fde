# main.py
import logging
import os
from datetime import timedelta

from fastapi import FastAPI, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv

from aggregate import StandupAggregate
from clock import SystemClock, as_utc
from database import engine, init_db, get_session, load_item, load_standup, load_post, delete_standup
from digest import compose_digest, deliver_digest, forget_standup, send_digest
from errors import DigestAlreadySent, DigestConflict, InvalidTimeZone, MalformedTimeString, NotFound
from models import Item, ItemCreate, ItemUpdate, Standup, StandupCreate, StandupUpdate
from timing import next_occurrence

# -------------------------------------------------------------
# Load env & logging
# -------------------------------------------------------------
load_dotenv()
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() in ("1", "true", "yes")

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

_clock = SystemClock()


def get_clock():
    return _clock


# -------------------------------------------------------------
# App init
# -------------------------------------------------------------
app = FastAPI(title="Standup Digest", version="2.0.0")


@app.on_event("startup")
def on_startup():
    logger.info("Initializing database...")
    init_db()
    if ENABLE_SCHEDULER:
        start_scheduler()


@app.on_event("shutdown")
def on_shutdown():
    stop_scheduler()


@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(DigestAlreadySent)
@app.exception_handler(DigestConflict)
def digest_conflict_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


# -------------------------------------------------------------
# Standup endpoints
# -------------------------------------------------------------
@app.post("/standups", status_code=status.HTTP_201_CREATED)
def create_standup(data: StandupCreate, session: Session = Depends(get_session)):
    standup = Standup(**data.model_dump())
    session.add(standup)
    session.commit()
    session.refresh(standup)
    schedule_standup(standup)
    return standup


@app.get("/standups")
def list_standups(session: Session = Depends(get_session)):
    return session.exec(select(Standup).order_by(Standup.id)).all()


@app.get("/standups/{standup_id}")
def get_standup(standup_id: int, session: Session = Depends(get_session)):
    return load_standup(session, standup_id)


@app.put("/standups/{standup_id}")
def update_standup(standup_id: int, data: StandupUpdate, session: Session = Depends(get_session)):
    standup = load_standup(session, standup_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(standup, field, value)
    session.add(standup)
    session.commit()
    session.refresh(standup)
    schedule_standup(standup)
    return standup


@app.delete("/standups/{standup_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_standup(standup_id: int, session: Session = Depends(get_session)):
    delete_standup(session, standup_id)
    unschedule_standup(standup_id)
    forget_standup(standup_id)


@app.get("/standups/{standup_id}/schedule")
def get_schedule(standup_id: int, session: Session = Depends(get_session), clock=Depends(get_clock)):
    aggregate = StandupAggregate(load_standup(session, standup_id), session, clock)
    last = aggregate.last_sent_at()
    return {
        "standup_id": standup_id,
        "time_zone": aggregate.time_zone_name_iana,
        "today": aggregate.date_today.isoformat(),
        "next_fire_time": aggregate.next_fire_time().isoformat(),
        "is_due_now": aggregate.is_due_now(),
        "last_sent_at": last.isoformat() if last else None,
    }


# -------------------------------------------------------------
# Item endpoints
# -------------------------------------------------------------
@app.post("/standups/{standup_id}/items", status_code=status.HTTP_201_CREATED)
def create_item(
    standup_id: int,
    data: ItemCreate,
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
):
    standup = load_standup(session, standup_id)
    if data.post_id is not None:
        load_post(session, standup_id, data.post_id)

    item = Item(**data.model_dump(), standup_id=standup_id)
    if item.date is None:
        # "today" is the standup's day, not the server's
        item.date = StandupAggregate(standup, session, clock).date_today
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@app.get("/standups/{standup_id}/items")
def list_items(standup_id: int, session: Session = Depends(get_session), clock=Depends(get_clock)):
    aggregate = StandupAggregate(load_standup(session, standup_id), session, clock)
    return aggregate.pending_items_by_kind()


@app.get("/standups/{standup_id}/present")
def present_standup(standup_id: int, session: Session = Depends(get_session), clock=Depends(get_clock)):
    aggregate = StandupAggregate(load_standup(session, standup_id), session, clock)
    return compose_digest(aggregate)


@app.put("/items/{item_id}")
def update_item(item_id: int, data: ItemUpdate, session: Session = Depends(get_session)):
    item = load_item(session, item_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("post_id") is not None:
        load_post(session, item.standup_id, changes["post_id"])
    for field, value in changes.items():
        setattr(item, field, value)
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@app.delete("/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_item(item_id: int, session: Session = Depends(get_session)):
    session.delete(load_item(session, item_id))
    session.commit()


# -------------------------------------------------------------
# Posts (send a digest now)
# -------------------------------------------------------------
@app.post("/standups/{standup_id}/posts", status_code=status.HTTP_201_CREATED)
def create_post(standup_id: int, session: Session = Depends(get_session), clock=Depends(get_clock)):
    standup = load_standup(session, standup_id)
    post, payload = send_digest(session, standup, clock, require_due=False)
    delivered = deliver_digest(payload)
    return {
        "post": {
            "id": post.id,
            "standup_id": post.standup_id,
            "title": post.title,
            "sent_at": as_utc(post.sent_at).isoformat(),
        },
        "payload": payload,
        "delivered": delivered,
    }


# -------------------------------------------------------------
# Scheduler (reload-safe)
# -------------------------------------------------------------
_scheduler = None

# a one-shot job started late must still run, or its standup never requeues
SCHEDULER_JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 300,
}


def _job_id(standup_id: int) -> str:
    return f"standup-{standup_id}"


def run_standup_digest(standup_id: int):
    """Scheduler job: send the standup's digest if due, then queue the next run."""
    with Session(engine) as session:
        try:
            standup = load_standup(session, standup_id)
        except NotFound:
            logger.info("Standup %s no longer exists; dropping its job", standup_id)
            return

        try:
            result = send_digest(session, standup, _clock)
            if result is not None:
                deliver_digest(result[1])
        except (DigestAlreadySent, DigestConflict) as e:
            logger.info("Skipped digest for standup %s: %s", standup_id, e)
        except Exception:
            logger.exception("Digest job failed for standup %s", standup_id)

        schedule_standup(standup)


def schedule_standup(standup: Standup):
    if not (_scheduler and _scheduler.running):
        return
    try:
        fire_at = next_occurrence(standup, _clock)
    except (InvalidTimeZone, MalformedTimeString) as e:
        logger.error("Cannot schedule standup %s: %s", standup.id, e)
        return
    # one second past the fire time so the strict "finished today" check holds
    _scheduler.add_job(
        run_standup_digest,
        "date",
        run_date=fire_at + timedelta(seconds=1),
        args=[standup.id],
        id=_job_id(standup.id),
        replace_existing=True,
    )
    logger.info("Standup %s scheduled for %s", standup.id, fire_at.isoformat())


def unschedule_standup(standup_id: int):
    if _scheduler and _scheduler.get_job(_job_id(standup_id)):
        _scheduler.remove_job(_job_id(standup_id))


def start_scheduler():
    global _scheduler
    if _scheduler and _scheduler.running:
        logger.info("Scheduler already running; skipping re-init.")
        return
    _scheduler = BackgroundScheduler(job_defaults=SCHEDULER_JOB_DEFAULTS)
    _scheduler.start()
    with Session(engine) as session:
        for standup in session.exec(select(Standup)).all():
            schedule_standup(standup)
    logger.info("Digest scheduler started")


def stop_scheduler():
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)


# -------------------------------------------------------------
# Health
# -------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "ok", "date": _clock.now().date().isoformat()}
