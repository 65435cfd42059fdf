"""
Time-driven sweeper.

Finds bookings whose deadlines passed without anyone acting and moves them
on: confirmed bookings nobody checked in become ``no_show``, checked-in
bookings past their service end are auto-completed, and unpaid pending
bookings past the same no-show deadline expire. Each row is re-read and
changed with its own conditional update and commit, so a sweep never holds
one long transaction and never overwrites a concurrent check-in or cancel.

Runs in-process on an APScheduler BackgroundScheduler; ``flask sweep`` and
``POST /admin/sweeper/run`` trigger a pass by hand.
"""
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import current_app
from sqlalchemy import func

from models import db
from models.booking import Booking
from services.errors import ValidationError
from services.notifications import PostCommitHooks, booking_context, notify_parties
from services.service_config import rules_for
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)

JOB_ID = "booking-sweeper"
PERIODS = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}


@dataclass
class SweepSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    no_shows: int = 0
    auto_completed: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    booking_ids: dict = field(default_factory=lambda: {"no_show": [], "completed": [], "expired": []})

    @property
    def changed(self) -> int:
        return self.no_shows + self.auto_completed + self.expired

    def to_dict(self):
        out = asdict(self)
        out["started_at"] = self.started_at.isoformat()
        out["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        out["changed"] = self.changed
        return out


# ---------- eligibility (pure) ----------

def no_show_deadline(booking, rules) -> datetime:
    return booking.start_time + timedelta(minutes=rules.grace_period_minutes + rules.duration_minutes)


def is_no_show_eligible(booking, rules, now) -> bool:
    return (
        booking.status == "confirmed"
        and booking.checked_in_at is None
        and now > no_show_deadline(booking, rules)
    )


def is_auto_complete_eligible(booking, rules, now) -> bool:
    return (
        booking.status == "checked_in"
        and rules.auto_complete_on_duration
        and booking.service_end_time is not None
        and booking.service_end_time < now
    )


def is_expiry_eligible(booking, rules, now) -> bool:
    return booking.status == "pending" and now > no_show_deadline(booking, rules)


# ---------- per-row transitions ----------

def _apply(booking_id, expected_status, values, extra_filter=None) -> int:
    q = Booking.query.filter(Booking.id == booking_id, Booking.status == expected_status)
    if extra_filter is not None:
        q = q.filter(extra_filter)
    return q.update(values, synchronize_session=False)


def _notify(booking_id, kind, **extra):
    booking = db.session.get(Booking, booking_id)
    hooks = PostCommitHooks()
    notify_parties(hooks, booking, kind, booking_context(booking, **extra))
    hooks.run()


def _mark_no_show(booking_id, now) -> bool:
    # re-read: the row may have been checked in since the candidate query
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        return False
    rules = rules_for(booking.service)
    if not is_no_show_eligible(booking, rules, now):
        return False

    deadline = no_show_deadline(booking, rules)
    overdue = int((now - deadline).total_seconds() // 60)
    reason = (
        f"Customer did not check in within {rules.grace_period_minutes} minutes grace "
        f"plus the {rules.duration_minutes} minute service window"
    )
    rows = _apply(booking_id, "confirmed", {
        "status": "no_show",
        "seat_no": None,
        "no_show_marked_at": now,
        "no_show_reason": reason,
        "no_show_details": {
            "gracePeriodMinutes": rules.grace_period_minutes,
            "serviceDurationMinutes": rules.duration_minutes,
            "scheduledStart": booking.start_time.isoformat(),
            "deadline": deadline.isoformat(),
            "minutesOverdue": overdue,
            "autoProcessed": True,
        },
    }, Booking.checked_in_at.is_(None))
    if rows == 0:
        db.session.rollback()
        return False
    log_event("BOOKING_NO_SHOW", entity="booking", entity_id=booking_id,
              metadata={"minutes_overdue": overdue, "auto": True}, source="sweeper", commit=False)
    db.session.commit()
    _notify(booking_id, "booking_no_show", reason=reason)
    return True


def _auto_complete(booking_id, now) -> bool:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        return False
    rules = rules_for(booking.service)
    if not is_auto_complete_eligible(booking, rules, now):
        return False

    started = booking.service_started_at or booking.checked_in_at
    end = booking.service_end_time
    rows = _apply(booking_id, "checked_in", {
        "status": "completed",
        "completed_at": now,
        "auto_completed": True,
        "completion_method": "automatic",
        "actual_duration": int((end - started).total_seconds() // 60) if started else rules.duration_minutes,
        "completion_details": {
            "scheduledEnd": end.isoformat(),
            "minutesPastEnd": int((now - end).total_seconds() // 60),
            "autoProcessed": True,
        },
    })
    if rows == 0:
        db.session.rollback()
        return False
    log_event("BOOKING_COMPLETE", entity="booking", entity_id=booking_id,
              metadata={"auto": True}, source="sweeper", commit=False)
    db.session.commit()
    _notify(booking_id, "booking_completed")
    return True


def _expire(booking_id, now) -> bool:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        return False
    rules = rules_for(booking.service)
    if not is_expiry_eligible(booking, rules, now):
        return False

    rows = _apply(booking_id, "pending", {"status": "expired", "seat_no": None, "expired_at": now})
    if rows == 0:
        db.session.rollback()
        return False
    log_event("BOOKING_EXPIRE", entity="booking", entity_id=booking_id,
              metadata={"payment_status": booking.payment_status}, source="sweeper", commit=False)
    db.session.commit()
    _notify(booking_id, "booking_expired")
    return True


def _candidate_ids(status, *criteria):
    rows = db.session.query(Booking.id).filter(Booking.status == status, *criteria)
    ids = [booking_id for (booking_id,) in rows.order_by(Booking.start_time.asc())]
    # end the read transaction before touching rows one by one
    db.session.commit()
    return ids


def _run_pass(summary, ids, step, counter, bucket, now):
    for booking_id in ids:
        try:
            changed = step(booking_id, now)
        except Exception:
            db.session.rollback()
            summary.errors += 1
            logger.exception("sweeper: booking %s failed in %s", booking_id, step.__name__)
            continue
        if changed:
            setattr(summary, counter, getattr(summary, counter) + 1)
            summary.booking_ids[bucket].append(booking_id)
        else:
            summary.skipped += 1


def run_sweep(now=None) -> SweepSummary:
    """One sweep over "now"; safe to run concurrently with itself."""
    now = now or utcnow()
    summary = SweepSummary(started_at=now)

    # start_time < now is a cheap prefilter; the exact deadline depends on each service
    _run_pass(summary, _candidate_ids("confirmed", Booking.checked_in_at.is_(None), Booking.start_time < now),
              _mark_no_show, "no_shows", "no_show", now)
    _run_pass(summary, _candidate_ids("checked_in", Booking.service_end_time < now),
              _auto_complete, "auto_completed", "completed", now)
    _run_pass(summary, _candidate_ids("pending", Booking.start_time < now),
              _expire, "expired", "expired", now)

    summary.finished_at = utcnow()
    if summary.changed or summary.errors:
        logger.info("sweeper: %s no-show, %s completed, %s expired, %s errors",
                    summary.no_shows, summary.auto_completed, summary.expired, summary.errors)
    return summary


# ---------- scheduling ----------

class SweeperService:
    """Runs ``run_sweep`` every few minutes inside an app context."""

    def __init__(self, app, interval_minutes=5):
        self.app = app
        self.interval_minutes = max(1, int(interval_minutes))
        self._scheduler = None
        self._lock = threading.Lock()
        self.last_run_at = None
        self.last_summary = None
        self.last_error = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        with self._lock:
            if self.running:
                return
            self._scheduler = BackgroundScheduler(timezone=timezone.utc, daemon=True)
            self._scheduler.add_job(
                self.run_once,
                trigger=IntervalTrigger(minutes=self.interval_minutes),
                id=JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.start()
            logger.info("Sweeper scheduled every %s minute(s)", self.interval_minutes)

    def stop(self):
        with self._lock:
            if self._scheduler is not None:
                self._scheduler.shutdown(wait=False)
                self._scheduler = None
                logger.info("Sweeper stopped")

    def run_once(self, now=None) -> SweepSummary:
        with self.app.app_context():
            try:
                summary = run_sweep(now)
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("sweeper run failed")
                raise
            finally:
                self.last_run_at = utcnow()
                self.runs += 1
            self.last_summary = summary
            self.last_error = None
            return summary

    def status(self) -> dict:
        next_run = None
        if self.running:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "running": self.running,
            "interval_minutes": self.interval_minutes,
            "runs": self.runs,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": next_run,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
            "last_error": self.last_error,
        }


def get_sweeper() -> SweeperService:
    return current_app.extensions["sweeper"]


# ---------- reporting ----------

def no_show_statistics(store_id=None, period="30d", now=None) -> dict:
    """No-show rate over a trailing period, split auto/manual and per service."""
    if period not in PERIODS:
        raise ValidationError(f"Unknown period '{period}'. Use one of: {', '.join(PERIODS)}")
    now = now or utcnow()
    since = now - timedelta(days=PERIODS[period])

    q = Booking.query.filter(Booking.start_time >= since, Booking.start_time <= now)
    if store_id is not None:
        q = q.filter(Booking.store_id == store_id)

    total = q.count()
    no_shows = q.filter(Booking.status == "no_show").all()
    auto = sum(1 for b in no_shows if (b.no_show_details or {}).get("autoProcessed"))

    per_service = {}
    for service_id, status, count in (
        q.with_entities(Booking.service_id, Booking.status, func.count(Booking.id))
        .group_by(Booking.service_id, Booking.status)
    ):
        entry = per_service.setdefault(service_id, {"service_id": service_id, "total": 0, "no_shows": 0})
        entry["total"] += count
        if status == "no_show":
            entry["no_shows"] += count
    for entry in per_service.values():
        entry["no_show_rate"] = round(entry["no_shows"] * 100.0 / entry["total"], 2) if entry["total"] else 0.0

    return {
        "period": period,
        "since": since.isoformat(),
        "store_id": store_id,
        "total_bookings": total,
        "no_shows": len(no_shows),
        "auto_detected": auto,
        "manual": len(no_shows) - auto,
        "no_show_rate": round(len(no_shows) * 100.0 / total, 2) if total else 0.0,
        "by_service": sorted(per_service.values(), key=lambda e: e["service_id"]),
    }
