# backend/bookings.py
"""
Booking lifecycle.

    pending   -> confirmed | cancelled
    confirmed -> completed | cancelled
    pending / confirmed -> pending (reschedule)
    completed, cancelled: terminal

Slot reservation and booking creation happen in one transaction. The slot
is claimed with a conditional UPDATE (is_booked false -> true) or, for a time
the consultant never published, by inserting a booked slot row that the
unique (consultant, date, start) constraint protects. Either way the loser
of a race gets Conflict and nothing is written.
"""
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from cache import cache
from errors import Conflict, Forbidden, InvalidState, InvalidTransition, NotFound, ValidationError
from identity import ensure_client_profile
from models import (
    AvailabilitySlot, Booking, BookingDocument, Client, Consultant, Service, User,
    ROLE_ADMIN, STATUS_PENDING, STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED,
    PAYMENT_PAID, PAYMENT_PENDING, PAYMENT_STATUSES,
)
from notifications import notifier
from storage import FileStorage, IncomingFile

logger = logging.getLogger(__name__)

MAX_BOOKING_DURATION_MINUTES = 480  # 8 hours
DEFAULT_BOOKING_DURATION_MINUTES = 60

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED, STATUS_CANCELLED},
    STATUS_CONFIRMED: {STATUS_COMPLETED, STATUS_CANCELLED},
    STATUS_COMPLETED: set(),
    STATUS_CANCELLED: set(),
}
RESCHEDULABLE_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED}
# Bookings that hold their time on the consultant's calendar
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_COMPLETED)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


# Input parsing

def parse_booking_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not _DATE_RE.match(text):
        raise ValidationError("Invalid date format. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid calendar date: {text}")


def parse_booking_time(value) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    match = _TIME_RE.match(str(value or "").strip())
    if not match:
        raise ValidationError("Invalid time format. Use HH:mm (24-hour)")
    return time(int(match.group(1)), int(match.group(2)))


def parse_duration(value) -> int:
    if value is None or value == "":
        return DEFAULT_BOOKING_DURATION_MINUTES
    if isinstance(value, bool):
        raise ValidationError("Invalid duration")
    try:
        minutes = int(str(value).strip())
    except ValueError:
        raise ValidationError("Invalid duration. Must be a whole number of minutes")
    if minutes <= 0 or minutes > MAX_BOOKING_DURATION_MINUTES:
        raise ValidationError(f"Invalid duration. Must be between 1 and {MAX_BOOKING_DURATION_MINUTES} minutes")
    return minutes


def _end_of(day: date, start: time, minutes: int) -> time:
    start_dt = datetime.combine(day, start)
    end_dt = start_dt + timedelta(minutes=minutes)
    if end_dt.date() != day:
        raise ValidationError("Booking must end on the same day it starts")
    return end_dt.time()


# Slot reservation

def _overlapping_booking(db: Session, consultant_id: int, day: date, start: time, end: time,
                         exclude_booking_id: Optional[int] = None) -> Optional[Booking]:
    """An active booking of the consultant whose own start + duration overlaps [start, end)"""
    query = db.query(Booking).filter(
        Booking.consultant_id == consultant_id,
        Booking.date == day,
        Booking.status.in_(ACTIVE_STATUSES),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    for booking in query.all():
        booking_end = _end_of(day, booking.time, booking.duration)
        if booking.time < end and booking_end > start:
            return booking
    return None


def reserve_slot(db: Session, consultant_id: int, day: date, start: time, minutes: int,
                 exclude_booking_id: Optional[int] = None) -> AvailabilitySlot:
    """
    Claim the consultant's slot starting at day/start. Must be called inside
    the transaction that creates or moves the booking; raises Conflict when
    the slot is already taken or another booking runs into [start, start + minutes).
    """
    end = _end_of(day, start, minutes)

    slot = db.query(AvailabilitySlot).filter(
        AvailabilitySlot.consultant_id == consultant_id,
        AvailabilitySlot.date == day,
        AvailabilitySlot.start_time == start,
    ).first()

    overlap = _overlapping_booking(db, consultant_id, day, start, end, exclude_booking_id=exclude_booking_id)
    if overlap:
        overlap_end = _end_of(day, overlap.time, overlap.duration)
        raise Conflict(
            f"Consultant is already booked from {overlap.time:%H:%M} to {overlap_end:%H:%M}",
            code="slot_unavailable",
        )

    if slot is not None:
        claimed = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot.id,
            AvailabilitySlot.is_booked.is_(False),
        ).update({AvailabilitySlot.is_booked: True}, synchronize_session=False)
        if claimed != 1:
            raise Conflict("This time slot is already booked", code="slot_unavailable")
        db.expire(slot)
        return slot

    if config.REQUIRE_PUBLISHED_SLOTS:
        raise Conflict("The consultant has not published this time slot", code="slot_unavailable")

    slot = AvailabilitySlot(
        consultant_id=consultant_id,
        date=day,
        start_time=start,
        end_time=end,
        is_booked=True,
        published=False,
    )
    db.add(slot)
    try:
        db.flush()
    except IntegrityError:
        raise Conflict("This time slot is already booked", code="slot_unavailable")
    return slot


def release_slot(db: Session, slot_id: Optional[int]):
    """Make a reserved slot bookable again; implicit slots are removed"""
    if slot_id is None:
        return
    slot = db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id).first()
    if slot is None:
        return
    if slot.published:
        db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id).update(
            {AvailabilitySlot.is_booked: False}, synchronize_session=False
        )
        db.expire(slot)
    else:
        db.delete(slot)
        db.flush()


# Lookups and permissions

def _load_booking(db: Session, booking_id: int) -> Booking:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found")
    return booking


def _is_client(actor: User, booking: Booking) -> bool:
    return booking.client is not None and booking.client.user_id == actor.id


def _is_consultant(actor: User, booking: Booking) -> bool:
    return booking.consultant is not None and booking.consultant.user_id == actor.id


def _is_admin(actor: User) -> bool:
    return actor.role == ROLE_ADMIN


def _change_status(db: Session, booking: Booking, new_status: str, **values):
    """Compare-and-swap the status column along a legal edge"""
    observed = booking.status
    if new_status not in ALLOWED_TRANSITIONS.get(observed, set()):
        raise InvalidTransition(f"Cannot change booking from {observed} to {new_status}")

    values["status"] = new_status
    values["updated_at"] = datetime.utcnow()
    updated = db.query(Booking).filter(
        Booking.id == booking.id,
        Booking.status == observed,
    ).update(values, synchronize_session=False)
    if updated != 1:
        raise InvalidTransition("Booking was modified by another request; reload and retry")


def _commit_or_rollback(db: Session):
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def _describe(booking: Booking) -> str:
    service_name = booking.service.name if booking.service else "consultation"
    return f"{service_name} on {booking.date:%Y-%m-%d} at {booking.time:%H:%M}"


# Operations

def create_booking(
    db: Session,
    actor: User,
    consultant_id: int,
    service_id: int,
    date_value,
    time_value,
    duration=None,
    notes: Optional[str] = None,
    files: Optional[List[IncomingFile]] = None,
    storage: Optional[FileStorage] = None,
) -> Booking:
    booking_date = parse_booking_date(date_value)
    start = parse_booking_time(time_value)
    minutes = parse_duration(duration)
    files = files or []
    if files:
        storage = storage or FileStorage()
        if len(files) > config.MAX_FILES_PER_REQUEST:
            raise ValidationError(f"At most {config.MAX_FILES_PER_REQUEST} files per request")
        for incoming in files:
            storage.validate(incoming)

    consultant = db.query(Consultant).filter(Consultant.id == consultant_id).first()
    if not consultant:
        raise NotFound("Consultant not found")
    service = db.query(Service).filter(
        Service.id == service_id,
        Service.consultant_id == consultant.id,
        Service.is_active.is_(True),
    ).first()
    if not service:
        raise NotFound("Service not found for this consultant")

    stored = []
    try:
        client = ensure_client_profile(db, actor)
        slot = reserve_slot(db, consultant.id, booking_date, start, minutes)

        booking = Booking(
            client_id=client.id,
            consultant_id=consultant.id,
            service_id=service.id,
            slot_id=slot.id,
            date=booking_date,
            time=start,
            duration=minutes,
            status=STATUS_PENDING,
            payment_status=PAYMENT_PENDING,
            amount=service.price,
            notes=notes or "",
        )
        db.add(booking)
        db.flush()

        for incoming in files:
            saved = storage.save(incoming, folder=f"bookings/{booking.id}")
            stored.append(saved)
            db.add(_document_row(booking.id, saved, actor.id))

        db.commit()
    except Exception:
        db.rollback()
        for saved in stored:
            storage.discard(saved)
        raise

    db.refresh(booking)
    cache.invalidate_catalog(reason=f"booking {booking.id} created")
    logger.info(
        f"Booking {booking.id} created: client {client.id} with consultant {consultant.id} "
        f"on {booking_date} {start:%H:%M} for {minutes} minutes"
    )

    notifier.notify(actor.id, "booking", f"Your booking for {_describe(booking)} was received.")
    notifier.notify(consultant.user_id, "booking", f"New booking request: {_describe(booking)}.")
    return booking


def confirm_booking(db: Session, actor: User, booking_id: int) -> Booking:
    booking = _load_booking(db, booking_id)
    if not (_is_consultant(actor, booking) or _is_admin(actor)):
        raise Forbidden("Only the booking's consultant can confirm it")

    _change_status(db, booking, STATUS_CONFIRMED)
    _commit_or_rollback(db)
    db.refresh(booking)
    logger.info(f"Booking {booking.id} confirmed by user {actor.id}")

    notifier.notify(booking.client.user_id, "confirmation", f"Your booking for {_describe(booking)} is confirmed.")
    return booking


def complete_booking(db: Session, actor: User, booking_id: int) -> Booking:
    booking = _load_booking(db, booking_id)
    if not (_is_consultant(actor, booking) or _is_admin(actor)):
        raise Forbidden("Only the booking's consultant can complete it")
    if STATUS_COMPLETED not in ALLOWED_TRANSITIONS.get(booking.status, set()):
        raise InvalidTransition(f"Cannot change booking from {booking.status} to {STATUS_COMPLETED}")
    if config.REQUIRE_PAYMENT_FOR_COMPLETION and booking.payment_status != PAYMENT_PAID:
        raise InvalidTransition("Booking must be paid before it can be completed", code="payment_required")

    # The slot stays booked: it was used
    _change_status(db, booking, STATUS_COMPLETED)
    _commit_or_rollback(db)
    db.refresh(booking)
    logger.info(f"Booking {booking.id} completed by user {actor.id}")

    notifier.notify(
        booking.client.user_id, "review",
        f"Your session for {_describe(booking)} is complete. You can now leave a review.",
    )
    return booking


def cancel_booking(db: Session, actor: User, booking_id: int, reason: Optional[str] = None) -> Booking:
    booking = _load_booking(db, booking_id)
    if not (_is_client(actor, booking) or _is_consultant(actor, booking) or _is_admin(actor)):
        raise Forbidden("You are not authorized to cancel this booking")

    slot_id = booking.slot_id
    try:
        _change_status(db, booking, STATUS_CANCELLED, cancel_reason=reason, slot_id=None)
        release_slot(db, slot_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    cache.invalidate_catalog(reason=f"booking {booking.id} cancelled")
    logger.info(f"Booking {booking.id} cancelled by user {actor.id}")

    message = f"Booking for {_describe(booking)} was cancelled."
    if reason:
        message = f"{message} Reason: {reason}"
    notifier.notify(booking.client.user_id, "cancellation", message)
    notifier.notify(booking.consultant.user_id, "cancellation", message)
    return booking


def reschedule_booking(db: Session, actor: User, booking_id: int, date_value, time_value) -> Booking:
    new_date = parse_booking_date(date_value)
    new_time = parse_booking_time(time_value)

    booking = _load_booking(db, booking_id)
    if not (_is_client(actor, booking) or _is_consultant(actor, booking) or _is_admin(actor)):
        raise Forbidden("You are not authorized to reschedule this booking")
    observed = booking.status
    if observed not in RESCHEDULABLE_STATUSES:
        raise InvalidTransition(f"Cannot reschedule a {observed} booking")
    if booking.date == new_date and booking.time == new_time:
        raise ValidationError("Booking is already scheduled at this time")

    old_slot_id = booking.slot_id
    try:
        new_slot = reserve_slot(
            db, booking.consultant_id, new_date, new_time, booking.duration,
            exclude_booking_id=booking.id,
        )
        updated = db.query(Booking).filter(
            Booking.id == booking.id,
            Booking.status == observed,
        ).update({
            Booking.date: new_date,
            Booking.time: new_time,
            Booking.slot_id: new_slot.id,
            Booking.status: STATUS_PENDING,
            Booking.reminder_sent: False,
            Booking.updated_at: datetime.utcnow(),
        }, synchronize_session=False)
        if updated != 1:
            raise InvalidTransition("Booking was modified by another request; reload and retry")
        release_slot(db, old_slot_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    cache.invalidate_catalog(reason=f"booking {booking.id} rescheduled")
    logger.info(f"Booking {booking.id} rescheduled to {new_date} {new_time:%H:%M} by user {actor.id}")

    message = f"Booking rescheduled to {_describe(booking)} and awaiting confirmation."
    notifier.notify(booking.client.user_id, "booking", message)
    notifier.notify(booking.consultant.user_id, "booking", message)
    return booking


def _document_row(booking_id: int, saved, uploaded_by: int) -> BookingDocument:
    return BookingDocument(
        booking_id=booking_id,
        filename=saved.filename,
        original_name=saved.original_name,
        path=saved.path,
        mime_type=saved.mime_type,
        size=saved.size,
        uploaded_by=uploaded_by,
    )


def attach_documents(db: Session, actor: User, booking_id: int, files: List[IncomingFile],
                     storage: Optional[FileStorage] = None) -> Booking:
    """Append documents to a booking. Documents are never removed."""
    booking = _load_booking(db, booking_id)
    if not _is_client(actor, booking):
        raise Forbidden("Only the booking's client can attach documents")
    if booking.status == STATUS_CANCELLED:
        raise InvalidState("Cannot attach documents to a cancelled booking")
    if not files:
        raise ValidationError("No files uploaded")

    storage = storage or FileStorage()
    stored = storage.save_all(files, folder=f"bookings/{booking.id}")
    try:
        for saved in stored:
            db.add(_document_row(booking.id, saved, actor.id))
        db.commit()
    except Exception:
        db.rollback()
        for saved in stored:
            storage.discard(saved)
        raise

    db.refresh(booking)
    logger.info(f"Attached {len(stored)} documents to booking {booking.id}")
    return booking


def update_payment_status(db: Session, booking_id: int, payment_status: str) -> Booking:
    """Only the payment webhook path calls this"""
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status: {payment_status}")
    booking = _load_booking(db, booking_id)
    booking.payment_status = payment_status
    booking.updated_at = datetime.utcnow()
    _commit_or_rollback(db)
    db.refresh(booking)
    logger.info(f"Booking {booking.id} payment status set to {payment_status}")
    return booking


def apply_status_update(db: Session, actor: User, booking_id: int, status: Optional[str],
                        payment_status: Optional[str] = None, reason: Optional[str] = None) -> Booking:
    """Dispatch a generic status update request to the matching transition"""
    if payment_status is not None:
        raise Forbidden("Payment status is set by the payment provider only")
    if not status:
        raise ValidationError("status is required")

    if status == STATUS_CONFIRMED:
        return confirm_booking(db, actor, booking_id)
    if status == STATUS_COMPLETED:
        return complete_booking(db, actor, booking_id)
    if status == STATUS_CANCELLED:
        return cancel_booking(db, actor, booking_id, reason)
    if status == STATUS_PENDING:
        booking = _load_booking(db, booking_id)
        raise InvalidTransition(f"Cannot change booking from {booking.status} to {STATUS_PENDING}")
    raise ValidationError(f"Unknown booking status: {status}")


# Reads

def get_booking(db: Session, actor: User, booking_id: int) -> Booking:
    booking = _load_booking(db, booking_id)
    if not (_is_client(actor, booking) or _is_consultant(actor, booking) or _is_admin(actor)):
        raise Forbidden("You are not authorized to view this booking")
    return booking


def list_client_bookings(db: Session, actor: User, status: Optional[str] = None) -> List[Booking]:
    client = db.query(Client).filter(Client.user_id == actor.id).first()
    if not client:
        return []
    query = db.query(Booking).filter(Booking.client_id == client.id)
    if status:
        query = query.filter(Booking.status == status)
    return query.order_by(Booking.date.desc(), Booking.time.desc()).all()


def list_consultant_bookings(db: Session, actor: User, status: Optional[str] = None) -> List[Booking]:
    consultant = db.query(Consultant).filter(Consultant.user_id == actor.id).first()
    if not consultant:
        return []
    query = db.query(Booking).filter(Booking.consultant_id == consultant.id)
    if status:
        query = query.filter(Booking.status == status)
    return query.order_by(Booking.date.desc(), Booking.time.desc()).all()


def list_bookings_in_range(db: Session, actor: User, consultant_id: int, start_date, end_date) -> List[Booking]:
    start = parse_booking_date(start_date)
    end = parse_booking_date(end_date)
    if start > end:
        raise ValidationError("start_date must not be after end_date")

    consultant = db.query(Consultant).filter(Consultant.id == consultant_id).first()
    if not consultant:
        raise NotFound("Consultant not found")
    if consultant.user_id != actor.id and not _is_admin(actor):
        raise Forbidden("Not authorized to view this consultant's bookings")

    return db.query(Booking).filter(
        Booking.consultant_id == consultant_id,
        Booking.date >= start,
        Booking.date <= end,
    ).order_by(Booking.date, Booking.time).all()
