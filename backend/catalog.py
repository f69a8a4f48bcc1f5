# backend/catalog.py
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, contains_eager, selectinload

from cache import cache
from errors import Conflict, Forbidden, NotFound
from models import AvailabilitySlot, Consultant, Service, User, ROLE_ADMIN, ROLE_CONSULTANT
from schemas import (
    AvailabilityRequest, ConsultantDetail, ConsultantProfileUpdate, ConsultantSummary,
    ServiceCreate, ServiceResponse, ServiceUpdate, SlotResponse,
)

logger = logging.getLogger(__name__)


def get_consultant_for_user(db: Session, user: User) -> Optional[Consultant]:
    return db.query(Consultant).filter(Consultant.user_id == user.id).first()


def ensure_consultant_profile(db: Session, user: User) -> Consultant:
    """Consultant profiles are created lazily on the consultant's first write"""
    if user.role != ROLE_CONSULTANT:
        raise Forbidden("Only consultants can manage a consultant profile")

    consultant = get_consultant_for_user(db, user)
    if consultant:
        return consultant

    consultant = Consultant(user_id=user.id)
    db.add(consultant)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        consultant = db.query(Consultant).filter(Consultant.user_id == user.id).one()
    else:
        logger.info(f"Created consultant profile {consultant.id} for user {user.id}")
    return consultant


def update_consultant_profile(db: Session, user: User, data: ConsultantProfileUpdate) -> ConsultantDetail:
    consultant = ensure_consultant_profile(db, user)
    if data.specialty is not None:
        consultant.specialty = data.specialty
    if data.description is not None:
        consultant.description = data.description
    db.commit()
    cache.invalidate_catalog(reason=f"consultant {consultant.id} profile update")
    return get_consultant(db, consultant.id)


def _summary_fields(consultant: Consultant) -> dict:
    # Joined from User at read time; nothing here is stored on Consultant
    user = consultant.user
    return {
        "id": consultant.id,
        "user_id": consultant.user_id,
        "name": user.name if user else "Unknown Consultant",
        "email": user.email if user else "",
        "avatar": user.avatar if user else None,
        "specialty": consultant.specialty or "General Consulting",
        "description": consultant.description,
        "average_rating": consultant.average_rating or 0.0,
        "review_count": consultant.review_count or 0,
        "services": [ServiceResponse.model_validate(s) for s in consultant.services if s.is_active],
    }


def list_consultants(db: Session, specialty: Optional[str] = None) -> List[ConsultantSummary]:
    # Profiles of users no longer in the consultant role stay for their bookings but are not listed
    query = db.query(Consultant).join(Consultant.user).filter(User.role == ROLE_CONSULTANT).options(
        contains_eager(Consultant.user), selectinload(Consultant.services)
    )
    if specialty:
        query = query.filter(Consultant.specialty.ilike(f"%{specialty}%"))
    consultants = query.order_by(Consultant.average_rating.desc(), Consultant.id).all()
    return [ConsultantSummary(**_summary_fields(c)) for c in consultants]


def get_consultant_model(db: Session, consultant_id: int) -> Consultant:
    consultant = db.query(Consultant).filter(Consultant.id == consultant_id).first()
    if not consultant:
        raise NotFound("Consultant not found")
    return consultant


def get_consultant(db: Session, consultant_id: int) -> ConsultantDetail:
    consultant = get_consultant_model(db, consultant_id)
    slots = sorted(consultant.slots, key=lambda s: (s.date, s.start_time))
    return ConsultantDetail(
        **_summary_fields(consultant),
        slots=[SlotResponse.model_validate(s) for s in slots],
    )


# Services

def _owned_service(db: Session, actor: User, service_id: int) -> Service:
    service = db.query(Service).filter(Service.id == service_id, Service.is_active.is_(True)).first()
    if not service:
        raise NotFound("Service not found")
    if actor.role == ROLE_ADMIN:
        return service
    consultant = get_consultant_for_user(db, actor)
    if not consultant or consultant.id != service.consultant_id:
        raise Forbidden("Not authorized to modify this service")
    return service


def create_service(db: Session, actor: User, data: ServiceCreate) -> Service:
    consultant = ensure_consultant_profile(db, actor)
    service = Service(
        consultant_id=consultant.id,
        name=data.name,
        description=data.description,
        price=data.price,
        duration=data.duration,
        category=data.category or "General",
    )
    db.add(service)
    db.commit()
    db.refresh(service)
    cache.invalidate_catalog(reason="service created")
    logger.info(f"Consultant {consultant.id} created service {service.id}")
    return service


def update_service(db: Session, actor: User, service_id: int, data: ServiceUpdate) -> Service:
    service = _owned_service(db, actor, service_id)
    for field_name, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(service, field_name, value)
    db.commit()
    db.refresh(service)
    cache.invalidate_catalog(reason=f"service {service_id} updated")
    return service


def delete_service(db: Session, actor: User, service_id: int):
    """Soft delete; bookings that reference the service keep a valid row"""
    service = _owned_service(db, actor, service_id)
    service.is_active = False
    db.commit()
    cache.invalidate_catalog(reason=f"service {service_id} deleted")
    logger.info(f"Service {service_id} deactivated by user {actor.id}")


def get_service(db: Session, service_id: int) -> Service:
    service = db.query(Service).filter(Service.id == service_id, Service.is_active.is_(True)).first()
    if not service:
        raise NotFound("Service not found")
    return service


def list_services(db: Session, category: Optional[str] = None, consultant_id: Optional[int] = None) -> List[Service]:
    query = db.query(Service).filter(Service.is_active.is_(True))
    if category:
        query = query.filter(Service.category == category)
    if consultant_id:
        query = query.filter(Service.consultant_id == consultant_id)
    return query.order_by(Service.id).all()


def list_services_grouped(db: Session) -> Dict[str, List[Service]]:
    grouped = defaultdict(list)
    for service in list_services(db):
        grouped[service.category or "General"].append(service)
    return dict(grouped)


# Availability

def add_availability(db: Session, actor: User, request: AvailabilityRequest) -> List[AvailabilitySlot]:
    consultant = ensure_consultant_profile(db, actor)
    existing = {
        (slot.date, slot.start_time): slot
        for slot in db.query(AvailabilitySlot).filter(AvailabilitySlot.consultant_id == consultant.id).all()
    }

    created = []
    for item in request.slots:
        if (item.date, item.start_time) in existing:
            continue
        slot = AvailabilitySlot(
            consultant_id=consultant.id,
            date=item.date,
            start_time=item.start_time,
            end_time=item.end_time,
            is_booked=False,
        )
        db.add(slot)
        existing[(item.date, item.start_time)] = slot
        created.append(slot)

    db.commit()
    for slot in created:
        db.refresh(slot)
    cache.invalidate_catalog(reason="availability published")
    logger.info(f"Consultant {consultant.id} published {len(created)} slots")
    return created


def remove_availability(db: Session, actor: User, slot_id: int):
    consultant = ensure_consultant_profile(db, actor)
    deleted = db.query(AvailabilitySlot).filter(
        AvailabilitySlot.id == slot_id,
        AvailabilitySlot.consultant_id == consultant.id,
        AvailabilitySlot.is_booked.is_(False),
    ).delete(synchronize_session=False)

    if not deleted:
        db.rollback()
        slot = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.consultant_id == consultant.id,
        ).first()
        if not slot:
            raise NotFound("Slot not found")
        raise Conflict("Slot is booked and cannot be removed", code="slot_booked")

    db.commit()
    cache.invalidate_catalog(reason=f"slot {slot_id} removed")
