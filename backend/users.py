# backend/users.py
"""
Account management: the signed-in user's own profile, and the admin-only
user listing and role assignment. Roles are only ever changed here or by
the ADMIN_EMAILS bootstrap at login.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from cache import cache
from catalog import ensure_consultant_profile, get_consultant_for_user
from errors import InvalidState, NotFound, ValidationError
from identity import ensure_client_profile
from models import Booking, User, ROLE_ADMIN, ROLE_CLIENT, ROLE_CONSULTANT, STATUS_CONFIRMED, STATUS_PENDING
from schemas import AdminUserUpdate, UserProfileUpdate

logger = logging.getLogger(__name__)


def _apply_profile_fields(user: User, data: UserProfileUpdate) -> bool:
    changed = False
    for field in ("name", "phone", "avatar"):
        value = getattr(data, field)
        if value is not None and value != getattr(user, field):
            setattr(user, field, value.strip() if isinstance(value, str) else value)
            changed = True
    return changed


def update_profile(db: Session, user: User, data: UserProfileUpdate) -> User:
    changed = _apply_profile_fields(user, data)
    if not changed:
        return user
    db.commit()
    db.refresh(user)
    if user.role == ROLE_CONSULTANT:
        # Consultant listings show the user's name and avatar
        cache.invalidate_catalog(reason=f"profile update of user {user.id}")
    logger.info(f"User {user.id} updated their profile")
    return user


def list_users(db: Session, role: Optional[str] = None) -> List[User]:
    query = db.query(User)
    if role:
        query = query.filter(User.role == role)
    return query.order_by(User.id).all()


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found")
    return user


def _has_open_consultant_bookings(db: Session, user: User) -> bool:
    consultant = get_consultant_for_user(db, user)
    if consultant is None:
        return False
    return db.query(Booking).filter(
        Booking.consultant_id == consultant.id,
        Booking.status.in_((STATUS_PENDING, STATUS_CONFIRMED)),
    ).first() is not None


def _change_role(db: Session, admin: User, user: User, role: str):
    if user.id == admin.id and role != ROLE_ADMIN:
        raise ValidationError("Admins cannot remove their own admin role")
    if user.role == ROLE_CONSULTANT and _has_open_consultant_bookings(db, user):
        raise InvalidState("Consultant has pending or confirmed bookings; cancel or complete them first")

    previous = user.role
    user.role = role
    if role == ROLE_CONSULTANT:
        ensure_consultant_profile(db, user)
    elif role == ROLE_CLIENT:
        ensure_client_profile(db, user)
    logger.info(f"Admin {admin.id} changed role of user {user.id} from {previous} to {role}")


def update_user_by_admin(db: Session, admin: User, user_id: int, data: AdminUserUpdate) -> User:
    user = get_user(db, user_id)
    role_changed = data.role is not None and data.role != user.role
    if role_changed:
        _change_role(db, admin, user, data.role)
    _apply_profile_fields(user, data)

    db.commit()
    db.refresh(user)
    if role_changed or user.role == ROLE_CONSULTANT:
        cache.invalidate_catalog(reason=f"admin update of user {user.id}")
    return user
