# backend/reviews.py
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cache import cache
from errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from models import Booking, Client, Consultant, Review, User, ROLE_ADMIN, STATUS_COMPLETED
from notifications import notifier

logger = logging.getLogger(__name__)


def compute_rating(ratings) -> float:
    ratings = list(ratings)
    if not ratings:
        return 0.0
    return sum(ratings) / len(ratings)


def recompute_consultant_rating(db: Session, consultant_id: int):
    """
    Refresh the consultant's average rating and review count from the
    review table. Runs inside the caller's transaction.
    """
    ratings = [rating for (rating,) in db.query(Review.rating).filter(Review.consultant_id == consultant_id)]
    average = compute_rating(ratings)
    db.query(Consultant).filter(Consultant.id == consultant_id).update(
        {Consultant.average_rating: average, Consultant.review_count: len(ratings)},
        synchronize_session=False,
    )
    return average, len(ratings)


def _validate_rating(rating: Optional[int]):
    if rating is None:
        return
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be an integer from 1 to 5")


def create_review(db: Session, actor: User, booking_id: int, rating: int, comment: Optional[str] = None) -> Review:
    _validate_rating(rating)
    if rating is None:
        raise ValidationError("Rating is required")

    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found")
    if booking.client is None or booking.client.user_id != actor.id:
        raise Forbidden("Only the booking's client can review it")
    if booking.status != STATUS_COMPLETED:
        raise InvalidState("Cannot review a booking that is not completed")
    if db.query(Review.id).filter(Review.booking_id == booking.id).first():
        raise Conflict("You have already reviewed this booking", code="review_exists")

    review = Review(
        booking_id=booking.id,
        consultant_id=booking.consultant_id,
        client_id=booking.client_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    try:
        db.flush()
        recompute_consultant_rating(db, booking.consultant_id)
        db.commit()
    except IntegrityError:
        # Unique booking_id: a concurrent request got there first
        db.rollback()
        raise Conflict("You have already reviewed this booking", code="review_exists")
    except Exception:
        db.rollback()
        raise

    db.refresh(review)
    cache.invalidate_catalog(reason="review created")
    logger.info(f"Review {review.id} created for booking {booking.id} with rating {rating}")

    notifier.notify(booking.consultant.user_id, "review", f"You received a new {rating}-star review.")
    return review


def _load_review(db: Session, review_id: int) -> Review:
    review = db.query(Review).filter(Review.id == review_id).first()
    if not review:
        raise NotFound("Review not found")
    return review


def _is_author(actor: User, review: Review) -> bool:
    return review.client is not None and review.client.user_id == actor.id


def update_review(db: Session, actor: User, review_id: int, rating: Optional[int] = None,
                  comment: Optional[str] = None) -> Review:
    _validate_rating(rating)
    review = _load_review(db, review_id)
    if not _is_author(actor, review):
        raise Forbidden("Not authorized to update this review")

    if rating is not None:
        review.rating = rating
    if comment is not None:
        review.comment = comment
    try:
        db.flush()
        recompute_consultant_rating(db, review.consultant_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(review)
    cache.invalidate_catalog(reason=f"review {review_id} updated")
    return review


def delete_review(db: Session, actor: User, review_id: int):
    review = _load_review(db, review_id)
    if not (_is_author(actor, review) or actor.role == ROLE_ADMIN):
        raise Forbidden("Not authorized to delete this review")

    consultant_id = review.consultant_id
    try:
        db.delete(review)
        db.flush()
        recompute_consultant_rating(db, consultant_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    cache.invalidate_catalog(reason=f"review {review_id} deleted")
    logger.info(f"Review {review_id} deleted by user {actor.id}")


def list_consultant_reviews(db: Session, consultant_id: int) -> List[Review]:
    if not db.query(Consultant.id).filter(Consultant.id == consultant_id).first():
        raise NotFound("Consultant not found")
    return db.query(Review).filter(Review.consultant_id == consultant_id).order_by(
        Review.created_at.desc(), Review.id.desc()
    ).all()


def list_client_reviews(db: Session, actor: User) -> List[Review]:
    client = db.query(Client).filter(Client.user_id == actor.id).first()
    if not client:
        return []
    return db.query(Review).filter(Review.client_id == client.id).order_by(
        Review.created_at.desc(), Review.id.desc()
    ).all()
