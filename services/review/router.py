"""
services/review/router.py
Learner reviews of completed sessions and the mentor's denormalized rating.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.notification.dispatch import notify
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import Booking, BookingStatus, Mentor, NotificationType, Review, User
from shared.schemas.schemas import ReviewCreateRequest, ReviewResponse, dump, ok

router = APIRouter(prefix="/reviews", tags=["Reviews"])

DEFAULT_RATING = 5.0


async def recompute_rating(db: AsyncSession, mentor: Mentor) -> None:
    """Average of visible reviews; a mentor with none shows the default rating."""
    average, count = (
        await db.execute(
            select(func.avg(Review.rating), func.count(Review.id))
            .where(Review.mentor_id == mentor.id, Review.is_visible.is_(True))
        )
    ).one()
    mentor.review_count = count
    mentor.rating = round(float(average), 2) if count else DEFAULT_RATING


async def _reviewable_booking(db: AsyncSession, booking_id: str, reviewer: User) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.user_id != reviewer.id:
        raise HTTPException(status_code=403, detail="You can only review your own bookings")
    if booking.status != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Booking must be completed before reviewing")
    if await db.scalar(select(Review.id).where(Review.booking_id == booking.id)):
        raise HTTPException(status_code=409, detail="You have already reviewed this booking")
    return booking


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """One review per completed booking, written by the learner who booked it."""
    booking = await _reviewable_booking(db, data.booking_id, current_user)
    mentor = await db.get(Mentor, booking.mentor_id)

    review = Review(
        booking_id=booking.id,
        user_id=current_user.id,
        mentor_id=mentor.id,
        rating=data.rating,
        comment=data.comment,
    )
    db.add(review)
    await db.flush()
    await recompute_rating(db, mentor)

    await notify(
        db, await db.get(User, mentor.user_id), NotificationType.REVIEW_RECEIVED,
        booking_id=booking.id, link=f"/mentors/{mentor.id}", rating=data.rating,
    )
    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok(dump(ReviewResponse, review), message="Thanks for your review!")


@router.delete("/{review_id}")
async def hide_review(
    review_id: str,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Admin: hide a review from the public profile and drop it from the rating."""
    review = await db.get(Review, review_id)
    if review is None:
        raise HTTPException(status_code=404, detail="Review not found")

    review.is_visible = False
    await db.flush()
    mentor = await db.get(Mentor, review.mentor_id)
    await recompute_rating(db, mentor)
    await db.commit()
    await RedisCache(redis).invalidate_mentor(mentor.id)
    return ok(message="Review hidden successfully")
