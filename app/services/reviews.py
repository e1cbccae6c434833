"""Customer reviews of the tradesperson who completed their job."""

from typing import Any

from beanie import PydanticObjectId
from beanie.operators import Set
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, InvalidStateTransitionError
from app.core.logging import get_logger
from app.core.security import Principal
from app.models.review import Review
from app.models.user import User
from app.services import jobs as jobs_service

log = get_logger(__name__)


async def recompute_rating(tradesperson_id: PydanticObjectId) -> tuple[float, int]:
    """Rebuild average_rating and total_reviews from every published review."""
    reviews = await Review.find(Review.tradesperson_id == tradesperson_id, Review.status == "published").to_list()
    total = len(reviews)
    average = round(sum(r.rating for r in reviews) / total, 1) if total else 0
    await User.find_one(User.id == tradesperson_id).update(
        Set({User.average_rating: average, User.total_reviews: total}),
    )
    return average, total


async def create_review(principal: Principal, job_id: PydanticObjectId, data: dict[str, Any]) -> Review:
    job = await jobs_service.get_job_or_404(job_id)
    if not jobs_service.is_owner(job, principal):
        raise ForbiddenError("Only the job owner can review this job")
    if job.status != "completed":
        raise InvalidStateTransitionError("job", job.status, ["completed"])
    tradesperson_id = data.pop("tradesperson_id", None) or job.selected_tradesperson_id
    if not job.selected_tradesperson_id or tradesperson_id != job.selected_tradesperson_id:
        raise BadRequestError("You can only review the tradesperson who completed this job")
    review = Review(
        job_id=job.id,
        tradesperson_id=tradesperson_id,
        reviewer_id=PydanticObjectId(principal.user_id),
        **data,
    )
    try:
        await review.insert()
    except DuplicateKeyError:
        raise ConflictError("You have already reviewed this job")
    average, total = await recompute_rating(tradesperson_id)
    log.info("review_created", review_id=str(review.id), rating=review.rating, average_rating=average, total_reviews=total)
    return review


async def list_reviews(
    tradesperson_id: PydanticObjectId | None = None,
    job_id: PydanticObjectId | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Review], int]:
    filters: list[Any] = [Review.status == "published"]
    if tradesperson_id:
        filters.append(Review.tradesperson_id == tradesperson_id)
    if job_id:
        filters.append(Review.job_id == job_id)
    total = await Review.find(*filters).count()
    items = await Review.find(*filters).sort(-Review.created_at).skip(offset).limit(limit).to_list()
    return items, total


def review_to_dict(review: Review) -> dict[str, Any]:
    return {
        "id": str(review.id),
        "job_id": str(review.job_id),
        "tradesperson_id": str(review.tradesperson_id),
        "reviewer_id": str(review.reviewer_id),
        "rating": review.rating,
        "title": review.title,
        "content": review.content,
        "categories": review.categories.model_dump(),
        "created_at": review.created_at.isoformat(),
    }
