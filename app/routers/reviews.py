from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.pagination import page_of, paginate
from app.core.security import Principal
from app.deps import parse_object_id, require_role
from app.models.review import ReviewCategories
from app.services import reviews as reviews_service

router = APIRouter()


class ReviewCreate(BaseModel):
    job_id: str
    tradesperson_id: str | None = None
    rating: int = Field(ge=1, le=5)
    title: str = Field(min_length=1, max_length=100)
    content: str = Field(min_length=1, max_length=1000)
    categories: ReviewCategories = Field(default_factory=ReviewCategories)


@router.post("")
async def review_create(body: ReviewCreate, principal: Principal = Depends(require_role("customer"))):
    data = body.model_dump(exclude={"job_id", "tradesperson_id"})
    if body.tradesperson_id:
        data["tradesperson_id"] = parse_object_id(body.tradesperson_id, "tradesperson id")
    review = await reviews_service.create_review(principal, parse_object_id(body.job_id, "job id"), data)
    return reviews_service.review_to_dict(review)


@router.get("")
async def reviews_list(
    tradesperson_id: str | None = None,
    job_id: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    items, total = await reviews_service.list_reviews(
        tradesperson_id=parse_object_id(tradesperson_id, "tradesperson id") if tradesperson_id else None,
        job_id=parse_object_id(job_id, "job id") if job_id else None,
        limit=limit,
        offset=offset,
    )
    return page_of([reviews_service.review_to_dict(r) for r in items], limit, offset, total)
