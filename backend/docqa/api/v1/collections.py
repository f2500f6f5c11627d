"""
Collections API Router
GET /api/v1/collections/{id}/items — generated QA items in creation order.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from docqa.api.deps import AppServices, CurrentUserId
from docqa.schemas.sessions import (
    CollectionItemResponse,
    CollectionItemsResponse,
    ErrorResponse,
    ReviewStatus,
    SessionErrors,
)

router = APIRouter(prefix="/collections", tags=["Collections"])


@router.get(
    "/{collection_id}/items",
    response_model=CollectionItemsResponse,
    responses={404: {"model": ErrorResponse}},
    summary="List the QA items of a collection",
)
async def list_collection_items(
    collection_id: UUID,
    user_id:       CurrentUserId,
    services:      AppServices,
) -> CollectionItemsResponse:
    records = await services.persister.list_items(collection_id, user_id)
    if records is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=SessionErrors.collection_not_found(collection_id).model_dump(),
        )
    items = [
        CollectionItemResponse(
            id             = r.id,
            collection_id  = r.collection_id,
            question       = r.question,
            answer         = r.answer,
            question_type  = r.question_type,
            quality_score  = r.quality_score,
            confidence     = r.confidence,
            source_excerpt = r.source_excerpt,
            review_status  = ReviewStatus(r.review_status),
            has_embedding  = r.embedding is not None,
            key_terms      = r.key_terms,
            created_at     = r.created_at,
        )
        for r in records
    ]
    return CollectionItemsResponse(collection_id=collection_id, items=items, total=len(items))
