"""
Feedback API

Endpoints:
- POST /api/feedback - Submit feedback (public)
- GET /api/feedback - List feedback, newest first
- GET /api/feedback/{feedback_id} - Get feedback
- PATCH /api/feedback/{feedback_id} - Update status / admin notes
- DELETE /api/feedback/{feedback_id} - Delete
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request, status

from api.dependencies import (
    CamelModel,
    get_cache_service,
    list_or_empty,
    not_found,
    translate_errors,
)
from songstudio.cache.service import CacheService


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/feedback", tags=["Feedback"])


class FeedbackCreate(CamelModel):
    feedback: str
    category: str
    email: str
    url: Optional[str] = None


class FeedbackUpdate(CamelModel):
    status: Optional[Literal["new", "in-progress", "resolved", "closed"]] = None
    admin_notes: Optional[str] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_feedback(
    body: FeedbackCreate,
    request: Request,
    service: CacheService = Depends(get_cache_service),
):
    payload = body.payload()
    payload["ip_address"] = request.client.host if request.client else None
    payload["user_agent"] = request.headers.get("user-agent")
    with translate_errors("submit feedback"):
        feedback = await service.create_feedback(payload)
    return {"message": "Feedback submitted successfully", "id": feedback.id}


@router.get("")
async def list_feedback(service: CacheService = Depends(get_cache_service)):
    feedback = await list_or_empty("load feedback", service.get_all_feedback)
    return [f.to_dict() for f in feedback]


@router.get("/{feedback_id}")
async def get_feedback(feedback_id: int, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load feedback"):
        feedback = await service.get_feedback(feedback_id)
    return not_found(feedback, "Feedback").to_dict()


@router.patch("/{feedback_id}")
async def update_feedback(
    feedback_id: int,
    body: FeedbackUpdate,
    service: CacheService = Depends(get_cache_service),
):
    with translate_errors("update feedback"):
        feedback = await service.update_feedback(feedback_id, body.status, body.admin_notes)
    return feedback.to_dict()


@router.delete("/{feedback_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_feedback(feedback_id: int, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete feedback"):
        await service.delete_feedback(feedback_id)
