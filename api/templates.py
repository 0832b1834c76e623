"""
Presentation Templates API

Endpoints:
- GET /api/templates - List templates (optionally scoped to centers)
- GET /api/templates/default - The default template
- GET /api/templates/{template_id} - Get template (includes derived YAML)
- POST /api/templates - Create
- PUT /api/templates/{template_id} - Update
- DELETE /api/templates/{template_id} - Delete
- POST /api/templates/{template_id}/set-default - Make default (unsets all others)
- POST /api/templates/{template_id}/duplicate - Copy under a new name
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status

from api.dependencies import (
    CamelModel,
    center_scope,
    get_cache_service,
    get_user,
    list_or_empty,
    not_found,
    translate_errors,
)
from songstudio.cache.service import CacheService, filter_by_center_access


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/templates", tags=["Templates"])


class TemplateFields(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    aspect_ratio: Optional[str] = None
    slides: Optional[List[Dict[str, Any]]] = None
    reference_slide_index: Optional[int] = None
    center_ids: Optional[List[int]] = None
    is_default: Optional[bool] = None


class DuplicateRequest(CamelModel):
    name: Optional[str] = None


@router.get("")
async def list_templates(
    scope=Depends(center_scope),
    service: CacheService = Depends(get_cache_service),
):
    center_ids, is_admin = scope
    templates = await list_or_empty("load templates", service.get_all_templates)
    return [t.to_dict() for t in filter_by_center_access(templates, center_ids, is_admin)]


@router.get("/default")
async def get_default_template(service: CacheService = Depends(get_cache_service)):
    with translate_errors("load default template"):
        template = await service.get_default_template()
    return not_found(template, "Default template").to_dict()


@router.get("/{template_id}")
async def get_template(template_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("load template"):
        template = await service.get_template(template_id)
    return not_found(template, "Template").to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    body: TemplateFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("create template"):
        template = await service.create_template(body.payload(), created_by=user)
    return template.to_dict()


@router.put("/{template_id}")
async def update_template(
    template_id: str,
    body: TemplateFields,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("update template"):
        template = await service.update_template(template_id, body.payload(), updated_by=user)
    return template.to_dict()


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: str, service: CacheService = Depends(get_cache_service)):
    with translate_errors("delete template"):
        await service.delete_template(template_id)


@router.post("/{template_id}/set-default")
async def set_default_template(
    template_id: str,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("set default template"):
        template = await service.set_template_as_default(template_id, updated_by=user)
    return template.to_dict()


@router.post("/{template_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_template(
    template_id: str,
    body: DuplicateRequest,
    service: CacheService = Depends(get_cache_service),
    user: Optional[str] = Depends(get_user),
):
    with translate_errors("duplicate template"):
        template = await service.duplicate_template(template_id, body.name, created_by=user)
    return template.to_dict()
