"""FastAPI routes for the lab service."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..errors import (
    ConfigurationError,
    InvalidLabDuration,
    InvalidStateTransition,
    LabbyError,
    LabNotFound,
    ServiceCapacityExceeded,
    ServiceConfigNotFound,
    TemplateNotFound,
    UnknownServiceType,
)
from ..orchestration.lab_service import LabService

router = APIRouter()


class CreateLabRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, gt=0)


def get_lab_service(request: Request) -> LabService:
    service = getattr(request.app.state, "lab_service", None)
    if service is None:
        raise RuntimeError("LabService dependency not configured")
    return service


def _to_http(exc: LabbyError) -> HTTPException:
    if isinstance(exc, (LabNotFound, TemplateNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (ServiceCapacityExceeded, InvalidStateTransition)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, InvalidLabDuration):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, (ServiceConfigNotFound, UnknownServiceType, ConfigurationError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


@router.post("/labs", status_code=status.HTTP_202_ACCEPTED)
def create_lab(
    body: CreateLabRequest,
    owner_id: str = Header(..., alias="X-User-Id"),
    service: LabService = Depends(get_lab_service),
) -> dict:
    try:
        lab = service.create_lab_from_template(
            body.template_id, owner_id, name=body.name, duration_minutes=body.duration_minutes
        )
    except LabbyError as exc:
        raise _to_http(exc) from exc
    return lab.to_dict()


@router.get("/labs")
def list_my_labs(
    owner_id: str = Header(..., alias="X-User-Id"),
    service: LabService = Depends(get_lab_service),
) -> dict:
    return {"labs": [lab.to_dict() for lab in service.get_labs_for_owner(owner_id)]}


@router.get("/labs/{lab_id}")
def get_lab(lab_id: str, service: LabService = Depends(get_lab_service)) -> dict:
    try:
        return service.get_lab(lab_id).to_dict()
    except LabbyError as exc:
        raise _to_http(exc) from exc


@router.get("/labs/{lab_id}/progress")
def get_lab_progress(lab_id: str, service: LabService = Depends(get_lab_service)) -> dict:
    try:
        return service.get_progress(lab_id)
    except LabbyError as exc:
        raise _to_http(exc) from exc


@router.post("/labs/{lab_id}/stop")
def stop_lab(lab_id: str, service: LabService = Depends(get_lab_service)) -> dict:
    try:
        return service.stop_lab(lab_id).to_dict()
    except LabbyError as exc:
        raise _to_http(exc) from exc


@router.get("/templates")
def list_templates(service: LabService = Depends(get_lab_service)) -> dict:
    return {"templates": [template.to_dict() for template in service.list_templates()]}


@router.get("/admin/labs")
def list_all_labs(service: LabService = Depends(get_lab_service)) -> dict:
    return {"labs": [lab.to_dict(include_credentials=False) for lab in service.list_all_labs()]}


@router.post("/admin/labs/{lab_id}/cleanup")
def admin_cleanup_lab(lab_id: str, service: LabService = Depends(get_lab_service)) -> dict:
    try:
        return service.admin_cleanup_lab(lab_id).to_dict()
    except LabbyError as exc:
        raise _to_http(exc) from exc


@router.get("/admin/usage")
def service_usage(service: LabService = Depends(get_lab_service)) -> dict:
    return {"services": [usage.to_dict() for usage in service.get_service_usage()]}


@router.get("/admin/cleanup-failures")
def cleanup_failures(service: LabService = Depends(get_lab_service)) -> dict:
    return {"failures": [record.to_dict() for record in service.recent_cleanup_failures()]}


__all__ = ["router"]
