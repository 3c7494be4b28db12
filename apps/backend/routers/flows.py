"""Flow validation endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from apps.backend.deps import get_db
from apps.backend.models.bot import FlowVersion
from apps.backend.services.flow_validator import validate_flow
from apps.backend.utils.api_errors import error_envelope

router = APIRouter()


class ValidateFlowBody(BaseModel):
    flow_data: dict[str, Any] = Field(alias="flowData")
    flow_name: str | None = Field(default=None, alias="flowName")

    model_config = {"populate_by_name": True}


@router.post("/validate")
def validate_flow_data(data: ValidateFlowBody):
    return validate_flow(data.flow_data, flow_name=data.flow_name).to_dict()


@router.get("/versions/{version_id}/validate")
def validate_flow_version(version_id: int, request: Request, db: Session = Depends(get_db)):
    version = db.get(FlowVersion, version_id)
    if not version:
        return JSONResponse(
            error_envelope(
                code="flow_version_not_found",
                message="Flow version not found",
                trace_id=getattr(request.state, "trace_id", "") or "",
            ),
            status_code=404,
        )
    flow_name = version.flow.name if version.flow else None
    return validate_flow(version.flow_data or {}, flow_name=flow_name).to_dict()
