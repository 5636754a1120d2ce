from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from sp_validator.core.database import get_db
from sp_validator.core.job_manager_provider import get_job_manager
from sp_validator.core.rate_limit import rate_limit_by_ip
from sp_validator.core.security import require_api_key
from sp_validator.models.validation import ValidationRequest
from sp_validator.schemas.validation import (
    DeliveryListResponse,
    DeliveryResponse,
    ReportResponse,
    StatusResponse,
    SubmitResponse,
    ValidateRequest,
)
from sp_validator.services.job_manager import JobManager
from sp_validator.services.validation_service import ValidationService, status_url

router = APIRouter(dependencies=[Depends(rate_limit_by_ip), Depends(require_api_key)])


async def get_validation_service(
    db: AsyncSession = Depends(get_db),
    job_manager: JobManager = Depends(get_job_manager),
) -> ValidationService:
    return ValidationService(db, job_manager)


def _to_status_response(record: ValidationRequest) -> StatusResponse:
    return StatusResponse(
        validation_id=record.id,
        status=record.status,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


@router.post("/validate", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_validation(
    request: ValidateRequest,
    service: ValidationService = Depends(get_validation_service),
):
    record, created = await service.submit(request)
    return SubmitResponse(
        validation_id=record.id,
        status=record.status,
        message="Validation job has been queued" if created else "Validation already submitted",
        status_url=status_url(record.id),
    )


@router.get("/validation/{validation_id}/status", response_model=StatusResponse)
async def get_validation_status(
    validation_id: str,
    service: ValidationService = Depends(get_validation_service),
):
    record = await service.status(validation_id)
    return _to_status_response(record)


@router.get("/validation/{validation_id}/report", response_model=ReportResponse)
async def get_validation_report(
    validation_id: str,
    service: ValidationService = Depends(get_validation_service),
):
    record = await service.report(validation_id)
    return ReportResponse(
        validation_id=record.id,
        status=record.status,
        started_at=record.started_at,
        completed_at=record.completed_at,
        report=record.report or {},
    )


@router.get("/validation/{validation_id}/deliveries", response_model=DeliveryListResponse)
async def list_webhook_deliveries(
    validation_id: str,
    service: ValidationService = Depends(get_validation_service),
):
    deliveries = await service.deliveries(validation_id)
    return DeliveryListResponse(
        validation_id=validation_id,
        deliveries=[DeliveryResponse.model_validate(delivery) for delivery in deliveries],
    )
