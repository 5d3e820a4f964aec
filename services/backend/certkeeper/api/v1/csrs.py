"""
API endpoints for the certificate signing request workflow.
"""

from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from certkeeper.api.deps import get_gateway
from certkeeper.core.database import get_db
from certkeeper.core.security import get_actor
from certkeeper.schemas.csr import (
    CSRCreate,
    CSRUpdate,
    CSRResponse,
    CSRListResponse,
    CSRGenerateResponse,
    CSRSubmitResponse,
)
from certkeeper.services import csr_workflow
from certkeeper.services.command_gateway import CommandGateway
from certkeeper.services.csr_workflow import (
    CSRNotFoundError,
    CSRValidationError,
    CSRStateError,
    CSRGatewayError,
    CSRWorkflowError,
)

router = APIRouter(prefix="/csrs", tags=["Certificate Requests"])


def _to_http(e: CSRWorkflowError) -> HTTPException:
    if isinstance(e, CSRNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, CSRGatewayError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": str(e),
                "details": e.detail,
                "error_kind": e.error_kind.value if e.error_kind else None,
            },
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=CSRListResponse)
async def list_csrs(
    db: AsyncSession = Depends(get_db),
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by workflow status"),
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(20, ge=1, le=100, description="Page size"),
):
    """
    List certificate requests with pagination, newest first.
    """
    items, total = await csr_workflow.list_csrs(db, status_filter, page, size)
    return CSRListResponse(
        items=[CSRResponse.model_validate(csr) for csr in items],
        total=total,
        page=page,
        size=size,
        pages=csr_workflow.page_count(total, size),
    )


@router.post("", response_model=CSRResponse, status_code=status.HTTP_201_CREATED)
async def create_csr(
    csr_data: CSRCreate,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """
    Create a draft certificate request.
    """
    try:
        csr = await csr_workflow.create_csr(db, csr_data, actor)
    except CSRWorkflowError as e:
        raise _to_http(e)
    return CSRResponse.model_validate(csr)


@router.get("/{csr_id}", response_model=CSRResponse)
async def get_csr(csr_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    try:
        csr = await csr_workflow.get_csr(db, csr_id)
    except CSRWorkflowError as e:
        raise _to_http(e)
    return CSRResponse.model_validate(csr)


@router.patch("/{csr_id}", response_model=CSRResponse)
async def update_csr(
    csr_id: uuid.UUID,
    csr_data: CSRUpdate,
    db: AsyncSession = Depends(get_db),
):
    """
    Update a draft certificate request.
    """
    try:
        csr = await csr_workflow.update_csr(db, csr_id, csr_data)
    except CSRWorkflowError as e:
        raise _to_http(e)
    return CSRResponse.model_validate(csr)


@router.delete("/{csr_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_csr(csr_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    try:
        await csr_workflow.delete_csr(db, csr_id)
    except CSRWorkflowError as e:
        raise _to_http(e)


@router.post("/{csr_id}/generate", response_model=CSRGenerateResponse)
async def generate_csr(
    csr_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    """
    Generate the key pair and CSR on the target server.
    """
    try:
        csr = await csr_workflow.generate_csr(db, csr_id, gateway)
    except CSRWorkflowError as e:
        raise _to_http(e)
    return CSRGenerateResponse(message="CSR generated successfully", csr_pem=csr.csr_pem)


@router.post("/{csr_id}/submit", response_model=CSRSubmitResponse)
async def submit_csr(
    csr_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: CommandGateway = Depends(get_gateway),
):
    """
    Submit a generated CSR to its target CA.
    """
    try:
        csr = await csr_workflow.submit_csr(db, csr_id, gateway)
    except CSRWorkflowError as e:
        raise _to_http(e)

    message = "Certificate issued" if csr.issued_certificate_id else "CSR submitted to CA successfully"
    return CSRSubmitResponse(message=message, status=csr.status, issued_certificate_id=csr.issued_certificate_id)


@router.post("/{csr_id}/cancel", response_model=CSRResponse)
async def cancel_csr(csr_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    try:
        csr = await csr_workflow.cancel_csr(db, csr_id)
    except CSRWorkflowError as e:
        raise _to_http(e)
    return CSRResponse.model_validate(csr)
