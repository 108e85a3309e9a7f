"""
TISS Lote Endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_async_session
from app.core.auth import CurrentUser, get_current_user, require_owner, require_professional
from app.models.tiss.lote import LoteStatus
from app.schemas.tiss import (
    DemonstrativoInput,
    DemonstrativoResultResponse,
    LoteCreate,
    LoteResponse,
    SubmissionResultResponse,
)
from app.services.tiss.batch_generator import LoteBatchManager
from app.services.tiss.glosa_service import GlosaService

router = APIRouter(prefix="/tiss/lotes", tags=["TISS Lotes"])


async def get_lote_manager(db: AsyncSession = Depends(get_async_session)) -> LoteBatchManager:
    return LoteBatchManager(db)


@router.post("", response_model=LoteResponse, status_code=status.HTTP_201_CREATED)
async def create_lote(
    lote_data: LoteCreate,
    current_user: CurrentUser = Depends(require_professional),
    service: LoteBatchManager = Depends(get_lote_manager)
):
    """Group queued guias of one operadora into a signed lote"""
    return await service.create_lote(
        clinic_id=current_user.clinic_id,
        operadora_id=lote_data.operadora_id,
        guia_ids=lote_data.guia_ids,
        actor_id=current_user.id,
    )


@router.get("", response_model=List[LoteResponse])
async def list_lotes(
    status_filter: Optional[LoteStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    service: LoteBatchManager = Depends(get_lote_manager)
):
    return await service.list_lotes(
        current_user.clinic_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )


@router.get("/{lote_id}", response_model=LoteResponse)
async def get_lote(
    lote_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: LoteBatchManager = Depends(get_lote_manager)
):
    return await service.get_lote(current_user.clinic_id, lote_id)


@router.post("/{lote_id}/submit", response_model=SubmissionResultResponse)
async def submit_lote(
    lote_id: int,
    current_user: CurrentUser = Depends(require_professional),
    service: LoteBatchManager = Depends(get_lote_manager)
):
    """
    Send the lote to the operator webservice.

    Resubmitting an accepted lote returns the stored protocol without a new send.
    """
    return await service.submit_lote(current_user.clinic_id, lote_id, actor_id=current_user.id)


@router.post("/{lote_id}/retry", response_model=SubmissionResultResponse)
async def retry_lote(
    lote_id: int,
    current_user: CurrentUser = Depends(require_professional),
    service: LoteBatchManager = Depends(get_lote_manager)
):
    return await service.retry_lote(current_user.clinic_id, lote_id, actor_id=current_user.id)


@router.post("/{lote_id}/demonstrativo", response_model=DemonstrativoResultResponse)
async def process_demonstrativo(
    lote_id: int,
    demonstrativo: DemonstrativoInput,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """
    Apply the operator analysis statement: settle paid guias and open a
    glosa for each guia that lost value.
    """
    service = GlosaService(db)
    return await service.process_demonstrativo(
        current_user.clinic_id,
        lote_id,
        demonstrativo.xml,
        actor_id=current_user.id,
    )


@router.delete("/{lote_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_lote(
    lote_id: int,
    current_user: CurrentUser = Depends(require_owner),
    service: LoteBatchManager = Depends(get_lote_manager)
):
    await service.delete_lote(current_user.clinic_id, lote_id, actor_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
