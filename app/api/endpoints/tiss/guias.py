"""
TISS Guia Endpoints
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_async_session
from app.core.auth import CurrentUser, get_current_user, require_owner, require_professional
from app.models.tiss.guia import GuiaStatus
from app.schemas.tiss import (
    AuditLogResponse,
    GenerateXmlRequest,
    GuiaCreate,
    GuiaItemsUpdate,
    GuiaResponse,
)
from app.services.tiss.guia_lifecycle import GuiaLifecycleManager

router = APIRouter(prefix="/tiss/guias", tags=["TISS Guias"])


@router.post("", response_model=GuiaResponse, status_code=status.HTTP_201_CREATED)
async def create_guia(
    guia_data: GuiaCreate,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """Create a draft guia with its procedure lines"""
    service = GuiaLifecycleManager(db)
    return await service.create_guia(
        clinic_id=current_user.clinic_id,
        data=guia_data.model_dump(),
        actor_id=current_user.id,
    )


@router.get("", response_model=List[GuiaResponse])
async def list_guias(
    status_filter: Optional[GuiaStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    patient_id: Optional[int] = None,
    operadora_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    service = GuiaLifecycleManager(db)
    return await service.list_guias(
        current_user.clinic_id,
        status=status_filter.value if status_filter else None,
        date_from=date_from,
        date_to=date_to,
        patient_id=patient_id,
        operadora_id=operadora_id,
        limit=limit,
        offset=offset,
    )


@router.get("/{guia_id}", response_model=GuiaResponse)
async def get_guia(
    guia_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    return await GuiaLifecycleManager(db).get_guia(current_user.clinic_id, guia_id)


@router.put("/{guia_id}/itens", response_model=GuiaResponse)
async def update_guia_items(
    guia_id: int,
    items_data: GuiaItemsUpdate,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """Replace procedure lines; the guia goes back to draft"""
    service = GuiaLifecycleManager(db)
    return await service.update_items(
        current_user.clinic_id,
        guia_id,
        [item.model_dump() for item in items_data.itens],
        actor_id=current_user.id,
    )


@router.post("/{guia_id}/generate-xml", response_model=GuiaResponse)
async def generate_guia_xml(
    guia_id: int,
    request: Optional[GenerateXmlRequest] = None,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    service = GuiaLifecycleManager(db)
    return await service.generate_xml(
        current_user.clinic_id,
        guia_id,
        actor_id=current_user.id,
        schema_version=request.versao_tiss if request else None,
    )


@router.post("/{guia_id}/sign", response_model=GuiaResponse)
async def sign_guia(
    guia_id: int,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """Sign the generated XML with the clinic certificate"""
    return await GuiaLifecycleManager(db).sign(current_user.clinic_id, guia_id, actor_id=current_user.id)


@router.post("/{guia_id}/enqueue", response_model=GuiaResponse)
async def enqueue_guia(
    guia_id: int,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    return await GuiaLifecycleManager(db).enqueue(current_user.clinic_id, guia_id, actor_id=current_user.id)


@router.post("/{guia_id}/settle", response_model=GuiaResponse)
async def settle_guia(
    guia_id: int,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """Confirm full payment of a sent guia"""
    return await GuiaLifecycleManager(db).settle(current_user.clinic_id, guia_id, actor_id=current_user.id)


@router.get("/{guia_id}/xml")
async def get_guia_xml(
    guia_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    guia = await GuiaLifecycleManager(db).get_guia(current_user.clinic_id, guia_id)
    if not guia.xml_content:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return Response(
        content=guia.xml_content,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="guia_{guia.numero_guia}.xml"'},
    )


@router.get("/{guia_id}/audit", response_model=List[AuditLogResponse])
async def get_guia_audit(
    guia_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    service = GuiaLifecycleManager(db)
    await service.get_guia(current_user.clinic_id, guia_id)
    return await service.audit_trail(current_user.clinic_id, guia_id)


@router.delete("/{guia_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_guia(
    guia_id: int,
    current_user: CurrentUser = Depends(require_owner),
    db: AsyncSession = Depends(get_async_session)
):
    """Remove a guia that never left the clinic (owner only)"""
    await GuiaLifecycleManager(db).delete_guia(current_user.clinic_id, guia_id, actor_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
