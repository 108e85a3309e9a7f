"""
TISS Glosa Endpoints
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_async_session
from app.core.auth import CurrentUser, get_current_user, require_professional
from app.models.tiss.glosa import GlosaStatus
from app.schemas.tiss import (
    GlosaCreate,
    GlosaResponse,
    GlosaStatsResponse,
    GlosaXmlInput,
    RecursoRequest,
    ResolutionSuggestion,
    ResolveRequest,
)
from app.services.tiss.glosa_service import GlosaService

router = APIRouter(prefix="/tiss/glosas", tags=["TISS Glosas"])


@router.post("", response_model=GlosaResponse, status_code=status.HTTP_201_CREATED)
async def create_glosa(
    glosa_data: GlosaCreate,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """Register a glosa informed item by item"""
    service = GlosaService(db)
    return await service.register_glosa(
        current_user.clinic_id,
        glosa_data.model_dump(exclude={"operadora_id"}),
        operadora_id=glosa_data.operadora_id,
        actor_id=current_user.id,
    )


@router.post("/parse-xml", response_model=GlosaResponse, status_code=status.HTTP_201_CREATED)
async def create_glosa_from_xml(
    xml_data: GlosaXmlInput,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """Register a glosa straight from the operator XML"""
    service = GlosaService(db)
    return await service.register_glosa(
        current_user.clinic_id,
        xml_data.xml,
        operadora_id=xml_data.operadora_id,
        actor_id=current_user.id,
    )


@router.get("", response_model=List[GlosaResponse])
async def list_glosas(
    status_filter: Optional[GlosaStatus] = Query(None, alias="status"),
    numero_guia: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    return await GlosaService(db).list_glosas(
        current_user.clinic_id,
        status=status_filter.value if status_filter else None,
        numero_guia=numero_guia,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=GlosaStatsResponse)
async def glosa_stats(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    """Denied and recovered totals with the main denial reasons"""
    stats = await GlosaService(db).stats(current_user.clinic_id, date_from=date_from, date_to=date_to)
    return stats.to_dict()


@router.get("/{glosa_id}", response_model=GlosaResponse)
async def get_glosa(
    glosa_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    return await GlosaService(db).get_glosa(current_user.clinic_id, glosa_id)


@router.get("/{glosa_id}/sugestoes", response_model=List[ResolutionSuggestion])
async def glosa_suggestions(
    glosa_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    """Recommended actions per denial reason, largest value first"""
    return await GlosaService(db).suggestions(current_user.clinic_id, glosa_id)


@router.post("/{glosa_id}/recurso", response_model=GlosaResponse)
async def file_recurso(
    glosa_id: int,
    recurso_data: RecursoRequest,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    """File an appeal; only accepted within 30 days of receiving the glosa"""
    return await GlosaService(db).file_recurso(
        current_user.clinic_id,
        glosa_id,
        recurso_data.justificativas,
        actor_id=current_user.id,
        schema_version=recurso_data.versao_tiss,
    )


@router.post("/{glosa_id}/resolve", response_model=GlosaResponse)
async def resolve_glosa(
    glosa_id: int,
    resolve_data: ResolveRequest,
    current_user: CurrentUser = Depends(require_professional),
    db: AsyncSession = Depends(get_async_session)
):
    return await GlosaService(db).resolve_glosa(
        current_user.clinic_id,
        glosa_id,
        resolve_data.valor_recuperado,
        actor_id=current_user.id,
    )
