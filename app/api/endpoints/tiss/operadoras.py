"""
TISS Operadora Endpoints
"""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_async_session
from app.core.auth import CurrentUser, get_current_user, require_admin
from app.core.error_handling import ConflictException
from app.models.tiss.operadora import Operadora
from app.schemas.tiss import OperadoraCreate, OperadoraResponse
from app.services.tiss.versioning import TISSVersioningService

router = APIRouter(prefix="/tiss/operadoras", tags=["TISS Operadoras"])


@router.post("", response_model=OperadoraResponse, status_code=status.HTTP_201_CREATED)
async def create_operadora(
    operadora_data: OperadoraCreate,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_session)
):
    data = operadora_data.model_dump()
    if data.get("versao_tiss"):
        data["versao_tiss"] = TISSVersioningService.normalize(data["versao_tiss"])

    operadora = Operadora(clinic_id=current_user.clinic_id, **data)
    db.add(operadora)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictException(
            f"Operadora com registro ANS {operadora_data.registro_ans} já cadastrada",
            code="operadora_duplicada",
        )
    await db.refresh(operadora)
    return operadora


@router.get("", response_model=List[OperadoraResponse])
async def list_operadoras(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    result = await db.execute(
        select(Operadora)
        .where(Operadora.clinic_id == current_user.clinic_id, Operadora.ativa.is_(True))
        .order_by(Operadora.nome)
    )
    return list(result.scalars().all())
