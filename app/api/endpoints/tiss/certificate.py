"""
TISS Certificate Endpoints
Upload and status of the clinic's A1 certificate used to sign TISS documents
"""

import logging

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_async_session
from app.core.auth import CurrentUser, get_current_user, require_admin, require_owner
from app.core.error_handling import NotFoundException, ValidationException
from app.schemas.tiss import CertificateStatusResponse
from app.services.tiss.certificate_store import CertificateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tiss/certificado", tags=["TISS Certificado"])

MAX_PFX_SIZE = 64 * 1024


@router.post("", response_model=CertificateStatusResponse, status_code=status.HTTP_201_CREATED)
async def upload_certificate(
    file: UploadFile = File(..., description="Arquivo .pfx/.p12"),
    password: str = Form(...),
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_session)
):
    """
    Upload the clinic certificate.

    The container and its password are validated, then stored encrypted.
    Neither is ever returned by the API.
    """
    pfx_bytes = await file.read()
    if not pfx_bytes:
        raise ValidationException("Arquivo de certificado vazio", code="empty_certificate")
    if len(pfx_bytes) > MAX_PFX_SIZE:
        raise ValidationException("Arquivo de certificado muito grande", code="certificate_too_large")

    store = CertificateStore(db)
    await store.upload(current_user.clinic_id, pfx_bytes, password, user_id=current_user.id)
    return await store.get_status(current_user.clinic_id)


@router.get("", response_model=CertificateStatusResponse)
async def certificate_status(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session)
):
    return await CertificateStore(db).get_status(current_user.clinic_id)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def remove_certificate(
    current_user: CurrentUser = Depends(require_owner),
    db: AsyncSession = Depends(get_async_session)
):
    removed = await CertificateStore(db).remove(current_user.clinic_id)
    if not removed:
        raise NotFoundException("Nenhum certificado configurado")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
