"""
TISS XML utility endpoints
"""

from fastapi import APIRouter, Depends

from app.core.auth import CurrentUser, get_current_user
from app.schemas.tiss import XmlHashRequest, XmlHashResponse
from app.services.tiss.xml_signer import hash_xml

router = APIRouter(prefix="/tiss/xml", tags=["TISS XML"])


@router.post("/hash", response_model=XmlHashResponse)
async def xml_hash(
    request: XmlHashRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    """SHA-256 of the canonical (C14N) form, for audit and independent verification"""
    return XmlHashResponse(hash=hash_xml(request.xml))
