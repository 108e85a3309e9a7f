"""
TISS Certificate Store
Keeps the clinic e-CNPJ (PKCS#12) encrypted at rest and hands it to the
signer for the duration of a single signing operation.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from app.core.rate_limit import ClinicRateLimiter
from app.models.tiss.certificate import TISSCertificate
from app.services.tiss.errors import CertificateError
from app.services.tiss.security import InvalidToken, TISSSecurityService

logger = logging.getLogger(__name__)

# ICP-Brasil: CNPJ of the legal entity in e-CNPJ certificates
OID_CNPJ = x509.ObjectIdentifier("2.16.76.1.3.3")
# A1 certificates are valid for one year; anything longer lives on a token (A3)
A3_MIN_VALIDITY_DAYS = 400

_CNPJ_RE = re.compile(r"(?<!\d)(\d{14})(?!\d)")

certificate_rate_limiter = ClinicRateLimiter(settings.CERTIFICATE_RATE_LIMIT_PER_MINUTE)


@dataclass
class CertificateInfo:
    subject: str
    issuer: str
    serial_number: str
    cnpj: Optional[str]
    valid_from: datetime
    valid_until: datetime
    tipo: str

    def is_expired(self, now: datetime) -> bool:
        return now > self.valid_until

    def days_to_expiry(self, now: datetime) -> int:
        return (self.valid_until - now).days


def load_pkcs12(pkcs12_bytes: bytes, password: Optional[str]) -> Tuple[object, x509.Certificate]:
    """
    Open a PKCS#12 container.

    Raises:
        ValueError: corrupt container, wrong password, or no key/certificate inside
    """
    if not pkcs12_bytes:
        raise ValueError("empty PKCS#12 container")
    private_key, certificate, _ = pkcs12.load_key_and_certificates(
        pkcs12_bytes,
        password.encode("utf-8") if password else None,
    )
    if private_key is None or certificate is None:
        raise ValueError("PKCS#12 container without private key or certificate")
    return private_key, certificate


def _extract_cnpj(certificate: x509.Certificate) -> Optional[str]:
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        for other_name in san.get_values_for_type(x509.OtherName):
            if other_name.type_id == OID_CNPJ:
                match = _CNPJ_RE.search(other_name.value.decode("latin-1"))
                if match:
                    return match.group(1)
    except x509.ExtensionNotFound:
        pass

    for oid in (NameOID.SERIAL_NUMBER, NameOID.COMMON_NAME):
        for attribute in certificate.subject.get_attributes_for_oid(oid):
            match = _CNPJ_RE.search(re.sub(r"[./-]", "", str(attribute.value)))
            if match:
                return match.group(1)
    return None


def extract_certificate_info(certificate: x509.Certificate) -> CertificateInfo:
    valid_from = certificate.not_valid_before_utc
    valid_until = certificate.not_valid_after_utc
    return CertificateInfo(
        subject=certificate.subject.rfc4514_string(),
        issuer=certificate.issuer.rfc4514_string(),
        serial_number=format(certificate.serial_number, "X"),
        cnpj=_extract_cnpj(certificate),
        valid_from=valid_from,
        valid_until=valid_until,
        tipo="A3" if (valid_until - valid_from).days > A3_MIN_VALIDITY_DAYS else "A1",
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CertificateStore:
    """Per-clinic certificate persistence and scoped access"""

    def __init__(
        self,
        db: AsyncSession,
        security: Optional[TISSSecurityService] = None,
        rate_limiter: Optional[ClinicRateLimiter] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.security = security or TISSSecurityService()
        self.rate_limiter = rate_limiter or certificate_rate_limiter
        self.clock = clock

    async def _get(self, clinic_id: int) -> Optional[TISSCertificate]:
        result = await self.db.execute(
            select(TISSCertificate).where(
                TISSCertificate.clinic_id == clinic_id,
                TISSCertificate.ativo.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def upload(self, clinic_id: int, pfx_bytes: bytes, password: str, user_id: Optional[int] = None) -> TISSCertificate:
        """
        Validate and store the clinic certificate, replacing any previous one.

        Raises:
            CertificateError: invalid_password for unreadable containers,
                expired for certificates past their validity
        """
        try:
            _, certificate = load_pkcs12(pfx_bytes, password)
        except ValueError:
            raise CertificateError(CertificateError.INVALID_PASSWORD)

        info = extract_certificate_info(certificate)
        if info.is_expired(self.clock()):
            raise CertificateError(CertificateError.EXPIRED)

        result = await self.db.execute(select(TISSCertificate).where(TISSCertificate.clinic_id == clinic_id))
        record = result.scalar_one_or_none()
        if record is None:
            record = TISSCertificate(clinic_id=clinic_id)
            self.db.add(record)

        record.pfx_encrypted = self.security.encrypt_data(pfx_bytes)
        record.password_encrypted = self.security.encrypt_data(password.encode("utf-8"))
        record.subject = info.subject
        record.issuer = info.issuer
        record.serial_number = info.serial_number
        record.cnpj = info.cnpj
        record.valid_from = info.valid_from
        record.valid_until = info.valid_until
        record.tipo = info.tipo
        record.ativo = True
        record.uploaded_by = user_id

        await self.db.commit()
        await self.db.refresh(record)

        logger.info(f"Stored {info.tipo} certificate {info.serial_number} for clinic {clinic_id}, valid until {info.valid_until.date()}")
        return record

    async def get_status(self, clinic_id: int) -> Dict:
        record = await self._get(clinic_id)
        if record is None:
            return {"configured": False}

        now = self.clock()
        valid_until = _as_utc(record.valid_until)
        days_to_expiry = (valid_until - now).days
        return {
            "configured": True,
            "subject": record.subject,
            "issuer": record.issuer,
            "serial_number": record.serial_number,
            "cnpj": record.cnpj,
            "tipo": record.tipo,
            "valid_from": _as_utc(record.valid_from),
            "valid_until": valid_until,
            "expired": now > valid_until,
            "days_to_expiry": days_to_expiry,
            "expiring_soon": 0 <= days_to_expiry <= settings.CERTIFICATE_EXPIRY_WARNING_DAYS,
        }

    async def remove(self, clinic_id: int) -> bool:
        record = await self._get(clinic_id)
        if record is None:
            return False
        record.ativo = False
        await self.db.commit()
        logger.info(f"Deactivated certificate {record.serial_number} for clinic {clinic_id}")
        return True

    @asynccontextmanager
    async def signing_credentials(self, clinic_id: int):
        """
        Yield ``(pfx_bytes, password)`` for one signing call.

        Usage:
            async with store.signing_credentials(clinic_id) as (pfx, password):
                signed = sign_xml(xml, pfx, password)
        """
        self.rate_limiter.check(clinic_id)

        record = await self._get(clinic_id)
        if record is None:
            raise CertificateError(CertificateError.NOT_CONFIGURED)
        if self.clock() > _as_utc(record.valid_until):
            logger.warning(f"Clinic {clinic_id} tried to sign with expired certificate {record.serial_number}")
            raise CertificateError(CertificateError.EXPIRED)

        pfx_bytes = password = None
        try:
            try:
                pfx_bytes = self.security.decrypt_data(record.pfx_encrypted)
                password = self.security.decrypt_data(record.password_encrypted).decode("utf-8")
            except InvalidToken:
                logger.error(f"Stored certificate for clinic {clinic_id} cannot be decrypted with the current key")
                raise CertificateError(
                    CertificateError.INVALID_PASSWORD,
                    "Não foi possível abrir o certificado armazenado. Faça upload novamente.",
                )
            yield pfx_bytes, password
        finally:
            pfx_bytes = None
            password = None
