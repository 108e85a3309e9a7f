"""
TISS Certificate Model
Clinic e-CNPJ used to sign TISS documents. Secrets are stored encrypted.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, LargeBinary
from sqlalchemy.sql import func
from database import Base


class TISSCertificate(Base):
    """Certificado digital da clínica"""
    __tablename__ = "tiss_certificados"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, unique=True, index=True)

    # Fernet tokens, never plaintext
    pfx_encrypted = Column(LargeBinary, nullable=False)
    password_encrypted = Column(LargeBinary, nullable=False)

    # Parsed metadata
    subject = Column(String(500), nullable=False)
    issuer = Column(String(500), nullable=False)
    serial_number = Column(String(100), nullable=False)
    cnpj = Column(String(14), nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    tipo = Column(String(2), nullable=False, default='A1')

    ativo = Column(Boolean, nullable=False, default=True)

    uploaded_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    def __repr__(self):
        return f"<TISSCertificate(clinic_id={self.clinic_id}, serial='{self.serial_number}')>"
