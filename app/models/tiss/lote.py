"""
TISS Lote Model
Batches of guias submitted together to one operadora
"""

import enum

from sqlalchemy import Column, Integer, ForeignKey, String, Date, DateTime, Text, JSON, Index, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database import Base


class LoteStatus(str, enum.Enum):
    DRAFT = "draft"  # Built and signed, never sent
    SENDING = "sending"  # A submission owns the lote right now
    RETRY = "retry"  # Transport failure, may be sent again
    ACCEPTED = "accepted"  # Operator issued a protocol
    FAILED = "failed"  # Operator rejected or attempts exhausted


OPEN_LOTE_STATUSES = (LoteStatus.DRAFT.value, LoteStatus.SENDING.value, LoteStatus.RETRY.value)


class ResultadoAnalise(str, enum.Enum):
    """Outcome of the operator statement for an accepted lote"""
    PROCESSADO = "processado"  # Every guia paid in full
    PARCIAL = "parcial"  # Some value denied
    GLOSADO = "glosado"  # Every guia fully denied


class Lote(Base):
    """Lote de Guias"""
    __tablename__ = "tiss_lotes"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    operadora_id = Column(Integer, ForeignKey("tiss_operadoras.id", ondelete="RESTRICT"), nullable=False, index=True)

    numero_lote = Column(String(20), nullable=False)  # YYYYMMDD-NNNN
    guia_ids = Column(JSON, nullable=False)  # Ordered guia ids
    valor_total_centavos = Column(Integer, nullable=False, default=0)
    versao_tiss = Column(String(20), nullable=False)

    # Signed envelope
    xml_content = Column(Text, nullable=True)
    hash_xml = Column(String(64), nullable=True)

    # Submission tracking
    status = Column(String(20), nullable=False, default=LoteStatus.DRAFT.value, index=True)
    send_attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)
    protocol_number = Column(String(100), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)

    # Operator analysis (demonstrativo)
    resultado_analise = Column(String(20), nullable=True)
    data_processamento = Column(Date, nullable=True)
    valor_processado_centavos = Column(Integer, nullable=True)
    valor_glosado_centavos = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    operadora = relationship("Operadora", lazy="selectin")

    __table_args__ = (
        UniqueConstraint('clinic_id', 'numero_lote', name='uq_tiss_lotes_clinic_numero'),
        Index('ix_tiss_lotes_clinic_status', 'clinic_id', 'status'),
    )

    def __repr__(self):
        return f"<Lote(id={self.id}, numero_lote='{self.numero_lote}', status='{self.status}')>"
