"""
TISS Guia Model
Billing claims (guias) and their procedure lines
"""

import enum

from sqlalchemy import (
    Column, Integer, ForeignKey, String, Date, Boolean, DateTime, Text, Index, UniqueConstraint
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database import Base


class TipoGuia(str, enum.Enum):
    CONSULTA = "consulta"
    SADT = "sadt"
    INTERNACAO = "internacao"
    HONORARIOS = "honorarios"
    ANEXO = "anexo"


class GuiaStatus(str, enum.Enum):
    DRAFT = "draft"
    GENERATED = "generated"  # XML built
    SIGNED = "signed"
    QUEUED = "queued"  # Ready to be batched
    SENT = "sent"  # Delivered inside an accepted lote
    SETTLED = "settled"  # Paid in full
    DENIED = "denied"  # Glosa received
    CONTESTED = "contested"  # Recurso filed
    RESOLVED = "resolved"


class Guia(Base):
    """Guia TISS"""
    __tablename__ = "tiss_guias"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    operadora_id = Column(Integer, ForeignKey("tiss_operadoras.id", ondelete="RESTRICT"), nullable=True, index=True)
    patient_id = Column(Integer, nullable=True, index=True)  # Owned by the patient registry

    numero_guia = Column(String(20), nullable=False)
    tipo = Column(String(20), nullable=False, server_default=TipoGuia.CONSULTA.value)

    # Beneficiary
    nome_beneficiario = Column(String(200), nullable=True)
    numero_carteira = Column(String(20), nullable=True)
    cns = Column(String(15), nullable=True)
    recem_nascido = Column(Boolean, nullable=False, default=False)

    # Requesting professional
    nome_profissional = Column(String(200), nullable=True)
    conselho_profissional = Column(String(2), nullable=True)  # '06' = CRM
    numero_conselho = Column(String(15), nullable=True)
    uf_conselho = Column(String(2), nullable=True)
    cbos = Column(String(6), nullable=True)

    # Care data
    data_atendimento = Column(Date, nullable=True)
    tipo_consulta = Column(String(1), nullable=True)  # 1=primeira, 2=retorno...
    indicacao_clinica = Column(String(500), nullable=True)

    valor_total_centavos = Column(Integer, nullable=False, default=0)

    # Lifecycle
    status = Column(String(20), nullable=False, default=GuiaStatus.DRAFT.value, index=True)
    version = Column(Integer, nullable=False, default=1)  # Optimistic concurrency counter
    versao_tiss = Column(String(20), nullable=True)

    # Generated document
    xml_content = Column(Text, nullable=True)
    hash_xml = Column(String(64), nullable=True)
    signature_digest = Column(String(64), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)

    # Weak back-reference: the lote owns the membership, not the guia
    lote_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    itens = relationship(
        "GuiaItem",
        back_populates="guia",
        cascade="all, delete-orphan",
        order_by="GuiaItem.sequencial",
        lazy="selectin",
    )
    operadora = relationship("Operadora", lazy="selectin")

    __table_args__ = (
        UniqueConstraint('clinic_id', 'numero_guia', name='uq_tiss_guias_clinic_numero'),
        Index('ix_tiss_guias_clinic_status', 'clinic_id', 'status'),
        Index('ix_tiss_guias_clinic_data', 'clinic_id', 'data_atendimento'),
    )

    @property
    def is_locked(self) -> bool:
        """Line items are frozen once the guia left the clinic"""
        return self.status not in (
            GuiaStatus.DRAFT.value,
            GuiaStatus.GENERATED.value,
            GuiaStatus.SIGNED.value,
            GuiaStatus.QUEUED.value,
        )

    def __repr__(self):
        return f"<Guia(id={self.id}, numero_guia='{self.numero_guia}', status='{self.status}')>"


class GuiaItem(Base):
    """Procedimento da guia"""
    __tablename__ = "tiss_guia_itens"

    id = Column(Integer, primary_key=True, index=True)
    guia_id = Column(Integer, ForeignKey("tiss_guias.id", ondelete="CASCADE"), nullable=False, index=True)

    sequencial = Column(Integer, nullable=False)
    codigo_tabela = Column(String(2), nullable=False, default='22')
    codigo_procedimento = Column(String(10), nullable=False)
    descricao = Column(String(150), nullable=True)
    quantidade = Column(Integer, nullable=False, default=1)
    valor_unitario_centavos = Column(Integer, nullable=False)
    valor_total_centavos = Column(Integer, nullable=False)

    guia = relationship("Guia", back_populates="itens")

    def __repr__(self):
        return f"<GuiaItem(guia_id={self.guia_id}, codigo='{self.codigo_procedimento}', total={self.valor_total_centavos})>"
