"""
TISS Glosa Model
Operator denials and their denied items
"""

import enum
from datetime import timedelta

from sqlalchemy import Column, Integer, ForeignKey, String, Date, DateTime, Numeric, Text, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database import Base

APPEAL_DEADLINE_DAYS = 30


class GlosaStatus(str, enum.Enum):
    PENDENTE = "pendente"
    EM_RECURSO = "em_recurso"
    RESOLVIDA = "resolvida"


class Glosa(Base):
    """Glosa recebida da operadora"""
    __tablename__ = "tiss_glosas"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)

    # Non-owning link to the claim, by number
    numero_guia = Column(String(20), nullable=False, index=True)
    guia_id = Column(Integer, nullable=True, index=True)
    tipo_guia = Column(String(20), nullable=False)
    operadora_id = Column(Integer, ForeignKey("tiss_operadoras.id", ondelete="SET NULL"), nullable=True)
    numero_protocolo = Column(String(100), nullable=True)

    data_recebimento = Column(Date, nullable=False)

    valor_original = Column(Numeric(12, 2), nullable=False)
    valor_glosado = Column(Numeric(12, 2), nullable=False)
    valor_aprovado = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default=GlosaStatus.PENDENTE.value, index=True)
    observacao = Column(Text, nullable=True)
    recurso_xml = Column(Text, nullable=True)
    recurso_enviado_em = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    itens = relationship(
        "ItemGlosado",
        back_populates="glosa",
        cascade="all, delete-orphan",
        order_by="ItemGlosado.sequencial",
        lazy="selectin",
    )

    __table_args__ = (
        Index('ix_tiss_glosas_clinic_status', 'clinic_id', 'status'),
    )

    @property
    def prazo_recurso(self):
        """Appeal deadline, always derived from the received date"""
        return self.data_recebimento + timedelta(days=APPEAL_DEADLINE_DAYS)

    def __repr__(self):
        return f"<Glosa(id={self.id}, numero_guia='{self.numero_guia}', valor_glosado={self.valor_glosado})>"


class ItemGlosado(Base):
    """Item glosado"""
    __tablename__ = "tiss_itens_glosados"

    id = Column(Integer, primary_key=True, index=True)
    glosa_id = Column(Integer, ForeignKey("tiss_glosas.id", ondelete="CASCADE"), nullable=False, index=True)

    sequencial = Column(Integer, nullable=False)
    codigo_procedimento = Column(String(10), nullable=False)
    descricao_procedimento = Column(String(150), nullable=True)
    quantidade = Column(Integer, nullable=False, default=1)
    valor_original = Column(Numeric(12, 2), nullable=False)
    valor_glosado = Column(Numeric(12, 2), nullable=False)
    codigo_glosa = Column(String(10), nullable=False)
    descricao_glosa = Column(String(200), nullable=False)
    justificativa_recurso = Column(Text, nullable=True)

    glosa = relationship("Glosa", back_populates="itens")
