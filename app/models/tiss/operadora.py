"""
TISS Operadora Model
Health-insurance operators the clinic bills
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index, UniqueConstraint
from sqlalchemy.sql import func
from database import Base


class Operadora(Base):
    """Operadora de plano de saúde"""
    __tablename__ = "tiss_operadoras"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)

    # Identification
    registro_ans = Column(String(6), nullable=False)  # 6-digit ANS registry
    nome = Column(String(200), nullable=False)
    cnpj = Column(String(14), nullable=True)

    # Contract data
    codigo_prestador = Column(String(20), nullable=False)  # Our code at the operator
    versao_tiss = Column(String(20), nullable=True)  # Falls back to TISS_DEFAULT_VERSION
    tabela_procedimentos = Column(String(2), nullable=False, server_default='22')  # TUSS table

    # Intake channel
    webservice_url = Column(String(500), nullable=True)
    contato_email = Column(String(200), nullable=True)

    ativa = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('clinic_id', 'registro_ans', name='uq_tiss_operadoras_clinic_ans'),
        Index('ix_tiss_operadoras_clinic_ativa', 'clinic_id', 'ativa'),
    )

    def __repr__(self):
        return f"<Operadora(id={self.id}, registro_ans='{self.registro_ans}', nome='{self.nome}')>"
