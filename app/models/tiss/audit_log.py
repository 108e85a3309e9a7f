"""
TISS Audit Log Model
Immutable audit trail of status transitions (LGPD compliance)
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from sqlalchemy.sql import func
from database import Base


class GuiaAuditLog(Base):
    """Log de Auditoria Imutável"""
    __tablename__ = "tiss_guia_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    actor_id = Column(Integer, nullable=True, index=True)

    # Entity information
    entity_type = Column(String(20), nullable=False)  # 'guia', 'lote', 'glosa'
    entity_id = Column(Integer, nullable=False)

    # Transition
    action = Column(String(50), nullable=False)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    details = Column(JSON, nullable=True)

    # Timestamp (immutable - never updated)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index('ix_tiss_guia_audit_logs_entity', 'entity_type', 'entity_id'),
        Index('ix_tiss_guia_audit_logs_clinic_created', 'clinic_id', 'created_at'),
    )

    def __repr__(self):
        return f"<GuiaAuditLog(id={self.id}, action='{self.action}', {self.previous_status}->{self.new_status})>"
