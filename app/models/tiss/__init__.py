"""
TISS Database Models
SQLAlchemy models for TISS module tables
"""

from .operadora import Operadora
from .guia import Guia, GuiaItem, GuiaStatus, TipoGuia
from .lote import Lote, LoteStatus, ResultadoAnalise
from .glosa import Glosa, ItemGlosado, GlosaStatus
from .certificate import TISSCertificate
from .audit_log import GuiaAuditLog

__all__ = [
    'Operadora',
    'Guia',
    'GuiaItem',
    'GuiaStatus',
    'TipoGuia',
    'Lote',
    'LoteStatus',
    'ResultadoAnalise',
    'Glosa',
    'ItemGlosado',
    'GlosaStatus',
    'TISSCertificate',
    'GuiaAuditLog',
]
