"""
TISS API Endpoints
Guias, lotes, glosas and certificate management
"""

from .operadoras import router as operadoras_router
from .guias import router as guias_router
from .lotes import router as lotes_router
from .glosas import router as glosas_router
from .certificate import router as certificate_router
from .xml_tools import router as xml_tools_router

__all__ = [
    'operadoras_router',
    'guias_router',
    'lotes_router',
    'glosas_router',
    'certificate_router',
    'xml_tools_router',
]
