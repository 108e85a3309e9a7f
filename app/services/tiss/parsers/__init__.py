"""
TISS Parsers
Parsers for processing TISS responses from operators
"""

from .xml_document import TISSDocument
from .protocol_parser import ProtocolParser, ProtocolReceipt
from .denial_interpreter import DenialInterpreter, MotivoGlosa, GLOSA_CATALOG
from .glosa_parser import (
    GlosaStats,
    ParsedGlosa,
    ParsedItemGlosado,
    calculate_glosa_stats,
    days_to_appeal_deadline,
    is_within_appeal_deadline,
    parse_glosa,
)
from .demonstrativo_parser import DemonstrativoAnalise, glosa_from_demonstrativo, parse_demonstrativo_xml

__all__ = [
    'TISSDocument',
    'ProtocolParser',
    'ProtocolReceipt',
    'DenialInterpreter',
    'MotivoGlosa',
    'GLOSA_CATALOG',
    'GlosaStats',
    'ParsedGlosa',
    'ParsedItemGlosado',
    'calculate_glosa_stats',
    'days_to_appeal_deadline',
    'is_within_appeal_deadline',
    'parse_glosa',
    'DemonstrativoAnalise',
    'glosa_from_demonstrativo',
    'parse_demonstrativo_xml',
]
