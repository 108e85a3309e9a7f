"""
TISS Services
Guia lifecycle, XML generation and signing, lote submission and glosa reconciliation
"""

from .versioning import TISSVersioningService
from .security import TISSSecurityService
from .certificate_store import CertificateStore
from .xml_builder import build_guia_xml, build_lote_xml, build_recurso_xml
from .xml_signer import hash_xml, sign_xml, strip_signature, verify_xml
from .guia_lifecycle import GuiaLifecycleManager, LedgerGateway
from .submission import RetryManager, WebserviceSender
from .batch_generator import LoteBatchManager, SubmissionResult
from .parsers import DenialInterpreter, ProtocolParser, calculate_glosa_stats, parse_glosa
from .glosa_service import GlosaService

__all__ = [
    'TISSVersioningService',
    'TISSSecurityService',
    'CertificateStore',
    'build_guia_xml',
    'build_lote_xml',
    'build_recurso_xml',
    'hash_xml',
    'sign_xml',
    'strip_signature',
    'verify_xml',
    'GuiaLifecycleManager',
    'LedgerGateway',
    'RetryManager',
    'WebserviceSender',
    'LoteBatchManager',
    'SubmissionResult',
    'DenialInterpreter',
    'ProtocolParser',
    'calculate_glosa_stats',
    'parse_glosa',
    'GlosaService',
]
