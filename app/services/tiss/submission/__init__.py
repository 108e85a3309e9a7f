"""
TISS Submission Services
Handles sending TISS lotes to operator webservices
"""

from .webservice_sender import WebserviceSender, SendResult, build_soap_envelope
from .retry_manager import RetryManager

__all__ = ['WebserviceSender', 'SendResult', 'build_soap_envelope', 'RetryManager']
