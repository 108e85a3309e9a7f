"""
TISS Versioning Service
Version profiles for the supported TISS standards
"""

import hashlib
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Optional

from config import settings
from app.services.tiss.errors import SchemaValidationError

logger = logging.getLogger(__name__)

TISS_NAMESPACE = "http://www.ans.gov.br/padroes/tiss/schemas"


@dataclass(frozen=True)
class TISSVersionProfile:
    """
    Per-version rendering differences on top of the shared TISS core.

    Differences found so far:
    - 3.05 declares the standard in ``cabecalho/Padrao``; 4.02 uses
      ``cabecalho/versaoPadrao``.
    - The epilogo hash is MD5 in 3.05 and SHA-1 in 4.02 (uppercase hex).
    """
    version: str
    standard_element: str
    epilogo_algorithm: str

    def epilogo_hash(self, content: str) -> str:
        return hashlib.new(self.epilogo_algorithm, content.encode("utf-8")).hexdigest().upper()


PROFILES = MappingProxyType({
    "3.05.00": TISSVersionProfile("3.05.00", standard_element="Padrao", epilogo_algorithm="md5"),
    "4.02.00": TISSVersionProfile("4.02.00", standard_element="versaoPadrao", epilogo_algorithm="sha1"),
})


class TISSVersioningService:
    """Service for resolving TISS versions"""

    SUPPORTED_VERSIONS = list(PROFILES.keys())

    @staticmethod
    def normalize(version: str) -> str:
        """Accept '4.02', '4.02.00' or patch releases such as '3.05.02'"""
        if not version:
            raise SchemaValidationError("versao_tiss", "Versão TISS não informada.")
        parts = version.strip().split(".")
        if len(parts) < 2 or not all(p.isdigit() for p in parts):
            raise SchemaValidationError("versao_tiss", f"Versão TISS inválida: {version}")
        return f"{int(parts[0])}.{parts[1].zfill(2)}.00"

    @classmethod
    def get_profile(cls, version: str) -> TISSVersionProfile:
        key = cls.normalize(version)
        profile = PROFILES.get(key)
        if profile is None:
            raise SchemaValidationError(
                "versao_tiss",
                f"Versão TISS {version} não suportada. Versões aceitas: {', '.join(cls.SUPPORTED_VERSIONS)}",
            )
        return profile

    @classmethod
    def resolve_version(cls, operadora=None, requested: Optional[str] = None) -> str:
        """Explicit request wins, then the operadora contract, then the default"""
        version = requested or (operadora.versao_tiss if operadora is not None else None) or settings.TISS_DEFAULT_VERSION
        return cls.get_profile(version).version

    @classmethod
    def get_supported_versions(cls) -> List[str]:
        return list(cls.SUPPORTED_VERSIONS)
