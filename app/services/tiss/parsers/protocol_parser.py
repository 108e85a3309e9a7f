"""
TISS Protocol Parser
Parses operator answers to a lote submission (protocol receipt or rejection)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from app.services.tiss.parsers.xml_document import TISSDocument

logger = logging.getLogger(__name__)


@dataclass
class ProtocolReceipt:
    protocol_number: Optional[str]
    protocol_date: Optional[str] = None
    batch_number: Optional[str] = None
    status: Optional[str] = None
    fault: Optional[str] = None
    errors: List[Dict[str, Optional[str]]] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return bool(self.protocol_number) and not self.fault and not self.errors


class ProtocolParser:
    """Parser for TISS protocol receipts"""

    @staticmethod
    def parse(payload: Union[str, bytes]) -> ProtocolReceipt:
        """
        Parse a SOAP (or bare) operator response.

        Raises:
            ValueError: payload is not XML
        """
        doc = TISSDocument.parse(payload)

        fault = None
        fault_element = doc.find("Fault")
        if fault_element is not None:
            fault = (
                doc.text("faultstring", within=fault_element)
                or doc.text("Text", within=fault_element)
                or "SOAP Fault"
            )

        errors = []
        for error in doc.find_all("erro", "mensagemErro", "glosaProtocolo"):
            errors.append({
                "code": doc.text("codigo", "codigoGlosa", within=error),
                "message": doc.text("mensagem", "descricaoGlosa", within=error) or (error.text or "").strip() or None,
            })

        receipt = ProtocolReceipt(
            protocol_number=doc.text("numeroProtocolo", "numeroProtocoloRecebimento"),
            protocol_date=doc.text("dataProtocolo", "dataRecebimento"),
            batch_number=doc.text("numeroLote", "numeroLoteGuia"),
            status=doc.text("situacao", "status"),
            fault=fault,
            errors=errors,
        )
        logger.info(f"Parsed protocol {receipt.protocol_number} for lote {receipt.batch_number}")
        return receipt
