"""
Webservice Sender Service
Sends signed TISS lotes to the operator SOAP 1.2 endpoint
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config import settings
from app.services.tiss.errors import OperatorRejectionError, SubmissionError
from app.services.tiss.parsers.protocol_parser import ProtocolParser

logger = logging.getLogger(__name__)

SOAP_NS = "http://www.w3.org/2003/05/soap-envelope"
SOAP_ACTION = "tissLoteGuias"


@dataclass
class SendResult:
    protocol_number: str
    protocol_date: Optional[str]
    status_code: int


def build_soap_envelope(tiss_xml: str) -> str:
    """Wrap the signed TISS message (declaration dropped) in a SOAP 1.2 envelope"""
    body = tiss_xml.lstrip()
    if body.startswith("<?xml"):
        body = body[body.index("?>") + 2:].lstrip()
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_NS}">'
        "<soap:Header/>"
        f"<soap:Body>{body}</soap:Body>"
        "</soap:Envelope>"
    )


class WebserviceSender:
    """Posts lotes over HTTP; classifies failures as retryable or terminal"""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout if timeout is not None else settings.TISS_SUBMIT_TIMEOUT
        self.transport = transport

    async def send(self, url: str, signed_xml: str, numero_lote: str) -> SendResult:
        """
        Send one lote.

        Raises:
            SubmissionError: timeout, transport failure or unreadable response, safe to retry
            OperatorRejectionError: HTTP error, SOAP Fault or missing protocol
        """
        envelope = build_soap_envelope(signed_xml)
        headers = {
            "Content-Type": f'application/soap+xml; charset=utf-8; action="{SOAP_ACTION}"',
            "SOAPAction": SOAP_ACTION,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, content=envelope.encode("utf-8"), headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout sending lote {numero_lote} to {url}: {type(e).__name__}")
            raise SubmissionError(
                "Timeout na conexão com a operadora. Tente novamente.",
                details={"numero_lote": numero_lote},
            )
        except httpx.TransportError as e:
            logger.warning(f"Transport error sending lote {numero_lote} to {url}: {e}")
            raise SubmissionError(
                "Falha de comunicação com a operadora. Tente novamente.",
                details={"numero_lote": numero_lote},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # Corrupt body, redirect loop or bad URL: no definitive answer from the operator
            logger.warning(f"Unreadable exchange for lote {numero_lote} with {url}: {type(e).__name__}: {e}")
            raise SubmissionError(
                "Resposta da operadora ilegível ou endereço inválido. Tente novamente.",
                details={"numero_lote": numero_lote, "reason": type(e).__name__},
            )

        receipt = None
        if response.content:
            try:
                receipt = ProtocolParser.parse(response.content)
            except ValueError:
                logger.warning(f"Operator returned non-XML body for lote {numero_lote} (HTTP {response.status_code})")

        if response.status_code >= 400:
            message = (receipt.fault if receipt and receipt.fault else None) or f"Operadora retornou HTTP {response.status_code}"
            logger.error(f"Operator rejected lote {numero_lote}: HTTP {response.status_code} - {message}")
            raise OperatorRejectionError(
                f"Lote rejeitado pela operadora: {message}",
                operator_code=str(response.status_code),
            )

        if receipt is None or not receipt.accepted:
            if receipt and receipt.fault:
                message, code = receipt.fault, None
            elif receipt and receipt.errors:
                message, code = receipt.errors[0]["message"] or "Erro não especificado", receipt.errors[0]["code"]
            else:
                message, code = "Resposta da operadora sem número de protocolo", None
            logger.error(f"Operator rejected lote {numero_lote}: {message}")
            raise OperatorRejectionError(f"Lote rejeitado pela operadora: {message}", operator_code=code)

        logger.info(f"Lote {numero_lote} accepted with protocol {receipt.protocol_number}")
        return SendResult(
            protocol_number=receipt.protocol_number,
            protocol_date=receipt.protocol_date,
            status_code=response.status_code,
        )
