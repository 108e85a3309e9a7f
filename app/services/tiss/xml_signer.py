"""
TISS XML Signature Service
Enveloped XML-DSig (RSA-SHA256, inclusive C14N) for TISS documents
"""

import base64
import hashlib
import logging
from contextlib import contextmanager
from typing import Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from app.services.tiss.certificate_store import load_pkcs12
from app.services.tiss.errors import SigningError

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
SIGNATURE_ALGORITHM = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
DIGEST_ALGORITHM = "http://www.w3.org/2001/04/xmlenc#sha256"
ENVELOPED_TRANSFORM = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

SIGNATURE_OPEN_TAG = f'<Signature xmlns="{DS_NS}">'
SIGNATURE_CLOSE_TAG = "</Signature>"


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _parse(document: str):
    try:
        return etree.fromstring(document.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise SigningError(f"XML malformado: {e}", code="malformed_xml")


def _canonicalize(root) -> bytes:
    return etree.tostring(root.getroottree(), method="c14n", exclusive=False, with_comments=False)


def hash_xml(document: str) -> str:
    """
    SHA-256 of the canonical (C14N, no comments) form of the document.

    Args:
        document: XML string

    Returns:
        Lowercase hex digest
    """
    return hashlib.sha256(_canonicalize(_parse(document))).hexdigest()


@contextmanager
def signing_material(pkcs12_bytes: bytes, password: str):
    """
    Hold the private key and certificate only for the duration of the block.
    Both references are dropped on every exit path.
    """
    private_key = certificate = None
    try:
        try:
            private_key, certificate = load_pkcs12(pkcs12_bytes, password)
        except ValueError:
            raise SigningError(
                "Não foi possível abrir o certificado: senha incorreta ou arquivo PKCS#12 inválido.",
                code="invalid_pkcs12",
            )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise SigningError("O certificado deve conter uma chave privada RSA.", code="unsupported_key")
        yield private_key, certificate
    finally:
        private_key = None
        certificate = None


def _root_close_position(document: str, root) -> int:
    """Offset of the root end tag, where the enveloped signature goes"""
    qname = f"{root.prefix}:{etree.QName(root).localname}" if root.prefix else etree.QName(root).localname
    position = document.rfind(f"</{qname}")
    if position == -1:
        # <root/> has no end tag; rewriting it would change the signed bytes
        raise SigningError(
            f"O elemento raiz <{qname}/> está vazio: a assinatura envelopada exige "
            f"tags de abertura e fechamento (<{qname}></{qname}>).",
            code="empty_root",
        )
    return position


def _build_signature(digest_value: str, certificate_der: bytes):
    signature = etree.Element(_ds("Signature"), nsmap={None: DS_NS})
    signed_info = etree.SubElement(signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=SIGNATURE_ALGORITHM)
    reference = etree.SubElement(signed_info, _ds("Reference"), URI="")
    transforms = etree.SubElement(reference, _ds("Transforms"))
    etree.SubElement(transforms, _ds("Transform"), Algorithm=ENVELOPED_TRANSFORM)
    etree.SubElement(transforms, _ds("Transform"), Algorithm=C14N_ALGORITHM)
    etree.SubElement(reference, _ds("DigestMethod"), Algorithm=DIGEST_ALGORITHM)
    etree.SubElement(reference, _ds("DigestValue")).text = digest_value
    etree.SubElement(signature, _ds("SignatureValue"))
    key_info = etree.SubElement(signature, _ds("KeyInfo"))
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    etree.SubElement(x509_data, _ds("X509Certificate")).text = base64.b64encode(certificate_der).decode("ascii")
    return signature


def _signed_info_c14n(document: str) -> bytes:
    """Canonical SignedInfo as it sits inside the document (inherits in-scope namespaces)"""
    root = _parse(document)
    signed_info = root.find(f"{_ds('Signature')}/{_ds('SignedInfo')}")
    return etree.tostring(signed_info, method="c14n", exclusive=False, with_comments=False)


def sign_xml(document: str, pkcs12_bytes: bytes, password: str) -> str:
    """
    Sign a TISS document with an enveloped XML-DSig signature.

    The Signature element is appended as the last child of the root. The
    document text outside the inserted block is left byte-for-byte intact.

    Args:
        document: XML string to sign
        pkcs12_bytes: PKCS#12 (.pfx) container with RSA key and certificate
        password: Container password

    Returns:
        Signed XML string

    Raises:
        SigningError: malformed XML, bad container or wrong password
    """
    root = _parse(document)
    if root.find(_ds("Signature")) is not None:
        raise SigningError("O documento já está assinado.", code="already_signed")

    position = _root_close_position(document, root)
    digest_value = base64.b64encode(hashlib.sha256(_canonicalize(root)).digest()).decode("ascii")

    with signing_material(pkcs12_bytes, password) as (private_key, certificate):
        signature = _build_signature(digest_value, certificate.public_bytes(serialization.Encoding.DER))

        template = etree.tostring(signature, encoding="unicode")
        signed_info = _signed_info_c14n(document[:position] + template + document[position:])

        try:
            signature_value = private_key.sign(signed_info, padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, TypeError) as e:
            logger.error(f"RSA signing failed for certificate serial {certificate.serial_number}: {type(e).__name__}")
            raise SigningError("Falha ao gerar a assinatura digital.", code="crypto_failure")

        signature.find(_ds("SignatureValue")).text = base64.b64encode(signature_value).decode("ascii")
        serial = certificate.serial_number

    block = etree.tostring(signature, encoding="unicode")
    logger.info(f"Signed XML document (digest {digest_value}) with certificate serial {serial}")
    return document[:position] + block + document[position:]


def _signature_span(signed: str) -> Tuple[int, int]:
    start = signed.rfind(SIGNATURE_OPEN_TAG)
    end = signed.find(SIGNATURE_CLOSE_TAG, start)
    if start == -1 or end == -1:
        raise SigningError("Documento não contém assinatura.", code="signature_missing")
    return start, end + len(SIGNATURE_CLOSE_TAG)


def strip_signature(signed: str) -> str:
    """Return the document exactly as it was before signing"""
    start, end = _signature_span(signed)
    return signed[:start] + signed[end:]


def verify_xml(signed: str) -> bool:
    """
    Check the enveloped signature: reference digest and RSA signature value
    against the embedded certificate.
    """
    root = _parse(signed)
    signatures = root.findall(_ds("Signature"))
    if len(signatures) != 1 or root[-1] is not signatures[0]:
        logger.warning("Signed document must carry exactly one Signature as the last root child")
        return False

    signature = signatures[0]
    expected_digest = signature.findtext(f"{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestValue')}")
    original = _parse(strip_signature(signed))
    actual_digest = base64.b64encode(hashlib.sha256(_canonicalize(original)).digest()).decode("ascii")
    if expected_digest != actual_digest:
        logger.warning("XML signature digest mismatch: document content changed after signing")
        return False

    certificate_b64 = signature.findtext(f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}")
    signature_b64 = signature.findtext(_ds("SignatureValue"))
    if not certificate_b64 or not signature_b64:
        return False

    certificate = x509.load_der_x509_certificate(base64.b64decode(certificate_b64))
    signed_info = etree.tostring(signature.find(_ds("SignedInfo")), method="c14n", exclusive=False, with_comments=False)
    try:
        certificate.public_key().verify(base64.b64decode(signature_b64), signed_info, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        logger.warning(f"XML signature value does not match certificate serial {certificate.serial_number}")
        return False
    return True


def read_digest_value(signed: str) -> str:
    """DigestValue recorded in the signature block"""
    root = _parse(signed)
    return root.findtext(f"{_ds('Signature')}/{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestValue')}")
