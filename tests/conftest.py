"""
Pytest configuration and fixtures
"""
import os

from cryptography.fernet import Fernet

# Must be set before config/database are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TISS_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from app.core.auth import create_access_token
from app.models.tiss import Operadora
from app.services.tiss.certificate_store import OID_CNPJ, CertificateStore, certificate_rate_limiter
from app.services.tiss.guia_lifecycle import GuiaLifecycleManager


# Test database URL (use in-memory SQLite for testing)
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///:memory:"
)

CLINIC_ID = 1
CLINIC_CNPJ = "12345678000199"
CERT_PASSWORD = "senha-teste"

TISS_RECEIPT = """<?xml version="1.0" encoding="UTF-8"?>
<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope">
  <soap:Body>
    <ans:protocoloRecebimento xmlns:ans="http://www.ans.gov.br/padroes/tiss/schemas">
      <ans:numeroLote>{numero_lote}</ans:numeroLote>
      <ans:numeroProtocolo>{protocolo}</ans:numeroProtocolo>
      <ans:dataProtocolo>2024-03-01</ans:dataProtocolo>
    </ans:protocoloRecebimento>
  </soap:Body>
</soap:Envelope>"""


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False} if "sqlite" in TEST_DATABASE_URL else {},
        poolclass=StaticPool if "sqlite" in TEST_DATABASE_URL else None,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_certificate_rate_limiter():
    certificate_rate_limiter.reset()
    yield
    certificate_rate_limiter.reset()


# Certificates

@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def make_pkcs12(rsa_key):
    """
    Factory for self-signed e-CNPJ style PKCS#12 containers.

    Usage:
        pfx = make_pkcs12(expired=True)
    """
    def _make(password: str = CERT_PASSWORD, cnpj: str = CLINIC_CNPJ, expired: bool = False, san_cnpj: str = None) -> bytes:
        now = datetime.now(timezone.utc)
        if expired:
            not_before, not_after = now - timedelta(days=400), now - timedelta(days=1)
        else:
            not_before, not_after = now - timedelta(days=1), now + timedelta(days=365)

        name = x509.Name([
            x509.NameAttribute(NameOID.COUNTRY_NAME, "BR"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
            x509.NameAttribute(NameOID.COMMON_NAME, f"CLINICA TESTE LTDA:{cnpj}"),
        ])
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(rsa_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
        )
        if san_cnpj:
            # OCTET STRING holding the CNPJ digits
            der_value = b"\x04" + bytes([len(san_cnpj)]) + san_cnpj.encode("ascii")
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.OtherName(OID_CNPJ, der_value)]),
                critical=False,
            )
        certificate = builder.sign(rsa_key, hashes.SHA256())

        return pkcs12.serialize_key_and_certificates(
            b"clinica-teste",
            rsa_key,
            certificate,
            None,
            serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
    return _make


@pytest.fixture
def pkcs12_credentials(make_pkcs12):
    return make_pkcs12(), CERT_PASSWORD


@pytest.fixture
async def clinic_certificate(db_session, pkcs12_credentials):
    pfx_bytes, password = pkcs12_credentials
    return await CertificateStore(db_session).upload(CLINIC_ID, pfx_bytes, password)


# Domain data

@pytest.fixture
async def operadora(db_session) -> Operadora:
    operadora = Operadora(
        clinic_id=CLINIC_ID,
        registro_ans="123456",
        nome="Operadora Teste Saúde",
        cnpj="11222333000181",
        codigo_prestador="PREST001",
        versao_tiss="4.02.00",
        tabela_procedimentos="22",
        webservice_url="https://operadora.test/tiss/lote",
        ativa=True,
    )
    db_session.add(operadora)
    await db_session.commit()
    await db_session.refresh(operadora)
    return operadora


@pytest.fixture
def guia_data(operadora):
    return {
        "tipo": "consulta",
        "operadora_id": operadora.id,
        "nome_beneficiario": "Maria Silva",
        "numero_carteira": "123456",
        "nome_profissional": "Dr. João Souza",
        "conselho_profissional": "06",
        "numero_conselho": "54321",
        "uf_conselho": "SP",
        "cbos": "225125",
        "data_atendimento": date(2024, 3, 1),
        "tipo_consulta": "1",
        "itens": [
            {"codigo_procedimento": "10101012", "quantidade": 1, "valor_unitario_centavos": 15000},
        ],
    }


@pytest.fixture
def lifecycle(db_session):
    return GuiaLifecycleManager(db_session)


@pytest.fixture
def make_guia(lifecycle, guia_data):
    """Factory for draft guias; keyword overrides replace guia_data fields"""
    async def _make(**overrides):
        data = dict(guia_data)
        data.update(overrides)
        return await lifecycle.create_guia(CLINIC_ID, data, actor_id=1)
    return _make


@pytest.fixture
def make_queued_guia(lifecycle, make_guia, clinic_certificate):
    """Factory for guias that went through generate, sign and enqueue"""
    async def _make(**overrides):
        guia = await make_guia(**overrides)
        await lifecycle.generate_xml(CLINIC_ID, guia.id, actor_id=1)
        await lifecycle.sign(CLINIC_ID, guia.id, actor_id=1)
        return await lifecycle.enqueue(CLINIC_ID, guia.id, actor_id=1)
    return _make


@pytest.fixture
def receipt_xml():
    """Operator protocol receipt body"""
    def _make(protocolo: str = "PROT-2024-0001", numero_lote: str = "20240301-0001") -> str:
        return TISS_RECEIPT.format(protocolo=protocolo, numero_lote=numero_lote)
    return _make


# Auth

def _token_headers(role: str, user_id: int = 1, clinic_id: int = CLINIC_ID) -> dict:
    token = create_access_token({
        "sub": str(user_id),
        "clinic_id": clinic_id,
        "role": role,
        "email": f"{role}@clinica.test",
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> dict:
    """Headers for a professional of the test clinic"""
    return _token_headers("professional")


@pytest.fixture
def admin_headers() -> dict:
    return _token_headers("admin")


@pytest.fixture
def owner_headers() -> dict:
    return _token_headers("owner")


@pytest.fixture
def receptionist_headers() -> dict:
    return _token_headers("receptionist")


@pytest.fixture
def other_clinic_headers() -> dict:
    return _token_headers("owner", user_id=2, clinic_id=2)


@pytest.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """API client bound to the test session"""
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
