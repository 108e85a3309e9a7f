"""
Pydantic schemas for the TISS billing module
"""

from typing import Any, Dict, List, Optional
from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel, Field

from app.models.tiss.guia import TipoGuia


# Operadoras

class OperadoraCreate(BaseModel):
    registro_ans: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$", description="Registro ANS (6 dígitos)")
    nome: str = Field(..., max_length=200)
    cnpj: Optional[str] = Field(None, max_length=14)
    codigo_prestador: str = Field(..., max_length=20, description="Código do prestador na operadora")
    versao_tiss: Optional[str] = None
    tabela_procedimentos: str = Field(default="22", max_length=2)
    webservice_url: Optional[str] = None
    contato_email: Optional[str] = None


class OperadoraResponse(BaseModel):
    id: int
    registro_ans: str
    nome: str
    cnpj: Optional[str] = None
    codigo_prestador: str
    versao_tiss: Optional[str] = None
    tabela_procedimentos: str
    webservice_url: Optional[str] = None
    ativa: bool

    class Config:
        from_attributes = True


# Guias

class GuiaItemInput(BaseModel):
    codigo_procedimento: str = Field(..., max_length=10)
    quantidade: int = Field(default=1, ge=1)
    valor_unitario_centavos: int = Field(..., ge=0, description="Valor unitário em centavos")
    codigo_tabela: Optional[str] = Field(None, max_length=2)
    descricao: Optional[str] = Field(None, max_length=150)


class GuiaItemResponse(BaseModel):
    sequencial: int
    codigo_tabela: str
    codigo_procedimento: str
    descricao: Optional[str] = None
    quantidade: int
    valor_unitario_centavos: int
    valor_total_centavos: int

    class Config:
        from_attributes = True


class GuiaCreate(BaseModel):
    tipo: TipoGuia = TipoGuia.CONSULTA
    operadora_id: Optional[int] = None
    patient_id: Optional[int] = None
    nome_beneficiario: Optional[str] = Field(None, max_length=200)
    numero_carteira: Optional[str] = Field(None, max_length=20)
    cns: Optional[str] = Field(None, max_length=15)
    recem_nascido: bool = False
    nome_profissional: Optional[str] = None
    conselho_profissional: Optional[str] = Field(None, max_length=2)
    numero_conselho: Optional[str] = None
    uf_conselho: Optional[str] = Field(None, max_length=2)
    cbos: Optional[str] = Field(None, max_length=6)
    data_atendimento: Optional[date] = None
    tipo_consulta: Optional[str] = Field(None, max_length=1)
    indicacao_clinica: Optional[str] = Field(None, max_length=500)
    itens: List[GuiaItemInput] = Field(default_factory=list)


class GuiaItemsUpdate(BaseModel):
    itens: List[GuiaItemInput]


class GuiaResponse(BaseModel):
    id: int
    numero_guia: str
    tipo: str
    status: str
    version: int
    operadora_id: Optional[int] = None
    patient_id: Optional[int] = None
    nome_beneficiario: Optional[str] = None
    numero_carteira: Optional[str] = None
    recem_nascido: bool
    data_atendimento: Optional[date] = None
    valor_total_centavos: int
    versao_tiss: Optional[str] = None
    hash_xml: Optional[str] = None
    signature_digest: Optional[str] = None
    signed_at: Optional[datetime] = None
    lote_id: Optional[int] = None
    itens: List[GuiaItemResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GenerateXmlRequest(BaseModel):
    versao_tiss: Optional[str] = Field(None, description="Versão TISS (ex.: '4.02.00'); padrão da operadora")


class AuditLogResponse(BaseModel):
    id: int
    actor_id: Optional[int] = None
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Lotes

class LoteCreate(BaseModel):
    operadora_id: int
    guia_ids: List[int] = Field(..., min_length=1)


class LoteResponse(BaseModel):
    id: int
    numero_lote: str
    operadora_id: int
    guia_ids: List[int]
    valor_total_centavos: int
    versao_tiss: str
    status: str
    hash_xml: Optional[str] = None
    send_attempt_count: int
    max_attempts: int
    last_error: Optional[str] = None
    protocol_number: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    resultado_analise: Optional[str] = None
    data_processamento: Optional[date] = None
    valor_processado_centavos: Optional[int] = None
    valor_glosado_centavos: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PerGuiaResult(BaseModel):
    guia_id: int
    numero_guia: str
    status: str


class SubmissionResultResponse(BaseModel):
    lote_id: int
    numero_lote: str
    status: str
    protocol_number: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    per_guia_results: List[PerGuiaResult] = Field(default_factory=list)

    class Config:
        from_attributes = True


class DemonstrativoInput(BaseModel):
    xml: str = Field(..., description="Demonstrativo de análise de conta recebido da operadora")


class DemonstrativoGuiaResult(BaseModel):
    numero_guia: str
    status: str
    acao: str
    guia_id: Optional[int] = None
    glosa_id: Optional[int] = None


class DemonstrativoResultResponse(BaseModel):
    lote_id: int
    numero_lote: str
    resultado_analise: Optional[str] = None
    guias_processadas: int
    glosas_identificadas: int
    valor_glosado_total: Decimal
    per_guia_results: List[DemonstrativoGuiaResult] = Field(default_factory=list)

    class Config:
        from_attributes = True


# Glosas

class ItemGlosadoInput(BaseModel):
    codigo_procedimento: str = ""
    descricao: str = ""
    quantidade: int = 1
    valor: Decimal = Field(..., ge=0)
    valor_original: Optional[Decimal] = None
    motivo: Optional[str] = Field(None, description="Código do motivo de glosa (ex.: 'A1')")


class GlosaCreate(BaseModel):
    numero_guia: str
    tipo_guia: TipoGuia = TipoGuia.CONSULTA
    operadora_id: Optional[int] = None
    numero_protocolo: Optional[str] = None
    data_recebimento: Optional[date] = None
    valor_original: Decimal = Field(..., ge=0)
    valor_glosado: Decimal = Field(..., ge=0)
    observacao: Optional[str] = None
    itens: List[ItemGlosadoInput] = Field(default_factory=list)


class GlosaXmlInput(BaseModel):
    xml: str = Field(..., description="XML de glosa/demonstrativo recebido da operadora")
    operadora_id: Optional[int] = None


class ItemGlosadoResponse(BaseModel):
    sequencial: int
    codigo_procedimento: str
    descricao_procedimento: Optional[str] = None
    quantidade: int
    valor_original: Decimal
    valor_glosado: Decimal
    codigo_glosa: str
    descricao_glosa: str
    justificativa_recurso: Optional[str] = None

    class Config:
        from_attributes = True


class GlosaResponse(BaseModel):
    id: int
    numero_guia: str
    guia_id: Optional[int] = None
    tipo_guia: str
    operadora_id: Optional[int] = None
    numero_protocolo: Optional[str] = None
    data_recebimento: date
    prazo_recurso: date
    valor_original: Decimal
    valor_glosado: Decimal
    valor_aprovado: Decimal
    status: str
    observacao: Optional[str] = None
    recurso_enviado_em: Optional[datetime] = None
    itens: List[ItemGlosadoResponse] = Field(default_factory=list)
    created_at: datetime

    class Config:
        from_attributes = True


class RecursoRequest(BaseModel):
    justificativas: Dict[int, str] = Field(..., description="Justificativa por sequencial do item glosado")
    versao_tiss: Optional[str] = None


class ResolveRequest(BaseModel):
    valor_recuperado: Decimal = Field(..., ge=0)


class MotivoStats(BaseModel):
    motivo: str
    descricao: str
    quantidade: int
    valor: Decimal


class GlosaStatsResponse(BaseModel):
    total_glosas: int
    valor_total: Decimal
    valor_recuperado: Decimal
    taxa_recuperacao: Decimal
    principais_motivos: List[MotivoStats] = Field(default_factory=list)


class ResolutionSuggestion(BaseModel):
    codigo: str
    descricao: str
    acao_recomendada: str
    valor_total: Decimal
    quantidade_itens: int


# Certificado

class CertificateStatusResponse(BaseModel):
    configured: bool
    subject: Optional[str] = None
    issuer: Optional[str] = None
    serial_number: Optional[str] = None
    cnpj: Optional[str] = None
    tipo: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    expired: bool = False
    days_to_expiry: Optional[int] = None
    expiring_soon: bool = False


# Utilitários

class XmlHashRequest(BaseModel):
    xml: str


class XmlHashResponse(BaseModel):
    hash: str
    algorithm: str = "SHA-256"
