"""
TISS Glosa Parser
Turns operator denial responses (XML or structured) into glosa records and
computes appeal deadlines and recovery statistics.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from app.models.tiss.glosa import APPEAL_DEADLINE_DAYS, GlosaStatus
from app.models.tiss.guia import TipoGuia
from app.services.tiss.parsers.denial_interpreter import GLOSA_CATALOG, motivo_from_code
from app.services.tiss.parsers.xml_document import TISSDocument

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")

ITEM_ELEMENTS = ("itemGlosado", "glosaItem", "procedimentoGlosado")

# Element markers in priority order
TIPO_GUIA_MARKERS = (
    (("guiaConsulta", "guiaDeConsulta"), TipoGuia.CONSULTA),
    (("guiaSP-SADT", "guiaSADT"), TipoGuia.SADT),
    (("guiaInternacao", "guiaResumoInternacao"), TipoGuia.INTERNACAO),
    (("guiaHonorarios", "guiaHonorarioIndividual"), TipoGuia.HONORARIOS),
)


@dataclass
class ParsedItemGlosado:
    sequencial: int
    codigo_procedimento: str
    descricao_procedimento: str
    valor_glosado: Decimal
    codigo_glosa: str
    descricao_glosa: str
    quantidade: int = 1
    valor_original: Decimal = ZERO


@dataclass
class ParsedGlosa:
    numero_guia: str
    tipo_guia: str
    data_recebimento: date
    valor_original: Decimal
    valor_glosado: Decimal
    valor_aprovado: Decimal
    itens: List[ParsedItemGlosado] = field(default_factory=list)
    numero_protocolo: Optional[str] = None
    observacao: Optional[str] = None
    status: str = GlosaStatus.PENDENTE.value

    @property
    def prazo_recurso(self) -> date:
        return appeal_deadline(self.data_recebimento)


@dataclass
class GlosaStats:
    total_glosas: int
    valor_total: Decimal
    valor_recuperado: Decimal
    taxa_recuperacao: Decimal
    principais_motivos: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_glosas": self.total_glosas,
            "valor_total": self.valor_total,
            "valor_recuperado": self.valor_recuperado,
            "taxa_recuperacao": self.taxa_recuperacao,
            "principais_motivos": self.principais_motivos,
        }


def parse_decimal(value: Any) -> Decimal:
    """
    Money from operator payloads: '150', '150.5', '150,50' and '1.234,56'
    are all accepted. Empty or unreadable values count as zero.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value.quantize(CENT)
    if isinstance(value, (int, float)):
        return Decimal(str(value)).quantize(CENT)

    text = str(value).strip().replace(" ", "")
    if not text:
        return ZERO
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        return Decimal(text).quantize(CENT)
    except InvalidOperation:
        logger.warning(f"Unreadable monetary value in glosa payload: {value!r}")
        return ZERO


def parse_date(value: Any, default: Optional[date] = None) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value:
        text = str(value).strip()
        for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%Y-%m-%dT%H:%M:%S"):
            try:
                return datetime.strptime(text[:19] if "T" in text else text, fmt).date()
            except ValueError:
                continue
        logger.warning(f"Unreadable date in glosa payload: {value!r}")
    return default or date.today()


def appeal_deadline(received) -> date:
    """Accepts the received date itself or anything carrying data_recebimento"""
    data_recebimento = getattr(received, "data_recebimento", received)
    return data_recebimento + timedelta(days=APPEAL_DEADLINE_DAYS)


def is_within_appeal_deadline(received, today: date) -> bool:
    """True from the receiving day through the deadline day"""
    return today <= appeal_deadline(received)


def days_to_appeal_deadline(received, today: date) -> int:
    """Days left to appeal; negative once the deadline has passed"""
    return (appeal_deadline(received) - today).days


def detect_tipo_guia(doc: TISSDocument) -> str:
    for markers, tipo in TIPO_GUIA_MARKERS:
        if doc.has(*markers):
            return tipo.value
    return TipoGuia.ANEXO.value


def _reconcile(itens: List[ParsedItemGlosado], valor_glosado: Decimal, descricao_sintetica: str, codigo_procedimento: str = "") -> Decimal:
    """
    Make item values add up to the glosa total. A gap is kept as a generic
    item instead of being dropped. Returns the reconciled total.
    """
    soma = sum((item.valor_glosado for item in itens), ZERO)

    if not itens:
        if valor_glosado > ZERO:
            info = GLOSA_CATALOG[motivo_from_code(None)]
            itens.append(ParsedItemGlosado(
                sequencial=1,
                codigo_procedimento=codigo_procedimento,
                descricao_procedimento=descricao_sintetica,
                valor_glosado=valor_glosado,
                codigo_glosa="outros",
                descricao_glosa=info.descricao,
            ))
        return valor_glosado

    if valor_glosado <= ZERO or soma > valor_glosado:
        if valor_glosado > ZERO:
            logger.warning(f"Denied items sum {soma} exceeds declared total {valor_glosado}; using item sum")
        return soma

    if soma < valor_glosado:
        info = GLOSA_CATALOG[motivo_from_code(None)]
        itens.append(ParsedItemGlosado(
            sequencial=len(itens) + 1,
            codigo_procedimento="",
            descricao_procedimento="Diferença não detalhada pela operadora",
            valor_glosado=valor_glosado - soma,
            codigo_glosa="outros",
            descricao_glosa=info.descricao,
        ))
    return valor_glosado


def _build_glosa(
    numero_guia: str,
    tipo_guia: str,
    data_recebimento: date,
    valor_original: Decimal,
    valor_glosado: Decimal,
    itens: List[ParsedItemGlosado],
    descricao_sintetica: str,
    codigo_procedimento: str = "",
    numero_protocolo: Optional[str] = None,
    observacao: Optional[str] = None,
) -> ParsedGlosa:
    valor_glosado = _reconcile(itens, valor_glosado, descricao_sintetica, codigo_procedimento)
    if valor_original <= ZERO:
        valor_original = sum((item.valor_original for item in itens), ZERO)
    if valor_original < valor_glosado:
        valor_original = valor_glosado

    return ParsedGlosa(
        numero_guia=numero_guia,
        tipo_guia=tipo_guia,
        data_recebimento=data_recebimento,
        valor_original=valor_original,
        valor_glosado=valor_glosado,
        valor_aprovado=max(ZERO, valor_original - valor_glosado),
        itens=itens,
        numero_protocolo=numero_protocolo,
        observacao=observacao,
    )


def parse_glosa_xml(payload: Union[str, bytes], today: Optional[date] = None) -> ParsedGlosa:
    """
    Parse a TISS glosa/demonstrativo XML for a single guia.

    Raises:
        ValueError: payload is not XML
    """
    doc = TISSDocument.parse(payload)

    itens = []
    for index, element in enumerate(doc.find_all(*ITEM_ELEMENTS), start=1):
        motivo = motivo_from_code(doc.text("codigoGlosa", "motivoGlosa", within=element))
        quantidade = doc.text("quantidadeExecutada", "quantidade", within=element)
        itens.append(ParsedItemGlosado(
            sequencial=int(doc.text("sequencialItem", within=element) or index),
            codigo_procedimento=doc.text("codigoProcedimento", within=element, default=""),
            descricao_procedimento=doc.text("descricaoProcedimento", within=element, default=""),
            valor_glosado=parse_decimal(doc.text("valorGlosa", "valorGlosado", within=element)),
            codigo_glosa=motivo.value,
            descricao_glosa=doc.text("descricaoGlosa", within=element) or GLOSA_CATALOG[motivo].descricao,
            quantidade=int(quantidade) if quantidade and quantidade.isdigit() else 1,
            valor_original=parse_decimal(doc.text("valorInformado", "valorProcessado", within=element)),
        ))

    glosa = _build_glosa(
        numero_guia=doc.text("numeroGuiaPrestador", "numeroGuiaOperadora", default=""),
        tipo_guia=detect_tipo_guia(doc),
        data_recebimento=parse_date(doc.text("dataRecebimento", "dataProcessamento"), today),
        valor_original=parse_decimal(doc.text("valorInformado", "valorTotal", "valorInformadoGuia", outside=ITEM_ELEMENTS)),
        valor_glosado=parse_decimal(doc.text("valorGlosado", "valorTotalGlosado", "valorGlosaGuia", outside=ITEM_ELEMENTS)),
        itens=itens,
        descricao_sintetica="Procedimento glosado",
        codigo_procedimento=doc.text("codigoProcedimento", default=""),
        numero_protocolo=doc.text("numeroProtocolo"),
        observacao=doc.text("observacao"),
    )
    logger.info(f"Parsed glosa for guia {glosa.numero_guia}: {glosa.valor_glosado} denied in {len(glosa.itens)} items")
    return glosa


def _get(data: Mapping, *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_glosa_response(data: Mapping[str, Any], today: Optional[date] = None) -> ParsedGlosa:
    """
    Build a glosa from pre-structured input (snake_case or the camelCase
    names operators use in JSON portals).
    """
    itens = []
    for index, item in enumerate(_get(data, "itens", default=[]) or [], start=1):
        motivo = motivo_from_code(_get(item, "motivo", "codigo_glosa", "codigoGlosa"))
        itens.append(ParsedItemGlosado(
            sequencial=index,
            codigo_procedimento=str(_get(item, "codigo_procedimento", "codigoProcedimento", default="")),
            descricao_procedimento=_get(item, "descricao", "descricao_procedimento", default=""),
            valor_glosado=parse_decimal(_get(item, "valor", "valor_glosado", "valorGlosado")),
            codigo_glosa=motivo.value,
            descricao_glosa=GLOSA_CATALOG[motivo].descricao,
            quantidade=int(_get(item, "quantidade", default=1)),
            valor_original=parse_decimal(_get(item, "valor_original", "valorOriginal")),
        ))

    tipo = _get(data, "tipo_guia", "tipoGuia", default=TipoGuia.CONSULTA.value)
    return _build_glosa(
        numero_guia=str(_get(data, "numero_guia", "numeroGuiaPrestador", default="")),
        tipo_guia=TipoGuia(tipo).value,
        data_recebimento=parse_date(_get(data, "data_recebimento", "dataRecebimento"), today),
        valor_original=parse_decimal(_get(data, "valor_original", "valorOriginal")),
        valor_glosado=parse_decimal(_get(data, "valor_glosado", "valorGlosado")),
        itens=itens,
        descricao_sintetica="Valor glosado",
        numero_protocolo=_get(data, "numero_protocolo", "numeroProtocolo"),
        observacao=_get(data, "observacao"),
    )


def parse_glosa(payload: Union[str, bytes, Mapping[str, Any]], today: Optional[date] = None) -> ParsedGlosa:
    """Entry point for any operator response shape"""
    if isinstance(payload, Mapping):
        return parse_glosa_response(payload, today)
    return parse_glosa_xml(payload, today)


def calculate_glosa_stats(glosas: Iterable) -> GlosaStats:
    """
    Aggregate denied and recovered values over a set of glosas.

    Recovered value counts only glosas already ``resolvida``. Reasons are
    ranked by total denied value; ties keep first-seen order.
    """
    glosas = list(glosas)
    if not glosas:
        return GlosaStats(0, ZERO, ZERO, ZERO, [])

    valor_total = ZERO
    valor_recuperado = ZERO
    motivos: Dict[str, Dict[str, Any]] = {}

    for glosa in glosas:
        valor_total += Decimal(glosa.valor_glosado)
        if glosa.status == GlosaStatus.RESOLVIDA.value:
            valor_recuperado += Decimal(glosa.valor_aprovado)
        for item in glosa.itens:
            motivo = motivo_from_code(item.codigo_glosa)
            entry = motivos.setdefault(motivo.value, {
                "motivo": motivo.value,
                "descricao": GLOSA_CATALOG[motivo].descricao,
                "quantidade": 0,
                "valor": ZERO,
            })
            entry["quantidade"] += 1
            entry["valor"] += Decimal(item.valor_glosado)

    taxa = ZERO
    if valor_total > ZERO:
        taxa = (valor_recuperado / valor_total * 100).quantize(CENT)

    principais = sorted(motivos.values(), key=lambda entry: entry["valor"], reverse=True)
    return GlosaStats(len(glosas), valor_total, valor_recuperado, taxa, principais)
