"""
TISS Demonstrativo Parser
Reads the operator's analysis statement for a whole lote
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional, Union

from app.services.tiss.parsers.denial_interpreter import GLOSA_CATALOG, motivo_from_code
from app.services.tiss.parsers.glosa_parser import (
    ZERO,
    ParsedGlosa,
    ParsedItemGlosado,
    _build_glosa,
    parse_date,
    parse_decimal,
)
from app.services.tiss.parsers.xml_document import TISSDocument

logger = logging.getLogger(__name__)

GUIA_ELEMENTS = ("guiaRecusada", "guiaProcessada", "guia")
ITEM_ELEMENTS = ("itemGlosado",)

STATUS_APROVADA = "aprovada"
STATUS_GLOSADA_PARCIAL = "glosada_parcial"
STATUS_GLOSADA_TOTAL = "glosada_total"


@dataclass
class DemonstrativoGuia:
    numero_guia_prestador: str
    numero_guia_operadora: Optional[str]
    data_execucao: date
    valor_informado: Decimal
    valor_processado: Decimal
    valor_glosado: Decimal
    status: str
    itens_glosados: List[ParsedItemGlosado] = field(default_factory=list)


@dataclass
class DemonstrativoAnalise:
    numero_lote: str
    registro_ans: str
    protocolo: str
    data_processamento: date
    valor_informado: Decimal
    valor_processado: Decimal
    valor_glosado: Decimal
    guias: List[DemonstrativoGuia] = field(default_factory=list)

    @property
    def guias_glosadas(self) -> List[DemonstrativoGuia]:
        return [guia for guia in self.guias if guia.status != STATUS_APROVADA]


def guia_status(valor_processado: Decimal, valor_glosado: Decimal) -> str:
    if valor_glosado <= ZERO:
        return STATUS_APROVADA
    return STATUS_GLOSADA_PARCIAL if valor_processado > ZERO else STATUS_GLOSADA_TOTAL


def _parse_guia(doc: TISSDocument, element, today: date) -> DemonstrativoGuia:
    itens = []
    for index, item in enumerate(doc.find_all("itemGlosado", within=element), start=1):
        motivo = motivo_from_code(doc.text("codigoGlosa", within=item))
        itens.append(ParsedItemGlosado(
            sequencial=index,
            codigo_procedimento=doc.text("codigoProcedimento", within=item, default=""),
            descricao_procedimento=doc.text("descricaoProcedimento", within=item, default=""),
            valor_glosado=parse_decimal(doc.text("valorGlosa", "valorGlosado", within=item)),
            codigo_glosa=motivo.value,
            descricao_glosa=doc.text("descricaoGlosa", within=item) or GLOSA_CATALOG[motivo].descricao,
        ))

    valor_processado = parse_decimal(doc.text("valorProcessado", "valorLiberado", within=element, outside=ITEM_ELEMENTS))
    valor_glosado = parse_decimal(doc.text("valorGlosado", "valorTotalGlosado", within=element, outside=ITEM_ELEMENTS))
    if valor_glosado <= ZERO and itens:
        valor_glosado = sum((item.valor_glosado for item in itens), ZERO)

    return DemonstrativoGuia(
        numero_guia_prestador=doc.text("numeroGuiaPrestador", within=element, default=""),
        numero_guia_operadora=doc.text("numeroGuiaOperadora", within=element),
        data_execucao=parse_date(doc.text("dataExecucao", "dataAtendimento", within=element), today),
        valor_informado=parse_decimal(doc.text("valorInformado", "valorTotal", within=element, outside=ITEM_ELEMENTS)),
        valor_processado=valor_processado,
        valor_glosado=valor_glosado,
        status=guia_status(valor_processado, valor_glosado),
        itens_glosados=itens,
    )


def parse_demonstrativo_xml(payload: Union[str, bytes], today: Optional[date] = None) -> DemonstrativoAnalise:
    """
    Parse a demonstrativo de análise de conta.

    Guias may come as guiaRecusada, guiaProcessada or plain guia blocks.
    Missing lote totals are computed from the guias.

    Raises:
        ValueError: payload is not XML
    """
    today = today or date.today()
    doc = TISSDocument.parse(payload)

    guias = [_parse_guia(doc, element, today) for element in doc.iter(*GUIA_ELEMENTS, outside=GUIA_ELEMENTS)]

    valor_informado = parse_decimal(doc.text("valorInformadoTotal", "valorTotalInformado", outside=GUIA_ELEMENTS))
    valor_processado = parse_decimal(doc.text("valorProcessadoTotal", "valorTotalProcessado", outside=GUIA_ELEMENTS))
    valor_glosado = parse_decimal(doc.text("valorGlosadoTotal", "valorTotalGlosado", outside=GUIA_ELEMENTS))
    if valor_informado <= ZERO:
        valor_informado = sum((guia.valor_informado for guia in guias), ZERO)
    if valor_processado <= ZERO:
        valor_processado = sum((guia.valor_processado for guia in guias), ZERO)
    if valor_glosado <= ZERO:
        valor_glosado = sum((guia.valor_glosado for guia in guias), ZERO)

    demonstrativo = DemonstrativoAnalise(
        numero_lote=doc.text("numeroLote", default=""),
        registro_ans=doc.text("registroANS", default=""),
        protocolo=doc.text("numeroProtocolo", "protocolo", default=""),
        data_processamento=parse_date(doc.text("dataProcessamento", "dataRecebimento"), today),
        valor_informado=valor_informado,
        valor_processado=valor_processado,
        valor_glosado=valor_glosado,
        guias=guias,
    )
    logger.info(
        f"Parsed demonstrativo for lote {demonstrativo.numero_lote}: "
        f"{len(guias)} guias, {len(demonstrativo.guias_glosadas)} with glosa"
    )
    return demonstrativo


def glosa_from_demonstrativo(
    guia: DemonstrativoGuia,
    tipo_guia: str,
    data_recebimento: date,
    numero_protocolo: Optional[str] = None,
) -> ParsedGlosa:
    """Glosa for one denied guia of a statement; unitemized denials become a single generic item"""
    return _build_glosa(
        numero_guia=guia.numero_guia_prestador,
        tipo_guia=tipo_guia,
        data_recebimento=data_recebimento,
        valor_original=guia.valor_informado,
        valor_glosado=guia.valor_glosado,
        itens=list(guia.itens_glosados),
        descricao_sintetica="Valor glosado",
        numero_protocolo=numero_protocolo,
    )
