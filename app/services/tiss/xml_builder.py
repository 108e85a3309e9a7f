"""
TISS XML Builder
Renders guias, lote envelopes and recursos into ANS TISS XML
"""

import logging
from collections import namedtuple
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from lxml import etree

from app.models.tiss.guia import TipoGuia
from app.services.tiss.errors import SchemaValidationError
from app.services.tiss.versioning import TISS_NAMESPACE, TISSVersioningService, TISSVersionProfile

logger = logging.getLogger(__name__)

NSMAP = {"ans": TISS_NAMESPACE}

GUIA_ELEMENTS = {
    TipoGuia.CONSULTA.value: "guiaConsulta",
    TipoGuia.SADT.value: "guiaSP-SADT",
}

GuiaTotals = namedtuple("GuiaTotals", ["line_totals", "total"])


def _q(tag: str) -> str:
    return f"{{{TISS_NAMESPACE}}}{tag}"


def _sub(parent, tag: str, text=None):
    element = etree.SubElement(parent, _q(tag))
    if text is not None:
        element.text = str(text)
    return element


def format_centavos(value: int) -> str:
    """Render integer cents as the TISS decimal string, 15000 -> '150.00'"""
    sign = "-" if value < 0 else ""
    value = abs(value)
    return f"{sign}{value // 100}.{value % 100:02d}"


def format_decimal(value: Decimal) -> str:
    return f"{Decimal(value).quantize(Decimal('0.01'))}"


def decimal_to_centavos(text: str) -> int:
    try:
        return int((Decimal(text.strip().replace(",", ".")) * 100).to_integral_value())
    except (InvalidOperation, AttributeError):
        raise SchemaValidationError("valor", f"Valor monetário inválido: {text!r}")


def validate_guia(guia) -> None:
    """Structural checks run before rendering; raises on the first violation"""
    if guia.tipo not in GUIA_ELEMENTS:
        raise SchemaValidationError("tipo", f"Geração de XML não disponível para guias do tipo '{guia.tipo}'.")

    operadora = guia.operadora
    if operadora is None or not operadora.registro_ans:
        raise SchemaValidationError("operadora.registro_ans", "Registro ANS da operadora não informado.")
    if len(operadora.registro_ans) != 6 or not operadora.registro_ans.isdigit():
        raise SchemaValidationError("operadora.registro_ans", "Registro ANS deve conter 6 dígitos.")
    if not operadora.codigo_prestador:
        raise SchemaValidationError("operadora.codigo_prestador", "Código do prestador na operadora não informado.")

    if not guia.numero_carteira or not guia.numero_carteira.strip():
        raise SchemaValidationError("numero_carteira", "Número da carteira do beneficiário é obrigatório.")
    if not guia.nome_beneficiario or not guia.nome_beneficiario.strip():
        raise SchemaValidationError("nome_beneficiario", "Nome do beneficiário é obrigatório.")
    if guia.data_atendimento is None:
        raise SchemaValidationError("data_atendimento", "Data do atendimento é obrigatória.")

    itens = list(guia.itens or [])
    if not itens:
        raise SchemaValidationError("itens", "A guia deve conter ao menos um procedimento.")
    if guia.tipo == TipoGuia.CONSULTA.value and len(itens) > 1:
        raise SchemaValidationError("itens", "Guia de consulta admite um único procedimento.")

    soma = 0
    for index, item in enumerate(itens):
        prefix = f"itens[{index}]"
        if not item.codigo_procedimento:
            raise SchemaValidationError(f"{prefix}.codigo_procedimento", "Código do procedimento é obrigatório.")
        if item.quantidade is None or item.quantidade <= 0:
            raise SchemaValidationError(f"{prefix}.quantidade", "Quantidade deve ser maior que zero.")
        if item.valor_unitario_centavos is None or item.valor_unitario_centavos < 0:
            raise SchemaValidationError(f"{prefix}.valor_unitario_centavos", "Valor unitário inválido.")
        if item.valor_total_centavos != item.quantidade * item.valor_unitario_centavos:
            raise SchemaValidationError(
                f"{prefix}.valor_total_centavos",
                f"Valor total do item {index + 1} difere de quantidade x valor unitário.",
            )
        soma += item.valor_total_centavos

    if guia.valor_total_centavos != soma:
        raise SchemaValidationError("valor_total_centavos", "Valor total da guia difere da soma dos itens.")


def _build_cabecalho(root, profile: TISSVersionProfile, operadora, tipo_transacao: str, sequencial: str, now: datetime):
    cabecalho = _sub(root, "cabecalho")
    transacao = _sub(cabecalho, "identificacaoTransacao")
    _sub(transacao, "tipoTransacao", tipo_transacao)
    _sub(transacao, "sequencialTransacao", sequencial)
    _sub(transacao, "dataRegistroTransacao", now.strftime("%Y-%m-%d"))
    _sub(transacao, "horaRegistroTransacao", now.strftime("%H:%M:%S"))
    origem = _sub(cabecalho, "origem")
    prestador = _sub(origem, "identificacaoPrestador")
    _sub(prestador, "codigoPrestadorNaOperadora", operadora.codigo_prestador)
    destino = _sub(cabecalho, "destino")
    _sub(destino, "registroANS", operadora.registro_ans)
    _sub(cabecalho, profile.standard_element, profile.version)
    return cabecalho


def _build_beneficiario(parent, guia):
    beneficiario = _sub(parent, "dadosBeneficiario")
    _sub(beneficiario, "numeroCarteira", guia.numero_carteira.strip())
    _sub(beneficiario, "atendimentoRN", "S" if guia.recem_nascido else "N")
    _sub(beneficiario, "nomeBeneficiario", guia.nome_beneficiario.strip())
    if guia.cns:
        _sub(beneficiario, "cns", guia.cns)


def _build_profissional(parent, tag: str, guia):
    profissional = _sub(parent, tag)
    if guia.nome_profissional:
        _sub(profissional, "nomeProfissional", guia.nome_profissional)
    _sub(profissional, "conselhoProfissional", guia.conselho_profissional or "06")
    _sub(profissional, "numeroConselhoProfissional", guia.numero_conselho or "")
    _sub(profissional, "UF", guia.uf_conselho or "")
    _sub(profissional, "CBOS", guia.cbos or "225125")


def _build_consulta(parent, guia):
    operadora = guia.operadora
    element = _sub(parent, GUIA_ELEMENTS[TipoGuia.CONSULTA.value])

    cabecalho = _sub(element, "cabecalhoConsulta")
    _sub(cabecalho, "registroANS", operadora.registro_ans)
    _sub(cabecalho, "numeroGuiaPrestador", guia.numero_guia)

    _build_beneficiario(element, guia)

    executante = _sub(element, "contratadoExecutante")
    _sub(executante, "codigoPrestadorNaOperadora", operadora.codigo_prestador)
    _build_profissional(element, "profissionalExecutante", guia)

    _sub(element, "indicacaoAcidente", "9")

    item = guia.itens[0]
    atendimento = _sub(element, "dadosAtendimento")
    _sub(atendimento, "dataAtendimento", guia.data_atendimento.strftime("%Y-%m-%d"))
    _sub(atendimento, "tipoConsulta", guia.tipo_consulta or "1")
    procedimento = _sub(atendimento, "procedimento")
    _sub(procedimento, "codigoTabela", item.codigo_tabela or operadora.tabela_procedimentos or "22")
    _sub(procedimento, "codigoProcedimento", item.codigo_procedimento)
    _sub(procedimento, "valorProcedimento", format_centavos(item.valor_total_centavos))

    if guia.indicacao_clinica:
        _sub(element, "observacao", guia.indicacao_clinica)
    return element


def _build_sadt(parent, guia):
    operadora = guia.operadora
    element = _sub(parent, GUIA_ELEMENTS[TipoGuia.SADT.value])

    cabecalho = _sub(element, "cabecalhoGuia")
    _sub(cabecalho, "registroANS", operadora.registro_ans)
    _sub(cabecalho, "numeroGuiaPrestador", guia.numero_guia)

    _build_beneficiario(element, guia)

    solicitante = _sub(element, "dadosSolicitante")
    contratado = _sub(solicitante, "contratadoSolicitante")
    _sub(contratado, "codigoPrestadorNaOperadora", operadora.codigo_prestador)
    _build_profissional(solicitante, "profissionalSolicitante", guia)

    solicitacao = _sub(element, "dadosSolicitacao")
    _sub(solicitacao, "caraterAtendimento", "1")
    if guia.indicacao_clinica:
        _sub(solicitacao, "indicacaoClinica", guia.indicacao_clinica)

    executante = _sub(element, "dadosExecutante")
    contratado_exec = _sub(executante, "contratadoExecutante")
    _sub(contratado_exec, "codigoPrestadorNaOperadora", operadora.codigo_prestador)

    atendimento = _sub(element, "dadosAtendimento")
    _sub(atendimento, "tipoAtendimento", "05")
    _sub(atendimento, "indicacaoAcidente", "9")

    executados = _sub(element, "procedimentosExecutados")
    for index, item in enumerate(guia.itens, start=1):
        executado = _sub(executados, "procedimentoExecutado")
        _sub(executado, "sequencialItem", item.sequencial or index)
        _sub(executado, "dataExecucao", guia.data_atendimento.strftime("%Y-%m-%d"))
        procedimento = _sub(executado, "procedimento")
        _sub(procedimento, "codigoTabela", item.codigo_tabela or operadora.tabela_procedimentos or "22")
        _sub(procedimento, "codigoProcedimento", item.codigo_procedimento)
        _sub(procedimento, "descricaoProcedimento", item.descricao or "")
        _sub(executado, "quantidadeExecutada", item.quantidade)
        _sub(executado, "valorUnitario", format_centavos(item.valor_unitario_centavos))
        _sub(executado, "valorTotal", format_centavos(item.valor_total_centavos))

    totais = _sub(element, "valorTotal")
    _sub(totais, "valorProcedimentos", format_centavos(guia.valor_total_centavos))
    _sub(totais, "valorTotalGeral", format_centavos(guia.valor_total_centavos))
    return element


GUIA_RENDERERS = {
    TipoGuia.CONSULTA.value: _build_consulta,
    TipoGuia.SADT.value: _build_sadt,
}


def _finish(root, profile: TISSVersionProfile) -> str:
    """Append the epilogo hash over the text content and serialize"""
    content = "".join(text.strip() for text in root.itertext() if text.strip())
    epilogo = _sub(root, "epilogo")
    _sub(epilogo, "hash", profile.epilogo_hash(content))
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")


def build_guia_xml(guia, schema_version: str, now: Optional[datetime] = None) -> str:
    """
    Render a single guia as a complete TISS message.

    Args:
        guia: Guia with its itens and operadora loaded
        schema_version: TISS version such as '3.05' or '4.02.00'
        now: Transaction timestamp (defaults to the current time)

    Returns:
        XML document string

    Raises:
        SchemaValidationError: naming the first violated field
    """
    profile = TISSVersioningService.get_profile(schema_version)
    validate_guia(guia)
    now = now or datetime.now()

    root = etree.Element(_q("mensagemTISS"), nsmap=NSMAP)
    _build_cabecalho(root, profile, guia.operadora, "ENVIO_LOTE_GUIAS", "1", now)
    prestador = _sub(root, "prestadorParaOperadora")
    lote = _sub(prestador, "loteGuias")
    _sub(lote, "numeroLote", guia.numero_guia)
    guias = _sub(lote, "guiasTISS")
    GUIA_RENDERERS[guia.tipo](guias, guia)

    xml = _finish(root, profile)
    logger.debug(f"Built {guia.tipo} XML for guia {guia.numero_guia} (TISS {profile.version})")
    return xml


def build_lote_xml(numero_lote: str, guias: Iterable, operadora, schema_version: str, now: Optional[datetime] = None) -> str:
    """Render the batch envelope holding every guia of the lote"""
    profile = TISSVersioningService.get_profile(schema_version)
    guias = list(guias)
    if not guias:
        raise SchemaValidationError("guias", "O lote deve conter ao menos uma guia.")
    now = now or datetime.now()

    root = etree.Element(_q("mensagemTISS"), nsmap=NSMAP)
    _build_cabecalho(root, profile, operadora, "ENVIO_LOTE_GUIAS", numero_lote.replace("-", ""), now)
    prestador = _sub(root, "prestadorParaOperadora")
    lote = _sub(prestador, "loteGuias")
    _sub(lote, "numeroLote", numero_lote)
    container = _sub(lote, "guiasTISS")
    for guia in guias:
        validate_guia(guia)
        GUIA_RENDERERS[guia.tipo](container, guia)

    return _finish(root, profile)


def build_recurso_xml(
    glosa,
    operadora,
    justificativas: Dict[int, str],
    schema_version: str,
    now: Optional[datetime] = None,
) -> str:
    """Render the RECURSO_GLOSA message for the appealed items of a glosa"""
    profile = TISSVersioningService.get_profile(schema_version)
    itens = [item for item in glosa.itens if justificativas.get(item.sequencial)]
    if not itens:
        raise SchemaValidationError("justificativas", "Informe a justificativa de ao menos um item glosado.")
    now = now or datetime.now()

    root = etree.Element(_q("mensagemTISS"), nsmap=NSMAP)
    _build_cabecalho(root, profile, operadora, "RECURSO_GLOSA", str(glosa.id or 1), now)
    prestador = _sub(root, "prestadorParaOperadora")
    recurso = _sub(prestador, "recursoGlosa")
    guia_recurso = _sub(recurso, "guiaRecursoGlosa")
    _sub(guia_recurso, "registroANS", operadora.registro_ans)
    _sub(guia_recurso, "numeroGuiaPrestador", glosa.numero_guia)
    if glosa.numero_protocolo:
        _sub(guia_recurso, "numeroProtocolo", glosa.numero_protocolo)

    total = Decimal("0")
    for item in itens:
        item_recurso = _sub(guia_recurso, "itemRecurso")
        _sub(item_recurso, "sequencialItem", item.sequencial)
        _sub(item_recurso, "codigoProcedimento", item.codigo_procedimento)
        _sub(item_recurso, "codigoGlosa", item.codigo_glosa)
        _sub(item_recurso, "valorRecursado", format_decimal(item.valor_glosado))
        _sub(item_recurso, "justificativa", justificativas[item.sequencial].strip())
        total += Decimal(item.valor_glosado)
    _sub(guia_recurso, "valorTotalRecursado", format_decimal(total))

    return _finish(root, profile)


def _local(element) -> str:
    return etree.QName(element).localname


def parse_guia_totals(xml: str) -> List[GuiaTotals]:
    """
    Recompute line totals and the declared guia total from a rendered document.
    Returns one entry per guia element, in document order.
    """
    try:
        root = etree.fromstring(xml.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise SchemaValidationError("xml", f"XML malformado: {e}")

    results = []
    for element in root.iter(etree.Element):
        name = _local(element)
        if name == "guiaConsulta":
            lines = [decimal_to_centavos(v.text) for v in element.iter(_q("valorProcedimento"))]
            results.append(GuiaTotals(lines, sum(lines)))
        elif name == "guiaSP-SADT":
            lines = [
                decimal_to_centavos(executado.find(_q("valorTotal")).text)
                for executado in element.iter(_q("procedimentoExecutado"))
            ]
            geral = element.find(f"{_q('valorTotal')}/{_q('valorTotalGeral')}")
            results.append(GuiaTotals(lines, decimal_to_centavos(geral.text)))
    return results
