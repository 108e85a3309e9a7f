"""
TISS XML builder tests
"""
import hashlib
from datetime import date, datetime
from decimal import Decimal

import pytest
from lxml import etree

from app.models.tiss import Glosa, Guia, GuiaItem, ItemGlosado, Operadora
from app.services.tiss.errors import SchemaValidationError
from app.services.tiss.versioning import TISS_NAMESPACE, TISSVersioningService
from app.services.tiss.xml_builder import (
    build_guia_xml,
    build_lote_xml,
    build_recurso_xml,
    format_centavos,
    parse_guia_totals,
)

NS = {"ans": TISS_NAMESPACE}
NOW = datetime(2024, 3, 1, 10, 30, 0)


def _operadora(**overrides):
    data = dict(
        id=1,
        clinic_id=1,
        registro_ans="123456",
        nome="Operadora Teste",
        codigo_prestador="PREST001",
        versao_tiss="4.02.00",
        tabela_procedimentos="22",
    )
    data.update(overrides)
    return Operadora(**data)


def _item(sequencial=1, codigo="10101012", quantidade=1, unitario=15000, **overrides):
    data = dict(
        sequencial=sequencial,
        codigo_tabela="22",
        codigo_procedimento=codigo,
        quantidade=quantidade,
        valor_unitario_centavos=unitario,
        valor_total_centavos=quantidade * unitario,
    )
    data.update(overrides)
    return GuiaItem(**data)


def _guia(tipo="consulta", itens=None, operadora=None, **overrides):
    itens = itens if itens is not None else [_item()]
    data = dict(
        id=1,
        clinic_id=1,
        numero_guia="0000000001",
        tipo=tipo,
        nome_beneficiario="Maria Silva",
        numero_carteira="123456",
        recem_nascido=False,
        data_atendimento=date(2024, 3, 1),
        valor_total_centavos=sum(item.valor_total_centavos for item in itens),
    )
    data.update(overrides)
    guia = Guia(**data)
    guia.itens = itens
    guia.operadora = operadora or _operadora()
    return guia


def _parse(xml: str):
    return etree.fromstring(xml.encode("utf-8"))


def _epilogo_content(root) -> str:
    epilogo = root.find("ans:epilogo", NS)
    root.remove(epilogo)
    return "".join(text.strip() for text in root.itertext() if text.strip())


@pytest.mark.unit
def test_format_centavos():
    assert format_centavos(15000) == "150.00"
    assert format_centavos(5) == "0.05"
    assert format_centavos(123456) == "1234.56"
    assert format_centavos(0) == "0.00"


@pytest.mark.unit
def test_consulta_xml_structure():
    xml = build_guia_xml(_guia(), "4.02.00", now=NOW)
    root = _parse(xml)

    assert etree.QName(root).localname == "mensagemTISS"
    assert etree.QName(root).namespace == TISS_NAMESPACE
    assert [etree.QName(child).localname for child in root] == ["cabecalho", "prestadorParaOperadora", "epilogo"]

    guia = root.find("ans:prestadorParaOperadora/ans:loteGuias/ans:guiasTISS/ans:guiaConsulta", NS)
    assert guia is not None
    assert guia.findtext("ans:cabecalhoConsulta/ans:registroANS", namespaces=NS) == "123456"
    assert guia.findtext("ans:cabecalhoConsulta/ans:numeroGuiaPrestador", namespaces=NS) == "0000000001"
    assert guia.findtext("ans:dadosBeneficiario/ans:numeroCarteira", namespaces=NS) == "123456"
    assert guia.findtext("ans:dadosBeneficiario/ans:nomeBeneficiario", namespaces=NS) == "Maria Silva"
    assert guia.findtext("ans:dadosBeneficiario/ans:atendimentoRN", namespaces=NS) == "N"
    procedimento = guia.find("ans:dadosAtendimento/ans:procedimento", NS)
    assert procedimento.findtext("ans:codigoProcedimento", namespaces=NS) == "10101012"
    assert procedimento.findtext("ans:valorProcedimento", namespaces=NS) == "150.00"
    assert guia.findtext("ans:dadosAtendimento/ans:dataAtendimento", namespaces=NS) == "2024-03-01"


@pytest.mark.unit
def test_version_402_header_and_sha1_epilogo():
    root = _parse(build_guia_xml(_guia(), "4.02", now=NOW))

    assert root.findtext("ans:cabecalho/ans:versaoPadrao", namespaces=NS) == "4.02.00"
    assert root.find("ans:cabecalho/ans:Padrao", NS) is None

    declared = root.findtext("ans:epilogo/ans:hash", namespaces=NS)
    expected = hashlib.sha1(_epilogo_content(root).encode("utf-8")).hexdigest().upper()
    assert declared == expected
    assert len(declared) == 40


@pytest.mark.unit
def test_version_305_header_and_md5_epilogo():
    root = _parse(build_guia_xml(_guia(), "3.05.00", now=NOW))

    assert root.findtext("ans:cabecalho/ans:Padrao", namespaces=NS) == "3.05.00"
    assert root.find("ans:cabecalho/ans:versaoPadrao", NS) is None

    declared = root.findtext("ans:epilogo/ans:hash", namespaces=NS)
    expected = hashlib.md5(_epilogo_content(root).encode("utf-8")).hexdigest().upper()
    assert declared == expected


@pytest.mark.unit
def test_same_input_renders_identical_xml():
    assert build_guia_xml(_guia(), "4.02.00", now=NOW) == build_guia_xml(_guia(), "4.02.00", now=NOW)


@pytest.mark.unit
def test_unsupported_version_rejected():
    with pytest.raises(SchemaValidationError) as exc:
        build_guia_xml(_guia(), "5.01.00", now=NOW)
    assert exc.value.field == "versao_tiss"

    with pytest.raises(SchemaValidationError):
        TISSVersioningService.normalize("quatro")


@pytest.mark.unit
def test_version_resolution_order():
    operadora = _operadora(versao_tiss="3.05.00")
    assert TISSVersioningService.resolve_version(operadora, "4.02") == "4.02.00"
    assert TISSVersioningService.resolve_version(operadora) == "3.05.00"
    assert TISSVersioningService.normalize("3.05.02") == "3.05.00"


@pytest.mark.unit
@pytest.mark.parametrize("overrides,field", [
    ({"numero_carteira": ""}, "numero_carteira"),
    ({"nome_beneficiario": "  "}, "nome_beneficiario"),
    ({"data_atendimento": None}, "data_atendimento"),
    ({"valor_total_centavos": 100}, "valor_total_centavos"),
])
def test_validation_names_first_violated_field(overrides, field):
    with pytest.raises(SchemaValidationError) as exc:
        build_guia_xml(_guia(**overrides), "4.02.00", now=NOW)
    assert exc.value.field == field
    assert exc.value.details == {"field": field}


@pytest.mark.unit
def test_invalid_registro_ans_rejected():
    with pytest.raises(SchemaValidationError) as exc:
        build_guia_xml(_guia(operadora=_operadora(registro_ans="12345")), "4.02.00", now=NOW)
    assert exc.value.field == "operadora.registro_ans"


@pytest.mark.unit
def test_consulta_accepts_single_procedure():
    guia = _guia(itens=[_item(1), _item(2, codigo="10101039")])
    with pytest.raises(SchemaValidationError) as exc:
        build_guia_xml(guia, "4.02.00", now=NOW)
    assert exc.value.field == "itens"


@pytest.mark.unit
def test_item_total_must_match_quantity_times_unit():
    guia = _guia(tipo="sadt", itens=[_item(1, quantidade=2, unitario=1000, valor_total_centavos=1500)], valor_total_centavos=1500)
    with pytest.raises(SchemaValidationError) as exc:
        build_guia_xml(guia, "4.02.00", now=NOW)
    assert exc.value.field == "itens[0].valor_total_centavos"


@pytest.mark.unit
def test_sadt_totals_add_up():
    itens = [
        _item(1, codigo="40301630", quantidade=2, unitario=2550),
        _item(2, codigo="40302040", quantidade=1, unitario=1899),
        _item(3, codigo="40304361", quantidade=3, unitario=333),
    ]
    xml = build_guia_xml(_guia(tipo="sadt", itens=itens), "4.02.00", now=NOW)

    root = _parse(xml)
    executados = root.findall(".//ans:procedimentoExecutado", NS)
    assert len(executados) == 3
    assert executados[0].findtext("ans:valorUnitario", namespaces=NS) == "25.50"
    assert executados[0].findtext("ans:valorTotal", namespaces=NS) == "51.00"

    [totals] = parse_guia_totals(xml)
    assert totals.line_totals == [5100, 1899, 999]
    assert sum(totals.line_totals) == totals.total == 7998


@pytest.mark.unit
def test_unsupported_tipo_guia_rejected():
    with pytest.raises(SchemaValidationError) as exc:
        build_guia_xml(_guia(tipo="internacao"), "4.02.00", now=NOW)
    assert exc.value.field == "tipo"


@pytest.mark.unit
def test_lote_xml_contains_every_guia():
    guias = [_guia(id=1, numero_guia="0000000001"), _guia(id=2, numero_guia="0000000002")]
    xml = build_lote_xml("20240301-0001", guias, _operadora(), "4.02.00", now=NOW)
    root = _parse(xml)

    assert root.findtext(".//ans:loteGuias/ans:numeroLote", namespaces=NS) == "20240301-0001"
    assert root.findtext(".//ans:sequencialTransacao", namespaces=NS) == "202403010001"
    numeros = [e.text for e in root.iterfind(".//ans:guiaConsulta/ans:cabecalhoConsulta/ans:numeroGuiaPrestador", NS)]
    assert numeros == ["0000000001", "0000000002"]
    assert [t.total for t in parse_guia_totals(xml)] == [15000, 15000]


@pytest.mark.unit
def test_lote_xml_requires_guias():
    with pytest.raises(SchemaValidationError):
        build_lote_xml("20240301-0001", [], _operadora(), "4.02.00", now=NOW)


@pytest.mark.unit
def test_recurso_xml_only_carries_justified_items():
    glosa = Glosa(id=7, numero_guia="0000000001", numero_protocolo="PROT-1")
    glosa.itens = [
        ItemGlosado(sequencial=1, codigo_procedimento="10101012", valor_glosado=Decimal("100.00"), codigo_glosa="A1"),
        ItemGlosado(sequencial=2, codigo_procedimento="40301630", valor_glosado=Decimal("50.50"), codigo_glosa="A7"),
    ]
    xml = build_recurso_xml(glosa, _operadora(), {2: " Valor conforme tabela contratada "}, "4.02.00", now=NOW)
    root = _parse(xml)

    assert root.findtext(".//ans:tipoTransacao", namespaces=NS) == "RECURSO_GLOSA"
    itens = root.findall(".//ans:itemRecurso", NS)
    assert len(itens) == 1
    assert itens[0].findtext("ans:codigoGlosa", namespaces=NS) == "A7"
    assert itens[0].findtext("ans:justificativa", namespaces=NS) == "Valor conforme tabela contratada"
    assert root.findtext(".//ans:valorTotalRecursado", namespaces=NS) == "50.50"


@pytest.mark.unit
def test_recurso_xml_requires_a_justification():
    glosa = Glosa(id=7, numero_guia="0000000001")
    glosa.itens = [ItemGlosado(sequencial=1, codigo_procedimento="10101012", valor_glosado=Decimal("10"), codigo_glosa="A1")]
    with pytest.raises(SchemaValidationError):
        build_recurso_xml(glosa, _operadora(), {}, "4.02.00", now=NOW)
