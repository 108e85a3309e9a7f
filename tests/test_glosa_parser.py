"""
Glosa, demonstrativo and protocol parser tests
"""
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.services.tiss.parsers import (
    DenialInterpreter,
    MotivoGlosa,
    ProtocolParser,
    calculate_glosa_stats,
    days_to_appeal_deadline,
    is_within_appeal_deadline,
    parse_demonstrativo_xml,
    parse_glosa,
)
from app.services.tiss.parsers.glosa_parser import parse_decimal

TODAY = date(2024, 4, 10)

GLOSA_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ans:mensagemTISS xmlns:ans="http://www.ans.gov.br/padroes/tiss/schemas">
  <ans:operadoraParaPrestador>
    <ans:demonstrativoAnaliseConta>
      <ans:numeroProtocolo>PROT-2024-0001</ans:numeroProtocolo>
      <ans:dataRecebimento>2024-04-01</ans:dataRecebimento>
      <ans:guiaConsulta>
        <ans:numeroGuiaPrestador>0000000001</ans:numeroGuiaPrestador>
        <ans:valorInformado>300,00</ans:valorInformado>
        <ans:valorGlosado>120,50</ans:valorGlosado>
        <ans:itemGlosado>
          <ans:sequencialItem>1</ans:sequencialItem>
          <ans:codigoProcedimento>10101012</ans:codigoProcedimento>
          <ans:valorInformado>150,00</ans:valorInformado>
          <ans:valorGlosa>100,00</ans:valorGlosa>
          <ans:codigoGlosa>A7</ans:codigoGlosa>
        </ans:itemGlosado>
        <ans:itemGlosado>
          <ans:sequencialItem>2</ans:sequencialItem>
          <ans:codigoProcedimento>40301630</ans:codigoProcedimento>
          <ans:valorInformado>150,00</ans:valorInformado>
          <ans:valorGlosa>20,50</ans:valorGlosa>
          <ans:codigoGlosa>Z99</ans:codigoGlosa>
        </ans:itemGlosado>
      </ans:guiaConsulta>
    </ans:demonstrativoAnaliseConta>
  </ans:operadoraParaPrestador>
</ans:mensagemTISS>"""

DEMONSTRATIVO_XML = """<?xml version="1.0" encoding="UTF-8"?>
<demonstrativoAnaliseConta xmlns="http://www.ans.gov.br/padroes/tiss/schemas">
  <cabecalhoDemonstrativo>
    <registroANS>123456</registroANS>
    <numeroLote>20240301-0001</numeroLote>
    <numeroProtocolo>PROT-2024-0001</numeroProtocolo>
    <dataProcessamento>15/03/2024</dataProcessamento>
  </cabecalhoDemonstrativo>
  <guiaProcessada>
    <numeroGuiaPrestador>0000000001</numeroGuiaPrestador>
    <dataExecucao>2024-03-01</dataExecucao>
    <valorInformado>150.00</valorInformado>
    <valorProcessado>150.00</valorProcessado>
  </guiaProcessada>
  <guiaProcessada>
    <numeroGuiaPrestador>0000000002</numeroGuiaPrestador>
    <dataExecucao>2024-03-01</dataExecucao>
    <valorInformado>200.00</valorInformado>
    <valorProcessado>120.00</valorProcessado>
    <valorGlosado>80.00</valorGlosado>
    <itemGlosado>
      <codigoProcedimento>40301630</codigoProcedimento>
      <valorGlosa>80.00</valorGlosa>
      <codigoGlosa>B2</codigoGlosa>
    </itemGlosado>
  </guiaProcessada>
  <guiaRecusada>
    <numeroGuiaPrestador>0000000003</numeroGuiaPrestador>
    <valorInformado>90.00</valorInformado>
    <valorProcessado>0</valorProcessado>
    <valorGlosado>90.00</valorGlosado>
  </guiaRecusada>
</demonstrativoAnaliseConta>"""


@pytest.mark.unit
@pytest.mark.parametrize("raw,expected", [
    ("150", Decimal("150.00")),
    ("150.5", Decimal("150.50")),
    ("150,50", Decimal("150.50")),
    ("1.234,56", Decimal("1234.56")),
    ("", Decimal("0.00")),
    (None, Decimal("0.00")),
    ("abc", Decimal("0.00")),
    (12, Decimal("12.00")),
])
def test_parse_decimal(raw, expected):
    assert parse_decimal(raw) == expected


@pytest.mark.unit
def test_parse_glosa_xml():
    glosa = parse_glosa(GLOSA_XML, today=TODAY)

    assert glosa.numero_guia == "0000000001"
    assert glosa.tipo_guia == "consulta"
    assert glosa.numero_protocolo == "PROT-2024-0001"
    assert glosa.data_recebimento == date(2024, 4, 1)
    assert glosa.valor_original == Decimal("300.00")
    assert glosa.valor_glosado == Decimal("120.50")
    assert glosa.valor_aprovado == Decimal("179.50")
    assert glosa.status == "pendente"
    assert glosa.prazo_recurso == date(2024, 5, 1)

    assert [item.codigo_glosa for item in glosa.itens] == ["A7", "outros"]
    assert glosa.itens[0].descricao_glosa == "Valor acima do contratado"
    assert glosa.itens[0].valor_original == Decimal("150.00")
    assert sum(item.valor_glosado for item in glosa.itens) == glosa.valor_glosado


@pytest.mark.unit
def test_items_without_declared_total_define_it():
    glosa = parse_glosa({
        "numero_guia": "0000000005",
        "valor_original": "500,00",
        "itens": [
            {"codigo_procedimento": "10101012", "valor": "30,00", "motivo": "A1"},
            {"codigo_procedimento": "40301630", "valor": "20,00", "motivo": "a8"},
        ],
    }, today=TODAY)

    assert glosa.valor_glosado == Decimal("50.00")
    assert glosa.valor_aprovado == Decimal("450.00")
    assert [item.codigo_glosa for item in glosa.itens] == ["A1", "A8"]
    assert glosa.data_recebimento == TODAY


@pytest.mark.unit
def test_gap_between_items_and_total_becomes_an_item():
    glosa = parse_glosa({
        "numero_guia": "0000000006",
        "valor_original": "200.00",
        "valor_glosado": "100.00",
        "itens": [{"codigo_procedimento": "10101012", "valor": "60.00", "motivo": "A2"}],
    }, today=TODAY)

    assert glosa.valor_glosado == Decimal("100.00")
    assert len(glosa.itens) == 2
    assert glosa.itens[1].valor_glosado == Decimal("40.00")
    assert glosa.itens[1].codigo_glosa == "outros"
    assert glosa.itens[1].descricao_procedimento == "Diferença não detalhada pela operadora"


@pytest.mark.unit
def test_total_without_items_gets_a_synthetic_item():
    glosa = parse_glosa({
        "numero_guia": "0000000007",
        "tipo_guia": "sadt",
        "data_recebimento": "01/04/2024",
        "valor_original": "80.00",
        "valor_glosado": "80.00",
    }, today=TODAY)

    assert glosa.tipo_guia == "sadt"
    assert glosa.data_recebimento == date(2024, 4, 1)
    assert glosa.valor_aprovado == Decimal("0.00")
    [item] = glosa.itens
    assert item.valor_glosado == Decimal("80.00")
    assert item.descricao_procedimento == "Valor glosado"


@pytest.mark.unit
def test_original_value_never_below_denied_value():
    glosa = parse_glosa({"numero_guia": "1", "valor_glosado": "70.00"}, today=TODAY)
    assert glosa.valor_original == Decimal("70.00")
    assert glosa.valor_aprovado == Decimal("0.00")


@pytest.mark.unit
def test_unreadable_payload_raises_value_error():
    with pytest.raises(ValueError):
        parse_glosa("   ", today=TODAY)


@pytest.mark.unit
def test_appeal_deadline_is_inclusive():
    received = date(2024, 4, 1)
    assert is_within_appeal_deadline(received, date(2024, 5, 1)) is True
    assert is_within_appeal_deadline(received, date(2024, 5, 2)) is False
    assert days_to_appeal_deadline(received, date(2024, 4, 21)) == 10
    assert days_to_appeal_deadline(received, date(2024, 5, 3)) == -2


def _glosa(valor_glosado, valor_aprovado, status, itens):
    return SimpleNamespace(
        valor_glosado=Decimal(valor_glosado),
        valor_aprovado=Decimal(valor_aprovado),
        status=status,
        itens=[SimpleNamespace(codigo_glosa=codigo, valor_glosado=Decimal(valor)) for codigo, valor in itens],
    )


@pytest.mark.unit
def test_glosa_stats():
    stats = calculate_glosa_stats([
        _glosa("100.00", "60.00", "resolvida", [("A1", "100.00")]),
        _glosa("200.00", "0.00", "pendente", [("A7", "150.00"), ("A1", "50.00")]),
        _glosa("50.00", "10.00", "em_recurso", [("X9", "50.00")]),
    ])

    assert stats.total_glosas == 3
    assert stats.valor_total == Decimal("350.00")
    assert stats.valor_recuperado == Decimal("60.00")
    assert stats.taxa_recuperacao == Decimal("17.14")
    assert [(m["motivo"], m["quantidade"], m["valor"]) for m in stats.principais_motivos] == [
        ("A1", 2, Decimal("150.00")),
        ("A7", 1, Decimal("150.00")),
        ("outros", 1, Decimal("50.00")),
    ]


@pytest.mark.unit
def test_glosa_stats_empty():
    stats = calculate_glosa_stats([])
    assert stats.total_glosas == 0
    assert stats.taxa_recuperacao == Decimal("0")
    assert stats.principais_motivos == []


@pytest.mark.unit
def test_denial_interpreter_catalog():
    interpretation = DenialInterpreter.interpret_denial("a7")
    assert interpretation["codigo"] == MotivoGlosa.A7.value
    assert interpretation["acao_recomendada"] == "Verifique a tabela de preços contratada"

    unknown = DenialInterpreter.interpret_denial("ZZ", "Mensagem da operadora")
    assert unknown["codigo"] == "outros"
    assert unknown["codigo_original"] == "ZZ"
    assert unknown["mensagem"] == "Mensagem da operadora"


@pytest.mark.unit
def test_resolution_suggestions_grouped_by_reason():
    itens = [
        SimpleNamespace(codigo_glosa="A1", valor_glosado=Decimal("10.00")),
        SimpleNamespace(codigo_glosa="A8", valor_glosado=Decimal("90.00")),
        SimpleNamespace(codigo_glosa="A1", valor_glosado=Decimal("15.00")),
    ]
    suggestions = DenialInterpreter.get_resolution_suggestions(itens)

    assert [(s["codigo"], s["quantidade_itens"], s["valor_total"]) for s in suggestions] == [
        ("A8", 1, Decimal("90.00")),
        ("A1", 2, Decimal("25.00")),
    ]


@pytest.mark.unit
def test_parse_demonstrativo():
    analise = parse_demonstrativo_xml(DEMONSTRATIVO_XML, today=TODAY)

    assert analise.numero_lote == "20240301-0001"
    assert analise.registro_ans == "123456"
    assert analise.data_processamento == date(2024, 3, 15)
    assert [guia.status for guia in analise.guias] == ["aprovada", "glosada_parcial", "glosada_total"]
    assert analise.valor_informado == Decimal("440.00")
    assert analise.valor_processado == Decimal("270.00")
    assert analise.valor_glosado == Decimal("170.00")
    assert [guia.numero_guia_prestador for guia in analise.guias_glosadas] == ["0000000002", "0000000003"]
    assert analise.guias[1].itens_glosados[0].codigo_glosa == "B2"


@pytest.mark.unit
def test_protocol_receipt(receipt_xml):
    receipt = ProtocolParser.parse(receipt_xml("PROT-55", "20240301-0003"))
    assert receipt.accepted is True
    assert receipt.protocol_number == "PROT-55"
    assert receipt.batch_number == "20240301-0003"


@pytest.mark.unit
def test_protocol_soap_fault():
    fault = """<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope"><soap:Body>
      <soap:Fault><soap:Reason><soap:Text>Assinatura inválida</soap:Text></soap:Reason></soap:Fault>
    </soap:Body></soap:Envelope>"""
    receipt = ProtocolParser.parse(fault)
    assert receipt.accepted is False
    assert receipt.fault == "Assinatura inválida"
