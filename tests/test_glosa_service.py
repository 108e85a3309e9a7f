"""
Glosa service tests
"""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

from app.core.error_handling import ValidationException
from app.models.tiss import Guia, GuiaStatus, Lote, LoteStatus
from app.services.tiss.errors import DeadlineExceededError, InvalidTransitionError, TISSValidationError
from app.services.tiss.glosa_service import GlosaService
from app.services.tiss.guia_lifecycle import GuiaLifecycleManager, LedgerGateway

CLINIC_ID = 1
RECEIVED = date(2024, 4, 1)


class RecordingLedger(LedgerGateway):
    def __init__(self):
        self.adjustments = []

    async def record_adjustment(self, clinic_id, guia, valor_centavos):
        self.adjustments.append((clinic_id, guia.numero_guia, valor_centavos))


@pytest.fixture
def ledger():
    return RecordingLedger()


@pytest.fixture
def make_service(db_session, ledger):
    def _make(today=date(2024, 4, 10)):
        lifecycle = GuiaLifecycleManager(db_session, ledger=ledger)
        return GlosaService(db_session, lifecycle=lifecycle, today=lambda: today)
    return _make


@pytest.fixture
async def sent_guia(db_session, make_queued_guia):
    guia = await make_queued_guia()
    await db_session.execute(
        update(Guia)
        .where(Guia.id == guia.id)
        .values(status=GuiaStatus.SENT.value, version=Guia.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()
    return guia


DEMONSTRATIVO_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<demonstrativoAnaliseConta xmlns="http://www.ans.gov.br/padroes/tiss/schemas">
  <cabecalhoDemonstrativo>
    <registroANS>123456</registroANS>
    <numeroLote>{numero_lote}</numeroLote>
    <numeroProtocolo>PROT-2024-0001</numeroProtocolo>
    <dataProcessamento>15/03/2024</dataProcessamento>
  </cabecalhoDemonstrativo>
  <guiaProcessada>
    <numeroGuiaPrestador>{paga}</numeroGuiaPrestador>
    <valorInformado>150.00</valorInformado>
    <valorProcessado>150.00</valorProcessado>
  </guiaProcessada>
  <guiaProcessada>
    <numeroGuiaPrestador>{parcial}</numeroGuiaPrestador>
    <valorInformado>150.00</valorInformado>
    <valorProcessado>70.00</valorProcessado>
    <valorGlosado>80.00</valorGlosado>
    <itemGlosado>
      <codigoProcedimento>10101012</codigoProcedimento>
      <valorGlosa>80.00</valorGlosa>
      <codigoGlosa>B2</codigoGlosa>
    </itemGlosado>
  </guiaProcessada>
  <guiaRecusada>
    <numeroGuiaPrestador>{recusada}</numeroGuiaPrestador>
    <valorInformado>90.00</valorInformado>
    <valorProcessado>0</valorProcessado>
    <valorGlosado>90.00</valorGlosado>
  </guiaRecusada>
</demonstrativoAnaliseConta>"""


@pytest.fixture
async def accepted_lote(db_session, operadora, make_queued_guia):
    guias = [await make_queued_guia() for _ in range(3)]
    guia_ids = [guia.id for guia in guias]
    lote = Lote(
        clinic_id=CLINIC_ID,
        operadora_id=operadora.id,
        numero_lote="20240301-0001",
        guia_ids=guia_ids,
        valor_total_centavos=45000,
        versao_tiss="4.02.00",
        status=LoteStatus.ACCEPTED.value,
        protocol_number="PROT-2024-0001",
    )
    db_session.add(lote)
    await db_session.commit()
    await db_session.execute(
        update(Guia)
        .where(Guia.id.in_(guia_ids))
        .values(status=GuiaStatus.SENT.value, lote_id=lote.id, version=Guia.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()
    return lote, [guia.numero_guia for guia in guias]


def _demonstrativo(numero_lote, numeros):
    paga, parcial, recusada = numeros
    return DEMONSTRATIVO_TEMPLATE.format(numero_lote=numero_lote, paga=paga, parcial=parcial, recusada=recusada)


def _denial(numero_guia, **overrides):
    data = {
        "numero_guia": numero_guia,
        "data_recebimento": RECEIVED.isoformat(),
        "valor_original": "150.00",
        "valor_glosado": "50.00",
        "numero_protocolo": "PROT-2024-0001",
        "itens": [{"codigo_procedimento": "10101012", "valor": "50.00", "motivo": "A7"}],
    }
    data.update(overrides)
    return data


@pytest.mark.asyncio
@pytest.mark.unit
async def test_register_links_guia_and_marks_it_denied(make_service, sent_guia):
    service = make_service()
    glosa = await service.register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia), actor_id=1)

    assert glosa.guia_id == sent_guia.id
    assert glosa.operadora_id == sent_guia.operadora_id
    assert glosa.status == "pendente"
    assert glosa.valor_aprovado == Decimal("100.00")
    assert glosa.prazo_recurso == date(2024, 5, 1)
    assert [item.codigo_glosa for item in glosa.itens] == ["A7"]

    guia = await service.lifecycle.get_guia(CLINIC_ID, sent_guia.id)
    assert guia.status == GuiaStatus.DENIED.value


@pytest.mark.asyncio
@pytest.mark.unit
async def test_register_unknown_guia_is_stored_unlinked(make_service):
    glosa = await make_service().register_glosa(CLINIC_ID, _denial("9999999999"))
    assert glosa.guia_id is None
    assert glosa.operadora_id is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_register_unreadable_payload(make_service):
    with pytest.raises(ValidationException) as exc:
        await make_service().register_glosa(CLINIC_ID, "")
    assert exc.value.code == "invalid_glosa_payload"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_register_requires_guia_number(make_service):
    with pytest.raises(TISSValidationError) as exc:
        await make_service().register_glosa(CLINIC_ID, {"valor_glosado": "10.00"})
    assert exc.value.missing_fields == ["numero_guia"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_file_recurso_contests_guia(make_service, sent_guia):
    service = make_service()
    glosa = await service.register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))
    glosa_id = glosa.id

    glosa = await service.file_recurso(CLINIC_ID, glosa_id, {"1": "Valor conforme tabela contratada"}, actor_id=1)

    assert glosa.status == "em_recurso"
    assert glosa.recurso_enviado_em is not None
    assert "RECURSO_GLOSA" in glosa.recurso_xml
    assert "Valor conforme tabela contratada" in glosa.recurso_xml
    assert glosa.itens[0].justificativa_recurso == "Valor conforme tabela contratada"

    guia = await service.lifecycle.get_guia(CLINIC_ID, sent_guia.id)
    assert guia.status == GuiaStatus.CONTESTED.value

    with pytest.raises(InvalidTransitionError) as exc:
        await service.file_recurso(CLINIC_ID, glosa_id, {"1": "De novo"})
    assert exc.value.message == "Esta glosa já possui um recurso em andamento"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_file_recurso_after_deadline(make_service, sent_guia):
    glosa = await make_service().register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))
    glosa_id = glosa.id

    late = make_service(today=date(2024, 5, 2))
    with pytest.raises(DeadlineExceededError):
        await late.file_recurso(CLINIC_ID, glosa_id, {"1": "Justificativa"})

    glosa = await late.get_glosa(CLINIC_ID, glosa_id)
    assert glosa.status == "pendente"
    guia = await late.lifecycle.get_guia(CLINIC_ID, sent_guia.id)
    assert guia.status == GuiaStatus.DENIED.value


@pytest.mark.asyncio
@pytest.mark.unit
async def test_file_recurso_on_last_day(make_service, sent_guia):
    glosa = await make_service().register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))
    glosa = await make_service(today=date(2024, 5, 1)).file_recurso(CLINIC_ID, glosa.id, {1: "Justificativa"})
    assert glosa.status == "em_recurso"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_file_recurso_without_operadora(make_service):
    service = make_service()
    glosa = await service.register_glosa(CLINIC_ID, _denial("9999999999"))
    with pytest.raises(TISSValidationError):
        await service.file_recurso(CLINIC_ID, glosa.id, {1: "Justificativa"})


@pytest.mark.asyncio
@pytest.mark.unit
async def test_resolve_books_recovered_value(make_service, sent_guia, ledger):
    service = make_service()
    glosa = await service.register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))
    await service.file_recurso(CLINIC_ID, glosa.id, {1: "Valor conforme tabela contratada"})

    glosa = await service.resolve_glosa(CLINIC_ID, glosa.id, "30.00", actor_id=1)

    assert glosa.status == "resolvida"
    assert glosa.valor_aprovado == Decimal("130.00")
    guia = await service.lifecycle.get_guia(CLINIC_ID, sent_guia.id)
    assert guia.status == GuiaStatus.RESOLVED.value
    assert ledger.adjustments == [(CLINIC_ID, sent_guia.numero_guia, 3000)]

    with pytest.raises(InvalidTransitionError):
        await service.resolve_glosa(CLINIC_ID, glosa.id, "0")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_resolve_rejects_value_above_denied(make_service, sent_guia):
    service = make_service()
    glosa = await service.register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))

    with pytest.raises(ValidationException) as exc:
        await service.resolve_glosa(CLINIC_ID, glosa.id, "80.00")
    assert exc.value.code == "invalid_valor_recuperado"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stats_and_suggestions(make_service, sent_guia):
    service = make_service()
    first = await service.register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))
    await service.register_glosa(CLINIC_ID, _denial(
        "9999999999",
        valor_glosado="40.00",
        itens=[
            {"codigo_procedimento": "40301630", "valor": "25.00", "motivo": "A8"},
            {"codigo_procedimento": "40301631", "valor": "15.00", "motivo": "A7"},
        ],
    ))
    await service.resolve_glosa(CLINIC_ID, first.id, "50.00")

    stats = await service.stats(CLINIC_ID)
    assert stats.total_glosas == 2
    assert stats.valor_total == Decimal("90.00")
    assert stats.valor_recuperado == Decimal("150.00")
    assert [m["motivo"] for m in stats.principais_motivos] == ["A7", "A8"]

    suggestions = await service.suggestions(CLINIC_ID, first.id)
    assert [s["codigo"] for s in suggestions] == ["A7"]
    assert suggestions[0]["acao_recomendada"] == "Verifique a tabela de preços contratada"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_resolve_books_nothing_when_commit_fails(make_service, sent_guia, ledger, db_session, monkeypatch):
    service = make_service()
    glosa = await service.register_glosa(CLINIC_ID, _denial(sent_guia.numero_guia))
    glosa_id = glosa.id

    async def failing_commit():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(RuntimeError):
        await service.resolve_glosa(CLINIC_ID, glosa_id, "30.00")

    assert ledger.adjustments == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_demonstrativo_settles_and_denies_guias(make_service, accepted_lote, db_session):
    lote, numeros = accepted_lote
    lote_id = lote.id
    service = make_service()

    result = await service.process_demonstrativo(CLINIC_ID, lote_id, _demonstrativo("20240301-0001", numeros), actor_id=1)

    assert result.resultado_analise == "parcial"
    assert result.guias_processadas == 3
    assert result.glosas_identificadas == 2
    assert result.valor_glosado_total == Decimal("170.00")
    assert [entry["acao"] for entry in result.per_guia_results] == ["liquidada", "glosada", "glosada"]

    statuses = []
    for entry in result.per_guia_results:
        statuses.append((await service.lifecycle.get_guia(CLINIC_ID, entry["guia_id"])).status)
    assert statuses == [GuiaStatus.SETTLED.value, GuiaStatus.DENIED.value, GuiaStatus.DENIED.value]

    parcial = await service.get_glosa(CLINIC_ID, result.per_guia_results[1]["glosa_id"])
    assert parcial.valor_glosado == Decimal("80.00")
    assert parcial.data_recebimento == date(2024, 3, 15)
    assert parcial.numero_protocolo == "PROT-2024-0001"
    assert [item.codigo_glosa for item in parcial.itens] == ["B2"]

    recusada = await service.get_glosa(CLINIC_ID, result.per_guia_results[2]["glosa_id"])
    assert recusada.valor_glosado == Decimal("90.00")
    assert len(recusada.itens) == 1

    await db_session.refresh(lote)
    assert lote.resultado_analise == "parcial"
    assert lote.data_processamento == date(2024, 3, 15)
    assert lote.valor_glosado_centavos == 17000
    assert lote.valor_processado_centavos == 22000


@pytest.mark.asyncio
@pytest.mark.unit
async def test_demonstrativo_processed_twice_changes_nothing(make_service, accepted_lote):
    lote, numeros = accepted_lote
    lote_id = lote.id
    service = make_service()
    payload = _demonstrativo("20240301-0001", numeros)
    await service.process_demonstrativo(CLINIC_ID, lote_id, payload)

    again = await service.process_demonstrativo(CLINIC_ID, lote_id, payload)

    assert [entry["acao"] for entry in again.per_guia_results] == ["ignorada", "ignorada", "ignorada"]
    assert again.glosas_identificadas == 0
    assert len(await service.list_glosas(CLINIC_ID)) == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_demonstrativo_rejections(make_service, accepted_lote, db_session):
    lote, numeros = accepted_lote
    lote_id = lote.id
    service = make_service()

    with pytest.raises(ValidationException) as exc:
        await service.process_demonstrativo(CLINIC_ID, lote_id, _demonstrativo("20240301-0099", numeros))
    assert exc.value.code == "demonstrativo_lote_mismatch"

    with pytest.raises(ValidationException) as exc:
        await service.process_demonstrativo(CLINIC_ID, lote_id, "<demonstrativoAnaliseConta")
    assert exc.value.code == "invalid_demonstrativo"

    await db_session.execute(
        update(Lote)
        .where(Lote.id == lote_id)
        .values(status=LoteStatus.RETRY.value)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()
    with pytest.raises(InvalidTransitionError):
        await service.process_demonstrativo(CLINIC_ID, lote_id, _demonstrativo("20240301-0001", numeros))

    for numero in numeros:
        assert (await service.lifecycle.get_guia_by_numero(CLINIC_ID, numero)).status == GuiaStatus.SENT.value
