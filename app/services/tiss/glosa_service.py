"""
Glosa Service
Registers operator denials, files recursos and closes glosas, keeping the
linked guia's lifecycle in step.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.error_handling import NotFoundException, ValidationException
from app.models.tiss.audit_log import GuiaAuditLog
from app.models.tiss.glosa import Glosa, GlosaStatus, ItemGlosado
from app.models.tiss.guia import Guia, GuiaStatus
from app.models.tiss.lote import Lote, LoteStatus, ResultadoAnalise
from app.models.tiss.operadora import Operadora
from app.services.tiss.errors import (
    ConcurrencyConflictError,
    DeadlineExceededError,
    InvalidTransitionError,
    TISSValidationError,
)
from app.services.tiss.guia_lifecycle import GuiaLifecycleManager
from app.services.tiss.parsers.denial_interpreter import DenialInterpreter
from app.services.tiss.parsers.demonstrativo_parser import (
    STATUS_APROVADA,
    STATUS_GLOSADA_TOTAL,
    glosa_from_demonstrativo,
    parse_demonstrativo_xml,
)
from app.services.tiss.parsers.glosa_parser import (
    GlosaStats,
    ParsedGlosa,
    calculate_glosa_stats,
    is_within_appeal_deadline,
    parse_decimal,
    parse_glosa,
)
from app.services.tiss.versioning import TISSVersioningService
from app.services.tiss.xml_builder import build_recurso_xml

logger = logging.getLogger(__name__)


def _centavos(value: Decimal) -> int:
    return int((Decimal(value) * 100).to_integral_value())


@dataclass
class DemonstrativoResult:
    lote_id: int
    numero_lote: str
    resultado_analise: Optional[str] = None
    guias_processadas: int = 0
    glosas_identificadas: int = 0
    valor_glosado_total: Decimal = Decimal("0.00")
    per_guia_results: List[Dict[str, Any]] = field(default_factory=list)


class GlosaService:
    """Service for glosa reconciliation"""

    def __init__(
        self,
        db: AsyncSession,
        lifecycle: Optional[GuiaLifecycleManager] = None,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.lifecycle = lifecycle or GuiaLifecycleManager(db)
        self.today = today

    async def get_glosa(self, clinic_id: int, glosa_id: int) -> Glosa:
        result = await self.db.execute(
            select(Glosa)
            .where(Glosa.id == glosa_id, Glosa.clinic_id == clinic_id)
            .execution_options(populate_existing=True)
        )
        glosa = result.scalar_one_or_none()
        if not glosa:
            raise NotFoundException("Glosa não encontrada")
        return glosa

    async def list_glosas(
        self,
        clinic_id: int,
        status: Optional[str] = None,
        numero_guia: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Glosa]:
        query = select(Glosa).where(Glosa.clinic_id == clinic_id).execution_options(populate_existing=True)
        if status:
            query = query.where(Glosa.status == status)
        if numero_guia:
            query = query.where(Glosa.numero_guia == numero_guia)
        if date_from:
            query = query.where(Glosa.data_recebimento >= date_from)
        if date_to:
            query = query.where(Glosa.data_recebimento <= date_to)

        result = await self.db.execute(query.order_by(Glosa.data_recebimento.desc(), Glosa.id.desc()).limit(limit).offset(offset))
        return list(result.scalars().all())

    def _audit(self, glosa: Glosa, action: str, previous: Optional[str], new: Optional[str], actor_id: Optional[int], details: Optional[Dict] = None):
        self.db.add(GuiaAuditLog(
            clinic_id=glosa.clinic_id,
            actor_id=actor_id,
            entity_type="glosa",
            entity_id=glosa.id,
            action=action,
            previous_status=previous,
            new_status=new,
            details=details,
        ))

    async def register_glosa(
        self,
        clinic_id: int,
        payload: Union[str, bytes, Mapping[str, Any]],
        operadora_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> Glosa:
        """
        Parse an operator response and persist it as a glosa.

        The guia is linked by number. A sent guia that lost value moves to
        denied in the same transaction.

        Raises:
            ValidationException: unreadable payload
        """
        try:
            parsed: ParsedGlosa = parse_glosa(payload, today=self.today())
        except ValueError as e:
            raise ValidationException(f"Resposta de glosa inválida: {e}", code="invalid_glosa_payload")
        if not parsed.numero_guia:
            raise TISSValidationError(["numero_guia"], "A resposta não informa o número da guia.")

        guia = await self.lifecycle.get_guia_by_numero(clinic_id, parsed.numero_guia)
        if guia is None:
            logger.warning(f"Glosa for unknown guia {parsed.numero_guia} of clinic {clinic_id}, storing unlinked")

        glosa = await self._store_glosa(clinic_id, parsed, guia, operadora_id, actor_id)
        await self.db.commit()
        await self.db.refresh(glosa)
        logger.info(
            f"Registered glosa {glosa.id} for guia {glosa.numero_guia}: "
            f"{glosa.valor_glosado} of {glosa.valor_original} denied"
        )
        return glosa

    async def _store_glosa(
        self,
        clinic_id: int,
        parsed: ParsedGlosa,
        guia: Optional[Guia],
        operadora_id: Optional[int],
        actor_id: Optional[int],
    ) -> Glosa:
        """Add the glosa and move a sent guia that lost value to denied; the caller commits"""
        glosa = Glosa(
            clinic_id=clinic_id,
            numero_guia=parsed.numero_guia,
            guia_id=guia.id if guia else None,
            tipo_guia=parsed.tipo_guia,
            operadora_id=operadora_id or (guia.operadora_id if guia else None),
            numero_protocolo=parsed.numero_protocolo,
            data_recebimento=parsed.data_recebimento,
            valor_original=parsed.valor_original,
            valor_glosado=parsed.valor_glosado,
            valor_aprovado=parsed.valor_aprovado,
            status=GlosaStatus.PENDENTE.value,
            observacao=parsed.observacao,
            itens=[
                ItemGlosado(
                    sequencial=item.sequencial,
                    codigo_procedimento=item.codigo_procedimento,
                    descricao_procedimento=item.descricao_procedimento,
                    quantidade=item.quantidade,
                    valor_original=item.valor_original,
                    valor_glosado=item.valor_glosado,
                    codigo_glosa=item.codigo_glosa,
                    descricao_glosa=item.descricao_glosa,
                )
                for item in parsed.itens
            ],
        )
        self.db.add(glosa)
        await self.db.flush()
        self._audit(glosa, "create", None, GlosaStatus.PENDENTE.value, actor_id, {"numero_guia": parsed.numero_guia})

        denies_value = parsed.valor_glosado > 0 and parsed.valor_aprovado < parsed.valor_original
        if guia is not None and denies_value and guia.status == GuiaStatus.SENT.value:
            await self.lifecycle.mark_denied(guia, glosa.id, actor_id)
        return glosa

    async def process_demonstrativo(
        self,
        clinic_id: int,
        lote_id: int,
        payload: Union[str, bytes],
        actor_id: Optional[int] = None,
    ) -> DemonstrativoResult:
        """
        Apply the operator's analysis statement to an accepted lote.

        Guias paid in full are settled. Each guia that lost value gets a glosa
        and moves to denied. The lote records the analysis outcome. Guias no
        longer in 'sent' were handled by an earlier statement and are skipped,
        so the same statement can be processed twice.

        Raises:
            ValidationException: unreadable statement or one for another lote
            InvalidTransitionError: lote not accepted by the operator yet
        """
        result = await self.db.execute(
            select(Lote).where(Lote.id == lote_id, Lote.clinic_id == clinic_id)
            .execution_options(populate_existing=True)
        )
        lote = result.scalar_one_or_none()
        if not lote:
            raise NotFoundException("Lote não encontrado")
        if lote.status != LoteStatus.ACCEPTED.value:
            raise InvalidTransitionError(
                "O demonstrativo só pode ser processado para lotes aceitos pela operadora.",
                lote.status,
                None,
            )

        try:
            demonstrativo = parse_demonstrativo_xml(payload, today=self.today())
        except ValueError as e:
            raise ValidationException(f"Demonstrativo inválido: {e}", code="invalid_demonstrativo")
        if not demonstrativo.guias:
            raise ValidationException("O demonstrativo não contém guias.", code="invalid_demonstrativo")
        if demonstrativo.numero_lote and demonstrativo.numero_lote != lote.numero_lote:
            raise ValidationException(
                "O demonstrativo pertence a outro lote.",
                details={"numero_lote": lote.numero_lote, "demonstrativo_lote": demonstrativo.numero_lote},
                code="demonstrativo_lote_mismatch",
            )

        guias = await self.db.execute(
            select(Guia).where(Guia.clinic_id == clinic_id, Guia.lote_id == lote.id)
            .execution_options(populate_existing=True)
        )
        by_numero = {guia.numero_guia: guia for guia in guias.scalars().all()}

        outcome = DemonstrativoResult(lote_id=lote.id, numero_lote=lote.numero_lote)
        handled = set()
        for analise in demonstrativo.guias:
            entry = {"numero_guia": analise.numero_guia_prestador, "status": analise.status, "guia_id": None, "glosa_id": None}
            outcome.per_guia_results.append(entry)

            guia = by_numero.get(analise.numero_guia_prestador)
            if guia is None:
                logger.warning(f"Demonstrativo of lote {lote.numero_lote} lists unknown guia {analise.numero_guia_prestador}")
                entry["acao"] = "nao_encontrada"
                continue
            entry["guia_id"] = guia.id
            if guia.status != GuiaStatus.SENT.value or guia.id in handled:
                entry["acao"] = "ignorada"
                continue
            handled.add(guia.id)

            outcome.guias_processadas += 1
            if analise.status == STATUS_APROVADA:
                await self.lifecycle.mark_settled(guia, actor_id, details={"lote_id": lote.id})
                entry["acao"] = "liquidada"
                continue

            parsed = glosa_from_demonstrativo(
                analise,
                guia.tipo,
                demonstrativo.data_processamento,
                demonstrativo.protocolo or lote.protocol_number,
            )
            glosa = await self._store_glosa(clinic_id, parsed, guia, lote.operadora_id, actor_id)
            entry["acao"] = "glosada"
            entry["glosa_id"] = glosa.id
            outcome.glosas_identificadas += 1
            outcome.valor_glosado_total += parsed.valor_glosado

        statuses = [analise.status for analise in demonstrativo.guias]
        if all(status == STATUS_GLOSADA_TOTAL for status in statuses):
            resultado = ResultadoAnalise.GLOSADO
        elif any(status != STATUS_APROVADA for status in statuses):
            resultado = ResultadoAnalise.PARCIAL
        else:
            resultado = ResultadoAnalise.PROCESSADO
        outcome.resultado_analise = resultado.value

        lote.resultado_analise = resultado.value
        lote.data_processamento = demonstrativo.data_processamento
        lote.valor_processado_centavos = _centavos(demonstrativo.valor_processado)
        lote.valor_glosado_centavos = _centavos(demonstrativo.valor_glosado)
        self.db.add(GuiaAuditLog(
            clinic_id=clinic_id,
            actor_id=actor_id,
            entity_type="lote",
            entity_id=lote.id,
            action="demonstrativo",
            previous_status=lote.status,
            new_status=lote.status,
            details={"resultado_analise": resultado.value, "protocolo": demonstrativo.protocolo},
        ))
        await self.db.commit()

        logger.info(
            f"Processed demonstrativo for lote {lote.numero_lote}: {outcome.guias_processadas} guias, "
            f"{outcome.glosas_identificadas} glosas, {outcome.valor_glosado_total} denied"
        )
        return outcome

    async def _change_status(self, glosa: Glosa, expected: GlosaStatus, target: GlosaStatus, values: Dict[str, Any]) -> None:
        result = await self.db.execute(
            update(Glosa)
            .where(Glosa.id == glosa.id, Glosa.status == expected.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            glosa_id = glosa.id
            await self.db.rollback()
            raise ConcurrencyConflictError(details={"glosa_id": glosa_id, "expected_status": expected.value})

    async def file_recurso(
        self,
        clinic_id: int,
        glosa_id: int,
        justificativas: Mapping[Any, str],
        actor_id: Optional[int] = None,
        schema_version: Optional[str] = None,
    ) -> Glosa:
        """
        Appeal a glosa. ``justificativas`` maps item sequencial to the text
        sent to the operator; items without one are not appealed.

        Raises:
            DeadlineExceededError: more than 30 days since the glosa was received
            InvalidTransitionError: glosa already appealed or closed
        """
        glosa = await self.get_glosa(clinic_id, glosa_id)
        if glosa.status == GlosaStatus.EM_RECURSO.value:
            raise InvalidTransitionError(
                "Esta glosa já possui um recurso em andamento",
                glosa.status,
                GlosaStatus.EM_RECURSO.value,
            )
        if glosa.status == GlosaStatus.RESOLVIDA.value:
            raise InvalidTransitionError("Esta glosa já foi resolvida", glosa.status, GlosaStatus.EM_RECURSO.value)

        today = self.today()
        if not is_within_appeal_deadline(glosa, today):
            logger.warning(f"Recurso for glosa {glosa.id} refused: deadline {glosa.prazo_recurso} passed")
            raise DeadlineExceededError(glosa.prazo_recurso.isoformat())

        operadora = None
        if glosa.operadora_id is not None:
            result = await self.db.execute(
                select(Operadora).where(Operadora.id == glosa.operadora_id, Operadora.clinic_id == clinic_id)
            )
            operadora = result.scalar_one_or_none()
        if operadora is None:
            raise TISSValidationError(["operadora_id"], "Glosa sem operadora vinculada.")

        justificativas = {int(sequencial): texto for sequencial, texto in justificativas.items() if texto and texto.strip()}
        versao = TISSVersioningService.resolve_version(operadora, schema_version)
        xml = build_recurso_xml(glosa, operadora, justificativas, versao)

        await self._change_status(
            glosa, GlosaStatus.PENDENTE, GlosaStatus.EM_RECURSO,
            values={"recurso_xml": xml, "recurso_enviado_em": datetime.now(timezone.utc)},
        )
        for item in glosa.itens:
            if item.sequencial in justificativas:
                item.justificativa_recurso = justificativas[item.sequencial].strip()
        self._audit(
            glosa, "recurso", GlosaStatus.PENDENTE.value, GlosaStatus.EM_RECURSO.value, actor_id,
            {"itens": sorted(justificativas)},
        )

        if glosa.guia_id is not None:
            guia = await self.lifecycle.get_guia(clinic_id, glosa.guia_id)
            if guia.status == GuiaStatus.DENIED.value:
                await self.lifecycle.contest(guia, glosa.prazo_recurso, today, actor_id)

        await self.db.commit()
        await self.db.refresh(glosa)
        logger.info(f"Filed recurso for glosa {glosa.id} ({len(justificativas)} items, TISS {versao})")
        return glosa

    async def resolve_glosa(
        self,
        clinic_id: int,
        glosa_id: int,
        valor_recuperado: Union[Decimal, str, int, float],
        actor_id: Optional[int] = None,
    ) -> Glosa:
        """
        Close a glosa with the operator's final decision.

        The recovered amount is added back to the approved value and booked
        to the ledger through the guia resolution.
        """
        glosa = await self.get_glosa(clinic_id, glosa_id)
        if glosa.status == GlosaStatus.RESOLVIDA.value:
            raise InvalidTransitionError("Esta glosa já foi resolvida", glosa.status, GlosaStatus.RESOLVIDA.value)

        recuperado = parse_decimal(valor_recuperado)
        if recuperado < 0 or recuperado > Decimal(glosa.valor_glosado):
            raise ValidationException(
                "O valor recuperado deve estar entre zero e o valor glosado.",
                details={"valor_glosado": str(glosa.valor_glosado), "valor_recuperado": str(recuperado)},
                code="invalid_valor_recuperado",
            )

        previous = GlosaStatus(glosa.status)
        valor_aprovado = Decimal(glosa.valor_original) - Decimal(glosa.valor_glosado) + recuperado
        await self._change_status(glosa, previous, GlosaStatus.RESOLVIDA, values={"valor_aprovado": valor_aprovado})
        self._audit(
            glosa, "resolve", previous.value, GlosaStatus.RESOLVIDA.value, actor_id,
            {"valor_recuperado": str(recuperado)},
        )

        resolved_guia = None
        if glosa.guia_id is not None:
            guia = await self.lifecycle.get_guia(clinic_id, glosa.guia_id)
            if guia.status in (GuiaStatus.DENIED.value, GuiaStatus.CONTESTED.value):
                resolved_guia = await self.lifecycle.resolve(guia, _centavos(recuperado), actor_id)

        await self.db.commit()
        if resolved_guia is not None:
            await self.lifecycle.book_adjustment(resolved_guia, _centavos(recuperado))
        await self.db.refresh(glosa)
        logger.info(f"Resolved glosa {glosa.id}: {recuperado} recovered of {glosa.valor_glosado}")
        return glosa

    async def stats(self, clinic_id: int, date_from: Optional[date] = None, date_to: Optional[date] = None) -> GlosaStats:
        glosas = await self.list_glosas(clinic_id, date_from=date_from, date_to=date_to, limit=10000)
        # Oldest first so equal-value reasons rank in the order they appeared
        glosas.reverse()
        return calculate_glosa_stats(glosas)

    async def suggestions(self, clinic_id: int, glosa_id: int) -> List[Dict]:
        glosa = await self.get_glosa(clinic_id, glosa_id)
        return DenialInterpreter.get_resolution_suggestions(glosa.itens)
