"""
Guia Lifecycle Manager
Owns the guia state machine. Every status change is a conditional write
(expected status + version) followed by an immutable audit record.
"""

import logging
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.error_handling import NotFoundException
from app.models.tiss.audit_log import GuiaAuditLog
from app.models.tiss.guia import Guia, GuiaItem, GuiaStatus, TipoGuia
from app.models.tiss.operadora import Operadora
from app.services.tiss.certificate_store import CertificateStore
from app.services.tiss.errors import (
    CertificateError,
    ConcurrencyConflictError,
    DeadlineExceededError,
    GuiaLockedError,
    InvalidTransitionError,
    SigningError,
    TISSValidationError,
)
from app.services.tiss.versioning import TISSVersioningService
from app.services.tiss.xml_builder import build_guia_xml
from app.services.tiss.xml_signer import hash_xml, read_digest_value, sign_xml

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = MappingProxyType({
    GuiaStatus.DRAFT: frozenset({GuiaStatus.GENERATED}),
    GuiaStatus.GENERATED: frozenset({GuiaStatus.SIGNED}),
    GuiaStatus.SIGNED: frozenset({GuiaStatus.QUEUED}),
    GuiaStatus.QUEUED: frozenset({GuiaStatus.SENT}),
    GuiaStatus.SENT: frozenset({GuiaStatus.SETTLED, GuiaStatus.DENIED}),
    GuiaStatus.DENIED: frozenset({GuiaStatus.CONTESTED, GuiaStatus.RESOLVED}),
    GuiaStatus.SETTLED: frozenset({GuiaStatus.RESOLVED}),
    GuiaStatus.CONTESTED: frozenset({GuiaStatus.RESOLVED}),
    GuiaStatus.RESOLVED: frozenset(),
})

# Statuses whose edits send the guia back to draft
EDITABLE_STATUSES = (GuiaStatus.DRAFT, GuiaStatus.GENERATED, GuiaStatus.SIGNED, GuiaStatus.QUEUED)
DELETABLE_STATUSES = (GuiaStatus.DRAFT, GuiaStatus.GENERATED)

NUMERO_GUIA_DIGITS = 10


class LedgerGateway:
    """Financial ledger collaborator; receives the final value adjustments"""

    async def record_adjustment(self, clinic_id: int, guia: Guia, valor_centavos: int) -> None:
        logger.info(
            f"Ledger adjustment for clinic {clinic_id}, guia {guia.numero_guia}: {valor_centavos} centavos"
        )


def build_items(items: Iterable[Dict[str, Any]]) -> List[GuiaItem]:
    """Turn request dicts into GuiaItem rows with computed totals"""
    built = []
    for index, item in enumerate(items, start=1):
        quantidade = int(item.get("quantidade", 1))
        valor_unitario = int(item["valor_unitario_centavos"])
        built.append(GuiaItem(
            sequencial=index,
            codigo_tabela=item.get("codigo_tabela") or "22",
            codigo_procedimento=item["codigo_procedimento"],
            descricao=item.get("descricao"),
            quantidade=quantidade,
            valor_unitario_centavos=valor_unitario,
            valor_total_centavos=quantidade * valor_unitario,
        ))
    return built


def missing_fields(guia: Guia) -> List[str]:
    missing = []
    if not guia.nome_beneficiario:
        missing.append("nome_beneficiario")
    if not guia.numero_carteira:
        missing.append("numero_carteira")
    if not guia.itens:
        missing.append("itens")
    if guia.operadora_id is None:
        missing.append("operadora_id")
    if guia.data_atendimento is None:
        missing.append("data_atendimento")
    return missing


class GuiaLifecycleManager:
    """Service for guia creation and status transitions"""

    def __init__(
        self,
        db: AsyncSession,
        certificate_store: Optional[CertificateStore] = None,
        ledger: Optional[LedgerGateway] = None,
    ):
        self.db = db
        self.certificate_store = certificate_store or CertificateStore(db)
        self.ledger = ledger or LedgerGateway()

    # Queries

    async def get_guia(self, clinic_id: int, guia_id: int) -> Guia:
        result = await self.db.execute(
            select(Guia).where(Guia.id == guia_id, Guia.clinic_id == clinic_id)
            .execution_options(populate_existing=True)
        )
        guia = result.scalar_one_or_none()
        if not guia:
            raise NotFoundException("Guia não encontrada")
        return guia

    async def get_guia_by_numero(self, clinic_id: int, numero_guia: str) -> Optional[Guia]:
        result = await self.db.execute(
            select(Guia).where(Guia.clinic_id == clinic_id, Guia.numero_guia == numero_guia)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_guias(
        self,
        clinic_id: int,
        status: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        patient_id: Optional[int] = None,
        operadora_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Guia]:
        query = select(Guia).where(Guia.clinic_id == clinic_id).execution_options(populate_existing=True)
        if status:
            query = query.where(Guia.status == status)
        if date_from:
            query = query.where(Guia.data_atendimento >= date_from)
        if date_to:
            query = query.where(Guia.data_atendimento <= date_to)
        if patient_id:
            query = query.where(Guia.patient_id == patient_id)
        if operadora_id:
            query = query.where(Guia.operadora_id == operadora_id)

        result = await self.db.execute(query.order_by(Guia.id.desc()).limit(limit).offset(offset))
        return list(result.scalars().all())

    async def audit_trail(self, clinic_id: int, guia_id: int) -> List[GuiaAuditLog]:
        result = await self.db.execute(
            select(GuiaAuditLog)
            .where(
                GuiaAuditLog.clinic_id == clinic_id,
                GuiaAuditLog.entity_type == "guia",
                GuiaAuditLog.entity_id == guia_id,
            )
            .order_by(GuiaAuditLog.id)
        )
        return list(result.scalars().all())

    # Creation and edition

    async def _next_numero(self, clinic_id: int) -> str:
        result = await self.db.execute(
            select(func.max(Guia.numero_guia)).where(Guia.clinic_id == clinic_id)
        )
        last = result.scalar()
        return str(int(last) + 1 if last else 1).zfill(NUMERO_GUIA_DIGITS)

    async def _check_operadora(self, clinic_id: int, operadora_id: Optional[int]) -> None:
        if operadora_id is None:
            return
        result = await self.db.execute(
            select(Operadora.id).where(Operadora.id == operadora_id, Operadora.clinic_id == clinic_id)
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundException("Operadora não encontrada")

    async def create_guia(self, clinic_id: int, data: Dict[str, Any], actor_id: Optional[int] = None) -> Guia:
        """
        Create a draft guia.

        Args:
            clinic_id: Owning clinic
            data: Guia fields plus an ``itens`` list of dicts with
                codigo_procedimento, quantidade and valor_unitario_centavos
            actor_id: User performing the action

        Returns:
            Persisted Guia in draft status
        """
        data = dict(data)
        itens = build_items(data.pop("itens", None) or [])
        tipo = data.pop("tipo", TipoGuia.CONSULTA)
        await self._check_operadora(clinic_id, data.get("operadora_id"))

        guia = Guia(
            clinic_id=clinic_id,
            numero_guia=await self._next_numero(clinic_id),
            tipo=TipoGuia(tipo).value,
            status=GuiaStatus.DRAFT.value,
            version=1,
            recem_nascido=bool(data.pop("recem_nascido", False)),
            valor_total_centavos=sum(item.valor_total_centavos for item in itens),
            itens=itens,
            **data,
        )
        self.db.add(guia)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConcurrencyConflictError("Número de guia já utilizado. Tente novamente.")

        self._audit(guia, "create", None, GuiaStatus.DRAFT, actor_id)
        await self.db.commit()
        await self.db.refresh(guia)

        logger.info(f"Created {guia.tipo} guia {guia.numero_guia} for clinic {clinic_id}")
        return guia

    async def update_items(self, clinic_id: int, guia_id: int, items: List[Dict[str, Any]], actor_id: Optional[int] = None) -> Guia:
        """Replace line items; a guia that already left the clinic is immutable"""
        guia = await self.get_guia(clinic_id, guia_id)
        if guia.is_locked:
            raise GuiaLockedError(guia.numero_guia)
        if guia.lote_id is not None:
            raise InvalidTransitionError(
                "A guia pertence a um lote em aberto. Exclua o lote antes de alterá-la.",
                guia.status,
                GuiaStatus.DRAFT.value,
            )

        itens = build_items(items)
        await self._transition(
            guia,
            GuiaStatus(guia.status),
            GuiaStatus.DRAFT,
            actor_id,
            action="update_items",
            values={
                "valor_total_centavos": sum(item.valor_total_centavos for item in itens),
                "xml_content": None,
                "hash_xml": None,
                "signature_digest": None,
                "signed_at": None,
            },
            commit=False,
        )
        guia.itens = itens
        await self.db.commit()
        await self.db.refresh(guia)
        return guia

    async def delete_guia(self, clinic_id: int, guia_id: int, actor_id: Optional[int] = None) -> None:
        """Only claims that never left draft/generated are really removed"""
        guia = await self.get_guia(clinic_id, guia_id)
        if GuiaStatus(guia.status) not in DELETABLE_STATUSES:
            raise InvalidTransitionError(
                f"Guias com status '{guia.status}' não podem ser excluídas.",
                guia.status,
                None,
            )

        status = GuiaStatus(guia.status)
        await self._transition(guia, status, status, actor_id, action="delete", commit=False)
        await self.db.delete(guia)
        await self.db.commit()
        logger.info(f"Deleted guia {guia.numero_guia} of clinic {clinic_id}")

    # Transitions

    def _audit(self, guia: Guia, action: str, previous: Optional[GuiaStatus], new: Optional[GuiaStatus], actor_id: Optional[int], details: Optional[Dict] = None):
        self.db.add(GuiaAuditLog(
            clinic_id=guia.clinic_id,
            actor_id=actor_id,
            entity_type="guia",
            entity_id=guia.id,
            action=action,
            previous_status=previous.value if previous else None,
            new_status=new.value if new else None,
            details=details,
        ))

    async def _transition(
        self,
        guia: Guia,
        expected: GuiaStatus,
        target: GuiaStatus,
        actor_id: Optional[int],
        action: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> Guia:
        """Apply the change only if nobody moved the guia since we read it"""
        stmt = (
            update(Guia)
            .where(Guia.id == guia.id, Guia.status == expected.value, Guia.version == guia.version)
            .values(status=target.value, version=Guia.version + 1, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            guia_id, version = guia.id, guia.version
            await self.db.rollback()
            logger.warning(f"Concurrent change on guia {guia_id}: expected {expected.value} v{version}")
            raise ConcurrencyConflictError(details={"guia_id": guia_id, "expected_status": expected.value})

        self._audit(guia, action or f"transition_{target.value}", expected, target, actor_id, details)
        if commit:
            await self.db.commit()
            await self.db.refresh(guia)
        return guia

    def _require(self, guia: Guia, target: GuiaStatus) -> GuiaStatus:
        current = GuiaStatus(guia.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Transição de '{current.value}' para '{target.value}' não permitida.",
                current.value,
                target.value,
            )
        return current

    async def transition(self, clinic_id: int, guia_id: int, target: GuiaStatus, actor_id: Optional[int] = None) -> Guia:
        """
        Generic manual transition. Sending is reserved to lote submission and
        XML/signature steps go through their own operations.
        """
        target = GuiaStatus(target)
        if target == GuiaStatus.SENT:
            raise InvalidTransitionError(
                "A guia só pode ser marcada como enviada através do envio de um lote.",
                None,
                target.value,
            )
        if target in (GuiaStatus.GENERATED, GuiaStatus.SIGNED, GuiaStatus.CONTESTED, GuiaStatus.RESOLVED):
            raise InvalidTransitionError(
                f"Use a operação específica para mover a guia para '{target.value}'.",
                None,
                target.value,
            )
        guia = await self.get_guia(clinic_id, guia_id)
        current = self._require(guia, target)
        return await self._transition(guia, current, target, actor_id)

    async def generate_xml(self, clinic_id: int, guia_id: int, actor_id: Optional[int] = None, schema_version: Optional[str] = None) -> Guia:
        """draft -> generated"""
        guia = await self.get_guia(clinic_id, guia_id)
        current = self._require(guia, GuiaStatus.GENERATED)

        missing = missing_fields(guia)
        if missing:
            raise TISSValidationError(missing)

        versao = TISSVersioningService.resolve_version(guia.operadora, schema_version)
        xml = build_guia_xml(guia, versao)

        await self._transition(
            guia,
            current,
            GuiaStatus.GENERATED,
            actor_id,
            values={"xml_content": xml, "hash_xml": hash_xml(xml), "versao_tiss": versao},
            details={"versao_tiss": versao},
        )
        logger.info(f"Generated XML for guia {guia.numero_guia} (TISS {versao})")
        return guia

    async def sign(self, clinic_id: int, guia_id: int, actor_id: Optional[int] = None) -> Guia:
        """generated -> signed, using the clinic certificate"""
        guia = await self.get_guia(clinic_id, guia_id)
        current = self._require(guia, GuiaStatus.SIGNED)

        async with self.certificate_store.signing_credentials(clinic_id) as (pfx_bytes, password):
            try:
                signed = sign_xml(guia.xml_content, pfx_bytes, password)
            except SigningError as e:
                if e.code == "invalid_pkcs12":
                    raise CertificateError(CertificateError.INVALID_PASSWORD)
                raise

        await self._transition(
            guia,
            current,
            GuiaStatus.SIGNED,
            actor_id,
            values={
                "xml_content": signed,
                "signature_digest": read_digest_value(signed),
                "signed_at": datetime.now(timezone.utc),
            },
        )
        logger.info(f"Signed guia {guia.numero_guia} of clinic {clinic_id}")
        return guia

    async def enqueue(self, clinic_id: int, guia_id: int, actor_id: Optional[int] = None) -> Guia:
        """signed -> queued"""
        guia = await self.get_guia(clinic_id, guia_id)
        current = self._require(guia, GuiaStatus.QUEUED)
        return await self._transition(guia, current, GuiaStatus.QUEUED, actor_id)

    async def settle(self, clinic_id: int, guia_id: int, actor_id: Optional[int] = None) -> Guia:
        """sent -> settled: paid in full, no glosa"""
        return await self.transition(clinic_id, guia_id, GuiaStatus.SETTLED, actor_id)

    async def mark_sent_in_lote(self, clinic_id: int, guia_ids: List[int], lote_id: int, actor_id: Optional[int] = None) -> None:
        """
        queued -> sent for every guia of an accepted lote.

        Only the lote submission calls this, inside its own transaction; the
        caller commits. Raises if any guia is no longer queued in that lote.
        """
        stmt = (
            update(Guia)
            .where(
                Guia.clinic_id == clinic_id,
                Guia.id.in_(guia_ids),
                Guia.lote_id == lote_id,
                Guia.status == GuiaStatus.QUEUED.value,
            )
            .values(status=GuiaStatus.SENT.value, version=Guia.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != len(guia_ids):
            raise ConcurrencyConflictError(
                "Algumas guias do lote foram alteradas durante o envio.",
                details={"lote_id": lote_id, "expected": len(guia_ids), "updated": result.rowcount},
            )

        for guia_id in guia_ids:
            self.db.add(GuiaAuditLog(
                clinic_id=clinic_id,
                actor_id=actor_id,
                entity_type="guia",
                entity_id=guia_id,
                action="transition_sent",
                previous_status=GuiaStatus.QUEUED.value,
                new_status=GuiaStatus.SENT.value,
                details={"lote_id": lote_id},
            ))

    async def mark_settled(self, guia: Guia, actor_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None) -> Guia:
        """sent -> settled from the operator statement; the caller commits"""
        current = self._require(guia, GuiaStatus.SETTLED)
        return await self._transition(guia, current, GuiaStatus.SETTLED, actor_id, details=details, commit=False)

    async def mark_denied(self, guia: Guia, glosa_id: int, actor_id: Optional[int] = None) -> Guia:
        """sent -> denied when a glosa takes value away from the claim"""
        current = self._require(guia, GuiaStatus.DENIED)
        return await self._transition(
            guia, current, GuiaStatus.DENIED, actor_id, details={"glosa_id": glosa_id}, commit=False
        )

    async def contest(self, guia: Guia, prazo_recurso: date, today: date, actor_id: Optional[int] = None, commit: bool = False) -> Guia:
        """
        denied -> contested (recurso filed).

        Raises:
            DeadlineExceededError: the appeal window closed; nothing changes
        """
        current = self._require(guia, GuiaStatus.CONTESTED)
        if today > prazo_recurso:
            logger.warning(f"Recurso for guia {guia.numero_guia} filed after deadline {prazo_recurso}")
            raise DeadlineExceededError(prazo_recurso.isoformat())
        return await self._transition(
            guia, current, GuiaStatus.CONTESTED, actor_id,
            details={"prazo_recurso": prazo_recurso.isoformat()}, commit=commit,
        )

    async def resolve(self, guia: Guia, valor_ajuste_centavos: int = 0, actor_id: Optional[int] = None, commit: bool = False) -> Guia:
        """
        settled/denied/contested -> resolved.

        The ledger books the difference only once the resolution is durable:
        here when ``commit`` is set, otherwise the caller must call
        ``book_adjustment`` after its own commit.
        """
        current = self._require(guia, GuiaStatus.RESOLVED)
        await self._transition(
            guia, current, GuiaStatus.RESOLVED, actor_id,
            details={"valor_ajuste_centavos": valor_ajuste_centavos}, commit=commit,
        )
        if commit:
            await self.book_adjustment(guia, valor_ajuste_centavos)
        return guia

    async def book_adjustment(self, guia: Guia, valor_ajuste_centavos: int) -> None:
        await self.ledger.record_adjustment(guia.clinic_id, guia, valor_ajuste_centavos)
