"""
Lote Batch Manager
Creates TISS lotes, claims their guias and drives submission to the operator
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from app.core.error_handling import NotFoundException, ValidationException
from app.models.tiss.audit_log import GuiaAuditLog
from app.models.tiss.guia import Guia, GuiaStatus
from app.models.tiss.lote import Lote, LoteStatus
from app.models.tiss.operadora import Operadora
from app.services.tiss.certificate_store import CertificateStore
from app.services.tiss.errors import (
    CertificateError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    OperatorRejectionError,
    SigningError,
    SubmissionError,
    TISSValidationError,
)
from app.services.tiss.guia_lifecycle import GuiaLifecycleManager
from app.services.tiss.submission.retry_manager import RetryManager
from app.services.tiss.submission.webservice_sender import WebserviceSender
from app.services.tiss.versioning import TISSVersioningService
from app.services.tiss.xml_builder import build_lote_xml
from app.services.tiss.xml_signer import hash_xml, sign_xml

logger = logging.getLogger(__name__)

DELETABLE_LOTE_STATUSES = (LoteStatus.DRAFT.value, LoteStatus.RETRY.value, LoteStatus.FAILED.value)


@dataclass
class SubmissionResult:
    lote_id: int
    numero_lote: str
    status: str
    protocol_number: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    per_guia_results: List[Dict] = field(default_factory=list)


class LoteBatchManager:
    """Service for TISS lotes"""

    def __init__(
        self,
        db: AsyncSession,
        lifecycle: Optional[GuiaLifecycleManager] = None,
        certificate_store: Optional[CertificateStore] = None,
        sender: Optional[WebserviceSender] = None,
        retry_manager: Optional[RetryManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.certificate_store = certificate_store or CertificateStore(db)
        self.lifecycle = lifecycle or GuiaLifecycleManager(db, certificate_store=self.certificate_store)
        self.sender = sender or WebserviceSender()
        self.retry_manager = retry_manager or RetryManager()
        self.sleep = sleep
        self.clock = clock
        self.max_guias = settings.TISS_MAX_GUIAS_PER_LOTE

    # Queries

    async def get_lote(self, clinic_id: int, lote_id: int) -> Lote:
        result = await self.db.execute(
            select(Lote).where(Lote.id == lote_id, Lote.clinic_id == clinic_id)
            .execution_options(populate_existing=True)
        )
        lote = result.scalar_one_or_none()
        if not lote:
            raise NotFoundException("Lote não encontrado")
        return lote

    async def list_lotes(self, clinic_id: int, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Lote]:
        query = select(Lote).where(Lote.clinic_id == clinic_id).execution_options(populate_existing=True)
        if status:
            query = query.where(Lote.status == status)
        result = await self.db.execute(query.order_by(Lote.id.desc()).limit(limit).offset(offset))
        return list(result.scalars().all())

    async def _lote_guias(self, lote: Lote) -> List[Guia]:
        result = await self.db.execute(
            select(Guia).where(Guia.clinic_id == lote.clinic_id, Guia.id.in_(lote.guia_ids))
            .execution_options(populate_existing=True)
        )
        by_id = {guia.id: guia for guia in result.scalars().all()}
        return [by_id[guia_id] for guia_id in lote.guia_ids if guia_id in by_id]

    # Creation

    async def _generate_numero_lote(self, clinic_id: int, today: date) -> str:
        # Deleted lotes leave gaps; next number follows the highest one in use
        prefix = today.strftime("%Y%m%d")
        result = await self.db.execute(
            select(Lote.numero_lote).where(Lote.clinic_id == clinic_id, Lote.numero_lote.like(f"{prefix}-%"))
        )
        suffixes = [numero.rsplit("-", 1)[1] for numero in result.scalars().all()]
        highest = max((int(suffix) for suffix in suffixes if suffix.isdigit()), default=0)
        return f"{prefix}-{highest + 1:04d}"

    async def _validate_guias(self, clinic_id: int, operadora_id: int, guia_ids: List[int]) -> List[Guia]:
        result = await self.db.execute(
            select(Guia).where(Guia.clinic_id == clinic_id, Guia.id.in_(guia_ids))
            .execution_options(populate_existing=True)
        )
        found = {guia.id: guia for guia in result.scalars().all()}

        errors = []
        for guia_id in guia_ids:
            guia = found.get(guia_id)
            if guia is None:
                errors.append({"guia_id": guia_id, "code": "GUIA_NOT_FOUND", "message": "Guia não encontrada"})
            elif guia.operadora_id != operadora_id:
                errors.append({"guia_id": guia_id, "code": "OPERADORA_MISMATCH", "message": "Guia pertence a outra operadora"})
            elif guia.status != GuiaStatus.QUEUED.value or guia.lote_id is not None:
                errors.append({
                    "guia_id": guia_id,
                    "code": "INVALID_STATUS",
                    "message": f"Guia com status '{guia.status}' não pode ser incluída em lote",
                })
        if errors:
            raise ValidationException("Guias inválidas para o lote", details={"errors": errors}, code="invalid_guias")

        guias = [found[guia_id] for guia_id in guia_ids]
        if len({guia.tipo for guia in guias}) > 1:
            raise ValidationException(
                "Um lote deve conter guias de um único tipo",
                details={"tipos": sorted({guia.tipo for guia in guias})},
                code="mixed_guia_types",
            )
        return guias

    async def create_lote(self, clinic_id: int, operadora_id: int, guia_ids: List[int], actor_id: Optional[int] = None) -> Lote:
        """
        Group queued guias of one operadora into a signed lote.

        Args:
            clinic_id: Clinic ID
            operadora_id: Operadora every guia must belong to
            guia_ids: Ordered guia IDs
            actor_id: User performing the action

        Returns:
            Lote in draft status with its signed envelope

        Raises:
            ValidationException: size limits or ineligible guias
            ConcurrencyConflictError: another lote claimed one of the guias first
            CertificateError: clinic certificate missing, expired or unreadable
        """
        if not guia_ids:
            raise TISSValidationError(["guia_ids"], "Selecione ao menos uma guia para o lote.")
        if len(guia_ids) > self.max_guias:
            raise ValidationException(
                f"Máximo de {self.max_guias} guias por lote",
                details={"max_guias": self.max_guias, "received": len(guia_ids)},
                code="lote_too_large",
            )
        if len(set(guia_ids)) != len(guia_ids):
            raise ValidationException("Guias repetidas no lote", code="duplicate_guias")

        result = await self.db.execute(
            select(Operadora).where(Operadora.id == operadora_id, Operadora.clinic_id == clinic_id)
        )
        operadora = result.scalar_one_or_none()
        if not operadora:
            raise NotFoundException("Operadora não encontrada")

        guias = await self._validate_guias(clinic_id, operadora_id, guia_ids)
        versao = TISSVersioningService.resolve_version(operadora)
        now = self.clock()

        try:
            lote = Lote(
                clinic_id=clinic_id,
                operadora_id=operadora_id,
                numero_lote=await self._generate_numero_lote(clinic_id, now.date()),
                guia_ids=list(guia_ids),
                valor_total_centavos=sum(guia.valor_total_centavos for guia in guias),
                versao_tiss=versao,
                status=LoteStatus.DRAFT.value,
                send_attempt_count=0,
                max_attempts=len(self.retry_manager.RETRY_DELAYS),
            )
            self.db.add(lote)
            try:
                await self.db.flush()
            except IntegrityError:
                logger.warning(f"Lote number {lote.numero_lote} taken concurrently for clinic {clinic_id}")
                raise ConcurrencyConflictError("Número de lote já utilizado. Tente novamente.")

            # Optimistic claim: only guias still queued and unbatched are taken
            claim = await self.db.execute(
                update(Guia)
                .where(
                    Guia.clinic_id == clinic_id,
                    Guia.id.in_(guia_ids),
                    Guia.status == GuiaStatus.QUEUED.value,
                    Guia.lote_id.is_(None),
                )
                .values(lote_id=lote.id, version=Guia.version + 1)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != len(guia_ids):
                logger.warning(f"Lote claim conflict: {claim.rowcount}/{len(guia_ids)} guias available")
                raise ConcurrencyConflictError(
                    "Algumas guias já foram incluídas em outro lote.",
                    details={"claimed": claim.rowcount, "requested": len(guia_ids)},
                )

            xml = build_lote_xml(lote.numero_lote, guias, operadora, versao, now=now)
            async with self.certificate_store.signing_credentials(clinic_id) as (pfx_bytes, password):
                try:
                    signed = sign_xml(xml, pfx_bytes, password)
                except SigningError as e:
                    if e.code == "invalid_pkcs12":
                        raise CertificateError(CertificateError.INVALID_PASSWORD)
                    raise

            lote.xml_content = signed
            lote.hash_xml = hash_xml(xml)
            self._audit(lote, "create", None, LoteStatus.DRAFT, actor_id, {"guia_ids": list(guia_ids)})
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(lote)
        logger.info(f"Created lote {lote.numero_lote} with {len(guia_ids)} guias for operadora {operadora.registro_ans}")
        return lote

    # Submission

    def _audit(self, lote: Lote, action: str, previous: Optional[LoteStatus], new: Optional[LoteStatus], actor_id: Optional[int], details: Optional[Dict] = None):
        self.db.add(GuiaAuditLog(
            clinic_id=lote.clinic_id,
            actor_id=actor_id,
            entity_type="lote",
            entity_id=lote.id,
            action=action,
            previous_status=previous.value if previous else None,
            new_status=new.value if new else None,
            details=details,
        ))

    async def _result(self, lote: Lote, guia_status: str, error_code: Optional[str] = None, error_message: Optional[str] = None) -> SubmissionResult:
        guias = await self._lote_guias(lote)
        return SubmissionResult(
            lote_id=lote.id,
            numero_lote=lote.numero_lote,
            status=lote.status,
            protocol_number=lote.protocol_number,
            error_code=error_code,
            error_message=error_message,
            per_guia_results=[
                {"guia_id": guia.id, "numero_guia": guia.numero_guia, "status": guia_status}
                for guia in guias
            ],
        )

    async def _release_guias(self, lote: Lote) -> None:
        await self.db.execute(
            update(Guia)
            .where(Guia.lote_id == lote.id, Guia.status == GuiaStatus.QUEUED.value)
            .values(lote_id=None, version=Guia.version + 1)
            .execution_options(synchronize_session=False)
        )

    async def _finish_lote(self, lote: Lote, expected: LoteStatus, target: LoteStatus, actor_id: Optional[int], values: Dict, details: Optional[Dict] = None) -> None:
        result = await self.db.execute(
            update(Lote)
            .where(Lote.id == lote.id, Lote.status == expected.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(details={"lote_id": lote.id, "expected_status": expected.value})
        self._audit(lote, f"submission_{target.value}", expected, target, actor_id, details)

    @staticmethod
    def _claim_expired(lote: Lote, stale_before: datetime) -> bool:
        last_attempt_at = lote.last_attempt_at
        if last_attempt_at is None:
            return True
        if last_attempt_at.tzinfo is None:
            # SQLite drops the offset; values are written in UTC
            last_attempt_at = last_attempt_at.replace(tzinfo=timezone.utc)
        return last_attempt_at < stale_before

    async def submit_lote(self, clinic_id: int, lote_id: int, actor_id: Optional[int] = None) -> SubmissionResult:
        """
        Send a lote to its operadora. Idempotent per lote: an accepted lote is
        never sent again and its stored result is returned.

        Returns:
            SubmissionResult with status 'accepted', or 'failed' when the
            operator rejected the lote (guias stay queued, free to rebatch)

        Raises:
            SubmissionError: transport failures persisted after the in-call retries
            InvalidTransitionError: lote already failed
            ConcurrencyConflictError: another invocation is sending it and its
                claim window has not run out
        """
        lote = await self.get_lote(clinic_id, lote_id)

        if lote.status == LoteStatus.ACCEPTED.value:
            logger.info(f"Lote {lote.numero_lote} already accepted, returning stored protocol")
            return await self._result(lote, GuiaStatus.SENT.value)
        if lote.status == LoteStatus.FAILED.value:
            raise InvalidTransitionError(
                "Lote com falha definitiva. Corrija as guias e gere um novo lote.",
                lote.status,
                LoteStatus.SENDING.value,
            )
        now = self.clock()
        stale_before = now - self.retry_manager.claim_window(getattr(self.sender, "timeout", None))
        if lote.status == LoteStatus.SENDING.value:
            if not self._claim_expired(lote, stale_before):
                raise ConcurrencyConflictError("Lote já está sendo enviado.", details={"lote_id": lote.id})
            logger.warning(f"Lote {lote.numero_lote} stuck in sending since {lote.last_attempt_at}, reclaiming")

        operadora = lote.operadora
        if operadora is None or not operadora.webservice_url:
            raise TISSValidationError(["operadora.webservice_url"], "Operadora sem URL de webservice configurada.")

        # Claim the send; a concurrent invocation loses here
        previous = LoteStatus(lote.status)
        condition = and_(Lote.id == lote.id, Lote.status == previous.value)
        if previous == LoteStatus.SENDING:
            condition = and_(condition, Lote.last_attempt_at < stale_before)
        claim = await self.db.execute(
            update(Lote)
            .where(condition)
            .values(status=LoteStatus.SENDING.value, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            lote_id = lote.id
            await self.db.rollback()
            raise ConcurrencyConflictError("Lote já está sendo enviado.", details={"lote_id": lote_id})
        self._audit(lote, "submission_started", previous, LoteStatus.SENDING, actor_id)
        await self.db.commit()

        attempts = lote.send_attempt_count
        last_error: Optional[SubmissionError] = None
        for attempt in range(1, self.retry_manager.in_call_attempts + 1):
            if attempts >= lote.max_attempts:
                break
            attempts += 1
            try:
                sent = await self.sender.send(operadora.webservice_url, lote.xml_content, lote.numero_lote)
            except SubmissionError as e:
                last_error = e
                logger.warning(f"Lote {lote.numero_lote} attempt {attempts}/{lote.max_attempts} failed: {e.message}")
                if attempt < self.retry_manager.in_call_attempts and attempts < lote.max_attempts:
                    await self.sleep(self.retry_manager.backoff_seconds(attempt))
                continue
            except OperatorRejectionError as e:
                return await self._mark_rejected(lote, attempts, e, actor_id)
            except Exception as e:
                logger.error(f"Unexpected error sending lote {lote.numero_lote}: {type(e).__name__}", exc_info=True)
                await self._mark_transport_failure(
                    lote, attempts, SubmissionError(f"Erro inesperado no envio do lote: {type(e).__name__}"), actor_id
                )
                raise

            return await self._mark_accepted(lote, attempts, sent.protocol_number, actor_id)

        await self._mark_transport_failure(lote, attempts, last_error, actor_id)
        raise last_error or SubmissionError("Número máximo de tentativas de envio atingido.")

    async def _mark_accepted(self, lote: Lote, attempts: int, protocol_number: str, actor_id: Optional[int]) -> SubmissionResult:
        now = self.clock()
        try:
            await self._finish_lote(
                lote, LoteStatus.SENDING, LoteStatus.ACCEPTED, actor_id,
                values={
                    "protocol_number": protocol_number,
                    "send_attempt_count": attempts,
                    "submitted_at": now,
                    "last_error": None,
                    "next_retry_at": None,
                },
                details={"protocol_number": protocol_number},
            )
            await self.lifecycle.mark_sent_in_lote(lote.clinic_id, list(lote.guia_ids), lote.id, actor_id)
            await self.db.commit()
        except Exception:
            numero_lote = lote.numero_lote
            await self.db.rollback()
            logger.error(f"Lote {numero_lote} accepted remotely (protocol {protocol_number}) but local update failed", exc_info=True)
            raise

        await self.db.refresh(lote)
        logger.info(f"Lote {lote.numero_lote} accepted with protocol {protocol_number}")
        return await self._result(lote, GuiaStatus.SENT.value)

    async def _mark_rejected(self, lote: Lote, attempts: int, error: OperatorRejectionError, actor_id: Optional[int]) -> SubmissionResult:
        await self._finish_lote(
            lote, LoteStatus.SENDING, LoteStatus.FAILED, actor_id,
            values={"send_attempt_count": attempts, "last_error": error.message, "next_retry_at": None},
            details={"operator_code": error.operator_code},
        )
        await self._release_guias(lote)
        await self.db.commit()
        await self.db.refresh(lote)

        logger.error(f"Lote {lote.numero_lote} rejected by operator: {error.message}")
        return await self._result(lote, GuiaStatus.QUEUED.value, error.code, error.message)

    async def _mark_transport_failure(self, lote: Lote, attempts: int, error: Optional[SubmissionError], actor_id: Optional[int]) -> None:
        message = error.message if error else "Número máximo de tentativas de envio atingido."
        exhausted = attempts >= lote.max_attempts
        target = LoteStatus.FAILED if exhausted else LoteStatus.RETRY

        lote.send_attempt_count = attempts
        next_retry_at = None if exhausted else self.retry_manager.get_next_retry_time(lote, self.clock())
        await self._finish_lote(
            lote, LoteStatus.SENDING, target, actor_id,
            values={"send_attempt_count": attempts, "last_error": message, "next_retry_at": next_retry_at},
            details={"attempts": attempts},
        )
        if exhausted:
            await self._release_guias(lote)
        await self.db.commit()
        await self.db.refresh(lote)

        logger.warning(f"Lote {lote.numero_lote} moved to {target.value} after {attempts} attempts")

    async def retry_lote(self, clinic_id: int, lote_id: int, actor_id: Optional[int] = None) -> SubmissionResult:
        """Resend a lote whose last attempt ended in a transport failure or lost its sender"""
        lote = await self.get_lote(clinic_id, lote_id)
        if lote.status not in (LoteStatus.RETRY.value, LoteStatus.SENDING.value):
            raise InvalidTransitionError(
                "Reenvio permitido apenas para lotes com erro de comunicação.",
                lote.status,
                LoteStatus.SENDING.value,
            )
        return await self.submit_lote(clinic_id, lote_id, actor_id)

    async def delete_lote(self, clinic_id: int, lote_id: int, actor_id: Optional[int] = None) -> None:
        """Discard an unsent lote and free its guias for a new batch"""
        lote = await self.get_lote(clinic_id, lote_id)
        if lote.status not in DELETABLE_LOTE_STATUSES:
            raise InvalidTransitionError(
                "Apenas lotes não enviados podem ser excluídos.",
                lote.status,
                None,
            )

        result = await self.db.execute(
            delete(Lote)
            .where(Lote.id == lote.id, Lote.status.in_(DELETABLE_LOTE_STATUSES))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            lote_id = lote.id
            await self.db.rollback()
            raise ConcurrencyConflictError(details={"lote_id": lote_id})

        await self._release_guias(lote)
        self._audit(lote, "delete", LoteStatus(lote.status), None, actor_id, {"numero_lote": lote.numero_lote})
        await self.db.commit()
        self.db.expunge(lote)
        logger.info(f"Deleted lote {lote.numero_lote} of clinic {clinic_id}")
