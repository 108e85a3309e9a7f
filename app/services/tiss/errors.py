"""
TISS error taxonomy

Every error carries a stable machine code and a Portuguese message meant for
clinic staff. HTTP status codes come from the AppException hierarchy so the
API handlers can render them directly.
"""

from typing import Any, Dict, List, Optional

from app.core.error_handling import AppException, ConflictException, ValidationException


class TISSValidationError(ValidationException):
    """Claim is missing mandatory data; the caller must correct and resubmit"""
    code = "validation_error"

    def __init__(self, missing_fields: List[str], message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.missing_fields = list(missing_fields)
        payload = {"missing_fields": self.missing_fields}
        if details:
            payload.update(details)
        super().__init__(
            message or f"Campos obrigatórios ausentes: {', '.join(self.missing_fields)}",
            details=payload,
        )


class SchemaValidationError(ValidationException):
    """Guia data violates the TISS structure; names the first violated field"""
    code = "schema_validation_error"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message, details={"field": field})


class CertificateError(AppException):
    """Signing certificate unusable until someone fixes it"""

    NOT_CONFIGURED = "not_configured"
    EXPIRED = "expired"
    INVALID_PASSWORD = "invalid_password"

    MESSAGES = {
        NOT_CONFIGURED: "Certificado digital não configurado. Configure seu e-CNPJ primeiro.",
        EXPIRED: "Certificado digital expirado. Faça upload de um certificado válido.",
        INVALID_PASSWORD: "Senha do certificado incorreta ou arquivo inválido.",
    }

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(
            message or self.MESSAGES.get(reason, "Erro no certificado digital."),
            status_code=412,
            details={"reason": reason},
            code=f"certificate_{reason}",
        )


class SigningError(AppException):
    """Cryptographic failure while signing; never retried"""
    code = "signing_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, status_code=422, code=code)


class SubmissionError(AppException):
    """Network-level failure talking to the operator; safe to retry"""
    code = "submission_error"
    retryable = True

    def __init__(self, message: str = "Falha de comunicação com a operadora. Tente novamente.", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=503, details=details)


class OperatorRejectionError(AppException):
    """Operator answered with a definitive rejection; needs manual correction"""
    code = "operator_rejection"
    retryable = False

    def __init__(self, message: str, operator_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.operator_code = operator_code
        payload = {"operator_code": operator_code}
        if details:
            payload.update(details)
        super().__init__(message, status_code=502, details=payload)


class DeadlineExceededError(ValidationException):
    """Appeal filed after the deadline"""
    code = "deadline_exceeded"

    def __init__(self, prazo: str):
        super().__init__(
            f"Prazo para recurso expirado em {prazo}.",
            details={"prazo_recurso": prazo},
        )


class InvalidTransitionError(ConflictException):
    code = "invalid_transition"

    def __init__(self, message: str, current_status: Optional[str] = None, target_status: Optional[str] = None):
        super().__init__(message, details={"current_status": current_status, "target_status": target_status})


class ConcurrencyConflictError(ConflictException):
    """Conditional write matched no rows: someone else changed the record first"""
    code = "concurrency_conflict"

    def __init__(self, message: str = "O registro foi alterado por outra operação. Recarregue e tente novamente.", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class GuiaLockedError(ConflictException):
    code = "guia_locked"

    def __init__(self, numero_guia: str):
        super().__init__(
            f"A guia {numero_guia} já foi enviada e não pode ser alterada.",
            details={"numero_guia": numero_guia},
        )
