"""
Per-clinic rate limiting

Fixed one-minute windows kept in process memory (in production, use Redis).
"""

import logging
import time
from typing import Callable, Dict, Any

from app.core.error_handling import AppException

logger = logging.getLogger(__name__)


class RateLimitExceededError(AppException):
    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int):
        super().__init__(
            "Limite de acessos ao certificado excedido. Aguarde alguns instantes.",
            status_code=429,
            details={"retry_after": retry_after},
        )


class ClinicRateLimiter:
    """Counts calls per clinic inside the current minute window"""

    WINDOW_SECONDS = 60

    def __init__(self, limit_per_minute: int, clock: Callable[[], float] = time.monotonic):
        self.limit_per_minute = limit_per_minute
        self.clock = clock
        self._windows: Dict[int, Dict[str, Any]] = {}

    def check(self, clinic_id: int) -> None:
        """Register one call for the clinic, raising when over the limit"""
        now = self.clock()
        window = self._windows.get(clinic_id)

        if window is None or now - window["started_at"] >= self.WINDOW_SECONDS:
            window = {"started_at": now, "count": 0}
            self._windows[clinic_id] = window

        if window["count"] >= self.limit_per_minute:
            retry_after = int(self.WINDOW_SECONDS - (now - window["started_at"])) + 1
            logger.warning(f"Clinic {clinic_id} exceeded {self.limit_per_minute} certificate reads/minute")
            raise RateLimitExceededError(retry_after)

        window["count"] += 1

    def reset(self, clinic_id: int = None) -> None:
        if clinic_id is None:
            self._windows.clear()
        else:
            self._windows.pop(clinic_id, None)
