"""
Retry Manager Service
Backoff policy for lote submissions
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from app.models.tiss.lote import Lote, LoteStatus

logger = logging.getLogger(__name__)


class RetryManager:
    """Manages retry logic for failed submissions"""

    # Between invocations: 1min, 5min, 15min, 1h, 4h
    RETRY_DELAYS = [60, 300, 900, 3600, 14400]  # seconds

    def __init__(self, in_call_attempts: Optional[int] = None, backoff_base: Optional[float] = None):
        self.in_call_attempts = in_call_attempts or settings.TISS_SUBMIT_MAX_ATTEMPTS
        self.backoff_base = backoff_base if backoff_base is not None else settings.TISS_SUBMIT_BACKOFF_BASE

    def backoff_seconds(self, attempt: int) -> float:
        """Sleep before the next in-call attempt: base, 2*base, 4*base..."""
        return self.backoff_base * (2 ** (attempt - 1))

    def should_retry(self, lote: Lote) -> bool:
        if lote.status in (LoteStatus.ACCEPTED.value, LoteStatus.FAILED.value):
            return False
        return lote.send_attempt_count < lote.max_attempts

    def get_next_retry_time(self, lote: Lote, now: datetime) -> Optional[datetime]:
        if not self.should_retry(lote):
            return None
        index = min(max(lote.send_attempt_count - 1, 0), len(self.RETRY_DELAYS) - 1)
        return now + timedelta(seconds=self.RETRY_DELAYS[index])

    def claim_window(self, timeout: Optional[float] = None) -> timedelta:
        """
        Longest a single submit call can own a lote: every in-call attempt
        timing out plus the backoff sleeps between them. A lote still
        'sending' after this window lost its owner and may be claimed again.
        """
        timeout = timeout if timeout is not None else settings.TISS_SUBMIT_TIMEOUT
        sleeps = sum(self.backoff_seconds(attempt) for attempt in range(1, self.in_call_attempts))
        return timedelta(seconds=timeout * self.in_call_attempts + sleeps)
