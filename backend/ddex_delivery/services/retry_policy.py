from datetime import timedelta
from typing import Optional

from ddex_delivery.core.config import settings


class RetryPolicy:
    """固定スケジュールのリトライ (既定: 5分 → 15分 → 上限3回で終了)"""

    def __init__(self, max_attempts: int = None, delays_seconds: list[int] = None):
        self.max_attempts = max_attempts or settings.MAX_ATTEMPTS
        self.delays_seconds = delays_seconds or settings.retry_delays

    def next_delay(self, attempt_number: int) -> Optional[timedelta]:
        """attempt_number回目の失敗後の待機時間。上限到達ならNone"""
        if attempt_number >= self.max_attempts:
            return None
        index = min(attempt_number - 1, len(self.delays_seconds) - 1)
        return timedelta(seconds=self.delays_seconds[index])
