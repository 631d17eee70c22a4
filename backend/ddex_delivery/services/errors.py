"""配信処理の例外

ValidationError   : 入力不備 (リリース不在・UPC形式不正・設定不足)。リトライしない
LockContention    : 他Workerが処理中。ジョブの失敗ではない
TransportError    : 通信・認証・タイムアウト・配信先の拒否。リトライ対象
PermanentFailure  : リトライ上限到達。ジョブの最終エラーとして保存する
"""


class DeliveryError(Exception):
    pass


class ValidationError(DeliveryError):
    pass


class LockContention(DeliveryError):
    def __init__(self, idempotency_key: str):
        super().__init__(f"Delivery is already being processed: {idempotency_key}")
        self.idempotency_key = idempotency_key


class TransportError(DeliveryError):
    def __init__(self, protocol: str, cause):
        self.protocol = protocol
        self.cause = cause
        super().__init__(f"{protocol} transfer failed: {cause}")


class PermanentFailure(DeliveryError):
    def __init__(self, attempts: int, cause: str):
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Delivery failed after {attempts} attempt(s): {cause}")
