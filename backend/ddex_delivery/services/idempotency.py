import re
import hashlib

DEFAULT_MESSAGE_TYPE = "NewReleaseMessage"
DEFAULT_MESSAGE_SUB_TYPE = "Initial"
KEY_PREFIX = "IDMP_"
DIGEST_LENGTH = 8

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def generate_idempotency_key(
    release_id,
    target_id,
    message_type: str = None,
    message_sub_type: str = None,
    ern_message_id: str = None,
) -> str:
    """
    配信意図ごとの冪等キーを生成する。

    同じ入力からは常に同じキーになる (時刻や乱数は使わない)。
    空の要素は詰め、英数字・_・- 以外は _ に置換してURL/パスに使える形にする。
    置換が発生した場合は元の文字列のハッシュを末尾に付け、"MSG.1" と "MSG_1" のように
    置換後に同じ文字列になる入力を区別する。
    """
    parts = [
        release_id,
        target_id,
        message_type or DEFAULT_MESSAGE_TYPE,
        message_sub_type or DEFAULT_MESSAGE_SUB_TYPE,
        ern_message_id,
    ]
    raw = "_".join(str(p) for p in parts if p not in (None, ""))
    key = _UNSAFE_CHARS.sub("_", raw)
    if key != raw:
        key += "_" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
    return KEY_PREFIX + key
