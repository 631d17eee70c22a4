from datetime import datetime
from zoneinfo import ZoneInfo

JST = ZoneInfo("Asia/Tokyo")


def now_jst() -> datetime:
    """現在時刻 (JST, naive)。DBのDateTimeカラムはJSTのnaive値で保存する"""
    return datetime.now(JST).replace(tzinfo=None)


def jst_iso(dt: datetime) -> str:
    """JSTで保存されているDateTimeをISO形式で返す"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=JST)
    return dt.isoformat()


def to_jst_naive(dt: datetime) -> datetime:
    """タイムゾーン付きの値はJSTに変換してnaiveにする"""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(JST).replace(tzinfo=None)
