"""
POS Service — エラー分類

サービス層はこれらの例外を送出し、API 層 (main.py) が
構造化された JSON レスポンス {"error": {"kind", "message"}} に変換する。

ストアのドライバ例外をそのままクライアントへ返してはならない。
from_store_error() で最も近い分類に写像し、元のメッセージはログにだけ残す。
"""

import logging

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class PosError(Exception):
    """すべてのサービス例外の基底クラス"""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"kind": self.kind, "message": self.message}}


class InvalidRequest(PosError):
    """必須項目の欠落・不正な値・空のカート"""

    kind = "invalid_request"
    status_code = 400


class NotFound(PosError):
    kind = "not_found"
    status_code = 404


class Conflict(PosError):
    """同時チェックアウトの衝突、または許されない状態遷移"""

    kind = "conflict"
    status_code = 409


class Unavailable(PosError):
    kind = "unavailable"
    status_code = 503


class CheckoutTimeout(Unavailable):
    """チェックアウトのトランザクションが制限時間を超えた"""

    kind = "timeout"


class Internal(PosError):
    kind = "internal"
    status_code = 500


def from_store_error(err: Exception) -> PosError:
    """SQLAlchemy の例外を分類に写像する。"""
    if isinstance(err, PosError):
        return err
    logger.error("Store error: %s", err)
    # 桁あふれ・長すぎる文字列など、列に収まらない値
    if isinstance(err, sa_exc.DataError):
        return InvalidRequest("a value does not fit the data store")
    if isinstance(err, sa_exc.IntegrityError):
        return Conflict("the change conflicts with existing data")
    if isinstance(err, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)):
        return Unavailable("data store is unavailable")
    if isinstance(err, sa_exc.DBAPIError) and err.connection_invalidated:
        return Unavailable("data store connection was lost")
    return Internal("unexpected data store error")
