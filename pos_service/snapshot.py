"""
POS Service — 注文スナップショット

注文はチェックアウト時点の商品名・単価・数量を「値として」コピーして持つ。
作成後に products を読み直すことはないので、商品の価格を後から変えても
確定済みの注文金額は変わらない。

状態遷移:
    PENDING → COMPLETED  (厨房での提供完了)
"""

from dataclasses import dataclass
from decimal import Decimal

from .errors import Conflict, NotFound

PENDING = "pending"
COMPLETED = "completed"

_TRANSITIONS = {
    PENDING: {COMPLETED},
    COMPLETED: set(),
}


def ensure_transition(order_id: int, current: str, target: str) -> None:
    """許可されていない状態遷移なら Conflict を送出する。"""
    if target not in _TRANSITIONS.get(current, set()):
        raise Conflict(f"order {order_id} is {current}, cannot become {target}")


@dataclass(frozen=True)
class SnapshotLine:
    position: int
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    note: str | None = None
    cart_line_id: int | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "productId": self.product_id,
            "productName": self.product_name,
            "unitPrice": float(self.unit_price),
            "quantity": self.quantity,
            "note": self.note,
            "lineTotal": float(self.line_total),
        }


@dataclass(frozen=True)
class PricedLine:
    """価格付け前の明細 (カート明細またはリクエスト明細)"""

    product_id: int
    quantity: int
    note: str | None = None
    cart_line_id: int | None = None


def build_snapshot(lines: list[PricedLine], products: dict[int, object]) -> tuple[SnapshotLine, ...]:
    """
    明細ごとに商品を引き当ててスナップショットを作る。

    1つでも商品が見つからなければ NotFound (どの明細かをメッセージに含める)。
    部分的な注文は作らない。
    """
    snapshot = []
    for position, line in enumerate(lines, start=1):
        product = products.get(line.product_id)
        if product is None:
            raise NotFound(
                f"line {position}: product {line.product_id} not found"
            )
        snapshot.append(
            SnapshotLine(
                position=position,
                product_id=line.product_id,
                product_name=product.name,
                unit_price=Decimal(str(product.price)),
                quantity=line.quantity,
                note=line.note,
                cart_line_id=line.cart_line_id,
            )
        )
    return tuple(snapshot)


def order_total(snapshot: tuple[SnapshotLine, ...]) -> Decimal:
    return sum((line.line_total for line in snapshot), Decimal("0"))
