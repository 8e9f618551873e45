"""
POS Service — チェックアウト (カート → 注文)

カートの中身を不変の注文スナップショットに変換する、このサービスで唯一
アトミック性が問題になる処理。

  ┌──────────────────── 1 トランザクション ────────────────────┐
  │ 1. carts.generation を +1 (行ロック → 同じカートの処理を直列化) │
  │ 2. カート明細を読む (またはリクエストの明細を使う)              │
  │ 3. 商品を引き当てて単価 × 数量でスナップショットを作る          │
  │ 4. orders / order_lines に INSERT (status = pending)             │
  │ 5. カート明細を全削除                                            │
  │ 6. COMMIT                                                        │
  └──────────────────────────────────────────────────────────────────┘
  7. OrderPlaced イベントを Redis に発行

途中のどこで失敗してもロールバックされ、注文もカート削除も残らない。
同時に 2 つのチェックアウトが来た場合、後の方はロック解放後に空のカートを
見ることになり、同じ明細が 2 つの注文に入ることはない。
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import cart, catalog, events
from .config import LINE_SOURCE_CART, LINE_SOURCE_REQUEST
from .db import MAX_ID, NAME_LENGTH, PRICE_DIGITS, PRICE_PLACES, TABLE_ID_LENGTH, order_lines, orders
from .errors import CheckoutTimeout, Conflict, InvalidRequest, from_store_error
from .snapshot import PENDING, PricedLine, SnapshotLine, build_snapshot, order_total

logger = logging.getLogger(__name__)

# NUMERIC(12,2) に収まらない金額
MAX_PRICE = Decimal(10) ** (PRICE_DIGITS - PRICE_PLACES)


@dataclass(frozen=True)
class RequestedLine:
    product_id: int
    quantity: int
    note: str | None = None


@dataclass(frozen=True)
class CheckoutRequest:
    customer_name: str
    table_id: str
    lines: tuple[RequestedLine, ...]
    # クライアントが最後に見たカートの version。指定時は一致しなければ Conflict
    cart_version: int | None = None


@dataclass(frozen=True)
class PlacedOrder:
    order_id: int
    cart_id: int
    customer_name: str
    table_id: str
    status: str
    total: Decimal
    lines: tuple[SnapshotLine, ...]
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "status": self.status,
            "total": float(self.total),
        }


def validate(request: CheckoutRequest) -> None:
    """トランザクションを開く前に検出できる入力エラーを弾く。"""
    if not request.customer_name or not request.customer_name.strip():
        raise InvalidRequest("customerName is required")
    if len(request.customer_name.strip()) > NAME_LENGTH:
        raise InvalidRequest(f"customerName must be at most {NAME_LENGTH} characters")
    table_id = str(request.table_id).strip() if request.table_id is not None else ""
    if not table_id:
        raise InvalidRequest("tableId is required")
    if len(table_id) > TABLE_ID_LENGTH:
        raise InvalidRequest(f"tableId must be at most {TABLE_ID_LENGTH} characters")
    if request.cart_version is not None and not 0 <= request.cart_version <= MAX_ID:
        raise InvalidRequest("cartVersion is out of range")
    if not request.lines:
        raise InvalidRequest("at least one line is required")
    for position, line in enumerate(request.lines, start=1):
        if line.product_id is None or not 1 <= line.product_id <= MAX_ID:
            raise InvalidRequest(f"line {position}: productId is out of range")
        if line.quantity is None or line.quantity < 1:
            raise InvalidRequest(f"line {position}: quantity must be at least 1")
        if line.quantity > MAX_ID:
            raise InvalidRequest(f"line {position}: quantity is too large")


def _same_contents(requested: tuple[RequestedLine, ...], cart_rows: list) -> bool:
    return Counter((line.product_id, line.quantity) for line in requested) == Counter(
        (row.product_id, row.quantity) for row in cart_rows
    )


async def checkout(
    sessions: async_sessionmaker[AsyncSession],
    request: CheckoutRequest,
    *,
    cart_id: int,
    line_source: str = LINE_SOURCE_CART,
    timeout: float = 5.0,
    redis: aioredis.Redis | None = None,
) -> PlacedOrder:
    """
    カートを注文として確定する。

    line_source:
        "cart"    — トランザクション内でカートを読み直し、その明細で注文を作る。
                    リクエストの明細がカートと食い違えば Conflict。
        "request" — リクエストの明細をそのまま価格付けする。
                    カートが既に空なら別のチェックアウトに先を越されたとみなし Conflict。
    """
    if line_source not in (LINE_SOURCE_CART, LINE_SOURCE_REQUEST):
        raise ValueError(f"unknown line source: {line_source!r}")
    validate(request)

    try:
        order = await asyncio.wait_for(
            _place_order(sessions, request, cart_id, line_source), timeout
        )
    except asyncio.TimeoutError:
        logger.warning("Checkout on cart %s timed out after %.2fs", cart_id, timeout)
        raise CheckoutTimeout(f"checkout did not finish within {timeout:g}s") from None
    except SQLAlchemyError as err:
        raise from_store_error(err) from err

    logger.info(
        "Placed order %s for %s at table %s: %d lines, total %s",
        order.order_id, order.customer_name, order.table_id, len(order.lines), order.total,
    )

    await events.publish(redis, events.OrderPlaced(
        order_id=order.order_id,
        cart_id=order.cart_id,
        customer_name=order.customer_name,
        table_id=order.table_id,
        total_price=float(order.total),
        lines=[
            events.OrderLineData(
                product_id=line.product_id,
                product_name=line.product_name,
                unit_price=float(line.unit_price),
                quantity=line.quantity,
                note=line.note,
            )
            for line in order.lines
        ],
        timestamp=order.created_at,
    ))
    return order


async def _place_order(
    sessions: async_sessionmaker[AsyncSession],
    request: CheckoutRequest,
    cart_id: int,
    line_source: str,
) -> PlacedOrder:
    async with sessions() as session, session.begin():
        # 1. カート行ロック (必ず最初の文)
        generation = await cart.lock_cart(session, cart_id)
        if request.cart_version is not None and request.cart_version != generation:
            raise Conflict(
                f"cart changed since version {request.cart_version} (now {generation})"
            )

        # 2. 明細の決定
        cart_rows = await cart.read_lines(session, cart_id)
        if line_source == LINE_SOURCE_CART:
            if not cart_rows:
                raise InvalidRequest("cart is empty")
            if not _same_contents(request.lines, cart_rows):
                raise Conflict("cart contents differ from the submitted lines")
            lines = [
                PricedLine(row.product_id, row.quantity, row.note, cart_line_id=row.id)
                for row in cart_rows
            ]
        else:
            if not cart_rows:
                raise Conflict("cart was already checked out")
            lines = [
                PricedLine(line.product_id, line.quantity, line.note)
                for line in request.lines
            ]

        # 3. 価格付けとスナップショット
        found = await catalog.get_products(session, [line.product_id for line in lines])
        snapshot = build_snapshot(lines, found)
        total = order_total(snapshot)
        if total >= MAX_PRICE:
            raise InvalidRequest("order total is too large")

        # 4. 注文の INSERT
        now = datetime.now(timezone.utc)
        customer_name = request.customer_name.strip()
        table_id = str(request.table_id).strip()
        result = await session.execute(
            insert(orders).values(
                cart_id=cart_id,
                customer_name=customer_name,
                table_id=table_id,
                status=PENDING,
                total_price=total,
                created_at=now,
            )
        )
        order_id = result.inserted_primary_key[0]
        await session.execute(
            insert(order_lines),
            [
                {
                    "order_id": order_id,
                    "position": line.position,
                    "cart_line_id": line.cart_line_id,
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "unit_price": line.unit_price,
                    "quantity": line.quantity,
                    "note": line.note,
                    "line_total": line.line_total,
                }
                for line in snapshot
            ],
        )

        # 5. カートを空にする (6. COMMIT は begin() を抜けるときに行われる)
        cleared = await cart.clear(session, cart_id)
        logger.debug("Cleared %d lines from cart %s", cleared, cart_id)

    return PlacedOrder(
        order_id=order_id,
        cart_id=cart_id,
        customer_name=customer_name,
        table_id=table_id,
        status=PENDING,
        total=total,
        lines=snapshot,
        created_at=now,
    )
