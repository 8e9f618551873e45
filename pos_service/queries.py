"""
POS Service — 注文クエリ (管理画面・厨房向けの Read 側)

list_pending() は厨房の作業キュー。作成順 (古い順) で返し、並べ替えてはならない。
順序は採番順の orders.id で決める。created_at は表示用で、時計のずれで前後しうる。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import order_lines, orders
from .errors import NotFound
from .snapshot import PENDING


def _order_to_dict(row) -> dict:
    return {
        "id": row.id,
        "cartId": row.cart_id,
        "customerName": row.customer_name,
        "tableId": row.table_id,
        "status": row.status,
        "totalPrice": float(row.total_price),
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "completedAt": row.completed_at.isoformat() if row.completed_at else None,
    }


def _line_to_dict(row) -> dict:
    return {
        "id": row.id,
        "position": row.position,
        "productId": row.product_id,
        "productName": row.product_name,
        "unitPrice": float(row.unit_price),
        "quantity": row.quantity,
        "note": row.note,
        "lineTotal": float(row.line_total),
    }


async def list_pending(session: AsyncSession) -> list[dict]:
    """未提供の注文を古い順に返す (FIFO)。"""
    return await list_orders(session, status=PENDING)


async def list_orders(session: AsyncSession, status: str | None = None) -> list[dict]:
    stmt = select(orders).order_by(orders.c.id.asc())
    if status is not None:
        stmt = stmt.where(orders.c.status == status)
    result = await session.execute(stmt)
    return [_order_to_dict(row) for row in result.fetchall()]


async def get_order_lines(session: AsyncSession, order_id: int) -> list[dict]:
    """注文に記録されたスナップショット明細を明細順に返す。"""
    exists = await session.execute(select(orders.c.id).where(orders.c.id == order_id))
    if exists.scalar() is None:
        raise NotFound(f"order {order_id} not found")
    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == order_id)
        .order_by(order_lines.c.position)
    )
    return [_line_to_dict(row) for row in result.fetchall()]


async def get_order(session: AsyncSession, order_id: int) -> dict:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        raise NotFound(f"order {order_id} not found")
    order = _order_to_dict(row)
    order["lines"] = await get_order_lines(session, order_id)
    return order
