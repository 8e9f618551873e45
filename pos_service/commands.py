"""
POS Service — 注文コマンド (管理画面の Write 側)

提供完了は行を消さずに pending → completed の状態遷移として記録する。
行の削除は delete_order() による明示的な操作としてだけ行う。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import events
from .db import order_lines, orders
from .errors import Conflict, NotFound, from_store_error
from .snapshot import COMPLETED, PENDING, ensure_transition

logger = logging.getLogger(__name__)


async def complete_order(
    sessions: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None,
    order_id: int,
) -> dict:
    """注文を提供完了にする。pending 以外なら Conflict。"""
    now = datetime.now(timezone.utc)
    try:
        async with sessions() as session, session.begin():
            result = await session.execute(
                select(orders.c.status).where(orders.c.id == order_id)
            )
            current = result.scalar()
            if current is None:
                raise NotFound(f"order {order_id} not found")
            ensure_transition(order_id, current, COMPLETED)

            # 同時に完了させようとした場合は status 条件で片方だけが更新する
            updated = await session.execute(
                update(orders)
                .where(orders.c.id == order_id, orders.c.status == PENDING)
                .values(status=COMPLETED, completed_at=now)
            )
            if updated.rowcount == 0:
                raise Conflict(f"order {order_id} is no longer pending")
    except SQLAlchemyError as err:
        raise from_store_error(err) from err

    logger.info("Completed order %s", order_id)
    await events.publish(redis, events.OrderCompleted(order_id=order_id, timestamp=now))
    return {"orderId": order_id, "status": COMPLETED}


async def delete_order(
    sessions: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None,
    order_id: int,
) -> dict:
    """注文とそのスナップショット明細を物理削除する。"""
    try:
        async with sessions() as session, session.begin():
            await session.execute(delete(order_lines).where(order_lines.c.order_id == order_id))
            result = await session.execute(delete(orders).where(orders.c.id == order_id))
            if result.rowcount == 0:
                raise NotFound(f"order {order_id} not found")
    except SQLAlchemyError as err:
        raise from_store_error(err) from err

    logger.info("Deleted order %s", order_id)
    await events.publish(
        redis, events.OrderDeleted(order_id=order_id, timestamp=datetime.now(timezone.utc))
    )
    return {"orderId": order_id, "deleted": True}
