"""
POS Service — イベント定義と発行

注文で起きた事実をイベントとして定義する。
イベントは過去形で命名し、コミット後に Redis Pub/Sub の order_events へ流す。
厨房ディスプレイなどの購読者はこれを受けて画面を更新する。

発行はコミットの後なので、発行に失敗しても注文は確定している。
失敗はログに残すだけで呼び出し元へは伝えない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


class OrderLineData(BaseModel):
    product_id: int
    product_name: str
    unit_price: float
    quantity: int
    note: str | None = None


class OrderPlaced(BaseModel):
    """チェックアウトで注文が作成された"""
    order_id: int
    cart_id: int
    customer_name: str
    table_id: str
    total_price: float
    lines: list[OrderLineData]
    timestamp: datetime


class OrderCompleted(BaseModel):
    """注文の提供が完了した"""
    order_id: int
    timestamp: datetime


class OrderDeleted(BaseModel):
    """注文が明示的に削除された"""
    order_id: int
    timestamp: datetime


async def publish(redis: aioredis.Redis | None, event: BaseModel) -> None:
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(CHANNEL, json.dumps({
            "event_type": event_type,
            "data": event.model_dump(mode="json"),
        }))
    except (RedisError, OSError):
        logger.exception("Failed to publish %s", event_type)
        return
    logger.info("Published %s", event_type)
