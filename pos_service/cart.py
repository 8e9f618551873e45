"""
POS Service — カートストア

カートは carts 行 (CartId) とそれに属する cart_lines で表す。
現状デプロイ全体で 1 つのカートしか作らないが、明細は必ず cart_id を持つ。

carts.generation はカートの世代番号:
  - 明細の追加・削除・チェックアウトのたびに +1 される
  - その UPDATE が行ロックを取るので、同じカートへの変更は
    ストアのトランザクションによって直列化される (プロセス内ロックは使わない)
  - クライアントには version として見せ、チェックアウト時の競合検知に使う
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .db import MAX_ID, cart_lines, carts, products
from .errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)


async def ensure_cart(session: AsyncSession, cart_id: int) -> None:
    """カート行がなければ作る (起動時)。"""
    result = await session.execute(select(carts.c.id).where(carts.c.id == cart_id))
    if result.scalar() is None:
        now = datetime.now(timezone.utc)
        await session.execute(
            insert(carts).values(id=cart_id, generation=0, created_at=now, updated_at=now)
        )
        logger.info("Created cart %s", cart_id)
    await session.commit()


async def lock_cart(session: AsyncSession, cart_id: int) -> int:
    """
    世代番号を +1 してカート行の書き込みロックを取る。
    ロック取得前の世代番号を返す。トランザクションの最初の文として呼ぶこと。
    """
    result = await session.execute(
        update(carts)
        .where(carts.c.id == cart_id)
        .values(generation=carts.c.generation + 1, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        raise NotFound(f"cart {cart_id} not found")
    generation = await session.execute(
        select(carts.c.generation).where(carts.c.id == cart_id)
    )
    return generation.scalar_one() - 1


async def get_version(session: AsyncSession, cart_id: int) -> int:
    result = await session.execute(select(carts.c.generation).where(carts.c.id == cart_id))
    version = result.scalar()
    if version is None:
        raise NotFound(f"cart {cart_id} not found")
    return version


async def add_line(
    session: AsyncSession,
    cart_id: int,
    product_id: int,
    quantity: int,
    note: str | None = None,
) -> dict:
    if quantity is None or quantity < 1:
        raise InvalidRequest("quantity must be at least 1")
    if quantity > MAX_ID:
        raise InvalidRequest("quantity is too large")
    if product_id is None or not 1 <= product_id <= MAX_ID:
        raise NotFound(f"product {product_id} not found")
    await lock_cart(session, cart_id)
    # 商品が存在しなければ NotFound (ロックごとロールバックされる)
    try:
        product = await catalog.get_product(session, product_id)
    except NotFound:
        await session.rollback()
        raise
    result = await session.execute(
        insert(cart_lines).values(
            cart_id=cart_id,
            product_id=product_id,
            quantity=quantity,
            note=note or None,
            created_at=datetime.now(timezone.utc),
        )
    )
    line_id = result.inserted_primary_key[0]
    await session.commit()
    logger.info("Added line %s to cart %s: product=%s qty=%s", line_id, cart_id, product_id, quantity)
    return {
        "id": line_id,
        "cartId": cart_id,
        "productId": product_id,
        "quantity": quantity,
        "note": note or None,
        "name": product["name"],
        "price": product["price"],
        "lineTotal": float(Decimal(str(product["price"])) * quantity),
    }


async def read_lines(session: AsyncSession, cart_id: int) -> list:
    """カート明細の生の行を古い順に返す (チェックアウト用)。"""
    result = await session.execute(
        select(cart_lines).where(cart_lines.c.cart_id == cart_id).order_by(cart_lines.c.id)
    )
    return result.fetchall()


async def list_lines(session: AsyncSession, cart_id: int) -> list[dict]:
    """
    カート明細を新しい順に返す。商品名・単価・小計を結合する。
    商品が削除済みの明細は available=False で返す。
    """
    result = await session.execute(
        select(
            cart_lines.c.id,
            cart_lines.c.product_id,
            cart_lines.c.quantity,
            cart_lines.c.note,
            products.c.name,
            products.c.price,
            products.c.image,
        )
        .select_from(cart_lines.outerjoin(products, products.c.id == cart_lines.c.product_id))
        .where(cart_lines.c.cart_id == cart_id)
        .order_by(cart_lines.c.id.desc())
    )
    return [
        {
            "id": row.id,
            "productId": row.product_id,
            "quantity": row.quantity,
            "note": row.note,
            "name": row.name,
            "price": float(row.price) if row.price is not None else None,
            "image": row.image,
            "lineTotal": float(row.price * row.quantity) if row.price is not None else None,
            "available": row.price is not None,
        }
        for row in result.fetchall()
    ]


async def get_cart(session: AsyncSession, cart_id: int) -> dict:
    version = await get_version(session, cart_id)
    lines = await list_lines(session, cart_id)
    return {
        "id": cart_id,
        "version": version,
        "lines": lines,
        "total": sum((line["lineTotal"] for line in lines if line["available"]), 0.0),
    }


async def remove_line(session: AsyncSession, cart_id: int, line_id: int) -> None:
    await lock_cart(session, cart_id)
    result = await session.execute(
        delete(cart_lines).where(cart_lines.c.id == line_id, cart_lines.c.cart_id == cart_id)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFound(f"cart line {line_id} not found")
    await session.commit()
    logger.info("Removed line %s from cart %s", line_id, cart_id)


async def clear(session: AsyncSession, cart_id: int) -> int:
    """
    カートの明細をすべて削除する。チェックアウトのトランザクション内でのみ使う。
    commit は呼び出し側が行う。
    """
    result = await session.execute(delete(cart_lines).where(cart_lines.c.cart_id == cart_id))
    return result.rowcount
