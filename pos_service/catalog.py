"""
POS Service — 商品ストア

商品の参照と単一行の作成・更新・削除。
チェックアウトから見ると読み取り専用の協調者で、価格の引き当てだけに使われる。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import CODE_LENGTH, IMAGE_LENGTH, NAME_LENGTH, PRICE_DIGITS, PRICE_PLACES, products
from .errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "code": row.code,
        "name": row.name,
        "price": float(row.price),
        "image": row.image,
        "isFeatured": bool(row.is_featured),
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


def _validate(code: str, name: str, price: Decimal, image: str | None) -> None:
    if not code or not code.strip() or not name or not name.strip():
        raise InvalidRequest("code, name and price are required")
    if price is None:
        raise InvalidRequest("code, name and price are required")
    if price < 0:
        raise InvalidRequest("price must not be negative")
    if len(code.strip()) > CODE_LENGTH:
        raise InvalidRequest(f"code must be at most {CODE_LENGTH} characters")
    if len(name.strip()) > NAME_LENGTH:
        raise InvalidRequest(f"name must be at most {NAME_LENGTH} characters")
    if image and len(image) > IMAGE_LENGTH:
        raise InvalidRequest(f"image must be at most {IMAGE_LENGTH} characters")
    # NUMERIC(12,2): 整数部 10 桁、小数部 2 桁まで
    if price >= Decimal(10) ** (PRICE_DIGITS - PRICE_PLACES) or price.as_tuple().exponent < -PRICE_PLACES:
        raise InvalidRequest(
            f"price must have at most {PRICE_DIGITS - PRICE_PLACES} digits "
            f"and {PRICE_PLACES} decimal places"
        )


async def list_products(session: AsyncSession, featured: bool | None = None) -> list[dict]:
    """全商品を返す。featured を指定するとおすすめ商品だけに絞る。"""
    stmt = select(products).order_by(products.c.id)
    if featured is not None:
        stmt = stmt.where(products.c.is_featured == featured)
    result = await session.execute(stmt)
    return [_to_dict(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, product_id: int) -> dict:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        raise NotFound(f"product {product_id} not found")
    return _to_dict(row)


async def get_products(session: AsyncSession, product_ids: list[int]) -> dict[int, object]:
    """
    複数商品をまとめて引く。見つかった行だけを id → 行 の辞書で返す。
    欠けている id の扱いは呼び出し側 (チェックアウト) が決める。
    """
    if not product_ids:
        return {}
    result = await session.execute(
        select(products).where(products.c.id.in_(set(product_ids)))
    )
    return {row.id: row for row in result.fetchall()}


async def create_product(
    session: AsyncSession,
    code: str,
    name: str,
    price: Decimal,
    image: str | None = None,
    is_featured: bool = False,
) -> dict:
    _validate(code, name, price, image)
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(products).values(
            code=code.strip(),
            name=name.strip(),
            price=price,
            image=image or None,
            is_featured=is_featured,
            created_at=now,
            updated_at=now,
        )
    )
    product_id = result.inserted_primary_key[0]
    await session.commit()
    logger.info("Created product %s (%s)", product_id, code)
    return await get_product(session, product_id)


async def update_product(
    session: AsyncSession,
    product_id: int,
    code: str,
    name: str,
    price: Decimal,
    image: str | None = None,
    is_featured: bool = False,
) -> dict:
    """
    商品を丸ごと置き換える。

    既存の注文は値のコピーを持っているので、ここで価格を変えても
    過去の注文の金額は変わらない。
    """
    _validate(code, name, price, image)
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(
            code=code.strip(),
            name=name.strip(),
            price=price,
            image=image or None,
            is_featured=is_featured,
            updated_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFound(f"product {product_id} not found")
    await session.commit()
    return await get_product(session, product_id)


async def delete_product(session: AsyncSession, product_id: int) -> None:
    result = await session.execute(delete(products).where(products.c.id == product_id))
    if result.rowcount == 0:
        await session.rollback()
        raise NotFound(f"product {product_id} not found")
    await session.commit()
    logger.info("Deleted product %s", product_id)
