"""
POS Service — データストア

テーブル定義 (SQLAlchemy Core) と非同期エンジンの生成。
本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) で同じ定義を使う。

┌──────────┐  product_id   ┌────────────┐  cart_id   ┌───────┐
│ products │ ◀──(論理参照)─ │ cart_lines │ ─────────▶ │ carts │
└──────────┘               └────────────┘            └───────┘

┌────────┐  order_id  ┌─────────────┐
│ orders │ ◀───────── │ order_lines │  (チェックアウト時点の値のコピー)
└────────┘            └─────────────┘

cart_lines.product_id に外部キーは張らない。
商品が削除されてもカート明細は残り、チェックアウト時に NotFound になる。
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

metadata = MetaData()

# 列の上限。API とチェックアウトの入力検証も同じ値を使う
MAX_ID = 2**31 - 1
CODE_LENGTH = 50
NAME_LENGTH = 200
IMAGE_LENGTH = 500
TABLE_ID_LENGTH = 50
PRICE_DIGITS = 12
PRICE_PLACES = 2

PRICE = Numeric(PRICE_DIGITS, PRICE_PLACES)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(CODE_LENGTH), nullable=False),
    Column("name", String(NAME_LENGTH), nullable=False),
    Column("price", PRICE, nullable=False),
    Column("image", String(IMAGE_LENGTH), nullable=True),
    Column("is_featured", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# generation はカートを変更するたびに +1 される。
# チェックアウトはこの行の UPDATE を最初に行い、行ロックで直列化する。
carts = Table(
    "carts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("generation", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

cart_lines = Table(
    "cart_lines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cart_id", Integer, ForeignKey("carts.id"), nullable=False, index=True),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("note", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cart_id", Integer, nullable=False),
    Column("customer_name", String(NAME_LENGTH), nullable=False),
    Column("table_id", String(TABLE_ID_LENGTH), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("total_price", PRICE, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("cart_line_id", Integer, nullable=True),
    Column("product_id", Integer, nullable=False),
    Column("product_name", String(NAME_LENGTH), nullable=False),
    Column("unit_price", PRICE, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("note", Text, nullable=True),
    Column("line_total", PRICE, nullable=False),
)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルだけを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
