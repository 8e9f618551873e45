"""
POS Service — FastAPI エントリーポイント

商品の閲覧 → カート作成 → チェックアウト → 厨房/管理画面での提供、
という POS の注文フローを HTTP API として公開する。

  ┌──────────┐  /products, /cart-lines   ┌─────────────┐
  │ レジ画面  │ ────────────────────────▶ │             │──▶ PostgreSQL
  │          │  POST /checkout            │ POS Service │
  └──────────┘                            │             │──▶ Redis (order_events)
  ┌──────────┐  /admin/orders             │             │
  │ 厨房画面  │ ────────────────────────▶ │             │
  └──────────┘                            └─────────────┘

すべてのエラーは {"error": {"kind": ..., "message": ...}} の形で返す。

起動:
    uvicorn pos_service.main:app --host 0.0.0.0 --port 8000
    (または python -m pos_service)
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Path, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import cart, catalog, checkout, commands, db, queries
from .config import Settings
from .errors import Internal, InvalidRequest, PosError, from_store_error
from .snapshot import COMPLETED, PENDING

logger = logging.getLogger(__name__)

# パスの id は INTEGER 列に収まる範囲だけ受け付ける
RowId = Annotated[int, Path(ge=1, le=db.MAX_ID)]


# ── Request Models ───────────────────────────────


class CamelModel(BaseModel):
    """JSON は camelCase、snake_case でも受け付ける"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProductRequest(CamelModel):
    code: str = Field(max_length=db.CODE_LENGTH)
    name: str = Field(max_length=db.NAME_LENGTH)
    price: Decimal = Field(ge=0, max_digits=db.PRICE_DIGITS, decimal_places=db.PRICE_PLACES)
    image: str | None = Field(default=None, max_length=db.IMAGE_LENGTH)
    is_featured: bool = False


class AddCartLineRequest(CamelModel):
    product_id: int = Field(ge=1, le=db.MAX_ID)
    quantity: int = Field(ge=1, le=db.MAX_ID)
    note: str | None = None


class CheckoutLine(CamelModel):
    product_id: int = Field(ge=1, le=db.MAX_ID)
    quantity: int = Field(ge=1, le=db.MAX_ID)
    note: str | None = None


class CheckoutBody(CamelModel):
    customer_name: str = Field(max_length=db.NAME_LENGTH)
    # 卓番号は "A-3" のような文字列でも 7 のような数値でもよい
    table_id: Annotated[str, Field(max_length=db.TABLE_ID_LENGTH)] | Annotated[int, Field(ge=0, le=db.MAX_ID)]
    lines: list[CheckoutLine]
    cart_version: int | None = Field(default=None, ge=0, le=db.MAX_ID)

    def to_request(self) -> checkout.CheckoutRequest:
        return checkout.CheckoutRequest(
            customer_name=self.customer_name,
            table_id=str(self.table_id),
            lines=tuple(
                checkout.RequestedLine(line.product_id, line.quantity, line.note)
                for line in self.lines
            ),
            cart_version=self.cart_version,
        )


# ── Application ──────────────────────────────────


async def get_session(request: Request):
    async with request.app.state.sessions() as session:
        yield session


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = db.create_engine(settings.database_url)
        app.state.engine = engine
        app.state.sessions = db.create_session_factory(engine)
        app.state.redis = (
            aioredis.from_url(settings.redis_url, decode_responses=True)
            if settings.redis_url
            else None
        )
        await db.create_schema(engine)
        async with app.state.sessions() as session:
            await cart.ensure_cart(session, settings.default_cart_id)
        logger.info(
            "POS service started (cart=%s, line source=%s, timeout=%ss)",
            settings.default_cart_id,
            settings.checkout_line_source,
            settings.checkout_timeout_seconds,
        )
        yield
        if app.state.redis is not None:
            await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title="POS Service", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error Handlers ───────────────────────────

    @app.exception_handler(PosError)
    async def handle_pos_error(request: Request, exc: PosError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'][1:]) or 'body'}: {err['msg']}"
            for err in exc.errors()
        )
        err = InvalidRequest(message or "invalid request")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def handle_store_error(request: Request, exc: SQLAlchemyError):
        err = from_store_error(exc)
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        err = Internal("unexpected server error")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    # ── Products (商品) ──────────────────────────

    @app.get("/products")
    async def list_products(featured: bool | None = None, session: AsyncSession = Depends(get_session)):
        """商品一覧。?featured=true でおすすめ商品だけを返す"""
        return await catalog.list_products(session, featured=featured)

    @app.get("/products/{product_id}")
    async def get_product(product_id: RowId, session: AsyncSession = Depends(get_session)):
        return await catalog.get_product(session, product_id)

    @app.post("/products", status_code=201)
    async def create_product(req: ProductRequest, session: AsyncSession = Depends(get_session)):
        return await catalog.create_product(
            session, req.code, req.name, req.price, req.image, req.is_featured
        )

    @app.put("/products/{product_id}")
    async def update_product(
        product_id: RowId, req: ProductRequest, session: AsyncSession = Depends(get_session)
    ):
        return await catalog.update_product(
            session, product_id, req.code, req.name, req.price, req.image, req.is_featured
        )

    @app.delete("/products/{product_id}")
    async def delete_product(product_id: RowId, session: AsyncSession = Depends(get_session)):
        await catalog.delete_product(session, product_id)
        return {"id": product_id, "deleted": True}

    # ── Cart (カート) ────────────────────────────

    @app.post("/cart-lines", status_code=201)
    async def add_cart_line(req: AddCartLineRequest, session: AsyncSession = Depends(get_session)):
        return await cart.add_line(
            session, settings.default_cart_id, req.product_id, req.quantity, req.note
        )

    @app.get("/cart-lines")
    async def list_cart_lines(session: AsyncSession = Depends(get_session)):
        """カート明細を新しい順に返す"""
        return await cart.list_lines(session, settings.default_cart_id)

    @app.delete("/cart-lines/{line_id}")
    async def remove_cart_line(line_id: RowId, session: AsyncSession = Depends(get_session)):
        await cart.remove_line(session, settings.default_cart_id, line_id)
        return {"id": line_id, "deleted": True}

    @app.get("/cart")
    async def get_cart(session: AsyncSession = Depends(get_session)):
        """カートの version・明細・合計"""
        return await cart.get_cart(session, settings.default_cart_id)

    # ── Checkout (チェックアウト) ────────────────

    @app.post("/checkout", status_code=201)
    async def post_checkout(body: CheckoutBody, request: Request):
        """カートを 1 トランザクションで注文に変換する"""
        order = await checkout.checkout(
            request.app.state.sessions,
            body.to_request(),
            cart_id=settings.default_cart_id,
            line_source=settings.checkout_line_source,
            timeout=settings.checkout_timeout_seconds,
            redis=request.app.state.redis,
        )
        return order.to_dict()

    # ── Admin (厨房・管理画面) ───────────────────

    @app.get("/admin/orders")
    async def list_pending_orders(session: AsyncSession = Depends(get_session)):
        """未提供の注文を古い順に返す (厨房の作業キュー)"""
        return await queries.list_pending(session)

    @app.get("/admin/orders/history")
    async def list_order_history(status: str | None = None, session: AsyncSession = Depends(get_session)):
        if status is not None and status not in (PENDING, COMPLETED):
            raise InvalidRequest(f"unknown status: {status}")
        return await queries.list_orders(session, status=status)

    @app.get("/admin/orders/{order_id}")
    async def get_order(order_id: RowId, session: AsyncSession = Depends(get_session)):
        return await queries.get_order(session, order_id)

    @app.get("/admin/orders/{order_id}/lines")
    async def get_order_lines(order_id: RowId, session: AsyncSession = Depends(get_session)):
        return await queries.get_order_lines(session, order_id)

    @app.post("/admin/orders/{order_id}/complete")
    async def complete_order(order_id: RowId, request: Request):
        return await commands.complete_order(
            request.app.state.sessions, request.app.state.redis, order_id
        )

    @app.delete("/admin/orders/{order_id}")
    async def delete_order(order_id: RowId, request: Request):
        """注文を物理削除する (通常は complete を使う)"""
        return await commands.delete_order(
            request.app.state.sessions, request.app.state.redis, order_id
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "pos-service"}

    return app


app = create_app()
