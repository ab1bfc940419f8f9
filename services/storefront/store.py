"""
SQLAlchemy-backed implementations of the CRATEY storage collaborators.

`SqlEntityStore` wraps one AsyncSession per request. Writes outside
`atomic()` commit immediately; inside it they are flushed and committed
(or rolled back) together when the outermost block exits.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import TypeAdapter
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cratey.errors import DuplicateEntityError
from cratey.library import RateLimiter
from cratey.models import (
    Artist,
    BundleConfig,
    Entity,
    LibraryAccessToken,
    LibraryItem,
    Order,
    Pricing,
    Product,
    StandardPricing,
    TimedDropPricing,
    as_utc,
    utcnow,
)
from cratey.store import E, EntityStore
from services.storefront.database import (
    ArtistRow,
    LibraryAccessTokenRow,
    LibraryItemRow,
    OrderRow,
    ProductRow,
    RateLimitRow,
)

ROWS: dict[type[Entity], type] = {
    Artist: ArtistRow,
    Product: ProductRow,
    Order: OrderRow,
    LibraryItem: LibraryItemRow,
    LibraryAccessToken: LibraryAccessTokenRow,
}


PRICING_ADAPTER = TypeAdapter(Pricing)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ── Product <-> row mapping (pricing and bundle are flattened) ──────────

def _product_columns(fields: dict[str, Any]) -> dict[str, Any]:
    columns = {k: _plain(v) for k, v in fields.items() if k not in ("pricing", "bundle")}
    if "pricing" in fields:
        pricing = fields["pricing"]
        if isinstance(pricing, dict):
            pricing = PRICING_ADAPTER.validate_python(pricing)
        columns["pricing_kind"] = pricing.kind
        columns["price_cents"] = pricing.price_cents
        if isinstance(pricing, TimedDropPricing):
            columns["archive_price_cents"] = pricing.archive_price_cents
            columns["drop_ends_at"] = pricing.ends_at
        else:
            columns["archive_price_cents"] = None
            columns["drop_ends_at"] = None
    if "bundle" in fields:
        bundle = fields["bundle"]
        if isinstance(bundle, dict):
            bundle = BundleConfig.model_validate(bundle)
        columns["bundle_product_ids"] = bundle.product_ids if bundle else None
        columns["bundle_discount_percent"] = bundle.discount_percent if bundle else None
    return columns


def _product_from_row(row: ProductRow) -> Product:
    if row.pricing_kind == "timed_drop":
        pricing = TimedDropPricing(
            price_cents=row.price_cents,
            archive_price_cents=(
                row.archive_price_cents if row.archive_price_cents is not None else row.price_cents
            ),
            ends_at=row.drop_ends_at,
        )
    else:
        pricing = StandardPricing(price_cents=row.price_cents)

    bundle = None
    if row.bundle_product_ids is not None:
        bundle = BundleConfig(
            product_ids=row.bundle_product_ids,
            discount_percent=row.bundle_discount_percent or 0,
        )

    return Product(
        id=row.id,
        artist_id=row.artist_id,
        artist_name=row.artist_name or "",
        artist_slug=row.artist_slug or "",
        title=row.title,
        cover_url=row.cover_url,
        audio_urls=row.audio_urls or [],
        track_names=row.track_names or [],
        currency=row.currency or "usd",
        pricing=pricing,
        edition_type=row.edition_type,
        edition_limit=row.edition_limit,
        edition_name=row.edition_name,
        bundle=bundle,
        total_sales=row.total_sales or 0,
        total_revenue_cents=row.total_revenue_cents or 0,
    )


def _columns(model: type[Entity], fields: dict[str, Any]) -> dict[str, Any]:
    if model is Product:
        return _product_columns(fields)
    return {k: _plain(v) for k, v in fields.items()}


def _from_row(model: type[E], row: Any) -> E:
    if model is Product:
        return _product_from_row(row)
    return model.model_validate(
        {column.key: getattr(row, column.key) for column in row.__table__.columns}
    )


class SqlEntityStore(EntityStore):
    """
    Entity store over one AsyncSession. Any IntegrityError on insert is
    reported as `DuplicateEntityError`; ids are random, so in practice that
    is the LibraryItem (buyer_email, product_id) constraint.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._depth = 0

    def _row(self, model: type[Entity]) -> type:
        try:
            return ROWS[model]
        except KeyError:
            raise TypeError(f"No table mapped for {model.__name__}") from None

    async def _commit(self) -> None:
        if self._depth:
            await self.session.flush()
        else:
            await self.session.commit()

    async def find(self, model: type[E], **filters: Any) -> list[E]:
        row_cls = self._row(model)
        stmt = (
            select(row_cls)
            .filter_by(**_columns(model, filters))
            .execution_options(populate_existing=True)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [_from_row(model, row) for row in rows]

    async def get(self, model: type[E], entity_id: str) -> Optional[E]:
        row_cls = self._row(model)
        stmt = (
            select(row_cls)
            .where(row_cls.id == entity_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return _from_row(model, row) if row is not None else None

    async def create(self, record: E) -> E:
        row_cls = self._row(type(record))
        self.session.add(row_cls(**_columns(type(record), record.model_dump())))
        try:
            await self._commit()
        except IntegrityError as exc:
            if not self._depth:
                await self.session.rollback()
            raise DuplicateEntityError(str(exc.orig)) from exc
        return record

    async def update(self, model: type[E], entity_id: str, **fields: Any) -> None:
        row_cls = self._row(model)
        await self.session.execute(
            update(row_cls)
            .where(row_cls.id == entity_id)
            .values(**_columns(model, fields))
            .execution_options(synchronize_session=False)
        )
        await self._commit()

    async def increment(
        self,
        model: type[E],
        entity_id: str,
        field: str,
        amount: int = 1,
        *,
        ceiling: Optional[str] = None,
    ) -> Optional[int]:
        row_cls = self._row(model)
        column = getattr(row_cls, field)
        stmt = (
            update(row_cls)
            .where(row_cls.id == entity_id)
            .values({field: column + amount})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        if ceiling is not None:
            limit = getattr(row_cls, ceiling)
            # total_sales = total_sales + 1 WHERE total_sales + 1 <= edition_limit
            stmt = stmt.where(or_(limit.is_(None), column + amount <= limit))
        value = (await self.session.execute(stmt)).scalar_one_or_none()
        await self._commit()
        return value

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        # Only the outermost block commits or rolls back.
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if not self._depth:
                await self.session.rollback()
            raise
        self._depth -= 1
        if not self._depth:
            await self.session.commit()


class SqlRateLimiter(RateLimiter):
    """Cooldown keyed by normalized email, shared by every instance on the database."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        cooldown_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sessionmaker = sessionmaker
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock

    async def hit(self, key: str) -> Optional[float]:
        now = self.clock()
        try:
            async with self.sessionmaker() as db:
                async with db.begin():
                    row = await db.get(RateLimitRow, key, with_for_update=True)
                    if row is not None:
                        elapsed = now - as_utc(row.last_request_at)
                        if elapsed < self.cooldown:
                            return (self.cooldown - elapsed).total_seconds()
                        row.last_request_at = now
                    else:
                        db.add(RateLimitRow(key=key, last_request_at=now))
        except IntegrityError:
            # Another instance inserted the key first; that request holds the slot.
            return self.cooldown.total_seconds()
        return None
