"""
Product catalog persistence behind a repository interface.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadrelay.models.product import Product

EDITABLE_FIELDS = ("name", "description", "category", "status", "price", "tags")

PRODUCTS_TAG = "products"
CATALOG_LIST_PATH = "/api/v1/products"


def catalog_listing(products) -> dict:
    """Body of the unfiltered catalog listing, shared by the endpoint and the cache warmer."""
    return {"products": [p.to_dict() for p in products], "total": len(products)}


def _as_uuid(product_id) -> Optional[uuid.UUID]:
    try:
        return product_id if isinstance(product_id, uuid.UUID) else uuid.UUID(str(product_id))
    except (TypeError, ValueError):
        return None


class CatalogRepository(ABC):
    @abstractmethod
    async def find(
        self,
        owner_id: str,
        category: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> list[Product]:
        ...

    @abstractmethod
    async def recent_owner_ids(self, limit: int) -> list[str]:
        """Owners whose catalogs changed most recently."""

    @abstractmethod
    async def get(self, owner_id: str, product_id) -> Optional[Product]:
        ...

    @abstractmethod
    async def create(self, owner_id: str, data: dict) -> Product:
        ...

    @abstractmethod
    async def update(self, owner_id: str, product_id, data: dict) -> Optional[Product]:
        ...

    @abstractmethod
    async def delete(self, owner_id: str, product_id) -> bool:
        ...


class SqlAlchemyCatalogRepository(CatalogRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find(
        self,
        owner_id: str,
        category: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> list[Product]:
        conditions = [Product.owner_id == owner_id]
        if category:
            conditions.append(Product.category == category)
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(
                    func.lower(Product.name).like(pattern),
                    func.lower(Product.description).like(pattern),
                )
            )

        async with self._session_factory() as db:
            result = await db.execute(
                select(Product)
                .where(and_(*conditions))
                .order_by(Product.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def recent_owner_ids(self, limit: int) -> list[str]:
        last_change = func.max(func.coalesce(Product.updated_at, Product.created_at))
        async with self._session_factory() as db:
            result = await db.execute(
                select(Product.owner_id)
                .group_by(Product.owner_id)
                .order_by(last_change.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get(self, owner_id: str, product_id) -> Optional[Product]:
        product_uuid = _as_uuid(product_id)
        if product_uuid is None:
            return None
        async with self._session_factory() as db:
            product = await db.get(Product, product_uuid)
            if product is None or product.owner_id != owner_id:
                return None
            return product

    async def create(self, owner_id: str, data: dict) -> Product:
        product = Product(
            id=uuid.uuid4(),
            owner_id=owner_id,
            **{k: v for k, v in data.items() if k in EDITABLE_FIELDS},
        )
        async with self._session_factory() as db:
            db.add(product)
            await db.commit()
            await db.refresh(product)
        return product

    async def update(self, owner_id: str, product_id, data: dict) -> Optional[Product]:
        product_uuid = _as_uuid(product_id)
        if product_uuid is None:
            return None
        async with self._session_factory() as db:
            product = await db.get(Product, product_uuid)
            if product is None or product.owner_id != owner_id:
                return None
            for key, value in data.items():
                if key in EDITABLE_FIELDS:
                    setattr(product, key, value)
            product.updated_at = datetime.now(timezone.utc)
            await db.commit()
            await db.refresh(product)
            return product

    async def delete(self, owner_id: str, product_id) -> bool:
        product_uuid = _as_uuid(product_id)
        if product_uuid is None:
            return False
        async with self._session_factory() as db:
            product = await db.get(Product, product_uuid)
            if product is None or product.owner_id != owner_id:
                return False
            await db.delete(product)
            await db.commit()
            return True
