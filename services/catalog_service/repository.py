from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Product, ProductVariant, Restaurant


class CatalogRepository:

    @staticmethod
    async def get_active_product(db: AsyncSession, product_id: int) -> Optional[Product]:
        result = await db.execute(
            select(Product)
            .join(Restaurant, Product.restaurant_id == Restaurant.id)
            .where(Product.id == product_id)
            .where(Product.is_active.is_(True))
            .where(Restaurant.is_active.is_(True))
        )
        return result.scalars().first()

    @staticmethod
    async def get_active_variant(db: AsyncSession, product_id: int, variant_id: int) -> Optional[ProductVariant]:
        result = await db.execute(
            select(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .where(ProductVariant.product_id == product_id)
            .where(ProductVariant.is_active.is_(True))
        )
        return result.scalars().first()

    @staticmethod
    async def get_restaurants(db: AsyncSession, restaurant_ids: Sequence[int]) -> dict[int, Restaurant]:
        if not restaurant_ids:
            return {}
        result = await db.execute(select(Restaurant).where(Restaurant.id.in_(restaurant_ids)))
        return {r.id: r for r in result.scalars().all()}
