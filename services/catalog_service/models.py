from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from shared.config.database import Base

# Read-only from this service's point of view: catalog CRUD lives in the admin backend.

class Restaurant(Base):
    __tablename__ = "restaurants"
    __table_args__ = {"schema": "product_schema"}

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    min_order = Column(Numeric(10, 2), nullable=False, default=0)
    auto_print = Column(Boolean, nullable=False, default=True) # kitchen printer broadcast
    is_active = Column(Boolean, nullable=False, default=True)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = {"schema": "product_schema"}

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("product_schema.restaurants.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    restaurant = relationship("Restaurant", lazy="joined")


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = {"schema": "product_schema"}

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("product_schema.products.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
