from pydantic import BaseModel, Field
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
import enum

from marketsync.models_sqlalchemy.models import CatalogType


class MarkupType(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


class RoundingRule(str, enum.Enum):
    none = "none"
    to_99 = "to_99"
    to_dollar = "to_dollar"


class CatalogFilters(BaseModel):
    """Structured membership predicate; every specified criterion must hold."""

    collections: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    vendor: Optional[str] = None

    class Config:
        extra = "forbid"


class CatalogFiltersUpdate(BaseModel):
    collections: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    vendor: Optional[str] = None

    class Config:
        extra = "forbid"


class PricingStrategy(BaseModel):
    markup_type: MarkupType = MarkupType.percentage
    markup_value: Decimal = Decimal("0")
    rounding_rule: RoundingRule = RoundingRule.none

    class Config:
        extra = "forbid"


class PricingOverrides(BaseModel):
    """Partial pricing strategy; unset fields inherit from the catalog."""

    markup_type: Optional[MarkupType] = None
    markup_value: Optional[Decimal] = None
    rounding_rule: Optional[RoundingRule] = None

    class Config:
        extra = "forbid"


class ProductCatalogCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    catalog_type: CatalogType = CatalogType.standard
    filters: CatalogFilters = Field(default_factory=CatalogFilters)
    pricing_strategy: PricingStrategy = Field(default_factory=PricingStrategy)


class ProductCatalogUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    catalog_type: Optional[CatalogType] = None
    filters: Optional[CatalogFiltersUpdate] = None
    pricing_strategy: Optional[PricingOverrides] = None
    is_active: Optional[bool] = None


class ProductCatalogResponse(BaseModel):
    id: str
    shop_id: str
    name: str
    description: Optional[str]
    catalog_type: CatalogType
    filters: CatalogFilters
    pricing_strategy: PricingStrategy
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CatalogProductResponse(BaseModel):
    product_id: str
    external_id: str
    title: str
    source_price: Optional[Decimal]
    price: Optional[Decimal]
    pricing_error: Optional[str] = None
