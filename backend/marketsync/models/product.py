from pydantic import BaseModel
from typing import Optional, Dict, Any, List
from datetime import datetime


class SourceProductResponse(BaseModel):
    id: str
    external_id: str
    title: str
    description: Optional[str]
    handle: Optional[str]
    vendor: Optional[str]
    product_type: Optional[str]
    status: Optional[str]
    tags: List[str]
    collections: List[str]
    variants: List[Dict[str, Any]]
    images: List[str]
    updated_at: datetime

    class Config:
        from_attributes = True


class ProductPageResponse(BaseModel):
    products: List[SourceProductResponse]
    total: int
    page: int
    limit: int


class ProductImportResponse(BaseModel):
    fetched: int
    created: int
    updated: int
    skipped: int
    listings_requeued: int
