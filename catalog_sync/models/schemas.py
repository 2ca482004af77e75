from __future__ import annotations

from datetime import datetime
from typing import Optional, List, Any

from pydantic import BaseModel, Field, AliasChoices


# ---------------------------
# Remote (Ideasoft) views
# ---------------------------

class RemoteCategory(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    class Config:
        extra = "allow"


class RemoteDetail(BaseModel):
    id: Optional[int] = None
    details: Optional[str] = None
    class Config:
        extra = "allow"


class RemoteImage(BaseModel):
    id: Optional[int] = None
    filename: Optional[str] = None
    originalUrl: Optional[str] = None
    thumbUrl: Optional[str] = None
    sortOrder: Optional[int] = None
    class Config:
        extra = "allow"

    @property
    def ref(self) -> str:
        return (self.originalUrl or self.thumbUrl or self.filename or "").strip()


class RemoteRecord(BaseModel):
    """Read-only view of a product as the remote catalog returns it."""
    id: int
    name: Optional[str] = None
    fullName: Optional[str] = None
    sku: Optional[str] = None
    price1: Optional[float] = None
    stockAmount: Optional[float] = None
    status: Optional[int] = None
    categories: List[RemoteCategory] = Field(default_factory=list)
    detail: Optional[RemoteDetail] = None
    images: List[RemoteImage] = Field(default_factory=list)
    class Config:
        extra = "allow"

    @property
    def primary_category_id(self) -> Optional[int]:
        for c in self.categories:
            if c.id is not None:
                return c.id
        return None

    @property
    def primary_image_ref(self) -> str:
        return self.images[0].ref if self.images else ""

    @property
    def description(self) -> str:
        return (self.detail.details or "") if self.detail else ""


# ---------------------------
# Stage rows
# ---------------------------

class StagedProductIn(BaseModel):
    """One spreadsheet row as committed into a new batch."""
    sku: str
    name: str = ""
    price: float = Field(0.0, validation_alias=AliasChoices("price", "price1"))
    stock_amount: float = Field(0.0, validation_alias=AliasChoices("stock_amount", "stock", "stockAmount"))
    description: str = ""
    image_url: str = Field("", validation_alias=AliasChoices("image_url", "image", "imageUrl"))
    manufacturer_code: str = Field("", validation_alias=AliasChoices("manufacturer_code", "manufacturerCode"))
    brand: str = ""
    category_xml_name: str = Field("", validation_alias=AliasChoices("category_xml_name", "category"))
    selected_category_id: Optional[int] = Field(None, validation_alias=AliasChoices("selected_category_id", "categoryId"))
    category_name: Optional[str] = Field(None, validation_alias=AliasChoices("category_name", "categoryName"))
    class Config:
        extra = "ignore"


class StagedProduct(BaseModel):
    id: int
    batch_id: int
    sku: str
    name: str = ""
    price: float = 0.0
    stock_amount: float = 0.0
    description: str = ""
    image_url: str = ""
    manufacturer_code: str = ""
    brand: str = ""
    category_xml_name: str = ""
    selected_category_id: Optional[int] = None
    category_name: Optional[str] = None
    status: int = 0
    remote_id: Optional[int] = None
    remote_detail_id: Optional[int] = None
    remote_image_id: Optional[int] = None
    transfer_status: str = "PENDING"
    transfer_error: Optional[str] = None
    last_transfer_date: Optional[datetime] = None
    class Config:
        from_attributes = True


class StagedProductPatch(BaseModel):
    """Plain field patch; no reconciliation semantics."""
    name: Optional[str] = None
    price: Optional[float] = None
    stock_amount: Optional[float] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    brand: Optional[str] = None
    selected_category_id: Optional[int] = None
    category_name: Optional[str] = None
    status: Optional[int] = None
    class Config:
        extra = "forbid"


class ImportBatch(BaseModel):
    id: int
    name: str
    total_products: int = 0
    successful_products: int = 0
    failed_products: int = 0
    status: str = "PROCESSING"
    created_at: Optional[datetime] = None
    class Config:
        from_attributes = True


class BatchSummary(BaseModel):
    batch_id: int
    total: int
    success: int
    failed: int
    status: str


# ---------------------------
# Request bodies
# ---------------------------

class CreateBatchRequest(BaseModel):
    name: str = Field(..., validation_alias=AliasChoices("name", "projectName"))
    products: List[StagedProductIn]


class SyncBatchRequest(BaseModel):
    product_ids: Optional[List[int]] = Field(None, validation_alias=AliasChoices("product_ids", "productIds"))
    blocking: bool = False
    prefetch_remote: bool = True


class RemoteFetchRequest(BaseModel):
    ids: List[Any] = Field(..., validation_alias=AliasChoices("ids", "productIds"))
