# catalog_sync/models/staging.py
from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import String, Integer, Float, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from catalog_sync.db import Base

BATCH_PROCESSING = "PROCESSING"
BATCH_COMPLETED = "COMPLETED"

TRANSFER_PENDING = "PENDING"
TRANSFER_SUCCESS = "SUCCESS"
TRANSFER_FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportBatchRow(Base):
    __tablename__ = "import_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    total_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=BATCH_PROCESSING, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class StagedProductRow(Base):
    __tablename__ = "imported_products"
    __table_args__ = (UniqueConstraint("batch_id", "sku", name="uq_imported_products_batch_sku"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("import_batches.id"), index=True)
    sku: Mapped[str] = mapped_column(String(128), index=True)
    manufacturer_code: Mapped[str] = mapped_column(String(128), default="")
    name: Mapped[str] = mapped_column(String(512), default="")
    price: Mapped[float] = mapped_column(Float, default=0.0)
    stock_amount: Mapped[float] = mapped_column(Float, default=0.0)
    description: Mapped[str] = mapped_column(Text, default="")
    image_url: Mapped[str] = mapped_column(Text, default="")
    brand: Mapped[str] = mapped_column(String(255), default="")
    category_xml_name: Mapped[str] = mapped_column(String(512), default="")      # category label from the sheet
    selected_category_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_name: Mapped[str | None] = mapped_column(String(512), nullable=True)  # remote category label
    status: Mapped[int] = mapped_column(Integer, default=0)                        # 0 = passive, 1 = active

    remote_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    remote_detail_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remote_image_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transfer_status: Mapped[str] = mapped_column(String(16), default=TRANSFER_PENDING, index=True)
    transfer_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_transfer_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
