#===========================================================================
# catalog_sync/store/stage_store.py
# Local stage store: import batches and their staged product rows.
#===========================================================================
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, func, case

from catalog_sync.db import Database
from catalog_sync.models.schemas import (
    BatchSummary,
    ImportBatch,
    StagedProduct,
    StagedProductIn,
)
from catalog_sync.models.staging import (
    BATCH_COMPLETED,
    BATCH_PROCESSING,
    TRANSFER_FAILED,
    TRANSFER_PENDING,
    TRANSFER_SUCCESS,
    ImportBatchRow,
    StagedProductRow,
)
from catalog_sync.sync.components.util import normalize_sku

logger = logging.getLogger("uvicorn.error")

TRANSFER_STATUSES = {TRANSFER_PENDING, TRANSFER_SUCCESS, TRANSFER_FAILED}

# Columns a plain patch may touch. Transfer bookkeeping goes through
# update_transfer_status so the SUCCESS => no error invariant holds.
_PATCHABLE = {
    "name", "price", "stock_amount", "description", "image_url", "brand",
    "manufacturer_code", "category_xml_name", "selected_category_id",
    "category_name", "status", "remote_id", "remote_detail_id", "remote_image_id",
}


class StoreError(Exception):
    pass


class BatchNotFound(StoreError):
    def __init__(self, batch_id: int):
        super().__init__(f"batch {batch_id} not found")
        self.batch_id = batch_id


class ProductNotFound(StoreError):
    def __init__(self, product_id: int):
        super().__init__(f"staged product {product_id} not found")
        self.product_id = product_id


class DuplicateSkuError(StoreError):
    def __init__(self, skus: List[str]):
        super().__init__(
            f"Aynı SKU'dan ürünler var: {', '.join(skus)}. "
            "Lütfen Excel dosyanızı kontrol edip tekilleştirin."
        )
        self.skus = skus


class BlankSkuError(StoreError):
    def __init__(self, rows: List[int]):
        super().__init__(
            f"SKU'su boş ürünler var (satır: {', '.join(str(r) for r in rows)}). "
            "Her ürün için bir SKU girilmeli."
        )
        self.rows = rows


def _now() -> datetime:
    return datetime.now(timezone.utc)


def summary_status(total: int, success: int, failed: int) -> str:
    return BATCH_COMPLETED if (success + failed) >= total else BATCH_PROCESSING


class StageStore:
    """
    All reads and writes of import_batches / imported_products.

    Every database round trip runs under one asyncio.Lock, so the store is a
    single writer: per-item writes from concurrently reconciling tasks never
    interleave, and summary recomputation (aggregate read + write) cannot
    race with them. The lock is never held across a remote call because the
    store makes none.
    """

    def __init__(self, db: Database):
        self.db = db
        self._lock = asyncio.Lock()

    # ---------------------------
    # Batches
    # ---------------------------

    async def create_batch(self, name: str, rows: Iterable[StagedProductIn | Dict[str, Any]]) -> ImportBatch:
        items = [r if isinstance(r, StagedProductIn) else StagedProductIn.model_validate(r) for r in rows]
        if not items:
            raise StoreError("Ürün listesi boş")
        if not (name or "").strip():
            raise StoreError("Proje ismi gerekli")

        # the SKU is the business key on both sides; rows are numbered from 1
        blank = [n for n, i in enumerate(items, start=1) if not normalize_sku(i.sku)]
        if blank:
            raise BlankSkuError(blank)

        # repeated SKUs would make SKU-keyed status updates ambiguous
        counts = Counter(normalize_sku(i.sku) for i in items)
        dupes = sorted(sku for sku, c in counts.items() if c > 1)
        if dupes:
            raise DuplicateSkuError(dupes)

        async with self._lock, self.db.session() as s:
            batch = ImportBatchRow(name=name.strip(), total_products=len(items), status=BATCH_PROCESSING)
            s.add(batch)
            await s.flush()
            for i in items:
                s.add(StagedProductRow(
                    batch_id=batch.id,
                    sku=normalize_sku(i.sku),
                    manufacturer_code=(i.manufacturer_code or "").strip(),
                    name=(i.name or "").strip(),
                    price=float(i.price or 0),
                    stock_amount=float(i.stock_amount or 0),
                    description=(i.description or "").strip(),
                    image_url=(i.image_url or "").strip(),
                    brand=(i.brand or "").strip(),
                    category_xml_name=(i.category_xml_name or "").strip(),
                    selected_category_id=i.selected_category_id,
                    category_name=i.category_name or None,
                    status=0,
                    transfer_status=TRANSFER_PENDING,
                ))
            await s.commit()
            logger.info("[STORE] batch %s created (%s) with %d products", batch.id, batch.name, len(items))
            return ImportBatch.model_validate(batch)

    async def get_batch(self, batch_id: int) -> ImportBatch:
        async with self._lock, self.db.session() as s:
            row = await s.get(ImportBatchRow, batch_id)
            if row is None:
                raise BatchNotFound(batch_id)
            return ImportBatch.model_validate(row)

    async def list_batches(self) -> List[ImportBatch]:
        async with self._lock, self.db.session() as s:
            res = await s.execute(select(ImportBatchRow).order_by(ImportBatchRow.created_at.desc(), ImportBatchRow.id.desc()))
            return [ImportBatch.model_validate(r) for r in res.scalars().all()]

    async def update_batch_summary(self, batch_id: int, total: int, success: int, failed: int, status: str) -> None:
        async with self._lock, self.db.session() as s:
            await self._write_summary(s, batch_id, total, success, failed, status)
            await s.commit()

    async def recompute_batch_summary(self, batch_id: int) -> BatchSummary:
        """
        Counters come from one aggregate query over every row of the batch,
        then are written back. Running it twice without item changes in
        between yields the same triple.
        """
        async with self._lock, self.db.session() as s:
            if await s.get(ImportBatchRow, batch_id) is None:
                raise BatchNotFound(batch_id)
            stmt = select(
                func.count(StagedProductRow.id),
                func.coalesce(func.sum(case((StagedProductRow.transfer_status == TRANSFER_SUCCESS, 1), else_=0)), 0),
                func.coalesce(func.sum(case((StagedProductRow.transfer_status == TRANSFER_FAILED, 1), else_=0)), 0),
            ).where(StagedProductRow.batch_id == batch_id)
            total, success, failed = (await s.execute(stmt)).one()
            total, success, failed = int(total or 0), int(success or 0), int(failed or 0)
            status = summary_status(total, success, failed)
            await self._write_summary(s, batch_id, total, success, failed, status)
            await s.commit()
        logger.info("[STORE] batch %s summary total=%d success=%d failed=%d status=%s",
                    batch_id, total, success, failed, status)
        return BatchSummary(batch_id=batch_id, total=total, success=success, failed=failed, status=status)

    async def _write_summary(self, s, batch_id: int, total: int, success: int, failed: int, status: str) -> None:
        res = await s.execute(
            update(ImportBatchRow)
            .where(ImportBatchRow.id == batch_id)
            .values(total_products=total, successful_products=success, failed_products=failed, status=status)
        )
        if res.rowcount == 0:
            raise BatchNotFound(batch_id)

    # ---------------------------
    # Staged products
    # ---------------------------

    async def list_staged_products(
        self,
        batch_id: int,
        status: Optional[str] = None,
        ids: Optional[Iterable[int]] = None,
    ) -> List[StagedProduct]:
        stmt = select(StagedProductRow).where(StagedProductRow.batch_id == batch_id)
        if status:
            stmt = stmt.where(StagedProductRow.transfer_status == status.upper())
        if ids is not None:
            stmt = stmt.where(StagedProductRow.id.in_(list(ids)))
        stmt = stmt.order_by(StagedProductRow.id)
        async with self._lock, self.db.session() as s:
            res = await s.execute(stmt)
            return [StagedProduct.model_validate(r) for r in res.scalars().all()]

    async def get_staged_product(self, product_id: int) -> StagedProduct:
        async with self._lock, self.db.session() as s:
            row = await s.get(StagedProductRow, product_id)
            if row is None:
                raise ProductNotFound(product_id)
            return StagedProduct.model_validate(row)

    async def update_staged_product(self, product_id: int, **fields: Any) -> StagedProduct:
        bad = set(fields) - _PATCHABLE
        if bad:
            raise StoreError(f"not patchable: {', '.join(sorted(bad))}")
        async with self._lock, self.db.session() as s:
            row = await s.get(StagedProductRow, product_id)
            if row is None:
                raise ProductNotFound(product_id)
            for k, v in fields.items():
                setattr(row, k, v)
            await s.commit()
            return StagedProduct.model_validate(row)

    async def update_transfer_status(
        self,
        sku: str,
        remote_id: Optional[int],
        status: str,
        error: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> int:
        """
        Keyed by SKU (optionally narrowed to one batch). SUCCESS always clears
        the error and stamps last_transfer_date. Returns the number of rows touched.
        """
        status = (status or TRANSFER_PENDING).upper()
        if status not in TRANSFER_STATUSES:
            raise StoreError(f"unknown transfer status {status!r}")
        values: Dict[str, Any] = {
            "remote_id": remote_id,
            "transfer_status": status,
            "transfer_error": None if status == TRANSFER_SUCCESS else (error or None),
            "updated_at": _now(),
        }
        if status == TRANSFER_SUCCESS:
            values["last_transfer_date"] = _now()
        stmt = update(StagedProductRow).where(StagedProductRow.sku == normalize_sku(sku))
        if batch_id is not None:
            stmt = stmt.where(StagedProductRow.batch_id == batch_id)
        async with self._lock, self.db.session() as s:
            res = await s.execute(stmt.values(**values))
            await s.commit()
            touched = res.rowcount or 0
        if not touched:
            logger.warning("[STORE] transfer status for sku=%s matched no rows", sku)
        return touched
