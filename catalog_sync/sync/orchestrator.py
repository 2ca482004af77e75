#==========================================================================================
# catalog_sync/sync/orchestrator.py
# Batch runs over staged products, single item sync, bulk create loop.
#==========================================================================================
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from catalog_sync.config import settings
from catalog_sync.models.schemas import BatchSummary, ImportBatch, RemoteRecord, StagedProduct, StagedProductIn
from catalog_sync.models.staging import TRANSFER_FAILED
from catalog_sync.remote.errors import ClassifiedError, ErrorKind, classify_error
from catalog_sync.sync.ports import RemoteCatalog, StageStorePort
from catalog_sync.sync.reconciler import OP_CREATE, ItemReconciler, ReconciliationOutcome, RunContext

logger = logging.getLogger("uvicorn.error")


@dataclass
class BatchSyncResult:
    batch_id: int
    total: int = 0
    success_count: int = 0
    failed_count: int = 0
    status: str = ""
    processed: int = 0
    recreated_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0
    not_attempted: int = 0
    halted_operations: List[str] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def apply_summary(self, summary: BatchSummary) -> None:
        self.total = summary.total
        self.success_count = summary.success
        self.failed_count = summary.failed
        self.status = summary.status

    def as_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "status": self.status,
            "processed": self.processed,
            "recreated_count": self.recreated_count,
            "duplicate_count": self.duplicate_count,
            "skipped_count": self.skipped_count,
            "not_attempted": self.not_attempted,
            "halted_operations": list(self.halted_operations),
            "failures": list(self.failures),
        }


def _failure_entry(o: ReconciliationOutcome) -> Dict[str, Any]:
    return {
        "product_id": o.product_id,
        "sku": o.sku,
        "name": o.name,
        "error_kind": (o.error_kind or ErrorKind.UNKNOWN).value,
        "error_message": o.error_message,
    }


class BatchOrchestrator:
    """
    Runs the item reconciler over a batch. Items are isolated from each other:
    an exception in one becomes an UNKNOWN failure for that item only, and the
    batch summary is recomputed once after every item has settled.
    """

    def __init__(
        self,
        store: StageStorePort,
        remote: RemoteCatalog,
        *,
        concurrency: Optional[int] = None,
        bulk_delay: Optional[float] = None,
        reconciler: Optional[ItemReconciler] = None,
    ):
        self.store = store
        self.remote = remote
        self.reconciler = reconciler or ItemReconciler(remote, store)
        self.concurrency = settings.SYNC_CONCURRENCY if concurrency is None else concurrency
        self.bulk_delay = settings.BULK_CREATE_DELAY_SECONDS if bulk_delay is None else bulk_delay

    # ---------------------------
    # Batches
    # ---------------------------

    async def create_batch(self, name: str, rows: Iterable[StagedProductIn | Dict[str, Any]]) -> ImportBatch:
        return await self.store.create_batch(name, rows)

    async def recompute_batch(self, batch_id: int) -> BatchSummary:
        return await self.store.recompute_batch_summary(batch_id)

    async def _prefetch(self, products: List[StagedProduct]) -> Dict[int, RemoteRecord]:
        ids = [p.remote_id for p in products if p.remote_id is not None]
        if not ids:
            return {}
        limit = settings.GET_MANY_LIMIT
        snapshots: Dict[int, RemoteRecord] = {}
        for start in range(0, len(ids), limit):
            try:
                fetched = await self.remote.get_many(ids[start:start + limit])
            except Exception as e:
                # no snapshot only means no change detection for these rows
                logger.warning("[SYNC] prefetch of %d remote products failed: %s", len(ids[start:start + limit]), e)
                continue
            for rid, res in fetched.items():
                if not res.get("success") or not res.get("data"):
                    continue
                try:
                    snapshots[int(rid)] = RemoteRecord.model_validate(res["data"])
                except (ValidationError, ValueError):
                    continue
        logger.info("[SYNC] prefetched %d/%d remote snapshots", len(snapshots), len(ids))
        return snapshots

    async def _reconcile_isolated(
        self,
        product: StagedProduct,
        snapshot: Optional[RemoteRecord],
        ctx: RunContext,
        sem: Optional[asyncio.Semaphore],
    ) -> ReconciliationOutcome:
        try:
            if sem is None:
                return await self.reconciler.reconcile(product, snapshot, ctx)
            async with sem:
                return await self.reconciler.reconcile(product, snapshot, ctx)
        except Exception as e:
            logger.exception("[SYNC] sku=%s reconcile crashed", product.sku)
            c = classify_error(e)
            c = ClassifiedError(ErrorKind.UNKNOWN, c.message)
            try:
                await self.store.update_transfer_status(
                    product.sku, product.remote_id, TRANSFER_FAILED, c.message, batch_id=product.batch_id
                )
            except Exception:
                logger.exception("[SYNC] sku=%s could not persist failure", product.sku)
            return ReconciliationOutcome(
                sku=product.sku, name=product.name, product_id=product.id, success=False,
                remote_id=product.remote_id, error_kind=c.kind, error_message=c.message,
            )

    async def sync_batch(
        self,
        batch_id: int,
        product_ids: Optional[Iterable[int]] = None,
        prefetch_remote: bool = True,
    ) -> BatchSyncResult:
        await self.store.get_batch(batch_id)  # raises BatchNotFound
        products = await self.store.list_staged_products(
            batch_id, ids=list(product_ids) if product_ids is not None else None
        )
        logger.info("[SYNC] batch %s: reconciling %d products", batch_id, len(products))

        snapshots = await self._prefetch(products) if prefetch_remote else {}
        ctx = RunContext()
        sem = asyncio.Semaphore(self.concurrency) if self.concurrency and self.concurrency > 0 else None

        outcomes = await asyncio.gather(
            *(
                self._reconcile_isolated(
                    p, snapshots.get(p.remote_id) if p.remote_id is not None else None, ctx, sem
                )
                for p in products
            ),
            return_exceptions=True,
        )

        result = BatchSyncResult(batch_id=batch_id, processed=len(products))
        for p, o in zip(products, outcomes):
            if isinstance(o, BaseException):
                # _reconcile_isolated already converts exceptions; this is cancellation
                o = ReconciliationOutcome(
                    sku=p.sku, name=p.name, product_id=p.id, success=False,
                    error_kind=ErrorKind.UNKNOWN, error_message=str(o) or o.__class__.__name__,
                )
            if o.success:
                result.recreated_count += int(o.recreated)
                result.duplicate_count += int(o.duplicate)
                result.skipped_count += int(o.skipped)
            else:
                result.failures.append(_failure_entry(o))
        result.halted_operations = ctx.halted_ops

        result.apply_summary(await self.store.recompute_batch_summary(batch_id))
        logger.info(
            "[SYNC] batch %s done: success=%d failed=%d recreated=%d duplicate=%d skipped=%d",
            batch_id, result.success_count, result.failed_count,
            result.recreated_count, result.duplicate_count, result.skipped_count,
        )
        return result

    # ---------------------------
    # Single item
    # ---------------------------

    async def sync_product(self, product_id: int, prefetch_remote: bool = True) -> ReconciliationOutcome:
        product = await self.store.get_staged_product(product_id)  # raises ProductNotFound
        snapshot = None
        if prefetch_remote and product.remote_id is not None:
            snapshot = (await self._prefetch([product])).get(product.remote_id)
        outcome = await self._reconcile_isolated(product, snapshot, RunContext(), None)
        await self.store.recompute_batch_summary(product.batch_id)
        return outcome

    # ---------------------------
    # Bulk create
    # ---------------------------

    async def bulk_create(self, batch_id: int, product_ids: Optional[Iterable[int]] = None) -> BatchSyncResult:
        """
        Create loop for rows that have no remote identity yet, one at a time
        with a fixed pause between items. Stops at the first quota failure;
        the rows after it are counted as not attempted.
        """
        await self.store.get_batch(batch_id)
        rows = await self.store.list_staged_products(
            batch_id, ids=list(product_ids) if product_ids is not None else None
        )
        todo = [p for p in rows if p.remote_id is None]
        logger.info("[SYNC] batch %s bulk create: %d of %d products without remote id", batch_id, len(todo), len(rows))

        ctx = RunContext()
        result = BatchSyncResult(batch_id=batch_id)
        for i, p in enumerate(todo):
            if ctx.halted(OP_CREATE):
                result.not_attempted = len(todo) - i
                logger.warning("[SYNC] batch %s bulk create stopped on quota, %d left", batch_id, result.not_attempted)
                break
            if i:
                await asyncio.sleep(self.bulk_delay)
            o = await self._reconcile_isolated(p, None, ctx, None)
            result.processed += 1
            if o.success:
                result.duplicate_count += int(o.duplicate)
            else:
                result.failures.append(_failure_entry(o))
        result.halted_operations = ctx.halted_ops

        result.apply_summary(await self.store.recompute_batch_summary(batch_id))
        return result
