#==========================================================================================
# catalog_sync/sync/reconciler.py
# Per-item reconciliation: bring one staged product in line with the remote catalog.
#
# NEW     (remote_id is None)            -> create
# PUSHED  (remote_id set, SUCCESS)       -> update (skipped when nothing changed)
# FAILED  (remote_id None or stale)      -> create or update, never skipped
#
# Core record first, then detail -> image -> category. Sub-resource failures
# after a successful core write are logged and returned as warnings only.
#==========================================================================================
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from catalog_sync.config import settings
from catalog_sync.models.schemas import RemoteRecord, StagedProduct
from catalog_sync.models.staging import TRANSFER_FAILED, TRANSFER_SUCCESS
from catalog_sync.remote.errors import (
    DUPLICATE_MESSAGE,
    QUOTA_MESSAGE,
    ClassifiedError,
    ErrorKind,
    classify_error,
)
from catalog_sync.sync.components.diff import ChangeSet, detect_changes, product_payload
from catalog_sync.sync.ports import RemoteCatalog, StageStorePort

logger = logging.getLogger("uvicorn.error")

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DETAIL = "detail"
OP_IMAGE = "image"
OP_CATEGORY = "category"
OP_LOOKUP = "find_by_key"


@dataclass
class ReconciliationOutcome:
    sku: str
    name: str = ""
    product_id: Optional[int] = None
    success: bool = False
    remote_id: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    recreated: bool = False
    duplicate: bool = False
    skipped: bool = False
    warnings: List[str] = field(default_factory=list)

    def as_result(self) -> Dict[str, Any]:
        """Caller-facing single item shape."""
        out: Dict[str, Any] = {"success": self.success}
        if self.remote_id is not None:
            out["remote_id"] = self.remote_id
        if not self.success:
            out["error_kind"] = self.error_kind.value if self.error_kind else ErrorKind.UNKNOWN.value
            out["error_message"] = self.error_message
        for flag in ("recreated", "duplicate", "skipped"):
            if getattr(self, flag):
                out[flag] = True
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


class RunContext:
    """
    State shared by every item of one run. Once an operation kind hits the
    remote quota, later calls of that kind in the same run are not attempted.
    """

    def __init__(self) -> None:
        self._halted: Set[str] = set()

    def halted(self, op: str) -> bool:
        return op in self._halted

    def note(self, op: str, kind: ErrorKind) -> None:
        if kind == ErrorKind.QUOTA_EXCEEDED and op not in self._halted:
            self._halted.add(op)
            logger.warning("[RECONCILE] quota exceeded for %s; no further %s calls this run", op, op)

    @property
    def halted_ops(self) -> List[str]:
        return sorted(self._halted)


class ItemReconciler:
    def __init__(self, remote: RemoteCatalog, store: StageStorePort, *, currency_id: Optional[int] = None):
        self.remote = remote
        self.store = store
        self.currency_id = currency_id or settings.IDEASOFT_CURRENCY_ID

    async def reconcile(
        self,
        product: StagedProduct,
        snapshot: Optional[RemoteRecord] = None,
        ctx: Optional[RunContext] = None,
    ) -> ReconciliationOutcome:
        """
        One reconcile attempt. `snapshot` is the remote record as prefetched by
        the caller (None when unknown). The resulting row state is persisted
        before this returns.
        """
        ctx = ctx or RunContext()
        if product.remote_id is None:
            return await self._create(product, ctx)

        changes = detect_changes(product, snapshot, self.currency_id)
        if snapshot is not None and product.transfer_status == TRANSFER_SUCCESS and not changes.any:
            logger.info("[RECONCILE] sku=%s unchanged on remote %s, skipped", product.sku, product.remote_id)
            return self._outcome(product, success=True, remote_id=product.remote_id, skipped=True)
        return await self._update(product, snapshot, changes, ctx)

    # ---------------------------
    # Core record
    # ---------------------------

    async def _create(self, product: StagedProduct, ctx: RunContext, recreated: bool = False) -> ReconciliationOutcome:
        if ctx.halted(OP_CREATE):
            return await self._fail(product, ClassifiedError(ErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE), remote_id=None)
        try:
            rec = await self.remote.create(product_payload(product, self.currency_id))
        except Exception as e:
            c = classify_error(e)
            if c.kind == ErrorKind.DUPLICATE:
                return await self._adopt(product, ctx, recreated=recreated)
            ctx.note(OP_CREATE, c.kind)
            # a stale id from a failed recreate must not survive
            return await self._fail(product, c, remote_id=None)

        await self._persist_success(product, rec.id)
        out = self._outcome(product, success=True, remote_id=rec.id, recreated=recreated)
        logger.info("[RECONCILE] sku=%s %s as remote %s", product.sku, "recreated" if recreated else "created", rec.id)
        changes = detect_changes(product, None, self.currency_id)
        changes.replace_category = False
        await self._sub_resources(product, rec.id, changes, ctx, out, fresh=True)
        return out

    async def _update(
        self,
        product: StagedProduct,
        snapshot: Optional[RemoteRecord],
        changes: ChangeSet,
        ctx: RunContext,
    ) -> ReconciliationOutcome:
        remote_id = int(product.remote_id)
        if changes.fields:
            if ctx.halted(OP_UPDATE):
                return await self._fail(product, ClassifiedError(ErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE),
                                        remote_id=remote_id)
            try:
                await self.remote.update(remote_id, changes.fields)
            except Exception as e:
                c = classify_error(e)
                if c.kind == ErrorKind.NOT_FOUND:
                    logger.info("[RECONCILE] sku=%s remote %s is gone, recreating", product.sku, remote_id)
                    return await self._create(product, ctx, recreated=True)
                if c.kind == ErrorKind.DUPLICATE:
                    return await self._adopt(product, ctx)
                ctx.note(OP_UPDATE, c.kind)
                return await self._fail(product, c, remote_id=remote_id)

        await self._persist_success(product, remote_id)
        out = self._outcome(product, success=True, remote_id=remote_id)
        await self._sub_resources(product, remote_id, changes, ctx, out)
        return out

    async def _adopt(self, product: StagedProduct, ctx: RunContext, recreated: bool = False) -> ReconciliationOutcome:
        """The remote already holds this SKU: take over its identity or fail with the fixed phrase."""
        keep = None if recreated else product.remote_id
        if ctx.halted(OP_LOOKUP):
            return await self._fail(product, ClassifiedError(ErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE), remote_id=keep)
        try:
            found = await self.remote.find_by_key(product.sku)
        except Exception as e:
            c = classify_error(e)
            ctx.note(OP_LOOKUP, c.kind)
            logger.warning("[RECONCILE] find_by_key(%s) failed: %s", product.sku, c.message)
            if c.kind in (ErrorKind.QUOTA_EXCEEDED, ErrorKind.TRANSIENT):
                return await self._fail(product, c, remote_id=keep)
            found = None

        if found is None:
            return await self._fail(product, ClassifiedError(ErrorKind.VALIDATION, DUPLICATE_MESSAGE), remote_id=keep)

        await self._persist_success(product, found.id)
        out = self._outcome(product, success=True, remote_id=found.id, duplicate=True, recreated=recreated)
        logger.info("[RECONCILE] sku=%s adopted existing remote %s", product.sku, found.id)

        changes = detect_changes(product, found, self.currency_id)
        if changes.fields:
            if ctx.halted(OP_UPDATE):
                out.warnings.append(f"{OP_UPDATE}: {QUOTA_MESSAGE}")
            else:
                try:
                    await self.remote.update(found.id, changes.fields)
                except Exception as e:
                    c = classify_error(e)
                    ctx.note(OP_UPDATE, c.kind)
                    logger.warning("[RECONCILE] sku=%s update of adopted %s failed: %s", product.sku, found.id, c.message)
                    out.warnings.append(f"{OP_UPDATE}: {c.message}")
        await self._sub_resources(product, found.id, changes, ctx, out, fresh=found.id != product.remote_id)
        return out

    # ---------------------------
    # Sub-resources
    # ---------------------------

    async def _sub_resources(
        self,
        product: StagedProduct,
        remote_id: int,
        changes: ChangeSet,
        ctx: RunContext,
        out: ReconciliationOutcome,
        fresh: bool = False,
    ) -> None:
        # ids recorded for another remote product are meaningless for this one
        detail_id = None if fresh else product.remote_detail_id
        image_id = None if fresh else product.remote_image_id
        fields = product_payload(product, self.currency_id)

        description = (product.description or "").strip()
        if changes.description and description:
            res = await self._swallow(
                OP_DETAIL, product, ctx, out,
                self.remote.upsert_detail(remote_id, product.sku, description, detail_id=detail_id, product=fields),
            )
            await self._remember(product, "remote_detail_id", detail_id, res)

        image_url = (product.image_url or "").strip()
        if changes.image and image_url:
            res = await self._swallow(
                OP_IMAGE, product, ctx, out,
                self.remote.upsert_image(remote_id, image_url, image_id=image_id),
            )
            await self._remember(product, "remote_image_id", image_id, res)

        if changes.category and product.selected_category_id is not None:
            await self._swallow(
                OP_CATEGORY, product, ctx, out,
                self.remote.assign_category(remote_id, int(product.selected_category_id), fields,
                                            replace=changes.replace_category),
            )

    async def _swallow(self, op: str, product: StagedProduct, ctx: RunContext, out: ReconciliationOutcome, call):
        if ctx.halted(op):
            call.close()
            out.warnings.append(f"{op}: {QUOTA_MESSAGE}")
            return None
        try:
            return await call
        except Exception as e:
            c = classify_error(e)
            ctx.note(op, c.kind)
            logger.warning("[RECONCILE] sku=%s %s upsert failed (%s): %s", product.sku, op, c.kind.value, c.message)
            out.warnings.append(f"{op}: {c.message}")
            return None

    async def _remember(self, product: StagedProduct, column: str, known: Optional[int], res: Optional[Dict[str, Any]]) -> None:
        new_id = (res or {}).get("id")
        if new_id is None or new_id == known:
            return
        try:
            await self.store.update_staged_product(product.id, **{column: int(new_id)})
        except Exception as e:
            logger.warning("[RECONCILE] could not record %s=%s for product %s: %s", column, new_id, product.id, e)

    # ---------------------------
    # Persistence
    # ---------------------------

    async def _persist_success(self, product: StagedProduct, remote_id: int) -> None:
        await self.store.update_transfer_status(product.sku, remote_id, TRANSFER_SUCCESS, None, batch_id=product.batch_id)
        if remote_id != product.remote_id and (product.remote_detail_id or product.remote_image_id):
            await self.store.update_staged_product(product.id, remote_detail_id=None, remote_image_id=None)

    async def _fail(self, product: StagedProduct, c: ClassifiedError, remote_id: Optional[int]) -> ReconciliationOutcome:
        await self.store.update_transfer_status(product.sku, remote_id, TRANSFER_FAILED, c.message, batch_id=product.batch_id)
        logger.info("[RECONCILE] sku=%s failed (%s): %s", product.sku, c.kind.value, c.message)
        return self._outcome(product, success=False, remote_id=remote_id, error_kind=c.kind, error_message=c.message)

    @staticmethod
    def _outcome(product: StagedProduct, **kw: Any) -> ReconciliationOutcome:
        return ReconciliationOutcome(sku=product.sku, name=product.name, product_id=product.id, **kw)
