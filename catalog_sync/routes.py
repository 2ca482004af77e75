#=======================================================================================
# catalog_sync/routes.py
# FastAPI routes: import batches, staged products, reconciliation runs, remote fetch.
#
# Canonical API lives under /api/*. Everything except / and /api/health
# requires HTTP Basic (admin).
#
# Batch sync is non-blocking by default: 202 + job id, poll
# GET /api/sync/status/{job_id}. Jobs are kept in memory for JOB_TTL_SECONDS.
#=======================================================================================

import json
import secrets
import asyncio
import uuid
import time
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Query, Request, Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from catalog_sync.config import settings
from catalog_sync.models.schemas import (
    CreateBatchRequest,
    RemoteFetchRequest,
    StagedProductPatch,
    SyncBatchRequest,
)
from catalog_sync.store.stage_store import (
    BatchNotFound,
    BlankSkuError,
    DuplicateSkuError,
    ProductNotFound,
    StoreError,
)
from catalog_sync.remote.errors import RemoteError, classify_error
from catalog_sync.sync.orchestrator import BatchOrchestrator
from catalog_sync.sync.components.util import to_int

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["Catalog Sync API"])

# ---------------------------
# HTTP Basic (admin)
# ---------------------------
security = HTTPBasic()

def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username or "", settings.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", settings.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )

# ---------------------------
# Helpers
# ---------------------------
async def _safe_json(req: Request) -> Dict[str, Any]:
    """Best-effort JSON body parsing with fallbacks."""
    try:
        data = await req.json()
        return data if isinstance(data, dict) else {}
    except Exception:
        try:
            raw = (await req.body()).decode("utf-8", "ignore")
            data = json.loads(raw) if raw.strip() else {}
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

def _orchestrator(request: Request) -> BatchOrchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return orch

def _store_error(e: StoreError) -> HTTPException:
    if isinstance(e, (BatchNotFound, ProductNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))

def _now_ts() -> int:
    return int(time.time())

# ---------------------------
# Background job store (in-memory)
# ---------------------------
_JOBS: Dict[str, Dict[str, Any]] = {}
_JOBS_LOCK = asyncio.Lock()

async def _cleanup_jobs_now():
    """Remove finished jobs older than TTL."""
    cutoff = _now_ts() - settings.JOB_TTL_SECONDS
    async with _JOBS_LOCK:
        to_del = [jid for jid, rec in _JOBS.items()
                  if rec.get("finished") and rec.get("finished") < cutoff]
        for jid in to_del:
            _JOBS.pop(jid, None)

async def _run_sync_job(
    job_id: str,
    orch: BatchOrchestrator,
    batch_id: int,
    product_ids: Optional[List[int]],
    prefetch_remote: bool,
):
    """Background runner for a batch reconciliation."""
    logger.info(f"[JOB][RUN] Job {job_id} starting (batch={batch_id})")
    async with _JOBS_LOCK:
        rec = _JOBS.get(job_id) or {}
        rec.update({
            "status": "running",
            "started": rec.get("started") or _now_ts(),
        })
        _JOBS[job_id] = rec

    try:
        result = await orch.sync_batch(batch_id, product_ids=product_ids, prefetch_remote=prefetch_remote)
        async with _JOBS_LOCK:
            _JOBS[job_id].update({
                "status": "done",
                "finished": _now_ts(),
                "result": result.as_dict(),
            })
        logger.info(f"[JOB][COMPLETE] Job {job_id} finished successfully")
    except Exception as e:
        async with _JOBS_LOCK:
            _JOBS[job_id].update({
                "status": "error",
                "finished": _now_ts(),
                "error": str(e),
            })
        logger.error(f"[JOB][ERROR] Job {job_id} failed: {e}")

    await _cleanup_jobs_now()

# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------

@router.get("/health")
async def api_health(request: Request):
    """Stage store reachability and an Ideasoft ping."""
    result: Dict[str, Any] = {"ok": True, "store": {}, "ideasoft": {}}
    db = getattr(request.app.state, "db", None)
    remote = getattr(request.app.state, "remote", None)

    db_ok = bool(db) and await db.ping()
    result["store"] = {"ok": db_ok}
    if remote is None:
        result["ideasoft"] = {"ok": False, "error": "client not initialized"}
    else:
        result["ideasoft"] = await remote.ping()
    result["ok"] = db_ok and bool(result["ideasoft"].get("ok"))
    return JSONResponse(content=result)

# ----------------------------------------------------------------------
# Batches and staged products
# ----------------------------------------------------------------------

@router.post("/batches", dependencies=[Depends(verify_admin)])
async def api_create_batch(body: CreateBatchRequest, orch: BatchOrchestrator = Depends(_orchestrator)):
    """
    Commit spreadsheet rows as a new batch. Repeated SKUs are rejected as a whole.
    Body: { "name" | "projectName": str, "products": [ {sku, name, price, ...}, ... ] }
    """
    try:
        batch = await orch.create_batch(body.name, body.products)
    except DuplicateSkuError as e:
        return JSONResponse(status_code=400, content={"detail": str(e), "duplicate_skus": e.skus})
    except BlankSkuError as e:
        return JSONResponse(status_code=400, content={"detail": str(e), "blank_rows": e.rows})
    except StoreError as e:
        raise _store_error(e)
    return JSONResponse(content={"batch_id": batch.id, "batch": batch.model_dump(mode="json")})

@router.get("/batches", dependencies=[Depends(verify_admin)])
async def api_list_batches(orch: BatchOrchestrator = Depends(_orchestrator)):
    batches = await orch.store.list_batches()
    return JSONResponse(content={"batches": [b.model_dump(mode="json") for b in batches]})

@router.get("/batches/{batch_id}", dependencies=[Depends(verify_admin)])
async def api_get_batch(
    batch_id: int,
    transfer_status: Optional[str] = Query(None, alias="status"),
    orch: BatchOrchestrator = Depends(_orchestrator),
):
    """Batch header plus its staged products (optionally filtered by transfer status)."""
    try:
        batch = await orch.store.get_batch(batch_id)
        products = await orch.store.list_staged_products(batch_id, status=transfer_status)
    except StoreError as e:
        raise _store_error(e)
    return JSONResponse(content={
        "batch": batch.model_dump(mode="json"),
        "products": [p.model_dump(mode="json") for p in products],
    })

@router.patch("/products/{product_id}", dependencies=[Depends(verify_admin)])
async def api_patch_product(product_id: int, patch: StagedProductPatch, orch: BatchOrchestrator = Depends(_orchestrator)):
    """Plain field update of a staged row; nothing is pushed to Ideasoft."""
    fields = patch.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="no fields to update")
    try:
        product = await orch.store.update_staged_product(product_id, **fields)
    except StoreError as e:
        raise _store_error(e)
    return JSONResponse(content={"success": True, "product": product.model_dump(mode="json")})

# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------

@router.post("/batches/{batch_id}/sync", dependencies=[Depends(verify_admin)])
async def api_sync_batch(batch_id: int, request: Request, orch: BatchOrchestrator = Depends(_orchestrator)):
    """
    Reconcile a batch (or a subset) against Ideasoft.

    Body (optional):
      {
        "product_ids" | "productIds": [int, ...],
        "prefetch_remote": bool (default True),
        "blocking": bool (default False)
      }

    Default is **non-blocking**: returns { job_id, status } (202 Accepted),
    use GET /api/sync/status/{job_id} to poll until "done" or "error".
    """
    payload = await _safe_json(request)
    try:
        req = SyncBatchRequest.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    try:
        await orch.store.get_batch(batch_id)
    except StoreError as e:
        raise _store_error(e)

    if req.blocking:
        logger.info(f"[JOB][SYNC] Blocking sync of batch {batch_id}")
        result = await orch.sync_batch(batch_id, product_ids=req.product_ids, prefetch_remote=req.prefetch_remote)
        return JSONResponse(content=result.as_dict())

    job_id = uuid.uuid4().hex
    logger.info(f"[JOB][REGISTER] Registering new job: {job_id} (batch={batch_id})")
    async with _JOBS_LOCK:
        _JOBS[job_id] = {
            "id": job_id,
            "status": "queued",
            "started": None,
            "finished": None,
            "request": {
                "batch_id": batch_id,
                "product_ids": req.product_ids,
                "prefetch_remote": req.prefetch_remote,
            },
        }

    asyncio.create_task(_run_sync_job(job_id, orch, batch_id, req.product_ids, req.prefetch_remote))

    return JSONResponse(
        status_code=202,
        content={"job_id": job_id, "status": "queued"},
        headers={"Location": f"/api/sync/status/{job_id}"},
    )

@router.get("/sync/jobs", dependencies=[Depends(verify_admin)])
async def api_sync_jobs():
    """Return all jobs in the background job store."""
    async with _JOBS_LOCK:
        jobs = [dict(j) for j in _JOBS.values()]
    jobs.sort(key=lambda j: (j.get("started") or 0, j.get("id", "")), reverse=True)
    return JSONResponse(content={"jobs": jobs})

@router.get("/sync/status/{job_id}", dependencies=[Depends(verify_admin)])
async def api_sync_status(job_id: str):
    """Poll background sync job status."""
    async with _JOBS_LOCK:
        rec = _JOBS.get(job_id)
        rec = dict(rec) if rec else None
    if not rec:
        raise HTTPException(status_code=404, detail="job not found")
    return JSONResponse(content=rec)

@router.post("/batches/{batch_id}/bulk-create", dependencies=[Depends(verify_admin)])
async def api_bulk_create(batch_id: int, request: Request, orch: BatchOrchestrator = Depends(_orchestrator)):
    """
    Sequential create of rows without a remote id, pausing between items.
    Stops on the first quota error. Body (optional): { "product_ids" | "productIds": [...] }
    """
    payload = await _safe_json(request)
    try:
        req = SyncBatchRequest.model_validate(payload)
        result = await orch.bulk_create(batch_id, product_ids=req.product_ids)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    except StoreError as e:
        raise _store_error(e)
    return JSONResponse(content=result.as_dict())

@router.post("/products/{product_id}/sync", dependencies=[Depends(verify_admin)])
async def api_sync_product(product_id: int, orch: BatchOrchestrator = Depends(_orchestrator)):
    """Reconcile one staged product; the batch summary is recomputed afterwards."""
    try:
        outcome = await orch.sync_product(product_id)
    except StoreError as e:
        raise _store_error(e)
    return JSONResponse(content={"sku": outcome.sku, **outcome.as_result()})

@router.post("/batches/{batch_id}/recompute", dependencies=[Depends(verify_admin)])
async def api_recompute(batch_id: int, orch: BatchOrchestrator = Depends(_orchestrator)):
    try:
        summary = await orch.recompute_batch(batch_id)
    except StoreError as e:
        raise _store_error(e)
    return JSONResponse(content=summary.model_dump())

# ----------------------------------------------------------------------
# Remote fetch
# ----------------------------------------------------------------------

@router.post("/remote/products/batch", dependencies=[Depends(verify_admin)])
async def api_remote_products_batch(body: RemoteFetchRequest, orch: BatchOrchestrator = Depends(_orchestrator)):
    """Fetch up to GET_MANY_LIMIT Ideasoft products by id; each id succeeds or fails on its own."""
    ids = list(dict.fromkeys(str(i).strip() for i in body.ids if str(i).strip()))
    if not ids:
        raise HTTPException(status_code=400, detail="Ürün ID listesi boş")
    if len(ids) > settings.GET_MANY_LIMIT:
        raise HTTPException(status_code=400, detail=f"En fazla {settings.GET_MANY_LIMIT} ürün aynı anda alınabilir")
    results = await orch.remote.get_many(ids)
    return JSONResponse(content={
        "results": results,
        "found": sum(1 for r in results.values() if r.get("success")),
        "requested": len(ids),
    })


@router.get("/remote/categories", dependencies=[Depends(verify_admin)])
async def api_remote_categories(
    category_id: Optional[int] = Query(None),
    category_id_alt: Optional[int] = Query(None, alias="categoryId"),
    orch: BatchOrchestrator = Depends(_orchestrator),
):
    """
    Ideasoft categories for choosing a product's selected_category_id.
    Without category_id (or categoryId): the active ones (status 1) with
    parent name/id flattened in.
    """
    if category_id is None:
        category_id = category_id_alt
    try:
        if category_id is not None:
            return {"success": True, "data": await orch.remote.get_category(category_id)}
        categories = await orch.remote.list_categories()
    except RemoteError as e:
        c = classify_error(e)
        logger.warning("[CATEGORIES] fetch failed: %s", c.message)
        return JSONResponse(
            status_code=e.status_code or status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "error": c.message, "error_kind": c.kind.value},
        )

    active = []
    for cat in categories:
        if to_int(cat.get("status")) != 1:
            continue
        parent = cat.get("parent") if isinstance(cat.get("parent"), dict) else {}
        active.append({**cat, "parentName": parent.get("name") or None, "parentId": to_int(parent.get("id"))})
    return {"success": True, "data": active, "total": len(categories), "active": len(active)}
