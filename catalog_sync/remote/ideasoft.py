#==========================================================================================
# catalog_sync/remote/ideasoft.py
# Ideasoft admin API interface.
# Products, categories, product-to-category links, product details and product images.
#==========================================================================================
from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from httpx_retries import Retry, RetryTransport
from pydantic import ValidationError

from catalog_sync.config import settings
from catalog_sync.models.schemas import RemoteRecord
from catalog_sync.remote.errors import ErrorKind, RemoteError, classify_error
from catalog_sync.remote.lookup import LookupStrategy
from catalog_sync.sync.components.util import (
    details_to_html,
    extract_list_items,
    infer_image_extension,
    is_http_url,
    normalize_image_url,
    normalize_sku,
    to_int,
)

logger = logging.getLogger("uvicorn.error")

# 429 stays out: quota exhaustion must reach the caller on the first answer
RETRY_STATUSES = (502, 503, 504)
RETRY_METHODS = ("GET", "POST", "PUT", "DELETE")
FETCH_CONCURRENCY = 5


def build_retry(total: int, backoff_factor: float) -> Retry:
    return Retry(
        total=max(0, total),
        backoff_factor=backoff_factor,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=RETRY_METHODS,
        retry_on_exceptions=(httpx.TransportError,),
    )


def _response_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


def _to_record(data: Any, operation: str) -> RemoteRecord:
    if isinstance(data, dict) and isinstance(data.get("data"), dict) and "id" not in data:
        data = data["data"]
    try:
        return RemoteRecord.model_validate(data)
    except ValidationError as e:
        raise RemoteError(f"{operation}: unexpected product payload ({e.error_count()} errors)",
                          body=data, operation=operation) from e


def _nested_id(item: Dict[str, Any], key: str) -> Optional[int]:
    val = item.get(key)
    if isinstance(val, dict):
        return to_int(val.get("id"))
    return to_int(val)


class IdeasoftClient:
    """
    Remote catalog client for one Ideasoft shop.

    Two admin API clients share one connection pool: the main one sits on an
    httpx-retries RetryTransport, the probe one (lookup scans, health ping)
    answers on the first response. A third client downloads source images.
    Call aclose() on shutdown.
    Every failed call raises RemoteError; classification is left to
    catalog_sync.remote.errors.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        currency_id: Optional[int] = None,
        lookup: Optional[LookupStrategy] = None,
        subresource_max_pages: Optional[int] = None,
        category_max_pages: Optional[int] = None,
        get_many_limit: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        download_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.IDEASOFT_API_BASE).rstrip("/")
        token = access_token if access_token is not None else settings.IDEASOFT_ACCESS_TOKEN
        self.max_retries = settings.REMOTE_MAX_RETRIES if max_retries is None else max(0, max_retries)
        self.retry_backoff = settings.REMOTE_RETRY_BACKOFF if retry_backoff is None else retry_backoff
        self.currency_id = currency_id or settings.IDEASOFT_CURRENCY_ID
        self.lookup = lookup or LookupStrategy.from_settings()
        self.subresource_max_pages = subresource_max_pages or settings.SUBRESOURCE_MAX_PAGES
        self.category_max_pages = category_max_pages or settings.CATEGORY_MAX_PAGES
        self.get_many_limit = get_many_limit or settings.GET_MANY_LIMIT
        timeout = timeout or settings.REMOTE_TIMEOUT

        inner = transport or httpx.AsyncHTTPTransport(verify=settings.REMOTE_VERIFY_SSL)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=RetryTransport(transport=inner, retry=build_retry(self.max_retries, self.retry_backoff)),
        )
        self._probe = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=inner,
        )
        self._downloader = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=download_transport or transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._probe.aclose()
        await self._downloader.aclose()

    # ---------------------------
    # Transport
    # ---------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        retry: bool = True,
    ) -> Any:
        """
        One API call. Retries (transport failures and 502/503/504) happen in
        the RetryTransport; this only turns the final outcome into RemoteError.
        """
        client = self._client if retry else self._probe
        try:
            resp = await client.request(method, path, params=params, json=json)
        except httpx.TransportError as e:
            logger.warning("[IDEASOFT] %s %s transport error: %s", method, path, e)
            raise RemoteError(f"{operation}: {e.__class__.__name__}", transport=True, operation=operation) from e

        if resp.is_success:
            return _response_body(resp)
        if resp.status_code in RETRY_STATUSES:
            logger.warning("[IDEASOFT] %s %s -> %s after retries", method, path, resp.status_code)
        raise RemoteError(
            f"{operation}: HTTP {resp.status_code}",
            status_code=resp.status_code,
            body=_response_body(resp),
            operation=operation,
        )

    def product_stub(self, product_id: int, fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Embedded product object the sub-resource endpoints expect."""
        f = fields or {}
        return {
            "id": int(product_id),
            "name": f.get("name") or "",
            "fullName": f.get("fullName") or f.get("name") or "",
            "sku": f.get("sku") or "",
            "stockAmount": f.get("stockAmount") or 0.0,
            "price1": f.get("price1") or 0,
            "currency": {"id": self.currency_id},
            "status": f.get("status") if f.get("status") is not None else 0,
        }

    # ---------------------------
    # Products
    # ---------------------------

    async def create(self, payload: Dict[str, Any]) -> RemoteRecord:
        body = dict(payload)
        body.setdefault("currency", {"id": self.currency_id})
        data = await self._request("POST", "/products", json=body, operation="create")
        rec = _to_record(data, "create")
        logger.info("[IDEASOFT] created product id=%s sku=%s", rec.id, body.get("sku"))
        return rec

    async def update(self, remote_id: int, partial: Dict[str, Any]) -> RemoteRecord:
        data = await self._request("PUT", f"/products/{int(remote_id)}", json=dict(partial), operation="update")
        if not data:
            # some deployments answer 204; read back so callers always get the record
            return await self.get_by_id(remote_id)
        return _to_record(data, "update")

    async def get_by_id(self, remote_id: int) -> RemoteRecord:
        data = await self._request("GET", f"/products/{int(remote_id)}", operation="get_by_id")
        return _to_record(data, "get_by_id")

    async def get_many(self, remote_ids: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
        """
        Fetch several products by id. Returns {id: {success, data | error, error_kind, status_code}};
        one missing product never fails the others.
        """
        unique: List[str] = []
        for rid in remote_ids:
            s = str(rid).strip() if rid is not None else ""
            if s and s not in unique:
                unique.append(s)
        unique = unique[: self.get_many_limit]
        sem = asyncio.Semaphore(FETCH_CONCURRENCY)

        async def _one(rid: str) -> Dict[str, Any]:
            async with sem:
                try:
                    rec = await self.get_by_id(int(rid))
                    return {"success": True, "data": rec.model_dump()}
                except (RemoteError, ValueError) as e:
                    c = classify_error(e)
                    return {
                        "success": False,
                        "error": c.message,
                        "error_kind": c.kind.value,
                        "status_code": getattr(e, "status_code", None),
                    }

        results = await asyncio.gather(*(_one(rid) for rid in unique))
        return dict(zip(unique, results))

    async def _walk(self, path: str, strategy: LookupStrategy, spelling, operation: str):
        """
        Yield the item pages of one page-param spelling. Stops on a failed,
        empty, repeated or short page, or at the strategy's page cap.
        """
        previous_ids = None
        for params in strategy.pages(spelling):
            try:
                data = await self._request("GET", path, params=params, operation=operation, retry=False)
            except RemoteError as e:
                logger.debug("[IDEASOFT] %s page scan %s failed: %s", path, params, e)
                return
            items = extract_list_items(data)
            if not items:
                return
            page_ids = [it.get("id") for it in items]
            if page_ids == previous_ids:
                # backend ignores this spelling and keeps serving page 1
                return
            previous_ids = page_ids
            yield items
            if len(items) < strategy.page_size:
                return

    def _remember_pages(self, strategy: LookupStrategy, spelling) -> None:
        strategy.remember_pages(spelling)
        if strategy is not self.lookup:
            self.lookup.remember_pages(spelling)

    async def _scan(self, path: str, strategy: LookupStrategy, value: Any, match, operation: str) -> List[Dict[str, Any]]:
        """
        Try server-side filters first, then page through the listing, stopping
        at the strategy's page cap. Returns the matching items (possibly empty).
        """
        for name in strategy.filter_order():
            try:
                data = await self._request("GET", path, params={name: value}, operation=operation, retry=False)
            except RemoteError as e:
                logger.debug("[IDEASOFT] %s filter %s=%r failed: %s", path, name, value, e)
                continue
            hits = [it for it in extract_list_items(data) if match(it)]
            if hits:
                strategy.remember_filter(name)
                return hits

        for spelling in strategy.page_order():
            async for items in self._walk(path, strategy, spelling, operation):
                hits = [it for it in items if match(it)]
                if hits:
                    self._remember_pages(strategy, spelling)
                    return hits
        return []

    async def _list_all(self, path: str, strategy: LookupStrategy, operation: str) -> List[Dict[str, Any]]:
        """
        Every item of a listing, up to the page cap. A spelling counts as
        understood once it serves a second page or a short first page; when
        none does, the longest listing seen is returned.
        """
        best: List[Dict[str, Any]] = []
        for spelling in strategy.page_order():
            pages = [items async for items in self._walk(path, strategy, spelling, operation)]
            collected = [it for items in pages for it in items]
            if len(pages) > 1 or (pages and len(pages[0]) < strategy.page_size):
                self._remember_pages(strategy, spelling)
                return collected
            if len(collected) > len(best):
                best = collected
        return best

    async def find_by_key(self, sku: str) -> Optional[RemoteRecord]:
        """Best-effort lookup by SKU; None when not found or when every strategy fails."""
        target = normalize_sku(sku)
        if not target:
            return None
        hits = await self._scan(
            "/products",
            self.lookup,
            target,
            lambda it: normalize_sku(it.get("sku")) == target,
            "find_by_key",
        )
        if not hits:
            logger.info("[IDEASOFT] no remote product with sku=%s", target)
            return None
        try:
            return RemoteRecord.model_validate(hits[0])
        except ValidationError:
            return None

    # ---------------------------
    # Categories
    # ---------------------------

    async def list_categories(self) -> List[Dict[str, Any]]:
        """All shop categories (active or not), paged up to the category page cap."""
        strategy = self.lookup.with_filters((), self.category_max_pages)
        items = await self._list_all("/categories", strategy, "list_categories")
        seen: set = set()
        out: List[Dict[str, Any]] = []
        for it in items:
            key = it.get("id")
            if key is not None and key in seen:
                continue
            seen.add(key)
            out.append(it)
        logger.info("[IDEASOFT] listed %d categories", len(out))
        return out

    async def get_category(self, category_id: int) -> Dict[str, Any]:
        data = await self._request("GET", f"/categories/{int(category_id)}", operation="get_category")
        if isinstance(data, dict) and isinstance(data.get("data"), dict) and "id" not in data:
            data = data["data"]
        if not isinstance(data, dict):
            raise RemoteError("get_category: unexpected category payload", body=data, operation="get_category")
        return data

    async def list_category_links(self, product_id: int) -> List[Dict[str, Any]]:
        strategy = self.lookup.with_filters(("product.id", "productId", "product"), self.subresource_max_pages)
        pid = int(product_id)
        return await self._scan(
            "/product_to_categories",
            strategy,
            pid,
            lambda it: _nested_id(it, "product") == pid,
            "list_category_links",
        )

    async def assign_category(
        self,
        product_id: int,
        category_id: int,
        product: Optional[Dict[str, Any]] = None,
        replace: bool = False,
    ) -> Dict[str, Any]:
        """
        Link a product to a category. With replace=True every other category
        link of the product is removed first, so stale links do not pile up.
        An already existing link counts as success.
        """
        cid = int(category_id)
        if replace:
            already = False
            for link in await self.list_category_links(product_id):
                link_id = to_int(link.get("id"))
                if _nested_id(link, "category") == cid:
                    already = True
                    continue
                if link_id is None:
                    continue
                try:
                    await self._request("DELETE", f"/product_to_categories/{link_id}", operation="category_unlink")
                    logger.info("[IDEASOFT] removed category link %s from product %s", link_id, product_id)
                except RemoteError as e:
                    if e.kind != ErrorKind.NOT_FOUND:
                        raise
            if already:
                return {"success": True, "unchanged": True}

        body = {"product": self.product_stub(product_id, product), "category": {"id": cid}}
        try:
            data = await self._request("POST", "/product_to_categories", json=body, operation="category")
        except RemoteError as e:
            if e.kind == ErrorKind.DUPLICATE:
                return {"success": True, "duplicate": True}
            raise
        return {"success": True, "data": data}

    # ---------------------------
    # Product details (description)
    # ---------------------------

    async def _find_detail(self, product_id: int, sku: str) -> Optional[Dict[str, Any]]:
        target = normalize_sku(sku)
        pid = int(product_id)
        filters = tuple(f for f in ("sku", "productId", "product_id", "search", "query") if target or f != "sku")
        hits = await self._scan(
            "/product_details",
            self.lookup.with_filters(filters, self.subresource_max_pages),
            target or pid,
            lambda it: (target and normalize_sku(it.get("sku")) == target) or _nested_id(it, "product") == pid,
            "find_detail",
        )
        return hits[0] if hits else None

    async def upsert_detail(
        self,
        product_id: int,
        sku: str,
        details: str,
        detail_id: Optional[int] = None,
        product: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sku": normalize_sku(sku),
            "details": details_to_html(details),
            "extraDetails": "",
            "product": self.product_stub(product_id, product),
        }
        if detail_id:
            try:
                data = await self._request("PUT", f"/product_details/{int(detail_id)}",
                                           json={**payload, "id": int(detail_id)}, operation="detail")
                return {"success": True, "id": int(detail_id), "data": data}
            except RemoteError as e:
                if e.kind != ErrorKind.NOT_FOUND:
                    raise
                logger.info("[IDEASOFT] detail %s vanished, posting a new one", detail_id)
        try:
            data = await self._request("POST", "/product_details", json=payload, operation="detail")
            return {"success": True, "id": to_int((data or {}).get("id")) if isinstance(data, dict) else None, "data": data}
        except RemoteError as e:
            if e.kind != ErrorKind.DUPLICATE:
                raise
        existing = await self._find_detail(product_id, sku)
        existing_id = to_int((existing or {}).get("id"))
        if existing_id:
            data = await self._request("PUT", f"/product_details/{existing_id}",
                                       json={**payload, "id": existing_id}, operation="detail")
            return {"success": True, "id": existing_id, "updated": True, "data": data}
        return {"success": True, "id": None, "duplicate": True}

    # ---------------------------
    # Product images
    # ---------------------------

    async def list_images(self, product_id: int) -> List[Dict[str, Any]]:
        pid = int(product_id)
        return await self._scan(
            "/product_images",
            self.lookup.with_filters(("productId", "product_id"), self.subresource_max_pages),
            pid,
            lambda it: _nested_id(it, "product") == pid,
            "list_images",
        )

    async def _download(self, url: str) -> tuple[bytes, Optional[str]]:
        try:
            resp = await self._downloader.get(url)
        except httpx.TransportError as e:
            raise RemoteError(f"image download: {e.__class__.__name__}", transport=True, operation="image") from e
        if resp.status_code != 200:
            raise RemoteError(
                f"Image download failed: {resp.status_code}",
                status_code=resp.status_code,
                body={"message": f"Image download failed: {resp.status_code} {resp.reason_phrase}"},
                operation="image",
            )
        return resp.content, resp.headers.get("content-type")

    async def upsert_image(
        self,
        product_id: int,
        image_url: str,
        image_id: Optional[int] = None,
        sort_order: int = 1,
        alt: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = normalize_image_url(image_url)
        if not is_http_url(url):
            raise RemoteError(
                f"invalid image url {image_url!r}",
                status_code=400,
                body={"message": f"Geçersiz image URL: {image_url}"},
                operation="image",
            )
        content, content_type = await self._download(url)
        ext = infer_image_extension(content_type, url)
        payload: Dict[str, Any] = {
            "filename": f"product-{int(product_id)}.{ext}",
            "extension": ext,
            "sortOrder": int(sort_order),
            "attachment": f"data:image/{ext};base64,{base64.b64encode(content).decode('ascii')}",
            "product": {"id": int(product_id)},
        }
        if alt:
            payload["alt"] = alt

        if image_id:
            try:
                data = await self._request("PUT", f"/product_images/{int(image_id)}",
                                           json={**payload, "id": int(image_id)}, operation="image")
                return {"success": True, "id": int(image_id), "data": data}
            except RemoteError as e:
                if e.kind != ErrorKind.NOT_FOUND:
                    raise
                logger.info("[IDEASOFT] image %s vanished, posting a new one", image_id)
        try:
            data = await self._request("POST", "/product_images", json=payload, operation="image")
            return {"success": True, "id": to_int(data.get("id")) if isinstance(data, dict) else None, "data": data}
        except RemoteError as e:
            if e.kind != ErrorKind.DUPLICATE:
                raise

        images = await self.list_images(product_id)
        fname = payload["filename"].lower()
        hit = (
            next((im for im in images if str(im.get("filename") or "").lower() == fname), None)
            or next((im for im in images if to_int(im.get("sortOrder") or im.get("sort_order")) == payload["sortOrder"]), None)
            or (images[0] if images else None)
        )
        hit_id = to_int((hit or {}).get("id"))
        if hit_id:
            data = await self._request("PUT", f"/product_images/{hit_id}",
                                       json={**payload, "id": hit_id}, operation="image")
            return {"success": True, "id": hit_id, "updated": True, "data": data}
        return {"success": True, "id": None, "duplicate": True}

    # ---------------------------
    # Health
    # ---------------------------

    async def ping(self) -> Dict[str, Any]:
        try:
            await self._request("GET", "/products", params={"limit": 1}, operation="ping", retry=False)
            return {"ok": True, "url": self.base_url}
        except RemoteError as e:
            c = classify_error(e)
            return {"ok": False, "url": self.base_url, "status": e.status_code, "error": c.message}
