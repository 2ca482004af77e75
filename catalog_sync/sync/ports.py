"""Collaborator contracts the reconciliation core depends on."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol

from catalog_sync.models.schemas import BatchSummary, ImportBatch, RemoteRecord, StagedProduct, StagedProductIn


class RemoteCatalog(Protocol):
    """
    Remote product catalog. Every failing call raises
    catalog_sync.remote.errors.RemoteError.
    """

    async def create(self, payload: Dict[str, Any]) -> RemoteRecord: ...

    async def update(self, remote_id: int, partial: Dict[str, Any]) -> RemoteRecord: ...

    async def get_by_id(self, remote_id: int) -> RemoteRecord: ...

    async def get_many(self, remote_ids: Iterable[Any]) -> Dict[str, Dict[str, Any]]: ...

    async def find_by_key(self, sku: str) -> Optional[RemoteRecord]: ...

    async def list_categories(self) -> List[Dict[str, Any]]: ...

    async def get_category(self, category_id: int) -> Dict[str, Any]: ...

    async def assign_category(
        self,
        product_id: int,
        category_id: int,
        product: Dict[str, Any],
        replace: bool = False,
    ) -> Dict[str, Any]: ...

    async def upsert_detail(
        self,
        product_id: int,
        sku: str,
        details: str,
        detail_id: Optional[int] = None,
        product: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]: ...

    async def upsert_image(
        self,
        product_id: int,
        image_url: str,
        image_id: Optional[int] = None,
    ) -> Dict[str, Any]: ...


class StageStorePort(Protocol):
    async def create_batch(self, name: str, rows: Iterable[StagedProductIn | Dict[str, Any]]) -> ImportBatch: ...

    async def get_batch(self, batch_id: int) -> ImportBatch: ...

    async def list_staged_products(
        self,
        batch_id: int,
        status: Optional[str] = None,
        ids: Optional[Iterable[int]] = None,
    ) -> List[StagedProduct]: ...

    async def get_staged_product(self, product_id: int) -> StagedProduct: ...

    async def update_staged_product(self, product_id: int, **fields: Any) -> StagedProduct: ...

    async def update_transfer_status(
        self,
        sku: str,
        remote_id: Optional[int],
        status: str,
        error: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> int: ...

    async def update_batch_summary(self, batch_id: int, total: int, success: int, failed: int, status: str) -> None: ...

    async def recompute_batch_summary(self, batch_id: int) -> BatchSummary: ...
