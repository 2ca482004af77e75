# catalog_sync/sync/components/diff.py
# Compare a staged row with the remote snapshot and build product payloads.
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from catalog_sync.models.schemas import RemoteRecord, StagedProduct
from catalog_sync.sync.components.util import (
    normalize_image_ref_for_compare,
    normalize_sku,
    normalize_text_for_compare,
)

# staged attribute -> remote field
FIELD_MAP = {
    "name": "name",
    "price": "price1",
    "stock_amount": "stockAmount",
    "status": "status",
}


def product_payload(product: StagedProduct, currency_id: int) -> Dict[str, Any]:
    """Full product body for create (and for update when no remote snapshot is known)."""
    name = (product.name or "").strip()
    return {
        "name": name,
        "fullName": name,
        "sku": normalize_sku(product.sku),
        "price1": float(product.price or 0),
        "stockAmount": float(product.stock_amount or 0),
        "currency": {"id": int(currency_id)},
        "status": int(product.status or 0),
    }


def _same_number(a: Any, b: Any) -> bool:
    try:
        return abs(float(a or 0) - float(b or 0)) < 1e-6
    except (TypeError, ValueError):
        return False


@dataclass
class ChangeSet:
    fields: Dict[str, Any] = field(default_factory=dict)
    description: bool = False
    image: bool = False
    category: bool = False
    replace_category: bool = False

    @property
    def any(self) -> bool:
        return bool(self.fields) or self.description or self.image or self.category


def detect_changes(product: StagedProduct, remote: Optional[RemoteRecord], currency_id: int) -> ChangeSet:
    """
    With no snapshot everything counts as changed and the full payload is used.
    Otherwise only differing core fields are returned, and description, image
    and category are compared in normalized form.
    """
    full = product_payload(product, currency_id)
    if remote is None:
        return ChangeSet(
            fields=full,
            description=bool((product.description or "").strip()),
            image=bool((product.image_url or "").strip()),
            category=product.selected_category_id is not None,
            replace_category=True,
        )

    changed: Dict[str, Any] = {}
    for local_key, remote_key in FIELD_MAP.items():
        mine = full[remote_key]
        theirs = getattr(remote, remote_key, None)
        if local_key == "name":
            if (mine or "") != (theirs or "").strip():
                changed["name"] = mine
                changed["fullName"] = mine
        elif not _same_number(mine, theirs):
            changed[remote_key] = mine
    if normalize_sku(remote.sku) and normalize_sku(remote.sku) != full["sku"]:
        changed["sku"] = full["sku"]

    desc = (product.description or "").strip()
    description = bool(desc) and normalize_text_for_compare(desc) != normalize_text_for_compare(remote.description)

    img = (product.image_url or "").strip()
    image = False
    if img:
        # uploads are renamed product-<id>.<ext>, so a known image id counts as a match too
        refs = {normalize_image_ref_for_compare(im.ref) for im in remote.images}
        ids = {im.id for im in remote.images if im.id is not None}
        image = not (normalize_image_ref_for_compare(img) in refs
                     or (product.remote_image_id is not None and product.remote_image_id in ids))

    category = False
    replace_category = False
    if product.selected_category_id is not None:
        current = remote.primary_category_id
        if current is None:
            category = True
        elif int(current) != int(product.selected_category_id):
            category = True
            replace_category = True

    return ChangeSet(fields=changed, description=description, image=image,
                     category=category, replace_category=replace_category)
