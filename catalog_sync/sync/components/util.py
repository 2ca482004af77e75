# catalog_sync/sync/components/util.py
from __future__ import annotations

import html
import re
from typing import Any, List

_TAG_RE = re.compile(r"<[^>]*>")
_HTML_LIKE_RE = re.compile(r"<\s*/?\s*[a-z][\s\S]*>", re.IGNORECASE)
_IMG_EXT_RE = re.compile(r"\.(png|jpg|jpeg|webp|gif|bmp)(\?|#|$)")


def normalize_sku(sku: Any) -> str:
    return str(sku if sku is not None else "").strip()


def normalize_text_for_compare(value: Any) -> str:
    """HTML-insensitive, whitespace-insensitive, case-insensitive form of a description."""
    s = _TAG_RE.sub(" ", str(value if value is not None else ""))
    return re.sub(r"\s+", " ", html.unescape(s)).strip().lower()


def normalize_image_ref_for_compare(value: Any) -> str:
    """Compare images by file name only; hosts and query strings differ between CDN copies."""
    s = str(value if value is not None else "").strip()
    if not s:
        return ""
    no_query = s.split("?")[0].split("#")[0]
    last = no_query.rstrip("/").split("/")[-1] or no_query
    return last.strip().lower()


def details_to_html(value: Any) -> str:
    """Plain text lines become <p> paragraphs; anything that already looks like HTML is kept."""
    s = str(value if value is not None else "").strip()
    if not s:
        return ""
    if _HTML_LIKE_RE.search(s):
        return s
    lines = [ln.strip() for ln in re.split(r"\r?\n", s) if ln.strip()]
    return "".join(f"<p>{html.escape(ln, quote=True)}</p>" for ln in lines)


def infer_image_extension(content_type: str | None, url: str | None) -> str:
    ct = (content_type or "").lower()
    for ext in ("png", "webp", "gif", "bmp"):
        if ext in ct:
            return ext
    if "jpeg" in ct or "jpg" in ct:
        return "jpg"
    m = _IMG_EXT_RE.search((url or "").lower())
    if not m:
        return "jpg"
    return "jpg" if m.group(1) == "jpeg" else m.group(1)


def normalize_image_url(url: str | None) -> str:
    u = (url or "").strip()
    if u.startswith("//"):
        u = "https:" + u
    return u


def is_http_url(url: str | None) -> bool:
    return bool(re.match(r"^https?://", url or "", re.IGNORECASE))


def extract_list_items(data: Any) -> List[dict]:
    """Ideasoft list endpoints answer with a bare list or wrap it under one of several keys."""
    if not data:
        return []
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict):
        for key in ("items", "data", "products", "categories", "results"):
            val = data.get(key)
            if isinstance(val, list):
                return [d for d in val if isinstance(d, dict)]
    return []


def to_int(value: Any) -> int | None:
    try:
        if value is None or value == "":
            return None
        return int(value)
    except (TypeError, ValueError):
        return None
