# ----------------------------------------------------------------
# Import configuration variables to be used throughout the project
# ----------------------------------------------------------------
import os
import json as _json
from dotenv import load_dotenv

# Load .env (allow container env to override file values)
load_dotenv(override=True)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "").strip())
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "").strip())
    except ValueError:
        return default


def _get_json_list(name: str, default: list | None = None) -> list:
    raw = os.getenv(name, "")
    if not raw:
        return list(default or [])
    try:
        data = _json.loads(raw)
    except ValueError:
        return list(default or [])
    return data if isinstance(data, list) else list(default or [])


def _default_api_base(shop_id: str) -> str:
    return f"https://{shop_id}.myideasoft.com/admin-api" if shop_id else ""


class Settings:
    # ── Ideasoft ─────────────────────────────────────────────────────────────
    IDEASOFT_SHOP_ID: str = os.getenv("IDEASOFT_SHOP_ID", "")
    # OAuth is handled outside this service; we only consume a ready token
    IDEASOFT_ACCESS_TOKEN: str = os.getenv("IDEASOFT_ACCESS_TOKEN", "")
    IDEASOFT_API_BASE: str = _rstrip_slash(
        os.getenv("IDEASOFT_API_BASE", "") or _default_api_base(os.getenv("IDEASOFT_SHOP_ID", ""))
    )
    IDEASOFT_CURRENCY_ID: int = _get_int("IDEASOFT_CURRENCY_ID", 1)

    # ── Remote client behaviour ──────────────────────────────────────────────
    REMOTE_TIMEOUT: float = _get_float("REMOTE_TIMEOUT", 20.0)
    REMOTE_MAX_RETRIES: int = _get_int("REMOTE_MAX_RETRIES", 2)
    REMOTE_RETRY_BACKOFF: float = _get_float("REMOTE_RETRY_BACKOFF", 0.5)
    REMOTE_VERIFY_SSL: bool = _get_bool("REMOTE_VERIFY_SSL", True)

    # Lookup scans (find-by-SKU, detail/image discovery) are hard capped
    FIND_BY_KEY_MAX_PAGES: int = _get_int("FIND_BY_KEY_MAX_PAGES", 5)
    SUBRESOURCE_MAX_PAGES: int = _get_int("SUBRESOURCE_MAX_PAGES", 10)
    CATEGORY_MAX_PAGES: int = _get_int("CATEGORY_MAX_PAGES", 20)
    LOOKUP_PAGE_SIZE: int = _get_int("LOOKUP_PAGE_SIZE", 100)
    # e.g. '["sku","search"]'
    LOOKUP_FILTER_PARAMS: list = _get_json_list("LOOKUP_FILTER_PARAMS", ["sku", "search", "query", "keyword"])
    # e.g. '[["page","limit"],["pageNumber","pageSize"]]'
    LOOKUP_PAGE_PARAMS: list = _get_json_list(
        "LOOKUP_PAGE_PARAMS",
        [["page", "limit"], ["page", "perPage"], ["page", "per_page"], ["pageNumber", "pageSize"]],
    )
    GET_MANY_LIMIT: int = _get_int("GET_MANY_LIMIT", 50)

    # ── Sync ─────────────────────────────────────────────────────────────────
    BULK_CREATE_DELAY_SECONDS: float = _get_float("BULK_CREATE_DELAY_SECONDS", 0.5)
    SYNC_CONCURRENCY: int = _get_int("SYNC_CONCURRENCY", 0)  # 0 = unbounded
    JOB_TTL_SECONDS: int = _get_int("JOB_TTL_SECONDS", 60 * 60)

    # ── Stage database ───────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/catalog_sync.db")

    # ── Admin Panel ──────────────────────────────────────────────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


settings = Settings()
