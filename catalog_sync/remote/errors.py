#===========================================================================
# catalog_sync/remote/errors.py
# Remote error taxonomy and the single classifier for Ideasoft failures.
# All vendor-prose sniffing lives here and nowhere else.
#===========================================================================
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from catalog_sync.logging_filters import looks_like_html, summarize_html, strip_tags

logger = logging.getLogger("uvicorn.error")

DUPLICATE_MESSAGE = "Aynı üründen var"
NOT_FOUND_MESSAGE = "Ürün bulunamadı"
QUOTA_MESSAGE = "API kota sınırı aşıldı. Lütfen daha sonra tekrar deneyin."
TRANSIENT_MESSAGE = "Ağ hatası. Lütfen internet bağlantınızı kontrol edin."
VALIDATION_MESSAGE = "Geçersiz ürün verisi"
AUTH_MESSAGE = "Yetkilendirme hatası. Lütfen API ayarlarınızı kontrol edin."
SERVER_MESSAGE = "Sunucu hatası. Lütfen daha sonra tekrar deneyin."
UNKNOWN_MESSAGE = "Bilinmeyen hata"

_NOT_FOUND_MARKERS = ("not found",)
_QUOTA_MARKERS = ("quota", "limit exceeded")
_DUPLICATE_MARKERS = ("duplicate", "already exists", "zaten var", "aynı ürün", "aynı sku")

_MESSAGE_KEYS = ("message", "error", "errorMessage", "error_description")
_MAX_MESSAGE_LEN = 300


class ErrorKind(str, Enum):
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str


class RemoteError(Exception):
    """
    Raised by the remote catalog client for any failed call.

    `transport` is True when no HTTP response was received at all
    (connection refused, DNS, timeout); `status_code`/`body` are then None.
    """

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        transport: bool = False,
        operation: str = "",
    ):
        super().__init__(message or f"remote call failed (status={status_code})")
        self.status_code = status_code
        self.body = body
        self.transport = transport
        self.operation = operation

    @property
    def classified(self) -> ClassifiedError:
        return classify_error(self)

    @property
    def kind(self) -> ErrorKind:
        return self.classified.kind


# ---------------------------
# Text extraction helpers
# ---------------------------

def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "ignore")
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _maybe_json(body: Any) -> Any:
    """Bodies may arrive as raw text/bytes; decode JSON when they are JSON."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", "ignore")
    if isinstance(body, str):
        s = body.strip()
        if s[:1] in ("{", "["):
            try:
                return json.loads(s)
            except ValueError:
                return body
    return body


def _messages_from(body: Any) -> list[str]:
    """Collect the human-written messages a remote error body carries."""
    body = _maybe_json(body)
    out: list[str] = []
    if isinstance(body, str):
        if body.strip():
            out.append(body.strip())
        return out
    if isinstance(body, dict):
        for key in _MESSAGE_KEYS:
            val = body.get(key)
            if isinstance(val, str) and val.strip():
                out.append(val.strip())
            elif isinstance(val, dict):
                out.extend(_messages_from(val))
        errors = body.get("errors")
        if isinstance(errors, list):
            for e in errors:
                if isinstance(e, dict):
                    for key in _MESSAGE_KEYS:
                        val = e.get(key)
                        if isinstance(val, str) and val.strip():
                            out.append(val.strip())
                            break
                elif isinstance(e, str) and e.strip():
                    out.append(e.strip())
        elif isinstance(errors, dict):
            for field, val in errors.items():
                if isinstance(val, list):
                    val = " ".join(str(v) for v in val)
                out.append(f"{field}: {val}")
        validation = body.get("validation_errors")
        if isinstance(validation, dict):
            for field, val in validation.items():
                out.append(f"{field}: {_as_text(val)}")
    elif isinstance(body, list):
        for item in body:
            out.extend(_messages_from(item))
    return out


def _search_text(body: Any, extra: str = "") -> str:
    """Everything we know about the failure, lowercased, for marker matching."""
    parts = _messages_from(body)
    parts.append(_as_text(body))
    if extra:
        parts.append(extra)
    return " ".join(p for p in parts if p).lower()


def _presentable(body: Any) -> str:
    """First remote message, cleaned so users never see raw JSON or HTML."""
    for msg in _messages_from(body):
        if looks_like_html(msg):
            return summarize_html(msg)
        if msg[:1] in ("{", "["):
            continue
        clean = strip_tags(msg) if "<" in msg else msg
        if clean:
            return clean[:_MAX_MESSAGE_LEN]
    return ""


def _has_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(m in text for m in markers)


# ---------------------------
# Classifier
# ---------------------------

def _classify(status_code: Optional[int], body: Any, transport_error: bool, extra: str) -> ClassifiedError:
    if transport_error or (status_code is None and body is None):
        return ClassifiedError(ErrorKind.TRANSIENT, TRANSIENT_MESSAGE)

    text = _search_text(body, extra)

    if status_code == 404 or _has_any(text, _NOT_FOUND_MARKERS):
        return ClassifiedError(ErrorKind.NOT_FOUND, NOT_FOUND_MESSAGE)

    if status_code == 429 or _has_any(text, _QUOTA_MARKERS):
        return ClassifiedError(ErrorKind.QUOTA_EXCEEDED, QUOTA_MESSAGE)

    if status_code == 400:
        if _has_any(text, _DUPLICATE_MARKERS):
            return ClassifiedError(ErrorKind.DUPLICATE, DUPLICATE_MESSAGE)
        return ClassifiedError(ErrorKind.VALIDATION, _presentable(body) or VALIDATION_MESSAGE)

    if status_code in (401, 403):
        return ClassifiedError(ErrorKind.UNKNOWN, AUTH_MESSAGE)
    if isinstance(status_code, int) and status_code >= 500:
        return ClassifiedError(ErrorKind.UNKNOWN, SERVER_MESSAGE)
    return ClassifiedError(ErrorKind.UNKNOWN, _presentable(body) or UNKNOWN_MESSAGE)


def classify(status_code: Optional[int], body: Any = None, transport_error: bool = False, extra: str = "") -> ClassifiedError:
    """
    Map (status code, body) to exactly one ErrorKind plus a user-presentable
    message. Never raises.

    Priority (first match wins):
      1) transport failure / no response      -> TRANSIENT
      2) 404 or "not found" in the text       -> NOT_FOUND
      3) 429 or "quota" / "limit exceeded"    -> QUOTA_EXCEEDED
      4) 400 + already-exists wording         -> DUPLICATE
      5) 400 otherwise                        -> VALIDATION
      6) anything else                        -> UNKNOWN
    """
    try:
        if status_code is not None and not isinstance(status_code, int):
            status_code = int(status_code)
        return _classify(status_code, body, transport_error, extra)
    except Exception as e:
        logger.warning("[CLASSIFY] fallback to UNKNOWN for status=%r: %s", status_code, e)
        return ClassifiedError(ErrorKind.UNKNOWN, UNKNOWN_MESSAGE)


def classify_error(exc: BaseException) -> ClassifiedError:
    """Classify any exception raised while talking to the remote catalog."""
    if isinstance(exc, RemoteError):
        return classify(exc.status_code, exc.body, transport_error=exc.transport)
    if isinstance(exc, httpx.TransportError):
        return classify(None, None, transport_error=True)
    return ClassifiedError(ErrorKind.UNKNOWN, _presentable(str(exc)) or UNKNOWN_MESSAGE)
