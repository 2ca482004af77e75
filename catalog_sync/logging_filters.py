# --- Global log sanitizers: trim remote HTML error pages, hide bearer tokens ---
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')
_BEARER_RE   = re.compile(r'(?i)(bearer\s+)[A-Za-z0-9._\-~+/=]{8,}')
_TOKEN_KV_RE = re.compile(r'(?i)("?(?:access_token|accessToken|refresh_token)"?\s*[:=]\s*"?)[^",\s}]+')


def strip_tags(s: str) -> str:
    s = _SCRIPT_RE.sub('', s)
    s = _TAG_RE.sub(' ', s)
    return re.sub(r'\s+', ' ', s).strip()


def looks_like_html(s: str) -> bool:
    return bool(s) and bool(_HTML_SIG_RE.search(s))


def summarize_html(s: str, limit: int = 200) -> str:
    title = None
    m = _TITLE_RE.search(s)
    if m:
        title = strip_tags(m.group(1))
    preview = title or strip_tags(s)[:limit]
    return f"{preview} [HTML {len(s)} chars trimmed]"


def redact_tokens(s: str) -> str:
    s = _BEARER_RE.sub(r'\1<redacted>', s)
    return _TOKEN_KV_RE.sub(r'\1<redacted>', s)


class _HtmlTrimFilter(logging.Filter):
    """If a log message contains a large HTML blob, replace it with a short summary."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
            if isinstance(msg, str) and len(msg) > 200 and looks_like_html(msg):
                record.msg = summarize_html(msg)
                record.args = ()
        except Exception:
            pass
        return True


class _TokenRedactFilter(logging.Filter):
    """Never let an Ideasoft access token reach the logs."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
            if isinstance(msg, str):
                clean = redact_tokens(msg)
                if clean != msg:
                    record.msg = clean
                    record.args = ()
        except Exception:
            pass
        return True


def install_log_filters() -> None:
    # install once on common loggers (root + uvicorn family)
    for _name in ("", "uvicorn", "uvicorn.error"):
        lg = logging.getLogger(_name)
        if not any(isinstance(f, _HtmlTrimFilter) for f in lg.filters):
            lg.addFilter(_HtmlTrimFilter())
        if not any(isinstance(f, _TokenRedactFilter) for f in lg.filters):
            lg.addFilter(_TokenRedactFilter())
