# --- Global log sanitizer: WordPress HTML error pages + Woo API credentials -------
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')
# WooCommerce REST keys look like ck_<40 hex> / cs_<40 hex>
_WC_KEY_RE   = re.compile(r'\b(c[ks]_)[0-9a-zA-Z]{8,}')
_BASIC_RE    = re.compile(r'(?i)(Authorization["\']?\s*[:=]\s*["\']?Basic\s+)[A-Za-z0-9+/=]+')


def _strip_tags(s: str) -> str:
    s = _SCRIPT_RE.sub('', s)
    s = _TAG_RE.sub(' ', s)
    return re.sub(r'\s+', ' ', s).strip()


def summarize_html(s: str, limit: int = 200) -> str:
    title = None
    m = _TITLE_RE.search(s)
    if m:
        title = _strip_tags(m.group(1))
    preview = title or _strip_tags(s)[:limit]
    return f"{preview} [HTML {len(s)} chars trimmed]"


def redact_secrets(s: str) -> str:
    s = _WC_KEY_RE.sub(r'\1***', s)
    return _BASIC_RE.sub(r'\1***', s)


class HtmlTrimFilter(logging.Filter):
    """If a log message contains a large HTML blob, replace it with a short summary."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
            if isinstance(msg, str) and len(msg) > 200 and _HTML_SIG_RE.search(msg):
                record.msg = summarize_html(msg)
                record.args = ()
        except Exception:
            # a broken format is left for the handler to report
            pass
        return True


class SecretRedactFilter(logging.Filter):
    """Mask consumer keys/secrets and Basic auth tokens."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
            clean = redact_secrets(msg)
            if clean != msg:
                record.msg = clean
                record.args = ()
        except Exception:
            pass
        return True


_INSTALLED = False


def install() -> None:
    """Attach both filters once to the root + uvicorn loggers."""
    global _INSTALLED
    if _INSTALLED:
        return
    for name in ("", "uvicorn", "uvicorn.error"):
        lg = logging.getLogger(name)
        lg.addFilter(HtmlTrimFilter())
        lg.addFilter(SecretRedactFilter())
    _INSTALLED = True
# --------------------------------------------------------------------------------
