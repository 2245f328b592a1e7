import logging

from woocatalog.logging_filters import HtmlTrimFilter, SecretRedactFilter, redact_secrets


def _record(msg, *args):
    return logging.LogRecord("uvicorn.error", logging.WARNING, __file__, 1, msg, args, None)


def test_wordpress_error_page_is_summarised():
    page = "<!DOCTYPE html><html><head><title>Database Error</title></head><body>" + "x" * 500 + "</body></html>"
    rec = _record("[WC] PUT /products/5 failed: %s", page)

    assert HtmlTrimFilter().filter(rec) is True
    assert rec.getMessage().startswith("Database Error [HTML")
    assert "<body>" not in rec.getMessage()


def test_short_messages_pass_untouched():
    rec = _record("[SYNC] shop %s: processed=%d", 1, 10)
    HtmlTrimFilter().filter(rec)
    SecretRedactFilter().filter(rec)
    assert rec.getMessage() == "[SYNC] shop 1: processed=10"


def test_consumer_keys_and_basic_tokens_are_masked():
    rec = _record("client for %s with key %s", "https://shop", "ck_0123456789abcdef0123")
    SecretRedactFilter().filter(rec)
    assert rec.getMessage() == "client for https://shop with key ck_***"

    assert redact_secrets("Authorization: Basic Y2tfMTpjc18x") == "Authorization: Basic ***"
    assert redact_secrets("secret=cs_abcdefgh12345") == "secret=cs_***"


def test_badly_formatted_record_passes_through():
    rec = _record("count=%d", "x")
    assert HtmlTrimFilter().filter(rec) is True
    assert SecretRedactFilter().filter(rec) is True
    assert rec.msg == "count=%d"
    assert rec.args == ("x",)
