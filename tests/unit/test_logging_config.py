import logging

from config.logging_config import CustomJsonFormatter, SensitiveDataFilter


def record(msg, **extra):
    r = logging.LogRecord("site_audit", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(r, k, v)
    return r


def test_masks_credentials_in_messages():
    f = SensitiveDataFilter()
    r = record("POST with api_key=abc123 and Bearer tok.en.value")
    assert f.filter(r)
    assert "abc123" not in r.msg
    assert "tok.en.value" not in r.msg

    r = record("connecting to postgresql://audit:hunter2@db:5432/site_audit")
    f.filter(r)
    assert "hunter2" not in r.msg
    assert "db:5432/site_audit" in r.msg


def test_plain_messages_untouched():
    r = record("Audit batch 2 started")
    SensitiveDataFilter().filter(r)
    assert r.msg == "Audit batch 2 started"


def test_json_formatter_carries_audit_context():
    formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')
    out = formatter.format(record("Page crawled", audit_id="a1", batch=3, service_name="site_audit"))
    assert '"audit_id": "a1"' in out
    assert '"batch": 3' in out
    assert '"service": "site_audit"' in out
