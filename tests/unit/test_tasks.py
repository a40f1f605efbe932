import pytest

from services.site_audit.enums import AuditStatus
from services.site_audit.runner import BatchResult
from services.site_audit.tasks import audit_tasks, periodic_tasks


def patch_batch(monkeypatch, result):
    enqueued = []

    async def fake_run(audit_id):
        return result

    async def noop():
        return None

    monkeypatch.setattr(audit_tasks, "run_audit_batch", fake_run)
    monkeypatch.setattr(audit_tasks, "dispose_db", noop)
    monkeypatch.setattr(
        audit_tasks, "enqueue_batch", lambda audit_id, root_url=None, countdown=None: enqueued.append((audit_id, countdown))
    )
    return enqueued


def test_batch_task_reenqueues_while_work_remains(monkeypatch):
    result = BatchResult("a1", AuditStatus.BATCH_COMPLETE, batch=1, pages_processed=50, budget_exhausted=True)
    enqueued = patch_batch(monkeypatch, result)

    out = audit_tasks.run_audit_batch_task("a1", "https://x.test")

    assert out["status"] == "batch_complete"
    assert out["continued"]
    assert enqueued == [("a1", 1)]


def test_batch_task_stops_on_terminal_status(monkeypatch):
    enqueued = patch_batch(monkeypatch, BatchResult("a1", AuditStatus.COMPLETED, batch=2, pages_processed=3))

    out = audit_tasks.run_audit_batch_task("a1")

    assert out["status"] == "completed"
    assert not out["continued"]
    assert enqueued == []


def test_batch_task_reraises_errors(monkeypatch):
    async def crash(audit_id):
        raise RuntimeError("db down")

    async def noop():
        return None

    monkeypatch.setattr(audit_tasks, "run_audit_batch", crash)
    monkeypatch.setattr(audit_tasks, "dispose_db", noop)

    with pytest.raises(RuntimeError, match="db down"):
        audit_tasks.run_audit_batch_task("a1")


def test_recover_task_reenqueues_recovered_audits(monkeypatch):
    enqueued = []

    async def recovered():
        return ["a1", "a2"]

    monkeypatch.setattr(periodic_tasks, "_recover", recovered)
    monkeypatch.setattr(periodic_tasks, "enqueue_batch", lambda audit_id: enqueued.append(audit_id))

    out = periodic_tasks.recover_stale_batches()
    assert out == {"status": "completed", "recovered": ["a1", "a2"]}
    assert enqueued == ["a1", "a2"]
