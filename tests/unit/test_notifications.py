"""
Unit tests for notifiers and the audit log
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import httpx
import pytest

from ingestion.audit import AuditLogger
from ingestion.notifications import LoggingNotifier, NotificationEvent, WebhookNotifier, build_notifier
from ingestion.storage.base import Tables
from models.base import LogLevel


def _event():
    return NotificationEvent(
        event_type="dlq_entry_created",
        severity="error",
        organization_id="T1",
        message="etl_run r1 moved to dead-letter queue",
        details={"dlq_id": "d1"},
    )


class TestNotifiers:
    """Test notification delivery"""

    @pytest.mark.asyncio
    async def test_logging_notifier(self, caplog):
        with caplog.at_level("ERROR"):
            assert await LoggingNotifier().notify(_event())
        assert "dlq_entry_created" in caplog.text

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self):
        received = {}

        def handler(request: httpx.Request) -> httpx.Response:
            received["url"] = str(request.url)
            received["body"] = request.content
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier("https://hooks.example.com/etl", client=client)
            assert await notifier.notify(_event())

        assert received["url"] == "https://hooks.example.com/etl"
        assert b'"event_type":"dlq_entry_created"' in received["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_webhook_failure_returns_false(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            notifier = WebhookNotifier("https://hooks.example.com/etl", client=client)
            assert await notifier.notify(_event()) is False

    def test_build_notifier_from_settings(self):
        with patch("ingestion.notifications.settings") as mock_settings:
            mock_settings.NOTIFICATION_WEBHOOK_URL = None
            assert isinstance(build_notifier(), LoggingNotifier)

            mock_settings.NOTIFICATION_WEBHOOK_URL = "https://hooks.example.com/etl"
            mock_settings.NOTIFICATION_TIMEOUT_SECONDS = 2.0
            assert isinstance(build_notifier(), WebhookNotifier)


class TestAuditLogger:
    """Test audit events"""

    @pytest.mark.asyncio
    async def test_log_and_filter(self, store):
        audit = AuditLogger(store)
        await audit.log_event(LogLevel.INFO, "file_uploaded", "File a.csv uploaded", "T1", file_id="f1")
        await audit.log_event(LogLevel.ERROR, "moved_to_dlq", "Moved", "T1", file_id="f1", run_id="r1")
        await audit.log_event(LogLevel.INFO, "file_uploaded", "File b.csv uploaded", "T2", file_id="f2")

        assert len(await audit.get_audit_trail("T1")) == 2
        errors = await audit.get_audit_trail("T1", level=LogLevel.ERROR)
        assert [e["action"] for e in errors] == ["moved_to_dlq"]
        assert [e["run_id"] for e in await audit.get_audit_trail("T1", run_id="r1")] == ["r1"]

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self, store):
        audit = AuditLogger(store)

        async def broken_insert(table, row):
            raise RuntimeError("audit table unavailable")

        store.insert = broken_insert
        assert await audit.log_event(LogLevel.INFO, "file_uploaded", "x", "T1") is None

    @pytest.mark.asyncio
    async def test_cleanup_old_records(self, store):
        audit = AuditLogger(store)
        old = await audit.log_event(LogLevel.INFO, "file_uploaded", "old", "T1")
        await audit.log_event(LogLevel.INFO, "file_uploaded", "new", "T1")
        store._tables[Tables.AUDIT_LOG][old["id"]]["created_at"] = datetime.utcnow() - timedelta(days=120)

        assert await audit.cleanup_old_audit_records("T1", retain_days=90, dry_run=True) == 1
        assert await audit.cleanup_old_audit_records("T1", retain_days=90) == 1

        remaining = [row["message"] for row in store.rows(Tables.AUDIT_LOG)]
        assert "old" not in remaining
        assert "new" in remaining
