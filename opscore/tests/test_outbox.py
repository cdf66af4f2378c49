"""
Tests for the notification outbox dispatcher and the HTTP providers.

Provider HTTP traffic is served by httpx.MockTransport; the dispatcher is
driven with an explicit `now` so retry timing is deterministic.
"""
import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest

from opscore.core.exceptions import DeliveryError, ValidationError
from opscore.db.models import OutboxStatus, ensure_aware, utcnow
from opscore.services.email_provider import (
    DryRunEmailProvider, ResendEmailProvider, get_email_provider,
)
from opscore.services.notifications import enqueue_email
from opscore.services.outbox import outbox_summary, run_batch
from opscore.services.storage import StorageClient


def queue_mail(db, tenant, to_email="someone@acme.test", subject="Hello", **kwargs):
    row = enqueue_email(
        db,
        company_id=tenant.company.id,
        to_email=to_email,
        subject=subject,
        body="Body text",
        **kwargs,
    )
    db.commit()
    return row


def failing_for(address):
    """Provider double that fails for one recipient."""
    provider = MagicMock()

    def send(to_email, subject, body):
        if to_email == address:
            raise DeliveryError("Resend error 500: boom")
        return "msg-id"

    provider.send.side_effect = send
    return provider


# ============= DISPATCHER =============

class TestRunBatch:

    def test_dry_run_marks_sent(self, db_session, tenant):
        row = queue_mail(db_session, tenant)

        summary = run_batch(db_session)

        assert summary["dry_run"] is True
        assert summary["processed"] == 1
        assert summary["sent"] == 1
        db_session.refresh(row)
        assert row.status == OutboxStatus.SENT.value
        assert row.sent_at is not None
        assert row.locked_by is None

    def test_retry_then_terminal_failure(self, db_session, tenant):
        """Three queued messages, max_attempts=2, one recipient keeps failing."""
        queue_mail(db_session, tenant, to_email="a@acme.test")
        bad = queue_mail(db_session, tenant, to_email="bad@acme.test")
        queue_mail(db_session, tenant, to_email="c@acme.test")
        provider = failing_for("bad@acme.test")
        now = utcnow()

        first = run_batch(db_session, max_attempts=2, provider=provider, now=now)
        assert (first["processed"], first["sent"], first["failed"]) == (3, 2, 1)
        assert first["dry_run"] is False

        db_session.refresh(bad)
        assert bad.status == OutboxStatus.QUEUED.value
        assert bad.attempts == 1
        assert "boom" in bad.error
        assert ensure_aware(bad.next_attempt_at) == now + timedelta(minutes=10)

        # Not due yet
        idle = run_batch(db_session, max_attempts=2, provider=provider, now=now + timedelta(minutes=5))
        assert idle["processed"] == 0

        later = now + timedelta(minutes=11)
        second = run_batch(db_session, max_attempts=2, provider=provider, now=later)
        assert (second["processed"], second["sent"], second["failed"]) == (1, 0, 1)

        db_session.refresh(bad)
        assert bad.status == OutboxStatus.FAILED.value
        assert bad.attempts == 2

        final = run_batch(db_session, max_attempts=2, provider=provider, now=later + timedelta(hours=1))
        assert final["processed"] == 0

    def test_missing_fields_fail_without_provider(self, db_session, tenant):
        no_recipient = queue_mail(db_session, tenant, to_email=None)
        no_subject = queue_mail(db_session, tenant, subject="")
        provider = MagicMock()

        summary = run_batch(db_session, provider=provider)

        assert summary["failed"] == 2
        provider.send.assert_not_called()
        db_session.refresh(no_recipient)
        db_session.refresh(no_subject)
        assert no_recipient.error == "Missing to_email"
        assert no_subject.error == "Missing subject"
        assert no_recipient.attempts == 1

    def test_unexpected_provider_error_is_contained(self, db_session, tenant):
        row = queue_mail(db_session, tenant)
        ok = queue_mail(db_session, tenant, to_email="fine@acme.test")
        provider = MagicMock()
        provider.send.side_effect = [RuntimeError("socket closed"), "id-2"]

        summary = run_batch(db_session, provider=provider)

        assert summary["sent"] == 1 and summary["failed"] == 1
        db_session.refresh(row)
        db_session.refresh(ok)
        assert row.error.startswith("RuntimeError")
        assert ok.status == OutboxStatus.SENT.value

    def test_batch_limit_and_order(self, db_session, tenant):
        rows = [queue_mail(db_session, tenant, to_email=f"u{i}@acme.test") for i in range(4)]
        provider = MagicMock()

        summary = run_batch(db_session, limit=2, provider=provider)

        assert summary["processed"] == 2
        assert summary["batch_limit"] == 2
        sent_to = [call.args[0] for call in provider.send.call_args_list]
        assert sent_to == ["u0@acme.test", "u1@acme.test"]
        db_session.refresh(rows[3])
        assert rows[3].status == OutboxStatus.QUEUED.value

    def test_lost_claim_is_skipped(self, db_session, tenant):
        queue_mail(db_session, tenant)
        provider = MagicMock()

        with patch("opscore.services.outbox._claim", return_value=False):
            summary = run_batch(db_session, provider=provider)

        assert summary["processed"] == 0
        provider.send.assert_not_called()

    def test_claimed_row_is_not_selected_again(self, db_session, tenant):
        row = queue_mail(db_session, tenant)
        row.status = OutboxStatus.PROCESSING.value
        row.locked_at = utcnow()
        row.locked_by = "other-worker"
        db_session.commit()

        summary = run_batch(db_session, provider=MagicMock())

        assert summary["processed"] == 0
        assert summary["reclaimed"] == 0
        db_session.refresh(row)
        assert row.locked_by == "other-worker"

    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"max_attempts": 0}, {"limit": -5}])
    def test_non_positive_arguments_rejected(self, db_session, tenant, kwargs):
        row = queue_mail(db_session, tenant)

        with pytest.raises(ValidationError):
            run_batch(db_session, **kwargs)

        db_session.refresh(row)
        assert row.status == OutboxStatus.QUEUED.value
        assert row.attempts == 0


class TestLeaseReclaim:

    def _stuck(self, db, tenant, minutes_ago, attempts=0):
        row = queue_mail(db, tenant)
        row.status = OutboxStatus.PROCESSING.value
        row.locked_at = utcnow() - timedelta(minutes=minutes_ago)
        row.locked_by = "crashed-worker"
        row.attempts = attempts
        db.commit()
        return row

    def test_expired_lease_is_requeued(self, db_session, tenant):
        row = self._stuck(db_session, tenant, minutes_ago=20)
        now = utcnow()

        summary = run_batch(db_session, max_attempts=5, provider=MagicMock(), now=now)

        assert summary["reclaimed"] == 1
        assert summary["processed"] == 0
        db_session.refresh(row)
        assert row.status == OutboxStatus.QUEUED.value
        assert row.attempts == 1
        assert row.error == "lease expired"
        assert row.locked_by is None
        assert ensure_aware(row.next_attempt_at) == now + timedelta(minutes=10)

    def test_expired_lease_on_last_attempt_fails(self, db_session, tenant):
        row = self._stuck(db_session, tenant, minutes_ago=20, attempts=4)

        run_batch(db_session, max_attempts=5, provider=MagicMock())

        db_session.refresh(row)
        assert row.status == OutboxStatus.FAILED.value
        assert row.attempts == 5

    def test_live_lease_is_left_alone(self, db_session, tenant):
        row = self._stuck(db_session, tenant, minutes_ago=1)

        summary = run_batch(db_session, provider=MagicMock())

        assert summary["reclaimed"] == 0
        db_session.refresh(row)
        assert row.status == OutboxStatus.PROCESSING.value


class TestOutboxSummary:

    def test_counts_by_status(self, db_session, tenant, other_tenant):
        queue_mail(db_session, tenant)
        queue_mail(db_session, tenant, to_email=None)
        queue_mail(db_session, other_tenant)
        run_batch(db_session, max_attempts=1, provider=MagicMock())
        queue_mail(db_session, tenant)

        assert outbox_summary(db_session, tenant.company.id) == {
            "queued": 1, "processing": 0, "sent": 1, "failed": 1,
        }


# ============= PROVIDERS =============

class TestResendProvider:

    def test_posts_message_and_returns_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "re_123"})

        provider = ResendEmailProvider(
            api_key="re_key", from_email="ops@acme.test",
            api_url="https://mail.test/emails", transport=httpx.MockTransport(handler),
        )

        assert provider.send("x@acme.test", "Subject", "Body") == "re_123"
        assert seen["url"] == "https://mail.test/emails"
        assert seen["auth"] == "Bearer re_key"
        assert seen["payload"] == {
            "from": "ops@acme.test", "to": ["x@acme.test"], "subject": "Subject", "text": "Body",
        }

    def test_non_2xx_raises_delivery_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(422, text="invalid from"))
        provider = ResendEmailProvider(api_key="k", api_url="https://mail.test/emails", transport=transport)

        with pytest.raises(DeliveryError, match="422") as exc_info:
            provider.send("x@acme.test", "S", "B")
        assert exc_info.value.details == {"status_code": 422}

    def test_timeout_raises_delivery_error(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        provider = ResendEmailProvider(
            api_key="k", api_url="https://mail.test/emails", timeout=0.5,
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(DeliveryError, match="timeout"):
            provider.send("x@acme.test", "S", "B")

    def test_factory_prefers_dry_run(self):
        assert isinstance(get_email_provider(dry_run=True), DryRunEmailProvider)
        with patch("opscore.services.email_provider.settings") as fake_settings:
            fake_settings.RESEND_API_KEY = None
            assert isinstance(get_email_provider(dry_run=False), DryRunEmailProvider)
            fake_settings.RESEND_API_KEY = "re_live"
            assert isinstance(get_email_provider(dry_run=False), ResendEmailProvider)


class TestStorageClient:

    def test_relative_signed_url_is_prefixed(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(200, json={"signedURL": "/object/sign/request-attachments/a.pdf?token=t"})

        client = StorageClient(
            base_url="https://files.test/storage/v1/", service_key="svc",
            transport=httpx.MockTransport(handler),
        )
        url = client.create_signed_url("request-attachments", "12/a.pdf", 1800)

        assert url == "https://files.test/storage/v1/object/sign/request-attachments/a.pdf?token=t"
        assert seen["path"] == "/storage/v1/object/sign/request-attachments/12/a.pdf"
        assert seen["body"] == {"expiresIn": 1800}
        assert seen["apikey"] == "svc"

    def test_absolute_signed_url_passes_through(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"signedUrl": "https://cdn.test/a.pdf?t=1"})
        )
        client = StorageClient(base_url="https://files.test", transport=transport)
        assert client.create_signed_url("b", "a.pdf") == "https://cdn.test/a.pdf?t=1"

    def test_refusal_raises_delivery_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, json={"error": "not found"}))
        client = StorageClient(base_url="https://files.test", transport=transport)
        with pytest.raises(DeliveryError, match="404"):
            client.create_signed_url("b", "missing.pdf")
