"""
Tests for the audit trail: snapshots, visibility of entries and rollback.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from opscore.core.exceptions import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from opscore.db.models import AuditLog, RequestEvent, RequestStep, StepStatus, ensure_aware
from opscore.services import workflow
from opscore.services.audit import (
    list_audit_logs, list_events, rollback_audit, snapshot, to_json_value,
)
from opscore.services.kpi import sla_open_steps


def _last_request_update(db, request_id):
    return (
        db.query(AuditLog)
        .filter_by(table_name="requests", action="UPDATE", request_id=request_id)
        .order_by(AuditLog.id.desc())
        .first()
    )


class TestSnapshots:

    def test_json_values(self):
        assert to_json_value(None) is None
        assert to_json_value(Decimal("10")) == "10.00"
        assert to_json_value(StepStatus.QUEUED) == "queued"
        assert to_json_value(datetime(2030, 1, 1, 8, 30)) == "2030-01-01T08:30:00+00:00"
        assert to_json_value(
            datetime(2030, 1, 1, 8, 30, tzinfo=timezone.utc)
        ) == "2030-01-01T08:30:00+00:00"

    def test_snapshot_covers_all_columns(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1")
        data = snapshot(request)
        assert set(data) == {c.key for c in request.__table__.columns}
        assert data["title"] == "New laptop"


class TestAuditLogLines:

    def test_step_changes_name_their_request(self, db_session, tenant, new_request, caplog):
        with caplog.at_level(logging.INFO, logger="audit"):
            request = new_request("emp1", "D1")

        step_line = next(r for r in caplog.records if r.entity_type == "request_steps")
        assert step_line.request_id == request.id
        assert step_line.step_id == request.current_step_id
        assert f"(request {request.id}, step {request.current_step_id})" in step_line.getMessage()

        request_line = next(r for r in caplog.records if r.entity_type == "requests")
        assert request_line.request_id == request.id
        assert request_line.step_id is None
        assert "(request" not in request_line.getMessage()


class TestAuditLogListing:

    def test_admin_reads_whole_company(self, db_session, tenant, new_request):
        new_request("emp1", "D1")
        new_request("emp3", "D3")
        entries = list_audit_logs(db_session, tenant.ctx("admin"), table_name="requests")
        assert len(entries) == 2
        assert entries[0].id > entries[1].id

    def test_employee_reads_only_visible_requests(self, db_session, tenant, new_request):
        mine = new_request("emp1", "D1")
        new_request("emp3", "D3")
        entries = list_audit_logs(db_session, tenant.ctx("emp1"))
        assert entries
        assert {e.request_id for e in entries} == {mine.id}

    def test_paging(self, db_session, tenant, new_request):
        for _ in range(3):
            new_request("emp1", "D1")
        first = list_audit_logs(db_session, tenant.ctx("admin"), table_name="requests", limit=2)
        rest = list_audit_logs(db_session, tenant.ctx("admin"), table_name="requests", limit=2, offset=2)
        assert len(first) == 2 and len(rest) == 1
        assert not {e.id for e in first} & {e.id for e in rest}

    def test_other_tenant_entries_hidden(self, db_session, tenant, other_tenant, new_request):
        new_request("emp1", "D1")
        assert list_audit_logs(db_session, other_tenant.ctx("admin")) == []

    def test_events_newest_first(self, db_session, tenant, new_request):
        request = new_request("mgr1", "D1", assigned_to=tenant.user("emp1").id)
        workflow.add_comment(db_session, tenant.ctx("emp1"), request.id, "On it")
        db_session.commit()
        events = list_events(db_session, request.id)
        assert events[0].event_type == "comment"
        assert {"created", "assigned"} <= {e.event_type for e in events}
        assert len(list_events(db_session, request.id, limit=1)) == 1


class TestRollback:

    def test_restores_previous_values(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1", amount="100", cost_center="CC-1")
        workflow.update_request_details(
            db_session, tenant.ctx("emp1"), request.id,
            title="Changed", amount="250.75", due_at=datetime(2031, 5, 1, tzinfo=timezone.utc),
        )
        db_session.commit()
        entry = _last_request_update(db_session, request.id)

        restored = rollback_audit(db_session, tenant.ctx("admin"), entry.id)
        db_session.commit()

        db_session.refresh(restored)
        assert restored.title == "New laptop"
        assert restored.amount == Decimal("100.00")
        assert restored.due_at is None
        assert restored.cost_center == "CC-1"

        rollback_entry = _last_request_update(db_session, request.id)
        assert rollback_entry.id != entry.id
        assert rollback_entry.changed_by == tenant.user("admin").id
        assert db_session.query(RequestEvent).filter_by(
            request_id=request.id, event_type="rollback"
        ).count() == 1

    def test_refuses_when_fields_drifted(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1")
        workflow.update_request_details(db_session, tenant.ctx("emp1"), request.id, title="Second")
        db_session.commit()
        entry = _last_request_update(db_session, request.id)
        workflow.update_request_details(db_session, tenant.ctx("emp1"), request.id, title="Third")
        db_session.commit()

        with pytest.raises(ConflictError) as exc_info:
            rollback_audit(db_session, tenant.ctx("admin"), entry.id)
        assert exc_info.value.details["fields"] == ["title"]

    def test_rolling_back_the_rollback(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1")
        workflow.update_request_details(db_session, tenant.ctx("emp1"), request.id, priority=1)
        db_session.commit()
        rollback_audit(db_session, tenant.ctx("admin"), _last_request_update(db_session, request.id).id)
        db_session.commit()

        rollback_audit(db_session, tenant.ctx("admin"), _last_request_update(db_session, request.id).id)
        db_session.commit()
        db_session.refresh(request)
        assert request.priority == 1

    def test_due_date_rollback_restores_step_deadlines(self, db_session, tenant, new_request):
        original = datetime(2030, 1, 1, tzinfo=timezone.utc)
        request = new_request("emp1", "D1", due_at=original)
        workflow.update_request_details(
            db_session, tenant.ctx("emp1"), request.id, due_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )
        db_session.commit()

        rollback_audit(db_session, tenant.ctx("admin"), _last_request_update(db_session, request.id).id)
        db_session.commit()

        step = db_session.get(RequestStep, request.current_step_id)
        assert ensure_aware(step.due_at) == original
        now = datetime(2025, 6, 1, tzinfo=timezone.utc)
        row = next(
            r for r in sla_open_steps(db_session, tenant.ctx("admin"), now=now)
            if r["request_id"] == request.id
        )
        assert row["due_at"] == original
        assert row["is_overdue"] is False

    def test_due_date_rollback_to_undated(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1")
        workflow.update_request_details(
            db_session, tenant.ctx("emp1"), request.id, due_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )
        db_session.commit()

        rollback_audit(db_session, tenant.ctx("admin"), _last_request_update(db_session, request.id).id)
        db_session.commit()

        assert db_session.get(RequestStep, request.current_step_id).due_at is None
        row = next(
            r for r in sla_open_steps(db_session, tenant.ctx("admin")) if r["request_id"] == request.id
        )
        assert row["due_at"] is None
        assert row["is_overdue"] is False

    def test_amount_round_trip(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1", amount="1250.5")
        workflow.update_request_details(db_session, tenant.ctx("emp1"), request.id, amount="80")
        db_session.commit()
        edit = _last_request_update(db_session, request.id)
        assert (edit.old_data["amount"], edit.new_data["amount"]) == ("1250.50", "80.00")

        rollback_audit(db_session, tenant.ctx("admin"), edit.id)
        db_session.commit()
        db_session.refresh(request)
        assert request.amount == Decimal("1250.50")

        # the rollback entry itself matches current state, so it rolls back cleanly
        rollback_audit(db_session, tenant.ctx("admin"), _last_request_update(db_session, request.id).id)
        db_session.commit()
        db_session.refresh(request)
        assert request.amount == Decimal("80.00")

    def test_assignment_entry_has_nothing_to_restore(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1")
        workflow.assign_step(
            db_session, tenant.ctx("mgr1"), request.current_step_id, tenant.user("emp1").id
        )
        db_session.commit()
        entry = _last_request_update(db_session, request.id)
        assert entry.new_data["workflow_status"] == "queued"

        with pytest.raises(ValidationError, match="no restorable changes"):
            rollback_audit(db_session, tenant.ctx("admin"), entry.id)

    def test_only_request_updates(self, db_session, tenant, new_request):
        request = new_request("emp1", "D1")
        insert_entry = db_session.query(AuditLog).filter_by(
            table_name="requests", action="INSERT", request_id=request.id
        ).one()
        with pytest.raises(ConflictError):
            rollback_audit(db_session, tenant.ctx("admin"), insert_entry.id)

        step_entry = db_session.query(AuditLog).filter_by(table_name="request_steps").first()
        with pytest.raises(ConflictError):
            rollback_audit(db_session, tenant.ctx("admin"), step_entry.id)

    def test_workflow_only_change_has_nothing_to_restore(self, db_session, tenant, new_request):
        request = new_request("mgr1", "D1", assigned_to=tenant.user("emp1").id)
        step = workflow.current_step(db_session, request)
        workflow.complete_step(db_session, tenant.ctx("emp1"), step.id)
        workflow.approve_step(db_session, tenant.ctx("mgr1"), step.id)
        db_session.commit()

        closure = _last_request_update(db_session, request.id)
        with pytest.raises(ValidationError):
            rollback_audit(db_session, tenant.ctx("admin"), closure.id)

    @pytest.mark.parametrize("role", ["ceo", "mgr1", "emp1"])
    def test_admin_only(self, db_session, tenant, new_request, role):
        request = new_request("emp1", "D1")
        workflow.update_request_details(db_session, tenant.ctx("emp1"), request.id, title="Other")
        db_session.commit()
        entry = _last_request_update(db_session, request.id)
        with pytest.raises(AuthorizationError):
            rollback_audit(db_session, tenant.ctx(role), entry.id)

    def test_entry_of_other_company_is_missing(self, db_session, tenant, other_tenant, new_request):
        request = new_request("emp1", "D1")
        workflow.update_request_details(db_session, tenant.ctx("emp1"), request.id, title="Other")
        db_session.commit()
        entry = _last_request_update(db_session, request.id)
        with pytest.raises(NotFoundError):
            rollback_audit(db_session, other_tenant.ctx("admin"), entry.id)
