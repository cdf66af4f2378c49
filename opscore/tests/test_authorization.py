"""
Tests for the authorization predicate, caller loading and row visibility.
"""
import pytest

from opscore.core.exceptions import AuthorizationError, NotFoundError
from opscore.core.rbac import (
    Action, CallerContext, Role, can_act_on, load_caller_context, require, resolve_membership,
)
from opscore.db.models import Membership
from opscore.services import workflow
from opscore.services.visibility import (
    can_view_request, get_visible_request, visible_requests_query,
)


class TestCanActOn:
    """Role x action matrix over the tenant's three departments."""

    @pytest.mark.parametrize("role", ["admin", "ceo"])
    def test_company_wide_roles_manage_everywhere(self, tenant, role):
        caller = tenant.ctx(role)
        for code in ("D1", "D2", "D3"):
            assert can_act_on(caller, tenant.dept(code), Action.MANAGE)
            assert can_act_on(caller, tenant.dept(code), Action.PREASSIGN)
            assert can_act_on(caller, tenant.dept(code), Action.SUBMIT)
            assert can_act_on(caller, tenant.dept(code), Action.VIEW)

    def test_manager_manages_own_department_only(self, tenant):
        caller = tenant.ctx("mgr1")
        assert can_act_on(caller, tenant.dept("D1"), Action.MANAGE)
        assert can_act_on(caller, tenant.dept("D1"), Action.PREASSIGN)
        assert not can_act_on(caller, tenant.dept("D2"), Action.MANAGE)
        assert not can_act_on(caller, tenant.dept("D2"), Action.PREASSIGN)

    def test_employee_never_manages(self, tenant):
        caller = tenant.ctx("emp1")
        assert not can_act_on(caller, tenant.dept("D1"), Action.MANAGE)
        assert not can_act_on(caller, tenant.dept("D1"), Action.PREASSIGN)

    def test_submit_scope(self, tenant):
        caller = tenant.ctx("emp1")
        assert can_act_on(caller, tenant.dept("D1"), Action.SUBMIT)
        assert can_act_on(caller, tenant.dept("D2"), Action.SUBMIT)
        assert not can_act_on(caller, tenant.dept("D3"), Action.SUBMIT)
        assert can_act_on(tenant.ctx("emp3"), tenant.dept("D3"), Action.SUBMIT)

    def test_administer_is_admin_only(self, tenant):
        assert can_act_on(tenant.ctx("admin"), None, Action.ADMINISTER)
        for key in ("ceo", "mgr1", "emp1"):
            assert not can_act_on(tenant.ctx(key), None, Action.ADMINISTER)

    def test_foreign_department_is_never_actionable(self, tenant, other_tenant):
        foreign = other_tenant.dept("D1")
        for key in ("admin", "ceo", "mgr1", "emp1"):
            for action in (Action.VIEW, Action.SUBMIT, Action.MANAGE, Action.PREASSIGN):
                assert not can_act_on(tenant.ctx(key), foreign, action)

    def test_caller_without_membership(self, tenant):
        caller = CallerContext(user_id=999, company_id=None, role=None, department_id=None)
        assert not can_act_on(caller, tenant.dept("D1"), Action.SUBMIT)

    def test_require_raises(self, tenant):
        with pytest.raises(AuthorizationError, match="manage"):
            require(tenant.ctx("emp1"), tenant.dept("D1"), Action.MANAGE)


class TestCallerContext:

    def test_loads_role_and_department(self, tenant):
        caller = tenant.ctx("mgr2")
        assert caller.role == Role.MANAGER
        assert caller.department_id == tenant.dept("D2").id
        assert caller.company_id == tenant.company.id
        assert not caller.is_company_wide

    def test_inactive_user_is_rejected(self, db_session, tenant):
        user = tenant.user("emp1")
        user.is_active = False
        db_session.commit()
        with pytest.raises(AuthorizationError):
            load_caller_context(db_session, user.id)

    def test_unknown_user_is_rejected(self, db_session, tenant):
        with pytest.raises(AuthorizationError):
            load_caller_context(db_session, 424242)

    def test_active_company_picks_membership(self, db_session, tenant, other_tenant):
        user = tenant.user("emp1")
        db_session.add(Membership(
            company_id=other_tenant.company.id,
            user_id=user.id,
            role=Role.MANAGER.value,
            department_id=other_tenant.dept("D2").id,
        ))
        db_session.commit()

        assert resolve_membership(db_session, user).company_id == tenant.company.id

        user.active_company_id = other_tenant.company.id
        db_session.commit()
        caller = load_caller_context(db_session, user.id)
        assert caller.company_id == other_tenant.company.id
        assert caller.role == Role.MANAGER

    def test_ambiguous_memberships_resolve_to_none(self, db_session, tenant, other_tenant):
        user = tenant.user("emp1")
        db_session.add(Membership(
            company_id=other_tenant.company.id,
            user_id=user.id,
            role=Role.EMPLOYEE.value,
            department_id=other_tenant.dept("D1").id,
        ))
        user.active_company_id = None
        db_session.commit()
        assert resolve_membership(db_session, user) is None


class TestVisibility:

    def _visible_ids(self, db, caller):
        return {r.id for r in visible_requests_query(db, caller).all()}

    def test_employee_sees_own_and_assigned(self, db_session, tenant, new_request):
        own = new_request("emp1", "D2")
        assigned = new_request("mgr1", "D1", assigned_to=tenant.user("emp1").id)
        unrelated = new_request("emp1b", "D1")

        visible = self._visible_ids(db_session, tenant.ctx("emp1"))
        assert own.id in visible
        assert assigned.id in visible
        assert unrelated.id not in visible

    def test_manager_sees_department_traffic(self, db_session, tenant, new_request):
        into_d2 = new_request("emp1", "D2")
        inside_d1 = new_request("emp1", "D1")
        own = new_request("mgr2", "D1")

        visible = self._visible_ids(db_session, tenant.ctx("mgr2"))
        assert into_d2.id in visible
        assert own.id in visible
        assert inside_d1.id not in visible

    def test_visibility_survives_forwarding(self, db_session, tenant, new_request):
        request = new_request("mgr1", "D1", assigned_to=tenant.user("emp1").id)
        step = workflow.current_step(db_session, request)
        workflow.complete_step(db_session, tenant.ctx("emp1"), step.id)
        workflow.approve_step(db_session, tenant.ctx("mgr1"), step.id, next_department_id=tenant.dept("D2").id)
        db_session.commit()

        # D1 manager keeps seeing the request that left the department
        assert can_view_request(db_session, tenant.ctx("mgr1"), request)
        assert can_view_request(db_session, tenant.ctx("mgr2"), request)
        assert can_view_request(db_session, tenant.ctx("emp1"), request)

    @pytest.mark.parametrize("role", ["admin", "ceo"])
    def test_company_wide_sees_everything(self, db_session, tenant, new_request, role):
        ids = {new_request("emp1", "D1").id, new_request("emp3", "D3").id}
        assert ids <= self._visible_ids(db_session, tenant.ctx(role))

    def test_other_tenant_sees_nothing(self, db_session, tenant, other_tenant, new_request):
        request = new_request("emp1", "D1")
        assert self._visible_ids(db_session, other_tenant.ctx("admin")) == set()
        with pytest.raises(NotFoundError):
            get_visible_request(db_session, other_tenant.ctx("admin"), request.id)
