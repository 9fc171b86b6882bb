"""
Tests for the maintenance-request rule engine.

Users and requests are plain namespaces: the predicates only read `id`,
`role`, `status`, `technician_id` and `created_by_id`.
"""

from types import SimpleNamespace

import pytest

from permissions import (
    Role, RequestStatus, Decision,
    can_create_request, can_view_request, can_assign_technician, can_self_assign,
    can_move_request_status, can_update_field, can_scrap_equipment,
    can_delete_request, can_check_overdue, allowed_transitions, get_request_permissions,
)

ADMIN = SimpleNamespace(id=1, role=Role.ADMIN)
MANAGER = SimpleNamespace(id=2, role=Role.MANAGER)
TECH = SimpleNamespace(id=3, role=Role.TECHNICIAN)
OTHER_TECH = SimpleNamespace(id=4, role=Role.TECHNICIAN)


def make_request(status='New', technician_id=None, created_by_id=MANAGER.id):
    return SimpleNamespace(id=10, status=status, technician_id=technician_id, created_by_id=created_by_id)


class TestDecision:

    def test_allowed_decision_is_truthy_and_has_no_reason(self):
        decision = Decision(True, 'ignored')
        assert decision
        assert decision.reason is None

    def test_denied_decision_is_falsy_and_keeps_reason(self):
        decision = Decision.deny('nope')
        assert not decision
        assert decision.reason == 'nope'


class TestIdentity:

    @pytest.mark.parametrize("user", [None, SimpleNamespace(id=9), SimpleNamespace(id=9, role=None)])
    def test_missing_user_or_role_is_not_authenticated(self, user):
        decision = can_view_request(user, make_request())
        assert decision == Decision.deny('User not authenticated')

    def test_unknown_role_is_denied_not_raised(self):
        visitor = SimpleNamespace(id=9, role='visitor')
        assert can_delete_request(visitor, make_request()).reason == 'Unknown role'
        assert can_move_request_status(visitor, make_request(), 'In Progress').reason == 'Unknown role'

    def test_anonymous_user_cannot_keep_a_status(self):
        request = make_request(technician_id=9)
        assert can_move_request_status(None, request, 'New').reason == 'User not authenticated'

    def test_unknown_role_holding_the_request_gets_no_technician_rights(self):
        visitor = SimpleNamespace(id=9, role='visitor')
        request = make_request(technician_id=visitor.id)
        assert can_move_request_status(visitor, request, 'In Progress').reason == 'Unknown role'
        assert can_update_field(visitor, request, 'notes').reason == 'Unknown role'
        assert can_view_request(visitor, request).reason == 'Unknown role'
        assert can_self_assign(visitor, make_request()).reason == 'Unknown role'

    def test_plain_string_roles_are_accepted(self):
        manager = SimpleNamespace(id=2, role='manager')
        assert can_create_request(manager)


class TestCreateAndView:

    def test_only_managers_and_technicians_create(self):
        assert can_create_request(MANAGER)
        assert can_create_request(TECH)
        decision = can_create_request(ADMIN)
        assert not decision
        assert decision.reason == 'Only managers and technicians can create maintenance requests'

    def test_admin_and_manager_view_everything(self):
        request = make_request(technician_id=OTHER_TECH.id, created_by_id=OTHER_TECH.id)
        assert can_view_request(ADMIN, request)
        assert can_view_request(MANAGER, request)

    def test_technician_views_only_assigned_or_created(self):
        assert can_view_request(TECH, make_request(technician_id=TECH.id))
        assert can_view_request(TECH, make_request(created_by_id=TECH.id))

        decision = can_view_request(TECH, make_request(technician_id=OTHER_TECH.id))
        assert decision.reason == 'You can only view requests assigned to you or created by you'

    def test_unassigned_request_created_by_another_technician_is_hidden(self):
        request = make_request(created_by_id=TECH.id)
        assert not can_view_request(OTHER_TECH, request)
        assert can_view_request(TECH, request)


class TestAssignment:

    @pytest.mark.parametrize("status", ['New', 'In Progress', 'Repaired', 'Scrap'])
    def test_manager_assigns_in_any_status(self, status):
        assert can_assign_technician(MANAGER, make_request(status=status, technician_id=TECH.id), OTHER_TECH.id)

    def test_admin_cannot_assign(self):
        decision = can_assign_technician(ADMIN, make_request(), TECH.id)
        assert decision.reason == 'Admins cannot assign or work on maintenance requests'

    def test_technician_is_told_to_self_assign(self):
        decision = can_assign_technician(TECH, make_request(), OTHER_TECH.id)
        assert decision.reason == (
            'Technicians cannot assign other technicians. Use self-assignment for your own tasks.'
        )


class TestSelfAssign:

    def test_technician_self_assigns_unassigned_new_request(self):
        assert can_self_assign(TECH, make_request())

    @pytest.mark.parametrize("user", [ADMIN, MANAGER])
    def test_only_technicians_self_assign(self, user):
        assert can_self_assign(user, make_request()).reason == 'Only technicians can self-assign tasks'

    def test_self_assign_again_is_denied(self):
        decision = can_self_assign(TECH, make_request(technician_id=TECH.id))
        assert decision.reason == 'You are already assigned to this request'

    def test_request_held_by_someone_else_is_denied(self):
        decision = can_self_assign(TECH, make_request(technician_id=OTHER_TECH.id))
        assert decision.reason == 'This request is already assigned to another technician'

    def test_only_new_requests(self):
        decision = can_self_assign(TECH, make_request(status='In Progress'))
        assert decision.reason == (
            'Cannot self-assign a request with status "In Progress". '
            'Only "New" requests can be self-assigned.'
        )


class TestStatusTransitions:

    def test_admin_cannot_move_status(self):
        decision = can_move_request_status(ADMIN, make_request(), 'In Progress')
        assert decision.reason == 'Admins cannot modify maintenance request status'

    def test_invalid_target_is_denied(self):
        decision = can_move_request_status(MANAGER, make_request(), 'Done')
        assert decision.reason == 'Invalid status: Done'

    @pytest.mark.parametrize("current,target", [
        ('New', 'Scrap'),
        ('New', 'Repaired'),
        ('In Progress', 'Scrap'),
        ('In Progress', 'New'),
        ('In Progress', 'Repaired'),
    ])
    def test_manager_moves_freely_out_of_open_states(self, current, target):
        assert can_move_request_status(MANAGER, make_request(status=current), target)

    @pytest.mark.parametrize("user", [MANAGER, TECH])
    @pytest.mark.parametrize("current", ['Repaired', 'Scrap'])
    @pytest.mark.parametrize("target", ['New', 'In Progress', 'Repaired', 'Scrap'])
    def test_terminal_states_never_move(self, user, current, target):
        if target == current:
            return
        request = make_request(status=current, technician_id=TECH.id)
        decision = can_move_request_status(user, request, target)
        assert decision.reason == f'Cannot move request from "{current}" to "{target}"'

    @pytest.mark.parametrize("current,target", [
        ('New', 'In Progress'),
        ('In Progress', 'Repaired'),
        ('In Progress', 'New'),
    ])
    def test_technician_follows_legal_edges(self, current, target):
        assert can_move_request_status(TECH, make_request(status=current, technician_id=TECH.id), target)

    def test_technician_cannot_scrap(self):
        request = make_request(status='In Progress', technician_id=TECH.id)
        decision = can_move_request_status(TECH, request, 'Scrap')
        assert decision.reason == 'Cannot move request from "In Progress" to "Scrap"'

    def test_technician_cannot_skip_to_repaired(self):
        request = make_request(status='New', technician_id=TECH.id)
        assert not can_move_request_status(TECH, request, 'Repaired')

    def test_identity_transition_is_allowed_for_assigned_technician(self):
        request = make_request(status='Repaired', technician_id=TECH.id)
        assert can_move_request_status(TECH, request, 'Repaired')

    def test_technician_must_hold_the_request(self):
        request = make_request(status='New', technician_id=OTHER_TECH.id)
        decision = can_move_request_status(TECH, request, 'In Progress')
        assert decision.reason == 'You can only manage requests assigned to you'

    def test_allowed_transitions_per_role(self):
        in_progress = make_request(status='In Progress', technician_id=TECH.id)
        assert allowed_transitions(TECH, in_progress) == ['New', 'Repaired']
        assert allowed_transitions(MANAGER, in_progress) == ['New', 'Repaired', 'Scrap']
        assert allowed_transitions(ADMIN, in_progress) == []
        assert allowed_transitions(MANAGER, make_request(status='Scrap')) == []


class TestFieldUpdates:

    def test_manager_updates_any_field(self):
        for field in ('subject', 'priority', 'team_id', 'notes', 'instructions'):
            assert can_update_field(MANAGER, make_request(), field)

    def test_admin_updates_nothing(self):
        decision = can_update_field(ADMIN, make_request(), 'notes')
        assert decision.reason == 'Admins cannot update maintenance requests'

    def test_technician_updates_notes_on_assigned_request(self):
        request = make_request(technician_id=TECH.id)
        assert can_update_field(TECH, request, 'notes')
        assert can_update_field(TECH, request, 'instructions')

    def test_technician_cannot_touch_other_fields(self):
        request = make_request(technician_id=TECH.id)
        decision = can_update_field(TECH, request, 'priority')
        assert decision.reason == 'Technicians can only update notes and instructions'

    def test_technician_cannot_update_unassigned_request(self):
        decision = can_update_field(TECH, make_request(created_by_id=TECH.id), 'notes')
        assert decision.reason == 'You can only update notes and instructions for requests assigned to you'

    def test_status_is_not_a_plain_field(self):
        assert not can_update_field(MANAGER, make_request(), 'status')


class TestDeleteScrapOverdue:

    def test_delete(self):
        assert can_delete_request(ADMIN, make_request())
        assert can_delete_request(MANAGER, make_request())
        assert can_delete_request(TECH, make_request()).reason == 'Only managers and admins can delete requests'

    def test_scrap(self):
        assert can_scrap_equipment(ADMIN)
        assert can_scrap_equipment(MANAGER)
        assert can_scrap_equipment(TECH).reason == 'Only managers and admins can scrap equipment'

    def test_check_overdue(self):
        assert can_check_overdue(MANAGER)
        assert not can_check_overdue(TECH)


class TestProjection:

    def test_projection_keys(self):
        permissions = get_request_permissions(MANAGER, make_request())
        assert set(permissions) == {
            'can_view', 'can_create', 'can_assign_technician', 'can_self_assign',
            'can_move_status', 'can_update_notes', 'can_update_instructions',
            'can_scrap_equipment', 'can_delete', 'user_role', 'allowed_statuses',
        }
        assert permissions['user_role'] == 'manager'

    def test_admin_projection(self):
        permissions = get_request_permissions(ADMIN, make_request())
        assert permissions['can_view'] is True
        assert permissions['can_delete'] is True
        assert permissions['can_scrap_equipment'] is True
        assert permissions['can_move_status'] is False
        assert permissions['can_update_notes'] is False
        assert permissions['can_create'] is False

    def test_technician_on_unassigned_new_request(self):
        permissions = get_request_permissions(TECH, make_request(created_by_id=TECH.id))
        assert permissions['can_self_assign'] is True
        assert permissions['can_move_status'] is False
        assert permissions['can_update_notes'] is False

    def test_in_progress_technician_can_still_move(self):
        request = make_request(status='In Progress', technician_id=TECH.id)
        permissions = get_request_permissions(TECH, request)
        assert permissions['can_move_status'] is True
        assert permissions['allowed_statuses'] == ['New', 'Repaired']

    def test_repaired_request_offers_no_moves(self):
        request = make_request(status=RequestStatus.REPAIRED.value, technician_id=TECH.id)
        assert get_request_permissions(MANAGER, request)['can_move_status'] is False
        assert get_request_permissions(TECH, request)['can_move_status'] is False

    def test_anonymous_projection_is_all_false(self):
        permissions = get_request_permissions(None, make_request())
        assert permissions['user_role'] is None
        assert not any(v for k, v in permissions.items() if k.startswith('can_'))
