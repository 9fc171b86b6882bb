# The single rule engine for maintenance requests: who may create, view,
# assign, move, update and delete a request. Every predicate is pure and
# returns a Decision; nothing in here touches the database.

from enum import Enum


# --- 1. ROLES, STATUSES AND FIELD SETS ---

class Role(str, Enum):
    ADMIN = 'admin'
    MANAGER = 'manager'
    TECHNICIAN = 'technician'


class RequestStatus(str, Enum):
    NEW = 'New'
    IN_PROGRESS = 'In Progress'
    REPAIRED = 'Repaired'
    SCRAP = 'Scrap'


REQUEST_STATUSES = [s.value for s in RequestStatus]
TERMINAL_STATUSES = {RequestStatus.REPAIRED.value, RequestStatus.SCRAP.value}

PRIORITIES = ['Low', 'Medium', 'High', 'Critical']
MAINTENANCE_TYPES = ['Corrective', 'Preventive']

# Fields a patch may touch outside of technician assignment and status.
UPDATABLE_FIELDS = (
    'subject', 'equipment_id', 'category', 'maintenance_type', 'team_id',
    'scheduled_date', 'duration_hours', 'priority', 'company',
    'notes', 'instructions',
)
TECHNICIAN_FIELDS = ('notes', 'instructions')


# --- 2. STATUS TRANSITION GRAPH ---
# Managers are unrestricted outside terminal states; technicians follow these edges.
TECHNICIAN_TRANSITIONS = {
    RequestStatus.NEW.value: (RequestStatus.IN_PROGRESS.value,),
    RequestStatus.IN_PROGRESS.value: (RequestStatus.REPAIRED.value, RequestStatus.NEW.value),
    RequestStatus.REPAIRED.value: (),
    RequestStatus.SCRAP.value: (),
}


class Decision:
    """Outcome of a permission check. Truthy when allowed."""

    __slots__ = ('allowed', 'reason')

    def __init__(self, allowed, reason=None):
        self.allowed = allowed
        self.reason = None if allowed else reason

    @classmethod
    def allow(cls):
        return cls(True)

    @classmethod
    def deny(cls, reason):
        return cls(False, reason)

    def __bool__(self):
        return self.allowed

    def __eq__(self, other):
        if not isinstance(other, Decision):
            return NotImplemented
        return self.allowed == other.allowed and self.reason == other.reason

    def __repr__(self):
        if self.allowed:
            return 'Decision(allowed)'
        return f'Decision(denied, {self.reason!r})'


NOT_AUTHENTICATED = 'User not authenticated'
UNKNOWN_ROLE = 'Unknown role'
ADMIN_UPDATE_DENIED = 'Admins cannot update maintenance requests'


def get_role(user):
    """Returns the user's Role, or None for anonymous users and unknown roles."""
    role = getattr(user, 'role', None)
    if role is None:
        return None
    try:
        return Role(role)
    except ValueError:
        return None


def _same_user(user_id, user):
    return user_id is not None and user_id == getattr(user, 'id', None)


def is_assigned_to(user, request):
    return _same_user(getattr(request, 'technician_id', None), user)


def is_created_by(user, request):
    return _same_user(getattr(request, 'created_by_id', None), user)


def _check_identity(user):
    """Shared prologue: returns (role, None) or (None, denial)."""
    if user is None or getattr(user, 'role', None) is None:
        return None, Decision.deny(NOT_AUTHENTICATED)
    role = get_role(user)
    if role is None:
        return None, Decision.deny(UNKNOWN_ROLE)
    return role, None


# --- 3. PERMISSION PREDICATES ---

def can_create_request(user):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role in (Role.MANAGER, Role.TECHNICIAN):
        return Decision.allow()
    return Decision.deny('Only managers and technicians can create maintenance requests')


def can_view_request(user, request):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role in (Role.ADMIN, Role.MANAGER):
        return Decision.allow()
    if is_assigned_to(user, request) or is_created_by(user, request):
        return Decision.allow()
    return Decision.deny('You can only view requests assigned to you or created by you')


def can_assign_technician(user, request, technician_id=None):
    """Assigning anyone (or nobody) to a request. Managers only, in any status."""
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role == Role.MANAGER:
        return Decision.allow()
    if role == Role.TECHNICIAN:
        return Decision.deny(
            'Technicians cannot assign other technicians. '
            'Use self-assignment for your own tasks.'
        )
    return Decision.deny('Admins cannot assign or work on maintenance requests')


def can_self_assign(user, request):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role != Role.TECHNICIAN:
        return Decision.deny('Only technicians can self-assign tasks')

    # Holding the request already is a denial, not an idempotent success.
    if is_assigned_to(user, request):
        return Decision.deny('You are already assigned to this request')
    if getattr(request, 'technician_id', None) is not None:
        return Decision.deny('This request is already assigned to another technician')

    status = getattr(request, 'status', None)
    if status != RequestStatus.NEW.value:
        return Decision.deny(
            f'Cannot self-assign a request with status "{status}". '
            'Only "New" requests can be self-assigned.'
        )
    return Decision.allow()


def can_move_request_status(user, request, new_status):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if new_status not in REQUEST_STATUSES:
        return Decision.deny(f'Invalid status: {new_status}')
    if role == Role.ADMIN:
        return Decision.deny('Admins cannot modify maintenance request status')

    current = getattr(request, 'status', None)
    if new_status == current:
        if role == Role.TECHNICIAN and not is_assigned_to(user, request):
            return Decision.deny('You can only manage requests assigned to you')
        return Decision.allow()

    blocked = Decision.deny(f'Cannot move request from "{current}" to "{new_status}"')

    if role == Role.MANAGER:
        if current in TERMINAL_STATUSES:
            return blocked
        return Decision.allow()

    if not is_assigned_to(user, request):
        return Decision.deny('You can only manage requests assigned to you')
    if new_status not in TECHNICIAN_TRANSITIONS.get(current, ()):
        return blocked
    return Decision.allow()


def can_update_field(user, request, field):
    """Plain field writes: everything in UPDATABLE_FIELDS, not status or technician."""
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if field not in UPDATABLE_FIELDS:
        return Decision.deny(f'"{field}" is not an updatable field')
    if role == Role.ADMIN:
        return Decision.deny(ADMIN_UPDATE_DENIED)
    if role == Role.MANAGER:
        return Decision.allow()
    if field not in TECHNICIAN_FIELDS:
        return Decision.deny('Technicians can only update notes and instructions')
    if not is_assigned_to(user, request):
        return Decision.deny('You can only update notes and instructions for requests assigned to you')
    return Decision.allow()


def can_scrap_equipment(user, request=None):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role in (Role.ADMIN, Role.MANAGER):
        return Decision.allow()
    return Decision.deny('Only managers and admins can scrap equipment')


def can_delete_request(user, request):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role in (Role.ADMIN, Role.MANAGER):
        return Decision.allow()
    return Decision.deny('Only managers and admins can delete requests')


def can_check_overdue(user):
    role, denied = _check_identity(user)
    if denied is not None:
        return denied
    if role in (Role.ADMIN, Role.MANAGER):
        return Decision.allow()
    return Decision.deny('Only managers and admins can check overdue requests')


# --- 4. PERMISSION PROJECTION ---

def allowed_transitions(user, request):
    """Every status the user may move the request to, identity excluded."""
    current = getattr(request, 'status', None)
    return [
        status for status in REQUEST_STATUSES
        if status != current and can_move_request_status(user, request, status)
    ]


def get_request_permissions(user, request):
    """
    Snapshot of what `user` may do with `request` right now, returned next to
    the request so the frontend can show or hide controls.

    `can_move_status` is true when at least one non-identity transition is
    legal for the user, not just the move to "In Progress".
    """
    targets = allowed_transitions(user, request)
    role = get_role(user)
    return {
        'can_view': can_view_request(user, request).allowed,
        'can_create': can_create_request(user).allowed,
        'can_assign_technician': can_assign_technician(user, request).allowed,
        'can_self_assign': can_self_assign(user, request).allowed,
        'can_move_status': bool(targets),
        'can_update_notes': can_update_field(user, request, 'notes').allowed,
        'can_update_instructions': can_update_field(user, request, 'instructions').allowed,
        'can_scrap_equipment': can_scrap_equipment(user, request).allowed,
        'can_delete': can_delete_request(user, request).allowed,
        'user_role': role.value if role else None,
        'allowed_statuses': targets,
    }
