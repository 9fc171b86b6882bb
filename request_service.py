# Maintenance-request operations: create, read, list, update, delete and the
# overdue sweep. Every decision is delegated to permissions.py; this module
# validates input, applies changes all-or-nothing and runs side effects.

from datetime import datetime
from types import SimpleNamespace

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import SQLAlchemyError

from errors import Unauthenticated, Forbidden, NotFound, ValidationError, Conflict
from models import db, User, Equipment, MaintenanceTeam, MaintenanceRequest, naive_utc, utcnow
from notifications import notify_technician_assigned, notify_creator_repaired, notify_overdue
from permissions import (
    Role, RequestStatus, Decision, REQUEST_STATUSES, PRIORITIES, MAINTENANCE_TYPES,
    UPDATABLE_FIELDS, TECHNICIAN_FIELDS, ADMIN_UPDATE_DENIED, get_role,
    can_create_request, can_view_request, can_assign_technician, can_self_assign,
    can_move_request_status, can_update_field, can_scrap_equipment,
    can_delete_request, can_check_overdue, get_request_permissions,
)

PATCH_KEYS = UPDATABLE_FIELDS + ('technician_id', 'status', 'version')
CREATE_KEYS = UPDATABLE_FIELDS + ('technician_id', 'status', 'request_date')
REQUIRED_ON_CREATE = ('subject', 'equipment_id', 'maintenance_type', 'team_id')
OPEN_STATUSES = (RequestStatus.NEW.value, RequestStatus.IN_PROGRESS.value)

CONFLICT_MESSAGE = 'This maintenance request was modified by someone else. Reload it and try again.'


# --- INPUT VALIDATION ---

def _require_user(acting_user):
    if acting_user is None or not getattr(acting_user, 'is_authenticated', True):
        raise Unauthenticated()
    if getattr(acting_user, 'role', None) is None:
        raise Unauthenticated()
    return acting_user


def parse_id(value, field):
    if isinstance(value, bool):
        raise ValidationError(f'Invalid value for {field}: {value}')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid value for {field}: {value}')


def parse_datetime(value, field):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return naive_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'Invalid date for {field}: {value}')
    return naive_utc(parsed)


def _parse_hours(value, field):
    if value is None or isinstance(value, bool):
        raise ValidationError(f'Invalid value for {field}: {value}')
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid value for {field}: {value}')
    if hours < 0:
        raise ValidationError(f'{field} cannot be negative')
    return hours


def _load_technician(technician_id):
    technician = db.session.get(User, technician_id)
    if technician is None:
        raise ValidationError(f'Technician {technician_id} not found')
    if get_role(technician) != Role.TECHNICIAN:
        raise ValidationError(f'User {technician_id} is not a technician')
    return technician


def _clean_value(key, value):
    """Validates and converts one incoming field. Raises ValidationError."""
    if key == 'status':
        if value not in REQUEST_STATUSES:
            raise ValidationError(f'Invalid status: {value}')
        return value
    if key == 'priority':
        if value not in PRIORITIES:
            raise ValidationError(f'Invalid priority: {value}')
        return value
    if key == 'maintenance_type':
        if value not in MAINTENANCE_TYPES:
            raise ValidationError(f'Invalid maintenance type: {value}')
        return value
    if key in ('scheduled_date', 'request_date'):
        return parse_datetime(value, key)
    if key == 'duration_hours':
        return _parse_hours(value, key)
    if key == 'equipment_id':
        equipment_id = parse_id(value, key)
        if db.session.get(Equipment, equipment_id) is None:
            raise ValidationError(f'Equipment {equipment_id} not found')
        return equipment_id
    if key == 'team_id':
        team_id = parse_id(value, key)
        if db.session.get(MaintenanceTeam, team_id) is None:
            raise ValidationError(f'Maintenance team {team_id} not found')
        return team_id
    if key == 'technician_id':
        if value is None or value == '':
            return None
        technician_id = parse_id(value, key)
        _load_technician(technician_id)
        return technician_id
    if key == 'version':
        return parse_id(value, key)
    if key in ('subject', 'category', 'company'):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f'{key} is required')
        return value.strip()
    # notes, instructions
    if value is not None and not isinstance(value, str):
        raise ValidationError(f'Invalid value for {key}: {value}')
    return value


def normalize_patch(patch, allowed_keys=PATCH_KEYS):
    if patch is None:
        return {}
    if not isinstance(patch, dict):
        raise ValidationError('Request body must be a JSON object')
    cleaned = {}
    for key, value in patch.items():
        if key not in allowed_keys:
            raise ValidationError(f'Unknown field: {key}')
        cleaned[key] = _clean_value(key, value)
    return cleaned


# --- ALL-OR-NOTHING REVIEW ---

def review_patch(acting_user, maintenance_request, changes):
    """
    Runs every permission check a patch needs and returns the list of denial
    reasons, first failure first. An empty list means the whole patch may be
    applied; nothing is written here.
    """
    violations = []

    def record(decision):
        if not decision and decision.reason not in violations:
            violations.append(decision.reason)

    # 1. Technician assignment
    pending_technician = maintenance_request.technician_id
    if 'technician_id' in changes:
        target = changes['technician_id']
        is_self_assign = (
            get_role(acting_user) == Role.TECHNICIAN
            and target is not None
            and target == acting_user.id
        )
        decision = None
        if is_self_assign:
            decision = can_self_assign(acting_user, maintenance_request)
        elif target != maintenance_request.technician_id:
            decision = can_assign_technician(acting_user, maintenance_request, target)
        if decision is not None:
            record(decision)
            if decision:
                pending_technician = target

    # Steps 2 and 3 judge the request as step 1 leaves it.
    pending = SimpleNamespace(
        id=maintenance_request.id,
        status=maintenance_request.status,
        created_by_id=maintenance_request.created_by_id,
        technician_id=pending_technician,
    )

    # 2. Status transition
    new_status = changes.get('status', maintenance_request.status)
    if new_status != maintenance_request.status:
        decision = can_move_request_status(acting_user, pending, new_status)
        if decision and new_status == RequestStatus.SCRAP.value:
            decision = can_scrap_equipment(acting_user, pending)
        record(decision)

    # 3. Plain fields
    fields = [key for key in changes if key in UPDATABLE_FIELDS]
    for field in sorted(fields, key=lambda f: f in TECHNICIAN_FIELDS):
        record(can_update_field(acting_user, pending, field))

    # Admins may not touch a request at all, even with values it already holds.
    if changes and get_role(acting_user) == Role.ADMIN:
        record(Decision.deny(ADMIN_UPDATE_DENIED))

    return violations


# --- SIDE EFFECTS ---

def _scrap_equipment(maintenance_request):
    """Marks the request's equipment as scrapped. Best effort; never raises."""
    try:
        equipment = db.session.get(Equipment, maintenance_request.equipment_id)
        if equipment is None:
            current_app.logger.warning(
                "Request #%s was scrapped but equipment %s no longer exists",
                maintenance_request.id, maintenance_request.equipment_id
            )
            return False
        equipment.status = 'Scrapped'
        equipment.scrap_date = naive_utc(utcnow())
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Could not mark equipment %s as scrapped for request #%s",
            maintenance_request.equipment_id, maintenance_request.id
        )
        return False
    current_app.logger.info("Equipment %s scrapped via request #%s", equipment.id, maintenance_request.id)
    return True


def _commit():
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise Conflict(CONFLICT_MESSAGE)
    except SQLAlchemyError:
        db.session.rollback()
        raise


# --- CORE OPERATIONS ---

def get_permissions(acting_user, maintenance_request):
    return get_request_permissions(acting_user, maintenance_request)


def _get_request_or_404(request_id):
    maintenance_request = db.session.get(MaintenanceRequest, parse_id(request_id, 'id'))
    if maintenance_request is None:
        raise NotFound('Maintenance request not found')
    return maintenance_request


def create_request(acting_user, data):
    acting_user = _require_user(acting_user)
    decision = can_create_request(acting_user)
    if not decision:
        raise Forbidden(decision.reason)

    fields = normalize_patch(data, allowed_keys=CREATE_KEYS)
    missing = [key for key in REQUIRED_ON_CREATE if fields.get(key) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    equipment = db.session.get(Equipment, fields['equipment_id'])

    # Only managers may pre-assign; anyone else's technician is dropped.
    technician_id = fields.get('technician_id')
    if technician_id is not None and get_role(acting_user) != Role.MANAGER:
        current_app.logger.info(
            "Ignoring technician %s on request created by non-manager %s", technician_id, acting_user.id
        )
        technician_id = None

    new_request = MaintenanceRequest(
        subject=fields['subject'],
        created_by_id=acting_user.id,
        equipment_id=equipment.id,
        category=fields.get('category') or equipment.category,
        maintenance_type=fields['maintenance_type'],
        team_id=fields['team_id'],
        technician_id=technician_id,
        scheduled_date=fields.get('scheduled_date'),
        duration_hours=fields.get('duration_hours', 0),
        priority=fields.get('priority') or 'Medium',
        company=fields.get('company') or equipment.company,
        status=RequestStatus.NEW.value,
        notes=fields.get('notes'),
        instructions=fields.get('instructions'),
    )
    if fields.get('request_date'):
        new_request.request_date = fields['request_date']

    db.session.add(new_request)
    _commit()
    current_app.logger.info("Request #%s created by user %s", new_request.id, acting_user.id)

    if new_request.technician_id:
        notify_technician_assigned(new_request)
    return new_request


def get_request_by_id(acting_user, request_id):
    acting_user = _require_user(acting_user)
    maintenance_request = _get_request_or_404(request_id)
    decision = can_view_request(acting_user, maintenance_request)
    if not decision:
        raise Forbidden(decision.reason)
    return maintenance_request, get_request_permissions(acting_user, maintenance_request)


def list_requests(acting_user, status=None):
    """Admins and managers see everything; technicians see what they hold or raised."""
    acting_user = _require_user(acting_user)
    query = MaintenanceRequest.query
    if get_role(acting_user) == Role.TECHNICIAN:
        query = query.filter(db.or_(
            MaintenanceRequest.technician_id == acting_user.id,
            MaintenanceRequest.created_by_id == acting_user.id
        ))
    elif get_role(acting_user) is None:
        raise Forbidden('Unknown role')
    if status is not None:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f'Invalid status: {status}')
        query = query.filter(MaintenanceRequest.status == status)
    return query.order_by(MaintenanceRequest.created_at.desc(), MaintenanceRequest.id.desc()).all()


def update_request(acting_user, request_id, patch):
    acting_user = _require_user(acting_user)
    maintenance_request = _get_request_or_404(request_id)

    changes = normalize_patch(patch)
    expected_version = changes.pop('version', None)
    if expected_version is not None and expected_version != maintenance_request.version:
        raise Conflict(CONFLICT_MESSAGE)

    violations = review_patch(acting_user, maintenance_request, changes)
    if violations:
        current_app.logger.info(
            "Update of request #%s by user %s denied: %s", maintenance_request.id, acting_user.id, violations[0]
        )
        raise Forbidden(violations[0], violations)

    old_status = maintenance_request.status
    old_technician_id = maintenance_request.technician_id

    for key, value in changes.items():
        setattr(maintenance_request, key, value)
    _commit()

    if maintenance_request.technician_id is not None and maintenance_request.technician_id != old_technician_id:
        notify_technician_assigned(maintenance_request)
    if maintenance_request.status != old_status:
        current_app.logger.info(
            "Request #%s moved from '%s' to '%s' by user %s",
            maintenance_request.id, old_status, maintenance_request.status, acting_user.id
        )
        if maintenance_request.status == RequestStatus.REPAIRED.value:
            notify_creator_repaired(maintenance_request)
        elif maintenance_request.status == RequestStatus.SCRAP.value:
            _scrap_equipment(maintenance_request)

    return maintenance_request, get_request_permissions(acting_user, maintenance_request)


def delete_request(acting_user, request_id):
    acting_user = _require_user(acting_user)
    maintenance_request = _get_request_or_404(request_id)
    decision = can_delete_request(acting_user, maintenance_request)
    if not decision:
        raise Forbidden(decision.reason)

    request_id = maintenance_request.id
    db.session.delete(maintenance_request)
    _commit()
    current_app.logger.info("Request #%s deleted by user %s", request_id, acting_user.id)
    return {'message': 'Maintenance request removed'}


def check_overdue_requests(acting_user=None, now=None):
    """
    Notifies the technician of every open request whose scheduled date has
    passed. Without an acting user the sweep runs as the system (CLI).
    """
    if acting_user is not None:
        acting_user = _require_user(acting_user)
        decision = can_check_overdue(acting_user)
        if not decision:
            raise Forbidden(decision.reason)

    now = naive_utc(now or utcnow())
    overdue = MaintenanceRequest.query.filter(
        MaintenanceRequest.status.in_(OPEN_STATUSES),
        MaintenanceRequest.scheduled_date.isnot(None),
        MaintenanceRequest.scheduled_date < now
    ).all()

    notified = 0
    for maintenance_request in overdue:
        if maintenance_request.technician_id and notify_overdue(maintenance_request):
            notified += 1

    return {
        'checked': len(overdue),
        'notified': notified,
        'message': f'Checked {len(overdue)} overdue requests, sent {notified} notifications',
    }
