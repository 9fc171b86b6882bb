import os
from functools import wraps
from dotenv import load_dotenv
from datetime import datetime, timezone
from flask import Flask, request, jsonify
from flask_login import LoginManager, login_required, current_user, user_logged_in
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import (
    db, bcrypt, User, Equipment, MaintenanceTeam, WorkCenter, NotificationLog,
    EQUIPMENT_STATUSES, naive_utc, utcnow,
)
from notifications import mail
from errors import GearGuardError, Unauthenticated, Forbidden, NotFound, ValidationError, Conflict
from permissions import Role
import request_service

load_dotenv()

app = Flask(__name__)

app.config['SECRET_KEY'] = os.getenv("SECRET_KEY", "dev-secret-change-me")
app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv("DATABASE_URI", "sqlite:///gearguard.db")
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['TOKEN_MAX_AGE'] = int(os.getenv("TOKEN_MAX_AGE", 86400))
app.config['FRONTEND_URL'] = os.getenv("FRONTEND_URL", "http://localhost:5173")
app.config['BCRYPT_LOG_ROUNDS'] = int(os.getenv("BCRYPT_LOG_ROUNDS", 12))

# --- MAIL CONFIGURATION ---
app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 465))
app.config['MAIL_USE_TLS'] = os.getenv('MAIL_USE_TLS', 'false').lower() in ['true', '1']
app.config['MAIL_USE_SSL'] = os.getenv('MAIL_USE_SSL', 'true').lower() in ['true', '1']
app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_DEFAULT_SENDER', 'gearguard@localhost')
app.config['MAIL_SUPPRESS_SEND'] = os.getenv('MAIL_SUPPRESS_SEND', 'false').lower() in ['true', '1']

# --- LOGGING ---
app.logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())

db.init_app(app)
bcrypt.init_app(app)
mail.init_app(app)

login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    """Authenticates API calls carrying 'Authorization: Bearer <token>'."""
    header = req.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        return None
    user = User.verify_auth_token(token.strip())
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    raise Unauthenticated('Not authorized, token missing or invalid')


@user_logged_in.connect_via(app)
def on_user_logged_in(sender, user):
    """
    Signal listener that runs every time a user successfully logs in.
    Updates the `last_login` timestamp for the user.
    """
    try:
        user.last_login = datetime.now(timezone.utc)
        db.session.commit()
    except SQLAlchemyError:
        # A failed timestamp update must not block the login itself
        db.session.rollback()
        app.logger.exception("Error updating last_login for user %s", user.id)


def role_required(*roles):
    """Route-level gate: the current user's role must be one of `roles`."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if current_user.role not in roles:
                raise Forbidden('Access denied: insufficient permissions')
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# --- CUSTOM ERROR HANDLERS ---

@app.errorhandler(GearGuardError)
def handle_gearguard_error(error):
    # Routes may have set attributes before validation failed.
    db.session.rollback()
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(404)
def not_found_error(error):
    return jsonify({'message': 'Resource not found'}), 404


@app.errorhandler(405)
def method_not_allowed_error(error):
    return jsonify({'message': 'Method not allowed'}), 405


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return jsonify({'message': 'Server Error'}), 500


# --- AUTH ROUTES ---

@app.route('/api/auth/login', methods=['POST'])
def login():
    data = get_json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        raise ValidationError('Email and password are required')

    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not user.check_password(password):
        raise Unauthenticated('Invalid email or password')

    user_logged_in.send(app, user=user)
    return jsonify({
        'access_token': user.get_auth_token(),
        'token_type': 'bearer',
        'user': user.to_dict()
    })


@app.route('/api/auth/me')
@login_required
def who_am_i():
    return jsonify(current_user.to_dict())


@app.route('/api/users/technicians')
@login_required
def api_get_technicians():
    technicians = User.query.filter(
        User.role == Role.TECHNICIAN,
        User.is_active == True
    ).order_by(User.first_name).all()
    return jsonify([{'id': tech.id, 'name': tech.full_name} for tech in technicians])


# --- MAINTENANCE REQUEST ROUTES ---

def serialize_request(maintenance_request, permissions=None):
    data = maintenance_request.to_dict()
    data['permissions'] = permissions if permissions is not None else \
        request_service.get_permissions(current_user, maintenance_request)
    return data


@app.route('/api/requests', methods=['GET'])
@login_required
def list_requests():
    requests_list = request_service.list_requests(current_user, status=request.args.get('status'))
    return jsonify([serialize_request(r) for r in requests_list])


@app.route('/api/requests', methods=['POST'])
@login_required
def create_request():
    new_request = request_service.create_request(current_user, get_json_body())
    return jsonify(serialize_request(new_request)), 201


@app.route('/api/requests/<int:request_id>', methods=['GET'])
@login_required
def get_request(request_id):
    maintenance_request, permissions = request_service.get_request_by_id(current_user, request_id)
    return jsonify(serialize_request(maintenance_request, permissions))


@app.route('/api/requests/<int:request_id>', methods=['PUT', 'PATCH'])
@login_required
def update_request(request_id):
    maintenance_request, permissions = request_service.update_request(current_user, request_id, get_json_body())
    return jsonify(serialize_request(maintenance_request, permissions))


@app.route('/api/requests/<int:request_id>', methods=['DELETE'])
@login_required
def delete_request(request_id):
    return jsonify(request_service.delete_request(current_user, request_id))


@app.route('/api/requests/check-overdue', methods=['POST'])
@login_required
def check_overdue_requests():
    return jsonify(request_service.check_overdue_requests(current_user))


# --- USER, EQUIPMENT, TEAM AND WORK CENTER ROUTES ---

def _required(data, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _commit_or_conflict(message):
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict(message)


def _get_or_404(model, object_id, message):
    instance = db.session.get(model, object_id)
    if instance is None:
        raise NotFound(message)
    return instance


def _set_floats(instance, data, fields):
    for field in fields:
        if data.get(field) is not None:
            try:
                setattr(instance, field, float(data[field]))
            except (TypeError, ValueError):
                raise ValidationError(f'Invalid value for {field}: {data[field]}')


def _set_optional_id(instance, data, field):
    if field in data:
        value = data[field]
        setattr(instance, field, request_service.parse_id(value, field) if value not in (None, '') else None)


@app.route('/api/users', methods=['GET'])
@login_required
def api_get_users():
    users = User.query.order_by(User.first_name, User.last_name).all()
    return jsonify([user.to_dict() for user in users])


@app.route('/api/users', methods=['POST'])
@login_required
@role_required(Role.ADMIN)
def api_add_user():
    data = get_json_body()
    _required(data, 'email', 'password', 'first_name', 'last_name')
    email = data['email'].strip().lower()
    try:
        role = Role(data.get('role') or Role.TECHNICIAN.value)
    except ValueError:
        raise ValidationError(f"Invalid role: {data.get('role')}")

    username = (data.get('username') or email.split('@')[0]).strip()
    if User.query.filter(db.or_(User.email == email, User.username == username)).first():
        raise Conflict('User already exists')

    new_user = User(
        username=username,
        email=email,
        first_name=data['first_name'],
        last_name=data['last_name'],
        role=role
    )
    new_user.set_password(data['password'])
    db.session.add(new_user)
    _commit_or_conflict('User already exists')
    app.logger.info("User %s (%s) created by admin %s", new_user.id, role.value, current_user.id)
    return jsonify(new_user.to_dict()), 201


EQUIPMENT_TEXT_FIELDS = ('name', 'category', 'serial_number', 'department', 'company',
                         'location', 'work_center', 'description')


@app.route('/api/equipment', methods=['GET'])
@login_required
def api_get_equipment():
    equipment_list = Equipment.query.order_by(Equipment.name).all()
    return jsonify([eq.to_dict() for eq in equipment_list])


@app.route('/api/equipment/<int:equip_id>', methods=['GET'])
@login_required
def api_view_equipment(equip_id):
    return jsonify(_get_or_404(Equipment, equip_id, 'Equipment not found').to_dict())


@app.route('/api/equipment', methods=['POST'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_add_equipment():
    data = get_json_body()
    _required(data, 'name', 'category', 'company')
    new_equipment = Equipment(**{field: data.get(field) for field in EQUIPMENT_TEXT_FIELDS})
    _set_optional_id(new_equipment, data, 'technician_id')
    _set_optional_id(new_equipment, data, 'maintenance_team_id')
    db.session.add(new_equipment)
    _commit_or_conflict('Equipment could not be saved')
    return jsonify(new_equipment.to_dict()), 201


@app.route('/api/equipment/<int:equip_id>', methods=['PUT', 'PATCH'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_edit_equipment(equip_id):
    equipment = _get_or_404(Equipment, equip_id, 'Equipment not found')
    data = get_json_body()

    for field in EQUIPMENT_TEXT_FIELDS:
        if field in data:
            setattr(equipment, field, data[field])
    for field in ('name', 'category', 'company'):
        if not getattr(equipment, field):
            raise ValidationError(f'{field} is required')
    _set_optional_id(equipment, data, 'technician_id')
    _set_optional_id(equipment, data, 'maintenance_team_id')
    for field in ('scrap_date', 'warranty_expires_at'):
        if field in data:
            setattr(equipment, field, request_service.parse_datetime(data[field], field))

    if 'status' in data:
        if data['status'] not in EQUIPMENT_STATUSES:
            raise ValidationError(f"Invalid equipment status: {data['status']}")
        equipment.status = data['status']
        if equipment.status == 'Scrapped' and equipment.scrap_date is None:
            equipment.scrap_date = naive_utc(utcnow())

    _commit_or_conflict('Equipment could not be saved')
    return jsonify(equipment.to_dict())


@app.route('/api/equipment/<int:equip_id>', methods=['DELETE'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_delete_equipment(equip_id):
    equipment = _get_or_404(Equipment, equip_id, 'Equipment not found')
    if equipment.requests:
        raise Conflict('Equipment has maintenance requests and cannot be removed')
    db.session.delete(equipment)
    db.session.commit()
    return jsonify({'message': 'Equipment removed'})


@app.route('/api/teams', methods=['GET'])
@login_required
def api_get_teams():
    teams = MaintenanceTeam.query.order_by(MaintenanceTeam.name).all()
    return jsonify([team.to_dict() for team in teams])


@app.route('/api/teams/<int:team_id>', methods=['GET'])
@login_required
def api_view_team(team_id):
    return jsonify(_get_or_404(MaintenanceTeam, team_id, 'Maintenance team not found').to_dict())


def _ensure_unique_team_name(company, name, team_id=None):
    existing = MaintenanceTeam.query.filter_by(company=company, name=name).first()
    if existing is not None and existing.id != team_id:
        raise Conflict(f'A team with the name "{name}" already exists.')


def _set_team_members(team, member_ids):
    team.members = User.query.filter(User.id.in_(member_ids)).all() if member_ids else []


@app.route('/api/teams', methods=['POST'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_add_team():
    data = get_json_body()
    _required(data, 'name', 'company')
    _ensure_unique_team_name(data['company'], data['name'])

    new_team = MaintenanceTeam(
        name=data['name'],
        company=data['company'],
        specialty=data.get('specialty')
    )
    _set_optional_id(new_team, data, 'leader_id')
    _set_team_members(new_team, data.get('member_ids'))

    db.session.add(new_team)
    _commit_or_conflict('Team could not be saved')
    return jsonify(new_team.to_dict()), 201


@app.route('/api/teams/<int:team_id>', methods=['PUT', 'PATCH'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_edit_team(team_id):
    team = _get_or_404(MaintenanceTeam, team_id, 'Maintenance team not found')
    data = get_json_body()

    name = data.get('name') or team.name
    company = data.get('company') or team.company
    if (name, company) != (team.name, team.company):
        _ensure_unique_team_name(company, name, team.id)
    team.name, team.company = name, company
    if 'specialty' in data:
        team.specialty = data['specialty'] or None
    _set_optional_id(team, data, 'leader_id')
    if 'member_ids' in data:
        _set_team_members(team, data['member_ids'])

    _commit_or_conflict('Team could not be saved')
    return jsonify(team.to_dict())


@app.route('/api/teams/<int:team_id>', methods=['DELETE'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_delete_team(team_id):
    team = _get_or_404(MaintenanceTeam, team_id, 'Maintenance team not found')
    if team.requests:
        raise Conflict('Maintenance team has maintenance requests and cannot be removed')
    db.session.delete(team)
    db.session.commit()
    return jsonify({'message': 'Maintenance team removed'})


WORK_CENTER_FLOATS = ('cost_per_hour', 'capacity', 'time_efficiency', 'oee_target')


@app.route('/api/workcenters', methods=['GET'])
@login_required
def api_get_workcenters():
    work_centers = WorkCenter.query.order_by(WorkCenter.name).all()
    return jsonify([wc.to_dict() for wc in work_centers])


@app.route('/api/workcenters/<int:wc_id>', methods=['GET'])
@login_required
def api_view_workcenter(wc_id):
    return jsonify(_get_or_404(WorkCenter, wc_id, 'Work center not found').to_dict())


@app.route('/api/workcenters', methods=['POST'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_add_workcenter():
    data = get_json_body()
    _required(data, 'name', 'code', 'company')
    new_wc = WorkCenter(
        name=data['name'],
        code=data['code'],
        tag=data.get('tag'),
        alternative_workcenter=data.get('alternative_workcenter'),
        company=data['company']
    )
    _set_floats(new_wc, data, WORK_CENTER_FLOATS)
    db.session.add(new_wc)
    _commit_or_conflict(f'A work center with code "{data["code"]}" already exists.')
    return jsonify(new_wc.to_dict()), 201


@app.route('/api/workcenters/<int:wc_id>', methods=['PUT', 'PATCH'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_edit_workcenter(wc_id):
    work_center = _get_or_404(WorkCenter, wc_id, 'Work center not found')
    data = get_json_body()

    code = data.get('code') or work_center.code
    if code != work_center.code and WorkCenter.query.filter_by(code=code).first():
        raise Conflict(f'A work center with code "{code}" already exists.')
    work_center.code = code
    work_center.name = data.get('name') or work_center.name
    work_center.company = data.get('company') or work_center.company
    for field in ('tag', 'alternative_workcenter'):
        if field in data:
            setattr(work_center, field, data[field])
    _set_floats(work_center, data, WORK_CENTER_FLOATS)

    _commit_or_conflict(f'A work center with code "{code}" already exists.')
    return jsonify(work_center.to_dict())


@app.route('/api/workcenters/<int:wc_id>', methods=['DELETE'])
@login_required
@role_required(Role.ADMIN, Role.MANAGER)
def api_delete_workcenter(wc_id):
    work_center = _get_or_404(WorkCenter, wc_id, 'Work center not found')
    db.session.delete(work_center)
    db.session.commit()
    return jsonify({'message': 'Work center removed'})


# --- NOTIFICATION ROUTES ---

@app.route('/api/notifications')
@login_required
def notification_logs():
    logs = NotificationLog.query.filter_by(user_id=current_user.id) \
        .order_by(NotificationLog.created_at.desc(), NotificationLog.id.desc()).all()
    return jsonify([log.to_dict() for log in logs])


@app.route('/api/notifications/<int:log_id>/read', methods=['POST'])
@login_required
def mark_notification_read(log_id):
    log = db.session.get(NotificationLog, log_id)
    if log is None or log.user_id != current_user.id:
        raise NotFound('Notification not found')
    log.is_read = True
    db.session.commit()
    return jsonify(log.to_dict())


# --- CLI CONFIGURATION ---

SEED_USERS = [
    # (username, email, first name, last name, role, password)
    ('admin', 'admin@gearguard.local', 'Mitchell', 'Admin', Role.ADMIN, 'admin123'),
    ('manager', 'manager@gearguard.local', 'Marc', 'Demo', Role.MANAGER, 'manager123'),
    ('technician', 'technician@gearguard.local', 'Aka', 'Foster', Role.TECHNICIAN, 'technician123'),
]


@app.cli.command("init-db")
def init_db():
    """Drops and recreates the database, then seeds default users and a team."""
    db.drop_all()
    db.create_all()
    print("Database tables created.")

    for username, email, first_name, last_name, role, password in SEED_USERS:
        user = User(username=username, email=email, first_name=first_name, last_name=last_name, role=role)
        user.set_password(password)
        db.session.add(user)
        print(f"Created {role.value} user ({email}) with password '{password}'.")

    db.session.flush()
    technician = User.query.filter_by(role=Role.TECHNICIAN).first()
    db.session.add(MaintenanceTeam(
        name='Internal Maintenance',
        company='My Company',
        specialty='General',
        members=[technician]
    ))
    db.session.commit()
    print("Default team 'Internal Maintenance' created.")


@app.cli.command("delete-db")
def delete_db():
    db.drop_all()
    print("Database tables deleted.")


@app.cli.command("check-overdue")
def check_overdue():
    """
    Notifies technicians about open requests that are past their scheduled
    date. To be run by a scheduler (e.g., cron) once a day.
    """
    result = request_service.check_overdue_requests()
    print(result['message'])


if __name__ == '__main__':
    app.run(debug=os.getenv('FLASK_DEBUG', 'false').lower() in ['true', '1'])
