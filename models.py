from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from flask_bcrypt import Bcrypt
from datetime import datetime, timezone
from flask import current_app
from itsdangerous import URLSafeTimedSerializer as Serializer, BadSignature, SignatureExpired

from permissions import Role, RequestStatus

db = SQLAlchemy()
bcrypt = Bcrypt()


def utcnow():
    return datetime.now(timezone.utc)


def naive_utc(value):
    """Scheduled dates are stored as naive UTC."""
    if value is not None and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value):
    return value.isoformat() if value else None


# Association table for the many-to-many relationship between MaintenanceTeam and User
team_members = db.Table('team_members',
    db.Column('team_id', db.Integer, db.ForeignKey('maintenance_teams.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('users.id'), primary_key=True)
)


class User(UserMixin, db.Model):
    """Represents a user account. The role is fixed when the account is created."""
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    role = db.Column(
        db.Enum(Role, name='user_role', values_callable=lambda enum: [r.value for r in enum]),
        nullable=False,
        default=Role.TECHNICIAN
    )
    is_active = db.Column(db.Boolean, default=True)
    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def get_auth_token(self):
        """Generates a signed API token carrying the user id."""
        s = Serializer(current_app.config['SECRET_KEY'])
        return s.dumps({'user_id': self.id})

    @staticmethod
    def verify_auth_token(token, max_age=None):
        """Verifies an API token and returns the user if valid."""
        s = Serializer(current_app.config['SECRET_KEY'])
        if max_age is None:
            max_age = current_app.config['TOKEN_MAX_AGE']
        try:
            data = s.loads(token, max_age=max_age)
        except (BadSignature, SignatureExpired):
            return None
        user_id = data.get('user_id') if isinstance(data, dict) else None
        if user_id is None:
            return None
        return db.session.get(User, user_id)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role.value if self.role else None,
            'last_login': _iso(self.last_login),
        }


class MaintenanceTeam(db.Model):
    """Represents a maintenance team (Internal Maintenance, Metrology, ...)."""
    __tablename__ = 'maintenance_teams'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    company = db.Column(db.String(255), nullable=False)
    specialty = db.Column(db.String(100))
    leader_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    leader = db.relationship('User', foreign_keys=[leader_id])
    members = db.relationship('User', secondary=team_members, lazy='subquery',
                              backref=db.backref('teams', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'company': self.company,
            'specialty': self.specialty,
            'leader_id': self.leader_id,
            'member_ids': [member.id for member in self.members],
        }


class WorkCenter(db.Model):
    """Represents a production work center (Assembly 1, Drill 1, ...)."""
    __tablename__ = 'work_centers'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(50), unique=True, nullable=False)
    tag = db.Column(db.String(100))
    alternative_workcenter = db.Column(db.String(100))
    cost_per_hour = db.Column(db.Float, default=0)
    capacity = db.Column(db.Float, default=100)
    time_efficiency = db.Column(db.Float, default=100)
    oee_target = db.Column(db.Float, default=85)
    company = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'tag': self.tag,
            'alternative_workcenter': self.alternative_workcenter,
            'cost_per_hour': self.cost_per_hour,
            'capacity': self.capacity,
            'time_efficiency': self.time_efficiency,
            'oee_target': self.oee_target,
            'company': self.company,
        }


EQUIPMENT_STATUSES = ['Active', 'Under Repair', 'Scrapped']


class Equipment(db.Model):
    """Represents a piece of equipment that maintenance requests are raised against."""
    __tablename__ = 'equipment'
    id = db.Column(db.Integer, primary_key=True)

    # Basic Information
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    serial_number = db.Column(db.String(100))
    department = db.Column(db.String(100))
    company = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(255))
    work_center = db.Column(db.String(100))
    description = db.Column(db.Text)

    # Default responsibility
    technician_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    maintenance_team_id = db.Column(db.Integer, db.ForeignKey('maintenance_teams.id'), nullable=True)

    status = db.Column(db.String(50), default='Active', nullable=False) # Active, Under Repair, Scrapped
    scrap_date = db.Column(db.DateTime)
    warranty_expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    technician = db.relationship('User', foreign_keys=[technician_id])
    maintenance_team = db.relationship('MaintenanceTeam', backref=db.backref('equipment', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category,
            'serial_number': self.serial_number,
            'department': self.department,
            'company': self.company,
            'location': self.location,
            'work_center': self.work_center,
            'description': self.description,
            'technician_id': self.technician_id,
            'maintenance_team_id': self.maintenance_team_id,
            'status': self.status,
            'scrap_date': _iso(self.scrap_date),
            'warranty_expires_at': _iso(self.warranty_expires_at),
        }


class MaintenanceRequest(db.Model):
    """Represents a maintenance request raised against a piece of equipment."""
    __tablename__ = 'maintenance_requests'
    id = db.Column(db.Integer, primary_key=True)

    # Core Details
    subject = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    maintenance_type = db.Column(db.String(50), nullable=False) # Corrective, Preventive
    priority = db.Column(db.String(50), default='Medium', nullable=False) # Low, Medium, High, Critical
    status = db.Column(db.String(50), default=RequestStatus.NEW.value, nullable=False)
    company = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text)
    instructions = db.Column(db.Text)

    # Dates
    request_date = db.Column(db.DateTime, default=utcnow)
    scheduled_date = db.Column(db.DateTime)
    duration_hours = db.Column(db.Float, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    equipment_id = db.Column(db.Integer, db.ForeignKey('equipment.id'), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey('maintenance_teams.id'), nullable=False)
    technician_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    # Optimistic locking: every UPDATE is guarded by the version that was read.
    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}

    created_by = db.relationship('User', foreign_keys=[created_by_id], backref='created_requests')
    technician = db.relationship('User', foreign_keys=[technician_id], backref='assigned_requests')
    equipment = db.relationship('Equipment', backref='requests')
    team = db.relationship('MaintenanceTeam', backref='requests')

    @property
    def is_overdue(self):
        if not self.scheduled_date or self.status not in (RequestStatus.NEW.value, RequestStatus.IN_PROGRESS.value):
            return False
        return naive_utc(self.scheduled_date) < naive_utc(utcnow())

    def to_dict(self):
        return {
            'id': self.id,
            'subject': self.subject,
            'category': self.category,
            'maintenance_type': self.maintenance_type,
            'priority': self.priority,
            'status': self.status,
            'company': self.company,
            'notes': self.notes,
            'instructions': self.instructions,
            'request_date': _iso(self.request_date),
            'scheduled_date': _iso(self.scheduled_date),
            'duration_hours': self.duration_hours,
            'created_by': {'id': self.created_by.id, 'name': self.created_by.full_name} if self.created_by else None,
            'equipment': {'id': self.equipment.id, 'name': self.equipment.name} if self.equipment else None,
            'team': {'id': self.team.id, 'name': self.team.name} if self.team else None,
            'technician': {'id': self.technician.id, 'name': self.technician.full_name} if self.technician else None,
            'is_overdue': self.is_overdue,
            'version': self.version,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class NotificationLog(db.Model):
    """Stores an in-app copy of every notification sent to a user."""
    __tablename__ = 'notification_logs'
    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    request_id = db.Column(db.Integer, db.ForeignKey('maintenance_requests.id', ondelete='SET NULL'), nullable=True)
    message = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=False) # assigned, completed, overdue
    created_at = db.Column(db.DateTime, default=utcnow)
    is_read = db.Column(db.Boolean, default=False, nullable=False)

    user = db.relationship('User', backref=db.backref('notifications', lazy=True, cascade="all, delete-orphan"))

    def to_dict(self):
        return {
            'id': self.id,
            'request_id': self.request_id,
            'message': self.message,
            'category': self.category,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at),
        }
