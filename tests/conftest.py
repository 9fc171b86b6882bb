import os

import pytest
from flask import g
from flask.testing import FlaskClient

# Configure the app for an in-memory database before it is imported.
os.environ['DATABASE_URI'] = 'sqlite://'
os.environ['SECRET_KEY'] = 'test-secret'
os.environ['MAIL_SUPPRESS_SEND'] = 'true'
os.environ['BCRYPT_LOG_ROUNDS'] = '4'

from app import app as flask_app  # noqa: E402
from models import db, User, Equipment, MaintenanceTeam, MaintenanceRequest  # noqa: E402
from permissions import Role  # noqa: E402


class TokenClient(FlaskClient):
    """
    Test client for a test that keeps one app context pushed. Flask reuses
    that context for every request, so the user Flask-Login cached on `g`
    is dropped before each call and the bearer token is read again.
    """

    def open(self, *args, **kwargs):
        g.pop('_login_user', None)
        return super().open(*args, **kwargs)


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    flask_app.test_client_class = TokenClient
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _make_user(username, role, first_name='Test'):
    user = User(
        username=username,
        email=f"{username}@gearguard.test",
        first_name=first_name,
        last_name=username.title(),
        role=role
    )
    user.set_password('secret123')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(app):
    return _make_user('admin', Role.ADMIN)


@pytest.fixture
def manager(app):
    return _make_user('manager', Role.MANAGER)


@pytest.fixture
def technician(app):
    return _make_user('tech', Role.TECHNICIAN)


@pytest.fixture
def other_technician(app):
    return _make_user('othertech', Role.TECHNICIAN)


@pytest.fixture
def team(app, technician):
    team = MaintenanceTeam(name='Internal Maintenance', company='My Company', members=[technician])
    db.session.add(team)
    db.session.commit()
    return team


@pytest.fixture
def equipment(app, team):
    equipment = Equipment(
        name='Acer Laptop',
        category='Computers',
        company='My Company',
        maintenance_team_id=team.id
    )
    db.session.add(equipment)
    db.session.commit()
    return equipment


@pytest.fixture
def make_request(app, manager, equipment, team):
    """Inserts a request directly, bypassing the permission checks."""
    def _make(created_by=None, technician=None, status='New', **fields):
        maintenance_request = MaintenanceRequest(
            subject=fields.pop('subject', 'Screen flickers'),
            created_by_id=(created_by or manager).id,
            equipment_id=equipment.id,
            category='Computers',
            maintenance_type=fields.pop('maintenance_type', 'Corrective'),
            team_id=team.id,
            technician_id=technician.id if technician else None,
            company='My Company',
            status=status,
            **fields
        )
        db.session.add(maintenance_request)
        db.session.commit()
        return maintenance_request
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {'Authorization': f'Bearer {user.get_auth_token()}'}
    return _headers
