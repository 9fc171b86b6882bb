# Notifications sent as side effects of request changes. Each one is stored as
# a NotificationLog for the in-app feed and emailed through Flask-Mail.
# Failures are logged and reported as False; they never reach the caller.

from flask import current_app
from flask_mail import Mail, Message
from sqlalchemy.exc import SQLAlchemyError

from errors import CollaboratorFailure
from models import db, NotificationLog

mail = Mail()


def _request_url(maintenance_request):
    base = current_app.config.get('FRONTEND_URL', '').rstrip('/')
    return f"{base}/requests/{maintenance_request.id}"


def _request_summary(maintenance_request):
    equipment = maintenance_request.equipment
    scheduled = maintenance_request.scheduled_date
    return f"""
    <ul>
        <li><strong>Equipment:</strong> {equipment.name if equipment else 'N/A'}</li>
        <li><strong>Priority:</strong> {maintenance_request.priority}</li>
        <li><strong>Type:</strong> {maintenance_request.maintenance_type}</li>
        <li><strong>Scheduled:</strong> {scheduled.strftime('%Y-%m-%d') if scheduled else 'Not set'}</li>
    </ul>
    """


def _deliver(user, maintenance_request, category, subject, html):
    """Stores the in-app notification, then emails it. Raises CollaboratorFailure."""
    try:
        db.session.add(NotificationLog(
            user_id=user.id,
            request_id=maintenance_request.id,
            message=subject,
            category=category
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise CollaboratorFailure(f"Could not store notification for user {user.id}: {e}") from e

    if not user.email:
        return

    msg = Message(subject, recipients=[user.email])
    msg.html = html
    try:
        mail.send(msg)
    except Exception as e:
        # SMTP backends raise a wide range of errors; none of them may escape.
        raise CollaboratorFailure(f"Could not send email to {user.email}: {e}") from e


def _dispatch(user, maintenance_request, category, subject, html):
    try:
        _deliver(user, maintenance_request, category, subject, html)
    except CollaboratorFailure as e:
        current_app.logger.error(
            "Notification '%s' for request #%s failed: %s", category, maintenance_request.id, e.message
        )
        return False
    current_app.logger.info(
        "Notification '%s' for request #%s sent to user %s", category, maintenance_request.id, user.id
    )
    return True


def notify_technician_assigned(maintenance_request):
    """Tells the assigned technician about a request they now hold."""
    technician = maintenance_request.technician
    if technician is None:
        return False

    subject = f"Maintenance Request Assigned: #{maintenance_request.id} - {maintenance_request.subject}"
    html = f"""
    <p>Hello {technician.first_name},</p>
    <p>A maintenance request has been assigned to you:</p>
    <h3><a href="{_request_url(maintenance_request)}">Request #{maintenance_request.id}: {maintenance_request.subject}</a></h3>
    {_request_summary(maintenance_request)}
    <p>Thanks,<br>The GearGuard System</p>
    """
    return _dispatch(technician, maintenance_request, 'assigned', subject, html)


def notify_creator_repaired(maintenance_request):
    """Tells the creator that their request was repaired."""
    creator = maintenance_request.created_by
    if creator is None:
        return False

    technician = maintenance_request.technician
    subject = f"Maintenance Request Repaired: #{maintenance_request.id} - {maintenance_request.subject}"
    html = f"""
    <p>Hello {creator.first_name},</p>
    <p>The maintenance request you raised has been marked as <strong>Repaired</strong>:</p>
    <h3><a href="{_request_url(maintenance_request)}">Request #{maintenance_request.id}: {maintenance_request.subject}</a></h3>
    <p><strong>Technician:</strong> {technician.full_name if technician else 'N/A'}</p>
    <p>Thanks,<br>The GearGuard System</p>
    """
    return _dispatch(creator, maintenance_request, 'completed', subject, html)


def notify_overdue(maintenance_request):
    """Reminds the assigned technician that a scheduled request is past due."""
    technician = maintenance_request.technician
    if technician is None:
        return False

    subject = f"Maintenance Request Overdue: #{maintenance_request.id} - {maintenance_request.subject}"
    html = f"""
    <p>Hello {technician.first_name},</p>
    <p>The following maintenance request is past its scheduled date and is still <strong>{maintenance_request.status}</strong>:</p>
    <h3><a href="{_request_url(maintenance_request)}">Request #{maintenance_request.id}: {maintenance_request.subject}</a></h3>
    {_request_summary(maintenance_request)}
    <p>Thanks,<br>The GearGuard System</p>
    """
    return _dispatch(technician, maintenance_request, 'overdue', subject, html)
