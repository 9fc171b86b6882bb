# Exceptions raised by the maintenance-request core and turned into JSON
# responses by the error handlers in app.py.


class GearGuardError(Exception):
    """Base class for every error the API reports to its callers."""
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message)
        self.message = message or 'Server Error'

    def to_dict(self):
        return {'message': self.message}


class Unauthenticated(GearGuardError):
    status_code = 401

    def __init__(self, message='Not authenticated'):
        super().__init__(message)


class Forbidden(GearGuardError):
    """A permission predicate or the transition graph said no."""
    status_code = 403

    def __init__(self, message, violations=None):
        super().__init__(message)
        self.violations = list(violations) if violations else [message]

    def to_dict(self):
        data = super().to_dict()
        if len(self.violations) > 1:
            data['violations'] = self.violations
        return data


class NotFound(GearGuardError):
    status_code = 404

    def __init__(self, message='Not found'):
        super().__init__(message)


class ValidationError(GearGuardError):
    status_code = 400


class Conflict(GearGuardError):
    status_code = 409


class CollaboratorFailure(GearGuardError):
    """Notification or side-effect failure. Logged, never sent to a caller."""
    status_code = 502
