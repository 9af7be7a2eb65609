"""Error taxonomy shared by the services and mapped to HTTP responses in main.py."""


class PortalError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(PortalError):
    """Bad credentials, rate limited login, or an account without a profile."""
    status_code = 401


class ForbiddenError(PortalError):
    """The caller is signed in but may not touch this record."""
    status_code = 403


class NotFoundError(PortalError):
    status_code = 404


class ValidationError(PortalError):
    status_code = 422


class PlatformError(PortalError):
    """Any failure coming from the backing store."""
    status_code = 503
