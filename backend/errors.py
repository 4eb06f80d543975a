"""
Error taxonomy shared by the session store, the data access layer and the routes.

Data-access and session functions catch platform errors and re-raise one of
these with a human-readable message. Routes translate them to HTTP responses
through the handlers registered in main.py.
"""


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, message: str = "An unexpected error occurred"):
        super().__init__(message)
        self.message = message


class InvalidCredentials(MarketplaceError):
    status_code = 401

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class DuplicateAccount(MarketplaceError):
    status_code = 409

    def __init__(self, message: str = "Email already registered"):
        super().__init__(message)


class AuthProviderError(MarketplaceError):
    status_code = 400


class RemoteOperationFailed(MarketplaceError):
    status_code = 502


class NotFound(MarketplaceError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class AccessDenied(MarketplaceError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)
