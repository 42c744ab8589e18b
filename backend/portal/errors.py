class PortalError(Exception):
    """Base class for application errors."""


class OIDCError(PortalError):
    """The identity provider failed or returned something unusable."""


class SessionStoreError(PortalError):
    """The session store could not be read or written."""


class AuthenticationRequired(PortalError):
    """Raised by the session gate when the request has no authenticated session."""

    def __init__(self, login_url: str = "/login"):
        super().__init__("Authentication required")
        self.login_url = login_url
