"""Profile portal: OIDC-backed login with server-side sessions."""

__version__ = "1.0.0"
