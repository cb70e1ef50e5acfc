"""
Authentication module.

This module provides:
- IdentityProvider: JWT verification and the auth-state stream
- Identity: the authenticated caller (user id, email, role)
"""

from ferrodesk.auth.identity import (
    ADMIN_ROLE,
    AuthenticationError,
    AuthStateChange,
    AuthStateKind,
    Identity,
    IdentityClaims,
    IdentityProvider,
    bearer_token_from_header,
)

__all__ = [
    "ADMIN_ROLE",
    "AuthenticationError",
    "AuthStateChange",
    "AuthStateKind",
    "Identity",
    "IdentityClaims",
    "IdentityProvider",
    "bearer_token_from_header",
]
