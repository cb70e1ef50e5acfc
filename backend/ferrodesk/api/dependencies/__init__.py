"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from ferrodesk.api.dependencies.identity import (
    get_current_identity,
    get_engine,
    verify_admin_role,
)

__all__ = [
    "get_current_identity",
    "get_engine",
    "verify_admin_role",
]
