# API routes
from ferrodesk.api.routes import health
from ferrodesk.api.routes import entitlements
from ferrodesk.api.routes import session
from ferrodesk.api.routes import navigation
from ferrodesk.api.routes import admin_entitlements

__all__ = ["health", "entitlements", "session", "navigation", "admin_entitlements"]
