"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Unlike a blanket include_router(dependencies=...) guard, each
handler here names its own principal dependency, because some routes
accept API keys (get_current_principal) and others only a signed-in
user (get_current_user). Health, signup and login are open.
"""

from fastapi import APIRouter

from accesscore.api.api_keys import router as api_keys_router
from accesscore.api.auth import router as auth_router
from accesscore.api.folders import router as folders_router
from accesscore.api.health import router as health_router
from accesscore.api.organizations import router as organizations_router
from accesscore.api.rls import router as rls_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(organizations_router, tags=["organizations", "members", "projects"])
api_router.include_router(api_keys_router, tags=["api-keys"])
api_router.include_router(folders_router, tags=["folders"])
api_router.include_router(rls_router, tags=["rls"])
