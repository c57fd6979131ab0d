"""
API routes: the spares and admin routers combined, plus the shared rate limiter.
"""

import os

from fastapi import APIRouter
from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limits are switched off under ENV=test so route tests can hammer endpoints
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"

CREATE_SPARE_LIMIT = os.getenv("CREATE_SPARE_RATE_LIMIT", "20/minute")
RESPOND_LIMIT = os.getenv("RESPOND_RATE_LIMIT", "30/minute")

limiter = Limiter(key_func=get_remote_address, enabled=not IS_TEST_ENV)

from backend.api.routes.spares import router as spares_router  # noqa: E402
from backend.api.routes.admin import router as admin_router  # noqa: E402

router = APIRouter()
router.include_router(spares_router)
router.include_router(admin_router)
