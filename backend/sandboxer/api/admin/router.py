from __future__ import annotations

from fastapi import APIRouter

from sandboxer.api.admin.auth import router as auth_router
from sandboxer.api.admin.projects import router as projects_router
from sandboxer.api.admin.queue import router as queue_router

router = APIRouter(prefix="/admin/api")
router.include_router(auth_router)
router.include_router(queue_router)
router.include_router(projects_router)
