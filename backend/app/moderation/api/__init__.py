"""Moderation API routers."""

from fastapi import APIRouter

from . import admin_reports, audit, dashboard, me, reports, users

router = APIRouter()
router.include_router(reports.router)
router.include_router(me.router)
router.include_router(admin_reports.router)
router.include_router(users.router)
router.include_router(dashboard.router)
router.include_router(audit.router)

__all__ = ["router"]
