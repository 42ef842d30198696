"""TunePortal API Router - aggregates all API routes."""

from fastapi import APIRouter

from tuneportal.api import admin_security, admin_users, auth

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

api_router.include_router(auth.router)
api_router.include_router(admin_security.router)
api_router.include_router(admin_users.router)
