"""API router composition for all route groups."""

from fastapi import APIRouter

from .routes import auth, automations, notifications, projects, tasks

api_router = APIRouter()
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(projects.router, prefix="/projects", tags=["projects"])
api_router.include_router(automations.router, prefix="/projects/{project_id}/automations", tags=["automations"])
api_router.include_router(tasks.router, tags=["tasks"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
