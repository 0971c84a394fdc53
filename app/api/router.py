from fastapi import APIRouter

from app.api.routes.connections import router as connections_router
from app.api.routes.health import router as health_router
from app.api.routes.schedules import router as schedules_router
from app.api.routes.tasks import router as tasks_router
from app.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes registered as callback targets with the providers.
api_router.include_router(schedules_router)
api_router.include_router(connections_router)
api_router.include_router(webhooks_router)
api_router.include_router(tasks_router)

v1_router.include_router(schedules_router)
v1_router.include_router(connections_router)
v1_router.include_router(webhooks_router)
v1_router.include_router(tasks_router)
api_router.include_router(v1_router)
