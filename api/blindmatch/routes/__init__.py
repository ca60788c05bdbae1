from fastapi import APIRouter, FastAPI

from .jobs import router as jobs_router
from .sms import router as sms_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(sms_router, tags=["sms"])
    app.include_router(jobs_router, tags=["jobs"])


__all__ = ["include_modular_routers", "APIRouter"]
