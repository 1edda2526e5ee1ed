from fastapi import APIRouter
from . import endpoint
from . import admin

router = APIRouter()
router.include_router(endpoint.router)
router.include_router(admin.router, prefix="/admin")
