from fastapi import APIRouter

from sp_validator.api.v1.endpoints import validations
from sp_validator.core.config import settings

api_router = APIRouter(prefix=settings.API_PREFIX)
api_router.include_router(validations.router, tags=["validations"])
