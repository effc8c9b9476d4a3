# app/api/v1/router.py
# Registers all endpoint routers under /api/v1

from fastapi import APIRouter
from app.api.v1.endpoints import schoolpay

api_router = APIRouter()

api_router.include_router(schoolpay.router)
