from fastapi import APIRouter

from toil_ledger.api.toil import toil_admin_router, user_toil_router

api_router = APIRouter()
api_router.include_router(user_toil_router)
api_router.include_router(toil_admin_router)
