from fastapi import APIRouter

from unillm.api.routes import chat, tags

api_router = APIRouter()
api_router.include_router(tags.router)
api_router.include_router(chat.router)
