from fastapi import APIRouter

from .appointments import router as appointments_router
from .chat import router as chat_router
from .slots import router as slots_router
from .symptoms import router as symptoms_router
from .triage import router as triage_router

api_router = APIRouter()
api_router.include_router(chat_router)
api_router.include_router(symptoms_router)
api_router.include_router(slots_router)
api_router.include_router(appointments_router)
api_router.include_router(triage_router)
