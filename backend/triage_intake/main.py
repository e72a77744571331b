import logging

from fastapi import FastAPI

from .config import settings
from .db import init_db
from .routes import api_router
from .seed import seed_data

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Triage Intake API")


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    seed_data()
    logger.info(
        "startup_complete timezone=%s max_questions=%s content_filter=%s",
        settings.clinic_timezone,
        settings.max_questions_per_symptom,
        settings.content_filter_enabled,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app.include_router(api_router, prefix="/api")
