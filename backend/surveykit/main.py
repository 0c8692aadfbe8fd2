"""
SurveyKit Data Collection API
Questionnaire definitions and submission endpoints used by offline-capable clients.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .core.config import settings
from .models import base
from .models import questionnaire, submission  # noqa: F401  Register tables
from .api import questionnaires, submissions
from .seed_demo import seed_demo_data


@asynccontextmanager
async def lifespan(app: FastAPI):
    # NOTE: In production, use migrations instead of create_all()
    base.Base.metadata.create_all(bind=base.engine)
    # Demo questionnaire (idempotent)
    seed_demo_data()
    yield


app = FastAPI(
    title="SurveyKit Data Collection API",
    description=(
        "Questionnaire distribution and survey submission collection "
        "for institutions, with offline-first client synchronization."
    ),
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(questionnaires.router, prefix="/api/v1")
app.include_router(submissions.router, prefix="/api/v1")


@app.get("/api/v1/ping")
def ping():
    """Reachability probe for offline clients; must stay cheap."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}
