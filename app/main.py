from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app import models  # noqa: F401  registers tables on Base.metadata
from app.database import Base, engine
from app.dependencies import build_services
from app.logging_config import get_logger, setup_logging
from app.routers import panel, webhook

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Commerce Assistant API",
    description="WhatsApp sales assistant: catalogs, order flow and human handoff",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(panel.router)


@app.on_event("startup")
async def init_services() -> None:
    if settings.db_create_tables:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
        logger.info("Services initialized")


@app.on_event("shutdown")
async def dispose_engine() -> None:
    engine.dispose()


@app.get("/health")
async def health():
    return {"status": "ok"}
