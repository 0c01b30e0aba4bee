"""HTTP エントリポイント"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from complitrack.api.tasks import install_error_handlers, router
from complitrack.services.store import create_tables

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="CompliTrack", lifespan=lifespan)
    app.include_router(router)
    install_error_handlers(app)
    return app


app = create_app()
