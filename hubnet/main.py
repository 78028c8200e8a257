# hubnet/main.py
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api.v1 import router as api_router
from .config import settings
from .core.domain_events import register_audit_handler
from .core.events import event_bus
from .database.session import init_db

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("hubnet")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("hubnet started")
    yield


app = FastAPI(
    title="hubnet",
    description="Hub/spoke WireGuard topology manager",
    version="1.0.0",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api/v1")

register_audit_handler(event_bus)


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "hubnet"}


if __name__ == "__main__":
    uvicorn.run("hubnet.main:app", host="0.0.0.0", port=8001, reload=True)
