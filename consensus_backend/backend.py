import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from consensus_backend.consensus_api import router as consensus_router
from consensus_backend.db_session import async_engine

logger = logging.getLogger("consensus_backend")
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Consensus backend starting")
    yield
    logger.info("Disposing database engine...")
    await async_engine.dispose()


# fastapi app
consensus_app = FastAPI(lifespan=lifespan)

consensus_app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
consensus_app.include_router(consensus_router)


@consensus_app.get("/health")
async def health():
    return {"status": "ok"}
