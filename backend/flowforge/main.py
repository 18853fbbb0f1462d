import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    logger.info("Starting FlowForge application")
    yield
    logger.info("Shutting down FlowForge application")

app = FastAPI(
    title="FlowForge",
    description="FlowForge executes node-based image-generation workflows built in a visual editor, running each target node's upstream graph against a remote generation service.",
    lifespan=lifespan
)

# Allow Vercel preview deployments and localhost
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^https:\/\/.*\.vercel\.app$|^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
