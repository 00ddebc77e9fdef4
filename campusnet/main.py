import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .connections import routers as connection_router
from .chat import routers as chat_router
from .groups import routers as group_router
from .messaging import routers as attachment_router

from .core.database import init_db
from .core.errors import register_error_handlers
from .core.middleware import logging_middleware
from .utils.env_helper import env_bool, env_list
from .utils.logging_config import setup_logging

load_dotenv()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if env_bool("AUTO_CREATE_TABLES", default=True):
        init_db()
    logger.info("campusnet_started")
    yield


app = FastAPI(title="campusnet", lifespan=lifespan)
app.include_router(connection_router.router, prefix="/connections", tags=["Connections"])
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])
app.include_router(group_router.router, prefix="/groups", tags=["Study Groups"])
app.include_router(attachment_router.router, prefix="/attachments", tags=["Attachments"])

register_error_handlers(app)
app.middleware("http")(logging_middleware)


origins = env_list(
    "CORS_ORIGINS",
    default=["http://localhost:5173", "http://localhost:8080"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}
