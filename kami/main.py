from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kami.api.routes import router as api_router
from kami.core import runtime
from kami.core.settings import SETTINGS

DEFAULT_CORS_ORIGINS = ["*"]


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Missing API keys raise ConfigurationError here and stop the process.
    runtime.get_orchestrator()
    await runtime.check_store()
    yield
    await runtime.shutdown()


app = FastAPI(title="kami-chat", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins or DEFAULT_CORS_ORIGINS,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.include_router(api_router)
