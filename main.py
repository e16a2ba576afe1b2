from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from api.routes import pipelines
from utils.logger import configure_logging, get_logger
from engine.config import settings
from engine.database import RunRepository, initialize_database
from engine.service import build_engine, load_catalog

load_dotenv()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_color)
    logger.info("Starting pipeline-engine")
    settings.validate()

    # Initialize database
    initialize_database()

    repository = RunRepository()
    app.state.repository = repository
    app.state.engine = build_engine(settings, repository)
    app.state.catalog = load_catalog(settings)

    yield
    logger.info("Shutting down pipeline-engine")


app = FastAPI(
    title="Pipeline Engine",
    description="Run declarative delivery pipelines and inspect their results",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pipelines.router, prefix="/api", tags=["pipelines"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "pipeline-engine"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
