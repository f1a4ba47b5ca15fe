"""
Experience RAG FastAPI Application
==================================

REST API for searching the experience knowledge base.

Endpoints:
    GET  /api/health                    - Health check
    POST /api/experiences/search        - Search experiences
    POST /api/experiences/find-similar  - Best single match

Usage:
    uvicorn src.api.main:app --reload --port 8000

    Or with CLI:
    python -m src.api.main
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os

from ..rag.config import get_settings
from ..rag.database import ExperienceDatabase
from ..rag.embedder import RAGEmbedder
from ..rag.logging_config import setup_logging_from_settings
from ..rag.retriever import ExperienceRetriever
from ..rag.store import PostgresExperienceStore
from .rag_routes import router as rag_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database session and build the retriever for the app lifetime."""
    settings = get_settings()
    setup_logging_from_settings(settings)

    logger.info("Starting Experience RAG API...")

    db = ExperienceDatabase(settings.database).open()
    store = PostgresExperienceStore(
        db,
        collection=settings.retrieval.collection,
        dimensions=settings.embedding.dimensions,
        statement_timeout=settings.retrieval.index_timeout,
    )
    app.state.db = db
    app.state.store = store
    app.state.retriever = ExperienceRetriever(
        store,
        embedder=RAGEmbedder(settings.embedding),
        config=settings.retrieval,
        embedding_timeout=settings.embedding.timeout,
    )

    logger.info("Services initialized")

    yield

    db.close()
    logger.info("Shutting down Experience RAG API...")


app = FastAPI(
    title="Experience RAG API",
    description="Semantic search over written experiences",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS_ORIGINS: comma-separated extra origins
_default_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_extra_origins = os.getenv("CORS_ORIGINS", "")
if _extra_origins:
    _default_origins.extend([o.strip() for o in _extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=_default_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rag_router)


# ============================================================================
# HEALTH ENDPOINT
# ============================================================================

@app.get("/api/health")
def health_check(request: Request):
    """
    Health check endpoint.

    Reports database connectivity and the vector indexes on the collection.
    """
    db = getattr(request.app.state, "db", None)
    store = getattr(request.app.state, "store", None)

    if db is None or not db.is_open:
        return {"status": "degraded", "database": "disconnected", "vector_indexes": []}

    try:
        indexes = [idx["name"] for idx in store.list_vector_indexes()]
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "degraded", "database": "error", "vector_indexes": []}

    return {
        "status": "healthy" if indexes else "degraded",
        "database": "connected",
        "collection": store.collection,
        "vector_indexes": indexes,
    }


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    print("=" * 60)
    print("EXPERIENCE RAG API SERVER")
    print("=" * 60)
    print()
    print("Starting server at http://localhost:8000")
    print("  - Swagger UI: http://localhost:8000/docs")
    print()

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
