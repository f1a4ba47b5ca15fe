"""
Experience RAG API Routes
=========================

Search endpoints over the experience knowledge base.

    POST /api/experiences/search        - Ranked search (tags, sort, limit)
    POST /api/experiences/find-similar  - Best single match above threshold
"""

import logging
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
from typing import Any, List, Optional

from ..rag.errors import IndexQueryError, IndexUnsupportedError, ProviderError
from ..rag.retriever import ExperienceRetriever

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/experiences", tags=["Experiences"])


# =============================================================================
# MODELS
# =============================================================================

class ExperienceSearchRequest(BaseModel):
    """Search request. Malformed tags/sort/limit fall back to defaults."""
    query: str = Field("", description="Search text; blank returns the most recent experiences")
    tags: Optional[Any] = Field(None, description="Required tags (all must match)")
    sort: Optional[Any] = Field("similarity", description="similarity|date")
    limit: Optional[Any] = Field(None, description="Number of results")


class ExperienceHit(BaseModel):
    """One ranked experience."""
    id: Optional[str]
    title: str
    description: str
    content: str
    tags: List[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    score: Optional[float]


class ExperienceSearchResponse(BaseModel):
    """Search response."""
    query: str
    results: List[ExperienceHit]


class FindSimilarRequest(BaseModel):
    """Find-similar request."""
    text: str
    threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)


class FindSimilarResponse(BaseModel):
    """Best match, or null experience when below threshold."""
    experience: Optional[ExperienceHit]
    similarity: float


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_retriever(request: Request) -> ExperienceRetriever:
    """Retriever built by the application lifespan."""
    retriever = getattr(request.app.state, "retriever", None)
    if retriever is None:
        raise HTTPException(status_code=503, detail="Experience search not initialized")
    return retriever


def _raise_http(e: Exception, action: str):
    """Map retrieval errors to HTTP status codes."""
    if isinstance(e, ProviderError):
        raise HTTPException(status_code=502, detail=f"Embedding provider error: {e.message}")
    if isinstance(e, IndexUnsupportedError):
        raise HTTPException(status_code=503, detail=f"Vector search unavailable: {e.message}")
    if isinstance(e, IndexQueryError):
        raise HTTPException(status_code=504, detail=f"Vector search failed: {e.message}")
    logger.error(f"{action} failed: {e}")
    raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/search", response_model=ExperienceSearchResponse)
def search_experiences(payload: ExperienceSearchRequest, request: Request):
    """
    Search experiences.

    1. Embed the query
    2. Nearest-neighbour candidates from the vector index
    3. Tag filter (AND), sort, limit
    """
    retriever = get_retriever(request)
    try:
        results = retriever.search(
            payload.query,
            tags=payload.tags,
            sort=payload.sort,
            limit=payload.limit,
        )
    except Exception as e:
        _raise_http(e, "Experience search")

    return ExperienceSearchResponse(
        query=payload.query,
        results=[ExperienceHit(**r.to_dict()) for r in results],
    )


@router.post("/find-similar", response_model=FindSimilarResponse)
def find_similar_experience(payload: FindSimilarRequest, request: Request):
    """Return the closest experience if its similarity clears the threshold."""
    retriever = get_retriever(request)
    try:
        match = retriever.find_similar(payload.text, threshold=payload.threshold)
    except Exception as e:
        _raise_http(e, "Find similar")

    experience = None
    if match.experience is not None:
        experience = ExperienceHit(**match.experience.to_dict(), score=match.similarity)

    return FindSimilarResponse(experience=experience, similarity=match.similarity)
