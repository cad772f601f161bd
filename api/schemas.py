"""Pydantic schemas for the bug similarity API"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

BugStatus = Literal["open", "in_progress", "resolved", "closed"]
SuggestionType = Literal["duplicate", "related"]


class Principal(BaseModel):
    user_id: str


class TargetBug(BaseModel):
    id: str
    organization_id: str
    has_embedding: bool


class SimilarityCandidate(BaseModel):
    bug_id: str
    similarity: float
    application_id: Optional[str] = None
    display_id: Optional[str] = None
    title: str = ""
    description: str = ""
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class IndexedBug(BaseModel):
    """A bug report with its embedding, as held by the in-memory index."""

    id: str
    organization_id: str
    embedding: Optional[list[float]] = None
    application_id: Optional[str] = None
    display_id: Optional[str] = None
    title: str = ""
    description: str = ""
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class SimilarBug(BaseModel):
    id: str
    display_id: Optional[str] = None
    title: str
    description: str
    status: Optional[str] = None
    application_id: Optional[str] = None
    application_name: str = "Unknown"
    similarity: float
    created_at: Optional[datetime] = None


class SimilarBugsResult(BaseModel):
    possibleDuplicates: list[SimilarBug] = Field(default_factory=list)
    relatedBugs: list[SimilarBug] = Field(default_factory=list)


class SimilarBugsResponse(BaseModel):
    bug_id: str
    has_embedding: bool
    similar_bugs: SimilarBugsResult = Field(default_factory=SimilarBugsResult)


class DismissSuggestionRequest(BaseModel):
    suggested_bug_id: str = Field(..., min_length=1)
    suggestion_type: SuggestionType
    similarity_score: float


class DismissSuggestionResponse(BaseModel):
    success: bool = True
    feedback_id: str


class PendingEmbedding(BaseModel):
    id: str
    title: str = ""
    description: str = ""


class DismissalStats(BaseModel):
    suggestion_type: SuggestionType
    count: int
    mean_score: Optional[float] = None
    min_score: Optional[float] = None
    max_score: Optional[float] = None


class HealthResponse(BaseModel):
    status: str
    details: Optional[dict[str, Any]] = None
