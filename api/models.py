"""
API request and response models for the pre-save REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclass in core/models.py, which
owns the internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import PreSaveStatePayload

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Identifiers and slugs as they appear in public links. Kept narrow so that
# path segments never need escaping when the redirect URL is built.
IDENTIFIER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PreSaveContext(BaseModel):
    """The pre-save context recovered from a verified state token."""

    model_config = ConfigDict(frozen=True)

    release_id: str
    track_id: Optional[str] = None
    username: str
    slug: str

    @classmethod
    def from_payload(cls, payload: PreSaveStatePayload) -> "PreSaveContext":
        """Build a PreSaveContext from the core payload dataclass."""
        return cls(
            release_id=payload.release_id,
            track_id=payload.track_id,
            username=payload.username,
            slug=payload.slug,
        )


class CallbackResponse(BaseModel):
    """Response for GET /api/v1/presave/callback after the state verifies.

    The authorization code is echoed back untouched; exchanging it with the
    provider is the job of whatever consumes this response.
    """

    status: str = "accepted"
    code: str
    context: PreSaveContext


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=lambda: {"app": "ok", "state_codec": "ok"})


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: ErrorDetail
