"""
api/routes/v1/presave.py -- Pre-save authorize redirect and provider callback.

Routes:
  GET /api/v1/presave/callback                             -- provider returns here
  GET /api/v1/presave/{username}/{slug}/authorize          -- redirect to provider

The two routes are the only callers of the state codec. The outbound route
signs the pre-save context into `state`; the provider hands it back verbatim
and the callback verifies it before trusting any of it.

Security:
  [P1] Every StateTokenError gets the same 400 body ("invalid_state"). The
       kind of failure goes to the log, never to the client -- telling a
       forger "tampered" vs "malformed" helps them.
  [P2] Failure kinds are logged at different levels so tampering and schema
       skew stand out from ordinary stale links.
  [P3] The callback is rate-limited to 30 requests/minute per IP. @router.get
       must be the outer decorator so FastAPI routes slowapi's wrapper -- the
       middleware skips routes with a registered limit and leaves the check
       to that wrapper.
  [P4] The provider's error value is client-controlled. It is logged with %r
       and truncated so it cannot forge log lines.

Route registration order: /presave/callback is registered before
/presave/{username}/{slug}/authorize. The paths cannot collide today, but
literal routes first keeps it that way.
"""

import logging
from typing import Annotated, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Path, Query, Request
from fastapi.responses import RedirectResponse

from api.limiter import limiter
from api.models import IDENTIFIER_PATTERN, CallbackResponse, ErrorDetail, PreSaveContext
from core.config import get_settings
from core.models import PreSaveStatePayload
from presave.codec import StateTokenCodec
from presave.errors import ExpiredToken, InvalidPayload, MalformedToken, StateTokenError, TamperedToken

logger = logging.getLogger("presave.routes")

router = APIRouter()

_INVALID_STATE = ErrorDetail(code="invalid_state", message="This link is invalid or has expired.")

# [P2] How loudly each failure kind is logged.
_LOG_LEVELS: dict[type[StateTokenError], int] = {
    MalformedToken: logging.INFO,
    ExpiredToken: logging.INFO,
    TamperedToken: logging.WARNING,
    InvalidPayload: logging.ERROR,
}

_Identifier = Annotated[str, Path(pattern=IDENTIFIER_PATTERN)]


def _reject(status_code: int, detail: ErrorDetail) -> HTTPException:
    return HTTPException(status_code=status_code, detail=detail.model_dump())


@router.get("/presave/callback", response_model=CallbackResponse)
@limiter.limit("30/minute")  # [P3]
def presave_callback(
    request: Request,
    # No max_length: an over-long state is just another invalid token [P1].
    state: Optional[str] = None,
    code: Annotated[Optional[str], Query(max_length=2048)] = None,
    error: Annotated[Optional[str], Query(max_length=256)] = None,
) -> CallbackResponse:
    """Verify the returned state and hand back the pre-save context.

    Flow:
      1. Provider reported an error (user denied access) -> 400 authorization_denied.
      2. Decode state -- any failure -> 400 invalid_state [P1].
      3. No authorization code -> 400 invalid_request.
      4. Return the verified context with the code.
    """
    if error:
        logger.info("Pre-save authorization denied by provider: %r", error[:64])  # [P4]
        raise _reject(400, ErrorDetail(code="authorization_denied", message="Authorization was not granted."))

    codec: StateTokenCodec = request.app.state.state_codec
    try:
        payload = codec.decode(state or "")
    except StateTokenError as exc:
        level = _LOG_LEVELS.get(type(exc), logging.WARNING)
        client = request.client.host if request.client else "unknown"
        logger.log(level, "Pre-save state rejected (%s) from %s: %s", exc.code, client, exc)
        raise _reject(400, _INVALID_STATE) from None

    if not code:
        raise _reject(400, ErrorDetail(code="invalid_request", message="Authorization code is missing."))

    logger.info("Pre-save state accepted for %s/%s", payload.username, payload.slug)
    return CallbackResponse(code=code, context=PreSaveContext.from_payload(payload))


@router.get("/presave/{username}/{slug}/authorize")
def presave_authorize(
    request: Request,
    username: _Identifier,
    slug: _Identifier,
    release_id: Annotated[str, Query(pattern=IDENTIFIER_PATTERN)],
    track_id: Annotated[Optional[str], Query(pattern=IDENTIFIER_PATTERN)] = None,
) -> RedirectResponse:
    """Redirect the fan to the provider's authorize page with a signed state.

    Returns 503 when no provider client is configured, so a half-configured
    deploy fails visibly instead of sending fans to a broken consent page.
    """
    settings = get_settings()
    if not settings.presave_client_id:
        raise _reject(503, ErrorDetail(code="presave_unavailable", message="Pre-save is not configured."))

    codec: StateTokenCodec = request.app.state.state_codec
    state = codec.encode(
        PreSaveStatePayload(release_id=release_id, track_id=track_id, username=username, slug=slug)
    )
    query = urlencode(
        {
            "client_id": settings.presave_client_id,
            "response_type": "code",
            "redirect_uri": settings.presave_redirect_uri,
            "scope": settings.presave_scope,
            "state": state,
        }
    )
    return RedirectResponse(f"{settings.presave_authorize_url}?{query}", status_code=302)
