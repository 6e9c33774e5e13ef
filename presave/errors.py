"""
presave/errors.py -- Decode failure taxonomy for state tokens.

Every failure derives from StateTokenError so the callback route can catch
one type and show one generic message. The subclasses and their `code`
exist for logging and auditing only -- never put them in a response body.

Messages are deliberately vague. They never include token bytes, tag values,
or which byte differed.
"""

from __future__ import annotations


class StateTokenError(ValueError):
    """Base class for all state-token decode failures."""

    code = "state_error"


class MalformedToken(StateTokenError):
    """Not a token this service issued: bad alphabet, length, or structure."""

    code = "malformed"


class TamperedToken(StateTokenError):
    """Well-formed, but the integrity tag does not match any accepted secret."""

    code = "tampered"


class InvalidPayload(StateTokenError):
    """Tag verified, but the fields break payload rules or the schema version is unknown.

    Should not happen for tokens this service issued. Seeing it points at a
    version skew during a deploy or a bug, so callers log it louder.
    """

    code = "invalid_payload"


class ExpiredToken(StateTokenError):
    """Tag verified, but issued_at falls outside the freshness window."""

    code = "expired"
