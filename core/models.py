from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Upper bound for any single payload field, in UTF-8 bytes. Keeps every
# valid payload well inside the token length limit presave/codec.py enforces.
MAX_FIELD_BYTES = 512


def _require_text(name: str, value: object) -> None:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name} must be a non-empty string")
    if len(value.encode("utf-8")) > MAX_FIELD_BYTES:
        raise ValueError(f"{name} exceeds {MAX_FIELD_BYTES} bytes")


@dataclass(frozen=True)
class PreSaveStatePayload:
    """Context for one pre-save action, carried through the provider's authorize hop.

    track_id is None when the whole release is being pre-saved. It is never
    an empty string -- construction raises ValueError instead.
    """

    release_id: str
    track_id: Optional[str]
    username: str
    slug: str

    def __post_init__(self) -> None:
        _require_text("release_id", self.release_id)
        if self.track_id is not None:
            _require_text("track_id", self.track_id)
        _require_text("username", self.username)
        _require_text("slug", self.slug)
