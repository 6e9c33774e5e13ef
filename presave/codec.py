"""
presave/codec.py -- Tamper-evident state tokens for the pre-save authorize hop.

A token carries a PreSaveStatePayload through the streaming provider's OAuth
authorize redirect and back, with no server-side session. The provider
returns the `state` query parameter verbatim; decode() either recovers the
exact payload that went out or raises a StateTokenError.

Wire format (all integers big-endian):

    token = base64url_nopad(body || tag)
    body  = version:u8 || issued_at:u64 || field(release_id)
            || has_track:u8 [|| field(track_id)] || field(username) || field(slug)
    field = length:u16 || utf-8 bytes
    tag   = HMAC-SHA256(secret, body)

Security design decisions:
  [T1] Length prefixes, not delimiters. A slug or username containing any
       byte at all cannot shift a field boundary.

  [T2] The tag is checked with hmac.compare_digest before a single field is
       parsed. A tampered token is never even partially interpreted.

  [T3] Canonical base64 only. decode() re-encodes the bytes and requires an
       exact match, so flipping the unused low bits of the last character
       is caught as a malformed token instead of decoding to the same bytes.

  [T4] No nonce. With the same clock reading, encoding the same payload
       twice gives byte-identical tokens. issued_at makes tokens from
       different seconds differ while still decoding to the same payload.

  Rotation: previous_secrets are tried on decode only. encode() always signs
       with the primary secret.

Layer rule: imports from core/ only. Never imports from api/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
import struct
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from core.models import PreSaveStatePayload
from presave.errors import ExpiredToken, InvalidPayload, MalformedToken, TamperedToken

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("presave.codec")

# ---------------------------------------------------------------------------
# Format constants
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

_HEADER = struct.Struct(">BQ")  # version, issued_at
_LENGTH = struct.Struct(">H")
_FLAG = struct.Struct(">B")
_TAG_SIZE = hashlib.sha256().digest_size

# Smallest possible body: header, three 1-byte fields, absent track flag.
_MIN_BODY_SIZE = _HEADER.size + 3 * (_LENGTH.size + 1) + _FLAG.size

# Far above any real payload. Bounds the work done on attacker input.
MAX_TOKEN_LENGTH = 4096

_ALPHABET_RE = re.compile(r"[A-Za-z0-9_-]+")

DEFAULT_MAX_CLOCK_SKEW_SECONDS = 30


# ---------------------------------------------------------------------------
# Canonical serialization
# ---------------------------------------------------------------------------


def _pack_field(value: str) -> bytes:
    raw = value.encode("utf-8")
    return _LENGTH.pack(len(raw)) + raw


def pack_body(
    release_id: str,
    track_id: str | None,
    username: str,
    slug: str,
    issued_at: int,
    version: int = SCHEMA_VERSION,
) -> bytes:
    """Serialize raw field values into the canonical body.

    Takes plain values rather than a payload so tests can build bodies that
    no valid PreSaveStatePayload would produce (empty fields, old versions).
    """
    parts = [_HEADER.pack(version, issued_at), _pack_field(release_id)]
    if track_id is None:
        parts.append(_FLAG.pack(0))
    else:
        parts.append(_FLAG.pack(1))
        parts.append(_pack_field(track_id))
    parts.append(_pack_field(username))
    parts.append(_pack_field(slug))
    return b"".join(parts)


class _Reader:
    """Cursor over a verified body. Every short read is a MalformedToken."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise MalformedToken("State token is truncated.")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def text(self) -> str:
        (length,) = self.unpack(_LENGTH)
        try:
            return self.take(length).decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedToken("State token field is not valid text.") from None

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise MalformedToken("State token has trailing data.")


def _unpack_body(body: bytes) -> tuple[int, str, str | None, str, str]:
    reader = _Reader(body)
    version, issued_at = reader.unpack(_HEADER)
    # Checked before the fields: another version may lay them out differently.
    if version != SCHEMA_VERSION:
        raise InvalidPayload(f"Unsupported state token version {version}.")
    release_id = reader.text()
    (has_track,) = reader.unpack(_FLAG)
    if has_track == 0:
        track_id = None
    elif has_track == 1:
        track_id = reader.text()
    else:
        raise MalformedToken("State token has an invalid track marker.")
    username = reader.text()
    slug = reader.text()
    reader.finish()
    return issued_at, release_id, track_id, username, slug


# ---------------------------------------------------------------------------
# Text encoding
# ---------------------------------------------------------------------------


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    # A base64 group can never end with a single character.
    if len(token) % 4 == 1 or not _ALPHABET_RE.fullmatch(token):
        raise MalformedToken("State token is not valid base64url.")
    padded = token + "=" * (-len(token) % 4)
    try:
        data = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        raise MalformedToken("State token is not valid base64url.") from None
    if _b64encode(data) != token:  # [T3]
        raise MalformedToken("State token is not canonically encoded.")
    return data


def _as_key(secret: str | bytes) -> bytes:
    key = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
    if not key:
        raise ValueError("State token secret must not be empty.")
    return key


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class StateTokenCodec:
    """Encode PreSaveStatePayload values into signed, URL-safe tokens and back.

    Stateless apart from the secrets, which are fixed at construction. Safe to
    share across threads and requests.

    Args:
        secret:                 Signing key. Required and non-empty.
        previous_secrets:       Retired keys still accepted on decode.
        ttl_seconds:            Freshness window. None or 0 disables it.
        max_clock_skew_seconds: How far in the future issued_at may lie.
        clock:                  Returns the current UNIX time in seconds.
    """

    __slots__ = ("_keys", "_ttl", "_skew", "_clock")

    def __init__(
        self,
        secret: str | bytes,
        *,
        previous_secrets: Iterable[str | bytes] = (),
        ttl_seconds: int | None = None,
        max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keys = (_as_key(secret),) + tuple(_as_key(s) for s in previous_secrets)
        self._ttl = ttl_seconds or None
        self._skew = max_clock_skew_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> StateTokenCodec:
        """Build a codec from the application Settings singleton."""
        return cls(
            settings.presave_state_secret,
            previous_secrets=settings.previous_state_secrets,
            ttl_seconds=settings.presave_state_ttl_seconds,
            max_clock_skew_seconds=settings.presave_state_max_clock_skew_seconds,
            **kwargs,
        )

    def __repr__(self) -> str:
        # Never include key material.
        return f"StateTokenCodec(keys={len(self._keys)}, ttl_seconds={self._ttl})"

    def _sign(self, body: bytes, key: bytes | None = None) -> bytes:
        return hmac.new(key or self._keys[0], body, hashlib.sha256).digest()

    def seal(self, body: bytes) -> str:
        """Tag an already-serialized body with the primary secret and encode it."""
        return _b64encode(body + self._sign(body))

    def encode(self, payload: PreSaveStatePayload) -> str:
        """Return the opaque token for `payload`.

        Raises ValueError only when called with something other than a
        PreSaveStatePayload -- payload invariants are checked at construction.
        """
        if not isinstance(payload, PreSaveStatePayload):
            raise ValueError("encode() expects a PreSaveStatePayload")
        body = pack_body(
            payload.release_id,
            payload.track_id,
            payload.username,
            payload.slug,
            issued_at=int(self._clock()),
        )
        return self.seal(body)

    def decode(self, token: str) -> PreSaveStatePayload:
        """Verify `token` and return the payload it carries.

        Raises:
            MalformedToken: not base64url, wrong length, or unparseable body.
            TamperedToken:  integrity tag matches no accepted secret.
            InvalidPayload: unknown schema version or a field breaks the rules.
            ExpiredToken:   issued_at is outside the freshness window.
        """
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            raise MalformedToken("State token is missing or too long.")

        raw = _b64decode(token)
        if len(raw) < _MIN_BODY_SIZE + _TAG_SIZE:
            raise MalformedToken("State token is too short.")
        body, tag = raw[:-_TAG_SIZE], raw[-_TAG_SIZE:]

        # [T2] Check every key without stopping early, then parse.
        matched: int | None = None
        for index, key in enumerate(self._keys):
            if hmac.compare_digest(tag, self._sign(body, key)) and matched is None:
                matched = index
        if matched is None:
            raise TamperedToken("State token signature does not match.")
        if matched > 0:
            logger.info("State token verified with retired secret #%d", matched)

        issued_at, release_id, track_id, username, slug = _unpack_body(body)

        try:
            payload = PreSaveStatePayload(
                release_id=release_id,
                track_id=track_id,
                username=username,
                slug=slug,
            )
        except ValueError as exc:
            raise InvalidPayload(str(exc)) from None

        self._check_freshness(issued_at)
        return payload

    def _check_freshness(self, issued_at: int) -> None:
        if self._ttl is None:
            return
        now = int(self._clock())
        if issued_at - now > self._skew:
            raise ExpiredToken("State token was issued in the future.")
        if now - issued_at > self._ttl:
            raise ExpiredToken("State token has expired.")
