"""Unit tests for the state-secret policy in core/config.py.

Covers:
- PRESAVE_STATE_SECRET wins, URL_ENCRYPTION_KEY is the fallback
- Dev mode generates a key, production mode refuses to start
- Short primary and retired keys are rejected
- Settings feed StateTokenCodec.from_settings()
"""

import pytest

from core.config import Settings, get_settings
from core.models import PreSaveStatePayload
from presave.codec import StateTokenCodec
from presave.errors import ExpiredToken

_PRIMARY = "p" * 32
_RETIRED = "r" * 40


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PRESAVE_STATE_SECRET", "URL_ENCRYPTION_KEY", "PRESAVE_STATE_PREVIOUS_SECRETS"):
        monkeypatch.delenv(name, raising=False)


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestSecretPolicy:
    def test_explicit_secret_is_used(self) -> None:
        s = _settings(debug=False, presave_state_secret=_PRIMARY, url_encryption_key="u" * 32)
        assert s.presave_state_secret == _PRIMARY

    def test_falls_back_to_url_encryption_key(self) -> None:
        s = _settings(debug=False, url_encryption_key="u" * 32)
        assert s.presave_state_secret == "u" * 32

    def test_production_requires_secret(self) -> None:
        with pytest.raises(ValueError, match="PRESAVE_STATE_SECRET is required"):
            _settings(debug=False)

    def test_dev_mode_generates_secret(self, caplog: pytest.LogCaptureFixture) -> None:
        s = _settings(debug=True)
        assert len(s.presave_state_secret) >= 32
        assert "auto-generated" in caplog.text

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValueError, match="at least 32"):
            _settings(debug=True, presave_state_secret="too-short")

    def test_short_retired_secret_rejected(self) -> None:
        with pytest.raises(ValueError, match="PREVIOUS_SECRETS"):
            _settings(presave_state_secret=_PRIMARY, presave_state_previous_secrets=f"{_RETIRED},short")

    def test_negative_ttl_rejected(self) -> None:
        with pytest.raises(ValueError):
            _settings(presave_state_secret=_PRIMARY, presave_state_ttl_seconds=-1)

    def test_previous_secrets_split(self) -> None:
        s = _settings(presave_state_secret=_PRIMARY, presave_state_previous_secrets=f" {_RETIRED} , ,{'q' * 32}")
        assert s.previous_state_secrets == [_RETIRED, "q" * 32]

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()


class TestCodecFromSettings:
    def test_rotation_and_ttl_are_applied(self) -> None:
        now = [1_700_000_000.0]
        s = _settings(
            presave_state_secret=_PRIMARY,
            presave_state_previous_secrets=_RETIRED,
            presave_state_ttl_seconds=60,
        )
        codec = StateTokenCodec.from_settings(s, clock=lambda: now[0])
        retired = StateTokenCodec(_RETIRED, clock=lambda: now[0])
        payload = PreSaveStatePayload("release-id", None, "artist", "new-single")

        assert codec.decode(retired.encode(payload)) == payload

        token = codec.encode(payload)
        now[0] += 61
        with pytest.raises(ExpiredToken):
            codec.decode(token)
