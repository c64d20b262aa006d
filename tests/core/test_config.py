"""Tests for settings validation at load time."""

import pytest
from pydantic import ValidationError

from hlsingest.core.config import Settings


class TestSettingsValidation:

    def test_defaults_load(self) -> None:
        loaded = Settings()

        assert loaded.QUALITY_LADDER_DEFAULT == ["360p", "480p", "720p", "1080p"]

    def test_unknown_default_ladder_label_is_rejected(self) -> None:
        with pytest.raises(ValidationError, match="4k"):
            Settings(QUALITY_LADDER_DEFAULT=["360p", "4k"])

    def test_empty_default_ladder_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(QUALITY_LADDER_DEFAULT=[])

    def test_lease_renewal_must_beat_expiry(self) -> None:
        with pytest.raises(ValidationError):
            Settings(LEASE_TTL_S=30.0, LEASE_RENEW_S=30.0)

    def test_env_ladder_is_validated(self, monkeypatch) -> None:
        monkeypatch.setenv("QUALITY_LADDER_DEFAULT", '["720p", "8k"]')

        with pytest.raises(ValidationError, match="8k"):
            Settings()
