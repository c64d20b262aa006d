"""Tests for route templating used by metrics and span names."""

import pytest

from hlsingest.core.middleware import route_template


class TestRouteTemplate:

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/api/v1/assets/A1", "/api/v1/assets/{asset_id}"),
            ("/api/v1/assets/movie.2024_v2/cancel", "/api/v1/assets/{asset_id}/cancel"),
            ("/api/v1/assets/stats", "/api/v1/assets/stats"),
            ("/api/v1/assets/statsx", "/api/v1/assets/{asset_id}"),
            ("/api/v1/assets", "/api/v1/assets"),
            ("/health", "/health"),
        ],
    )
    def test_asset_ids_are_replaced(self, path, expected) -> None:
        assert route_template(path) == expected
