"""
Top-level test configuration for forgestatus.
"""

import os
from typing import Any

import httpx
import pytest

# Ensure test-friendly defaults; never read a developer's real config file
os.environ["FORGESTATUS_CONFIG_FILE"] = "/nonexistent/forgestatus/config.yaml"
os.environ.setdefault("FORGESTATUS_JSON_LOGS", "false")
os.environ.setdefault("FORGESTATUS_LOG_LEVEL", "DEBUG")

from forgestatus.logging_config import configure_logging  # noqa: E402

# Route structlog through stdlib logging to stderr so stdout stays clean
configure_logging(json_logs=False, log_level="DEBUG")


class FakeForge:
    """Serves canned JSON per URL path and records every request."""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, Any, dict[str, str]]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        path: str,
        json: Any = None,
        status: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.routes[path] = (status, json, headers or {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        raw_path = request.url.raw_path.decode().split("?", 1)[0]
        route = self.routes.get(raw_path) or self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        status, body, headers = route
        return httpx.Response(status, json=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def fake_forge() -> FakeForge:
    return FakeForge()
