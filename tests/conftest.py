"""Shared fixtures: a fake SonarQube server behind requests.get."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict
from unittest.mock import MagicMock, patch

import pytest

from sonar_report import ReportConfig, SonarQubeClient


BASE_URL = "https://sonar.example.com"


class FakeSonar:
    """Routes requests.get calls by endpoint and records every call made."""

    def __init__(self) -> None:
        self.routes: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.calls: list[tuple[str, Dict[str, Any]]] = []

    def route(self, endpoint: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        """handler(params) returns a payload, or a (status, payload) tuple."""
        self.routes[endpoint] = handler

    def calls_to(self, endpoint: str) -> list[Dict[str, Any]]:
        return [params for ep, params in self.calls if ep == endpoint]

    def __call__(self, url: str, headers: Dict[str, str] = None, params: Dict[str, Any] = None):
        assert headers == {"Authorization": "Bearer test-token"}
        endpoint = url[len(BASE_URL) + 1:]
        params = dict(params or {})
        self.calls.append((endpoint, params))
        result = self.routes[endpoint](params)
        status, payload = result if isinstance(result, tuple) else (200, result)
        response = MagicMock()
        response.status_code = status
        response.url = url
        response.json.return_value = payload
        return response


@pytest.fixture
def sonar():
    fake = FakeSonar()
    with patch("sonar_report.requests.get", side_effect=fake):
        yield fake


@pytest.fixture
def config() -> ReportConfig:
    return ReportConfig(token="test-token", base_url=BASE_URL + "/")


@pytest.fixture
def client(config) -> SonarQubeClient:
    return SonarQubeClient(config)


@pytest.fixture(autouse=True)
def reset_report_logger():
    """Drop handlers setup_logging bound to a per-test stdout."""
    yield
    logger = logging.getLogger("sonar_report")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
