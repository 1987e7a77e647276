"""Shared fixtures for the Capstan test suite."""

import pytest

from capstan.credentials import CredentialValidator, TokenIssuer
from capstan.metrics import MetricsRegistry

SECRET = "capstan-test-secret-0123456789abcdef"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def issuer():
    return TokenIssuer(secret=SECRET, issuer="capstan")


@pytest.fixture()
def validator(issuer):
    return CredentialValidator(issuer.anchor())


@pytest.fixture()
def metrics():
    return MetricsRegistry()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("CAPSTAN_JWT_SECRET", "CAPSTAN_JWT_ISSUER", "CAPSTAN_DEFAULT_TIMEOUT", "CAPSTAN_CONFIG"):
        monkeypatch.delenv(var, raising=False)
