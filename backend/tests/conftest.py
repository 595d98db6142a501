from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from provider_fakes import ENV_CREDENTIALS, ScriptedAdapter, happy_adapters  # noqa: E402

_PROVIDER_ENV = (
    "OPEN_AI_KEY",
    "OPENAI_API_KEY",
    "ASSISTANT_ID",
    "AZURE_SPEECH_KEY",
    "AZURE_SPEECH_REGION",
    "GOOGLE_VISION_API_KEY",
    "GOOGLE_PROJECT_ID",
    "GOOGLE_CLIENT_EMAIL",
    "GOOGLE_PRIVATE_KEY",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
)


@pytest.fixture
def provider_env(monkeypatch):
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    for name, value in ENV_CREDENTIALS.items():
        monkeypatch.setenv(name, value)
    return dict(ENV_CREDENTIALS)


@pytest.fixture
def backend_module(tmp_path, monkeypatch, provider_env):
    db_path = tmp_path / "healthhub-test.sqlite"
    monkeypatch.setenv("HEALTHHUB_DB_PATH", str(db_path))
    # Keep CI off the network; secret store tests inject their own store.
    monkeypatch.setenv("HEALTHHUB_SECRETS_BACKEND", "none")
    monkeypatch.setenv("HEALTHHUB_PIPELINE_BUDGET_SECONDS", "10")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def install_adapters(backend_module) -> Callable[..., dict[str, ScriptedAdapter]]:
    def _install(**overrides: ScriptedAdapter) -> dict[str, ScriptedAdapter]:
        adapters = happy_adapters()
        adapters.update(overrides)
        backend_module.container.adapters.update(adapters)
        return adapters

    return _install
