from __future__ import annotations

import copy
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Tuple

import pytest
import yaml

from agentrun.providers import SUPPORTED_PROVIDERS, BaseProvider, Request


@pytest.fixture
def agentrun_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    """Point config and data directories at tmp_path and clear provider env vars."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in (
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "OLLAMA_API_KEY",
        "AGENTRUN_TIMEOUT",
        "AGENTRUN_ANTHROPIC_BASE_URL",
        "AGENTRUN_OPENAI_BASE_URL",
        "AGENTRUN_OLLAMA_BASE_URL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return SimpleNamespace(
        config_dir=tmp_path / "config" / "agentrun",
        data_dir=tmp_path / "data" / "agentrun",
    )


@pytest.fixture
def write_agent(agentrun_home: SimpleNamespace) -> Callable[..., Path]:
    def _write(name: str, **fields: Any) -> Path:
        data = {"name": name, "model": f"ollama/{name}-model"}
        data.update(fields)
        path = agentrun_home.config_dir / "agents" / f"{name}.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write


class FakeLLM(BaseProvider):
    """
    Shared scripted provider. Scripts are keyed by request.model, so each
    agent (whose model name is unique) gets its own queue of steps.

    A step is a Response, an exception to raise, or an async callable taking
    the request and returning a Response.
    """

    def __init__(self) -> None:
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[Tuple[str, Request]] = []

    def script(self, model: str, *steps: Any) -> None:
        self.scripts.setdefault(model, []).extend(steps)

    def requests_for(self, model: str) -> List[Request]:
        return [req for m, req in self.calls if m == model]

    async def send(self, request: Request):
        self.calls.append((request.model, copy.deepcopy(request)))
        steps = self.scripts.get(request.model) or []
        if not steps:
            raise AssertionError(f"no scripted response for model {request.model!r}")
        step = steps.pop(0)
        if callable(step):
            step = await step(request)
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture
def fake_llm(monkeypatch: pytest.MonkeyPatch) -> FakeLLM:
    llm = FakeLLM()
    built: List[Tuple[str, str, str]] = []

    def fake_build_provider(provider_name: str, api_key: str = "", base_url: str = "") -> BaseProvider:
        if provider_name not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported provider {provider_name!r}")
        built.append((provider_name, api_key, base_url))
        return llm

    monkeypatch.setattr("agentrun.dispatcher.build_provider", fake_build_provider)
    monkeypatch.setattr("agentrun.engine.build_provider", fake_build_provider)
    monkeypatch.setattr("agentrun.gc.build_provider", fake_build_provider)
    llm.built = built  # type: ignore[attr-defined]
    return llm
