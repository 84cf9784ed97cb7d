from __future__ import annotations

import json

import httpx
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from planforge.core.config import AgentServiceSettings, Settings
from planforge.schemas.plans import TokenUsage
from planforge.services.agent_service import (
    ChatModelAgentExecutionService,
    HttpAgentExecutionService,
    build_agent_service,
)


def _settings(**overrides) -> AgentServiceSettings:
    values = {"endpoint": "http://agents.test/", "api_key": "secret", "retry_backoff_seconds": 0.0}
    values.update(overrides)
    return AgentServiceSettings(**values)


@pytest.mark.asyncio
async def test_http_service_posts_invoke_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"status": "ok", "outputText": "done", "summary": "s", "tokenUsage": {"input": 3, "output": 2, "total": 5}},
        )

    service = HttpAgentExecutionService(_settings(), transport=httpx.MockTransport(handler))

    result = await service.invoke(session_key="worker:p1:t1", prompt="do it", agent_id="builder")

    assert result.output_text == "done"
    assert result.token_usage == TokenUsage(input=3, output=2, total=5)
    request = seen[0]
    assert str(request.url) == "http://agents.test/invoke"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {"session_key": "worker:p1:t1", "prompt": "do it", "agent_id": "builder"}


@pytest.mark.asyncio
async def test_http_service_retries_transport_errors() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"status": "error", "error": "agent crashed"})

    service = HttpAgentExecutionService(_settings(api_key=None), transport=httpx.MockTransport(handler))

    result = await service.invoke(session_key="planner:p1", prompt="plan")

    assert attempts == 2
    assert result.status == "error"
    assert result.error == "agent crashed"


@pytest.mark.asyncio
async def test_http_service_surfaces_http_errors_without_retry() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(503, json={"detail": "busy"})

    service = HttpAgentExecutionService(_settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(httpx.HTTPStatusError):
        await service.invoke(session_key="planner:p1", prompt="plan")
    assert attempts == 1


@pytest.mark.asyncio
async def test_chat_model_service_wraps_model_reply() -> None:
    service = ChatModelAgentExecutionService(FakeListChatModel(responses=['{"tasks": []}']))

    result = await service.invoke(session_key="planner:p1", prompt="plan", agent_id="planner")

    assert result.status == "ok"
    assert result.output_text == '{"tasks": []}'


def test_build_agent_service_defaults_to_http() -> None:
    assert isinstance(build_agent_service(Settings()), HttpAgentExecutionService)
