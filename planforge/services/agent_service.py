from __future__ import annotations

from typing import Any, Literal, Mapping, Protocol

import httpx
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import AliasChoices, BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import AgentServiceSettings, Settings
from ..core.logging import get_logger
from ..schemas.plans import TokenUsage

try:  # pragma: no cover - optional heavy dependency
    from langchain_ollama import ChatOllama
except ModuleNotFoundError:  # pragma: no cover
    ChatOllama = None  # type: ignore[misc, assignment]

logger = get_logger(name=__name__)


class AgentTurnResult(BaseModel):
    """One agent turn as reported by the execution service."""

    status: Literal["ok", "error"]
    output_text: str | None = Field(default=None, validation_alias=AliasChoices("output_text", "outputText"))
    summary: str | None = None
    error: str | None = None
    token_usage: TokenUsage | None = Field(
        default=None,
        validation_alias=AliasChoices("token_usage", "tokenUsage"),
    )


class AgentExecutionService(Protocol):
    async def invoke(
        self,
        *,
        session_key: str,
        prompt: str,
        agent_id: str | None = None,
    ) -> AgentTurnResult:
        ...


class HttpAgentExecutionService:
    """Client for a remote agent runtime exposing ``POST {endpoint}/invoke``."""

    def __init__(
        self,
        settings: AgentServiceSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        return headers

    async def invoke(
        self,
        *,
        session_key: str,
        prompt: str,
        agent_id: str | None = None,
    ) -> AgentTurnResult:
        url = f"{self._settings.endpoint.rstrip('/')}/invoke"
        body: dict[str, Any] = {"session_key": session_key, "prompt": prompt}
        if agent_id:
            body["agent_id"] = agent_id

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait_exponential(multiplier=self._settings.retry_backoff_seconds, max=30),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(
                    timeout=self._settings.timeout_seconds,
                    transport=self._transport,
                ) as client:
                    response = await client.post(url, json=body, headers=self._headers())
                    response.raise_for_status()
                    payload = response.json()
        if not isinstance(payload, Mapping):
            raise ValueError("Agent service response must be a JSON object")
        return AgentTurnResult.model_validate(payload)


DEFAULT_SYSTEM_PROMPTS: dict[str, str] = {
    "planner": "You are a meticulous project planner. Reply with JSON only when asked for JSON.",
    "qa": "You are a strict reviewer grading delivered work against acceptance criteria.",
}


class ChatModelAgentExecutionService:
    """Runs agent turns directly against a LangChain chat model."""

    def __init__(
        self,
        model: BaseChatModel,
        *,
        system_prompts: Mapping[str, str] | None = None,
    ) -> None:
        self._model = model
        self._system_prompts = dict(system_prompts or DEFAULT_SYSTEM_PROMPTS)

    @classmethod
    def from_settings(cls, settings: AgentServiceSettings) -> "ChatModelAgentExecutionService":
        if ChatOllama is None:  # pragma: no cover - handled in runtime logs
            raise RuntimeError("langchain_ollama is not installed")
        model = ChatOllama(
            model=settings.ollama_model,
            base_url=settings.ollama_host,
            temperature=settings.temperature,
        )
        return cls(model)

    def _messages(self, prompt: str, agent_id: str | None) -> list[BaseMessage]:
        messages: list[BaseMessage] = []
        system_prompt = self._system_prompts.get(agent_id or "")
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))
        return messages

    async def invoke(
        self,
        *,
        session_key: str,
        prompt: str,
        agent_id: str | None = None,
    ) -> AgentTurnResult:
        logger.debug("chat_model_invoke", session_key=session_key, agent=agent_id, prompt_chars=len(prompt))
        response = await self._model.ainvoke(self._messages(prompt, agent_id))
        content = response.content
        if isinstance(content, list):
            text = "".join(part if isinstance(part, str) else str(part.get("text", "")) for part in content)
        else:
            text = str(content)

        usage = getattr(response, "usage_metadata", None) or {}
        token_usage = None
        if usage:
            token_usage = TokenUsage(
                input=int(usage.get("input_tokens", 0) or 0),
                output=int(usage.get("output_tokens", 0) or 0),
                total=int(usage.get("total_tokens", 0) or 0),
            )
        return AgentTurnResult(status="ok", output_text=text, token_usage=token_usage)


def build_agent_service(settings: Settings) -> AgentExecutionService:
    if settings.agent_service.backend == "ollama":
        return ChatModelAgentExecutionService.from_settings(settings.agent_service)
    return HttpAgentExecutionService(settings.agent_service)


__all__ = [
    "AgentTurnResult",
    "AgentExecutionService",
    "HttpAgentExecutionService",
    "ChatModelAgentExecutionService",
    "build_agent_service",
]
