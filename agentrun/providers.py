from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx


class ErrorCategory(str, enum.Enum):
    """Classification of provider failures, used for exit-status mapping."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    OVERLOADED = "overloaded"
    SERVER = "server"
    BAD_REQUEST = "bad_request"

    @property
    def transient(self) -> bool:
        """True for operational failures ("try again later"), False for caller errors."""
        return self is not ErrorCategory.BAD_REQUEST


class ProviderError(RuntimeError):
    """A categorized provider failure."""

    def __init__(self, category: ErrorCategory, message: str, status: Optional[int] = None):
        self.category = category
        self.message = message
        self.status = status
        super().__init__(f"{category.value}: {message}")


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of one tool invocation, correlated by call_id."""

    call_id: str
    content: str
    is_error: bool = False


@dataclass
class Message:
    """One entry of the linear conversation history."""

    role: str  # "user" | "assistant" | "tool"
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)


@dataclass
class ToolSpec:
    """A tool offered to the model; parameters is a JSON Schema object."""

    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass
class Request:
    model: str
    system: str
    messages: List[Message]
    tools: List[ToolSpec] = field(default_factory=list)
    temperature: float = 0.0
    max_tokens: int = 0


@dataclass
class Response:
    """Normalized result from a provider."""

    content: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


class BaseProvider:
    """
    Abstract provider interface.

    `send` is a coroutine so a caller's asyncio timeout or cancellation reaches
    the in-flight HTTP request. Implementations never retry.
    """

    async def send(self, request: Request) -> Response:  # pragma: no cover - interface only
        raise NotImplementedError


class _HTTPProvider(BaseProvider):
    """Shared httpx plumbing for the concrete backends."""

    default_base_url = ""

    def __init__(self, base_url: str = "", transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        # Tests inject httpx.MockTransport here.
        self._transport = transport

    def _status_category(self, status: int) -> ErrorCategory:
        if status in (401, 403):
            return ErrorCategory.AUTH
        if status in (400, 404):
            return ErrorCategory.BAD_REQUEST
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status == 529:
            return ErrorCategory.OVERLOADED
        return ErrorCategory.SERVER

    def _error_message(self, data: Any) -> str:
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str) and err:
                return err
        return ""

    def _connect_error(self, exc: httpx.ConnectError) -> ProviderError:
        return ProviderError(ErrorCategory.SERVER, str(exc))

    async def _post(self, path: str, headers: Dict[str, str], body: Dict[str, Any]) -> Dict[str, Any]:
        # No client-side timeout: the caller bounds the call with asyncio.wait_for.
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=None, follow_redirects=False) as client:
                resp = await client.post(self.base_url + path, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderError(ErrorCategory.TIMEOUT, str(exc) or "request timed out") from exc
        except httpx.ConnectError as exc:
            raise self._connect_error(exc) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(ErrorCategory.SERVER, str(exc)) from exc

        if not 200 <= resp.status_code < 300:
            try:
                message = self._error_message(resp.json())
            except ValueError:
                message = ""
            raise ProviderError(
                self._status_category(resp.status_code),
                message or resp.reason_phrase or f"HTTP {resp.status_code}",
                status=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(ErrorCategory.SERVER, f"failed to parse response: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderError(ErrorCategory.SERVER, "failed to parse response: expected a JSON object")
        return data


def _as_arguments(raw: Any) -> Dict[str, Any]:
    return dict(raw) if isinstance(raw, dict) else {}


ANTHROPIC_API_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096


class AnthropicProvider(_HTTPProvider):
    """Anthropic Messages API."""

    default_base_url = "https://api.anthropic.com"

    def __init__(self, api_key: str, base_url: str = "", transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if not api_key:
            raise ValueError("API key is required")
        super().__init__(base_url, transport)
        self.api_key = api_key

    @staticmethod
    def _messages(messages: List[Message]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool" and msg.tool_results:
                # Tool results travel as a user turn of tool_result blocks.
                out.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": tr.call_id,
                                "content": tr.content,
                                "is_error": tr.is_error,
                            }
                            for tr in msg.tool_results
                        ],
                    }
                )
            elif msg.role == "assistant" and msg.tool_calls:
                blocks: List[Dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": dict(tc.arguments)})
                out.append({"role": "assistant", "content": blocks})
            else:
                out.append({"role": msg.role, "content": msg.content})
        return out

    async def send(self, request: Request) -> Response:
        body: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
            "messages": self._messages(request.messages),
        }
        if request.system:
            body["system"] = request.system
        if request.temperature:
            body["temperature"] = request.temperature
        if request.tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in request.tools
            ]

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "content-type": "application/json",
        }
        data = await self._post("/v1/messages", headers, body)

        blocks = data.get("content") or []
        if not blocks:
            raise ProviderError(ErrorCategory.SERVER, "response contains no content")

        text = ""
        tool_calls: List[ToolCall] = []
        for block in blocks:
            if block.get("type") == "text":
                text += block.get("text", "")
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.get("id", ""), name=block.get("name", ""), arguments=_as_arguments(block.get("input")))
                )

        usage = data.get("usage") or {}
        return Response(
            content=text,
            model=data.get("model", ""),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            stop_reason=data.get("stop_reason") or "",
            tool_calls=tool_calls,
        )


def _function_tools(tools: List[ToolSpec]) -> List[Dict[str, Any]]:
    return [
        {"type": "function", "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
        for t in tools
    ]


class OpenAIProvider(_HTTPProvider):
    """OpenAI Chat Completions API (and compatible endpoints via base_url)."""

    default_base_url = "https://api.openai.com"

    def __init__(self, api_key: str, base_url: str = "", transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if not api_key:
            raise ValueError("API key is required")
        super().__init__(base_url, transport)
        self.api_key = api_key

    @staticmethod
    def _messages(system: str, messages: List[Message]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        if system:
            out.append({"role": "system", "content": system})
        for msg in messages:
            if msg.role == "tool" and msg.tool_results:
                for tr in msg.tool_results:
                    out.append({"role": "tool", "content": tr.content, "tool_call_id": tr.call_id})
            elif msg.role == "assistant" and msg.tool_calls:
                out.append(
                    {
                        "role": "assistant",
                        "content": msg.content or None,
                        "tool_calls": [
                            {
                                "id": tc.id,
                                "type": "function",
                                "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                            }
                            for tc in msg.tool_calls
                        ],
                    }
                )
            else:
                out.append({"role": msg.role, "content": msg.content})
        return out

    async def send(self, request: Request) -> Response:
        body: Dict[str, Any] = {
            "model": request.model,
            "messages": self._messages(request.system, request.messages),
        }
        if request.temperature:
            body["temperature"] = request.temperature
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = _function_tools(request.tools)

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = await self._post("/v1/chat/completions", headers, body)

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(ErrorCategory.SERVER, "response contains no choices")
        message = choices[0].get("message") or {}

        tool_calls: List[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            try:
                args = json.loads(fn.get("arguments") or "{}")
            except json.JSONDecodeError:
                args = {}
            tool_calls.append(ToolCall(id=tc.get("id", ""), name=fn.get("name", ""), arguments=_as_arguments(args)))

        usage = data.get("usage") or {}
        return Response(
            content=message.get("content") or "",
            model=data.get("model", ""),
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            stop_reason=choices[0].get("finish_reason") or "",
            tool_calls=tool_calls,
        )


class OllamaProvider(_HTTPProvider):
    """Ollama Chat API. No authentication."""

    default_base_url = "http://localhost:11434"

    def _status_category(self, status: int) -> ErrorCategory:
        if status in (400, 404):
            return ErrorCategory.BAD_REQUEST
        return ErrorCategory.SERVER

    def _connect_error(self, exc: httpx.ConnectError) -> ProviderError:
        return ProviderError(
            ErrorCategory.SERVER,
            f"connection refused: is Ollama running? (expected at {self.base_url})",
        )

    @staticmethod
    def _messages(system: str, messages: List[Message]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        if system:
            out.append({"role": "system", "content": system})
        for msg in messages:
            if msg.role == "tool" and msg.tool_results:
                # Ollama has no tool_call_id; results are matched by position.
                for tr in msg.tool_results:
                    out.append({"role": "tool", "content": tr.content})
            elif msg.role == "assistant" and msg.tool_calls:
                out.append(
                    {
                        "role": "assistant",
                        "content": msg.content,
                        "tool_calls": [
                            {"function": {"name": tc.name, "arguments": dict(tc.arguments)}} for tc in msg.tool_calls
                        ],
                    }
                )
            else:
                out.append({"role": msg.role, "content": msg.content})
        return out

    async def send(self, request: Request) -> Response:
        body: Dict[str, Any] = {
            "model": request.model,
            "messages": self._messages(request.system, request.messages),
            "stream": False,
        }
        options: Dict[str, Any] = {}
        if request.temperature:
            options["temperature"] = request.temperature
        if request.max_tokens:
            options["num_predict"] = request.max_tokens
        if options:
            body["options"] = options
        if request.tools:
            body["tools"] = _function_tools(request.tools)

        data = await self._post("/api/chat", {"Content-Type": "application/json"}, body)

        message = data.get("message") or {}
        tool_calls = [
            ToolCall(
                id=f"ollama_{i}",
                name=(tc.get("function") or {}).get("name", ""),
                arguments=_as_arguments((tc.get("function") or {}).get("arguments")),
            )
            for i, tc in enumerate(message.get("tool_calls") or [])
        ]
        content = message.get("content") or ""
        if not tool_calls and not content:
            raise ProviderError(ErrorCategory.SERVER, "response contains no content")

        return Response(
            content=content,
            model=data.get("model", ""),
            input_tokens=int(data.get("prompt_eval_count") or 0),
            output_tokens=int(data.get("eval_count") or 0),
            stop_reason=data.get("done_reason") or "",
            tool_calls=tool_calls,
        )


SUPPORTED_PROVIDERS = ("anthropic", "openai", "ollama")


def requires_api_key(provider_name: str) -> bool:
    return provider_name in SUPPORTED_PROVIDERS and provider_name != "ollama"


def parse_model(model: str) -> Tuple[str, str]:
    """Split "provider/model-name" into its two parts."""
    provider_name, sep, model_name = model.partition("/")
    if not sep:
        raise ValueError(f"invalid model format {model!r}: expected provider/model-name")
    if not provider_name:
        raise ValueError(f"invalid model format {model!r}: empty provider")
    if not model_name:
        raise ValueError(f"invalid model format {model!r}: empty model name")
    return provider_name, model_name


def build_provider(provider_name: str, api_key: str = "", base_url: str = "") -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    if provider_name == "anthropic":
        return AnthropicProvider(api_key=api_key, base_url=base_url)
    if provider_name == "openai":
        return OpenAIProvider(api_key=api_key, base_url=base_url)
    if provider_name == "ollama":
        return OllamaProvider(base_url=base_url)
    raise ValueError(
        f"unsupported provider {provider_name!r}: supported providers are {', '.join(SUPPORTED_PROVIDERS)}"
    )
