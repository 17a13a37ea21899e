import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from anthropic import AsyncAnthropic, APIError, APIStatusError

from research_relay.config import settings
from research_relay.errors import ProviderError
from research_relay.models.job import ResearchOptions, ResearchResult, TokenUsage, utcnow
from research_relay.models.schemas import ServiceStatus
from research_relay.utils.circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)

# Providers answer with the same normalized shape the jobs store.
ProviderResult = ResearchResult

Messages = List[Dict[str, str]]


class BaseProvider(ABC):
    """
    Abstract base class for the external LLM providers.

    `query` returns a ProviderResult or raises ProviderError. Every call goes
    through the provider's circuit breaker: while it is open the vendor is not
    contacted and `query` fails fast with status 503. Vendor rate limits (429)
    do not count as failures.
    """
    name: str = ""

    def __init__(self, api_key: str, model: str, placeholder_key: str, breaker: Optional[CircuitBreaker] = None):
        self.api_key = api_key
        self.model = model
        self.last_used: Optional[datetime] = None
        self.is_configured = bool(api_key) and api_key != placeholder_key
        self.breaker = breaker or CircuitBreaker(
            name=self.name,
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            reset_timeout=settings.CIRCUIT_BREAKER_RESET_SECONDS,
            success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
        )
        if not self.is_configured:
            logger.warning(f"{self.name} API key is not set; requests to {self.name} will fail.")

    def _require_configured(self):
        if not self.is_configured:
            raise ProviderError(f"{self.name} service is not configured (missing API key).", service=self.name)

    def get_status(self) -> ServiceStatus:
        circuit = self.breaker.get_status()
        if not self.is_configured:
            status, error = "disconnected", "API key not configured"
        elif circuit["state"] == CircuitState.OPEN.value:
            status, error = "degraded", f"Circuit open after {circuit['failure_count']} consecutive failures"
        else:
            status, error = "connected", None
        return ServiceStatus(
            service=self.name,
            status=status,
            model=self.model,
            last_used=self.last_used,
            error=error,
            circuit_state=circuit["state"],
            circuit_retry_after=circuit["retry_after_seconds"],
        )

    async def query(self, messages: Messages, options: Optional[ResearchOptions] = None) -> ProviderResult:
        """
        Sends the conversation to the provider and returns its normalized answer.
        """
        self._require_configured()
        if not self.breaker.allow_request():
            retry_after = self.breaker.retry_after()
            raise ProviderError(
                f"{self.name} service is temporarily unavailable (circuit open).",
                status=503,
                data={"circuit_state": self.breaker.state.value, "retry_after": retry_after},
                service=self.name,
            )
        try:
            result = await self._query(messages, options or ResearchOptions())
        except ProviderError as e:
            if not e.is_rate_limited:
                self.breaker.record_failure()
            raise
        except Exception:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return result

    @abstractmethod
    async def _query(self, messages: Messages, options: ResearchOptions) -> ProviderResult:
        pass

    async def aclose(self):
        pass

# --- Anthropic Provider Implementation ---

class AnthropicProvider(BaseProvider):
    """
    Conversational provider using Anthropic's messages API.
    """
    name = "claude"

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        max_tokens: int = None,
        client: Optional[AsyncAnthropic] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(
            api_key if api_key is not None else settings.ANTHROPIC_API_KEY,
            model or settings.ANTHROPIC_MODEL,
            placeholder_key="your_anthropic_api_key",
            breaker=breaker,
        )
        self.max_tokens = max_tokens or settings.ANTHROPIC_MAX_TOKENS
        self.client = client or (AsyncAnthropic(api_key=self.api_key) if self.is_configured else None)
        logger.info(f"Initialized AnthropicProvider with model: {self.model}")

    @staticmethod
    def _format_messages(messages: Messages) -> Messages:
        """Anthropic only takes user/assistant turns; system text goes in a separate argument."""
        return [
            {"role": "user" if m.get("role") == "user" else "assistant", "content": m.get("content", "")}
            for m in messages
            if m.get("role") != "system"
        ]

    async def _query(self, messages: Messages, options: ResearchOptions) -> ProviderResult:
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": options.max_tokens or self.max_tokens,
            "messages": self._format_messages(messages),
        }
        system_prompt = options.system_prompt or next(
            (m["content"] for m in messages if m.get("role") == "system"), None
        )
        if system_prompt:
            request["system"] = system_prompt
        if options.temperature is not None:
            request["temperature"] = options.temperature

        try:
            response = await self.client.messages.create(**request)
        except APIStatusError as e:
            logger.error(f"Claude API error ({e.status_code}): {e.message}")
            raise ProviderError(f"Claude API error: {e.message}", status=e.status_code, data=e.body, service=self.name) from e
        except APIError as e:
            logger.error(f"Claude API error: {e}")
            raise ProviderError(f"Claude API error: {e}", service=self.name) from e

        self.last_used = utcnow()
        content = "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")
        usage = getattr(response, "usage", None)
        return ProviderResult(
            content=content,
            citations=[],
            model=getattr(response, "model", None) or self.model,
            service=self.name,
            usage=TokenUsage(
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            ),
        )

# --- Perplexity Provider Implementation ---

class PerplexityProvider(BaseProvider):
    """
    Web-research provider using Perplexity's chat completions endpoint.
    Deep requests use the deep-research model.
    """
    name = "perplexity"

    SYSTEM_PROMPT = (
        "You are a research assistant with real-time internet access. Always search for and use "
        "the most recent information available. Your answers should be up-to-date and well-sourced "
        "with citations."
    )

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        deep_research_model: str = None,
        fallback_models: Optional[List[str]] = None,
        request_timeout: int = None,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(
            api_key if api_key is not None else settings.PERPLEXITY_API_KEY,
            model or settings.PERPLEXITY_MODEL,
            placeholder_key="your_perplexity_api_key",
            breaker=breaker,
        )
        self.deep_research_model = deep_research_model or settings.PERPLEXITY_DEEP_RESEARCH_MODEL
        self.fallback_models = fallback_models if fallback_models is not None else settings.perplexity_fallback_models
        self.client = client or httpx.AsyncClient(
            base_url=settings.PERPLEXITY_BASE_URL,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            timeout=request_timeout or settings.PERPLEXITY_REQUEST_TIMEOUT,
        )
        logger.info(f"Initialized PerplexityProvider with model: {self.model} (deep: {self.deep_research_model})")

    @staticmethod
    def validate_messages(messages: Messages, system_prompt: Optional[str] = None) -> Messages:
        """
        Perplexity wants one leading system message, then strictly alternating
        user/assistant turns ending with a user turn.
        """
        turns = [
            {"role": "user" if m.get("role") == "user" else "assistant", "content": m.get("content", "")}
            for m in (messages or [])
            if m.get("role") != "system"
        ]
        fixed: Messages = [{"role": "system", "content": system_prompt or PerplexityProvider.SYSTEM_PROMPT}]
        for turn in turns:
            if fixed[-1]["role"] == turn["role"]:
                continue
            if fixed[-1]["role"] == "system" and turn["role"] == "assistant":
                continue
            fixed.append(turn)
        if fixed[-1]["role"] != "user":
            fixed.append({"role": "user", "content": "Please provide information on this topic based on our conversation."})
        return fixed

    def _build_payload(self, model: str, messages: Messages, options: ResearchOptions) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": self.validate_messages(messages, options.system_prompt),
            "temperature": options.temperature if options.temperature is not None else 0.1,
            "max_tokens": options.max_tokens or settings.PERPLEXITY_MAX_TOKENS,
            "search_domain_filter": options.domain_filter,
            "return_citations": True,
            "stream": False,
        }

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post("/chat/completions", json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            try:
                error_data = e.response.json()
            except ValueError:
                error_data = e.response.text
            raise ProviderError(
                f"Perplexity API error: HTTP {e.response.status_code}",
                status=e.response.status_code,
                data=error_data,
                service=self.name,
            ) from e
        except httpx.RequestError as e:
            raise ProviderError(f"Perplexity API error: {e}", service=self.name) from e

    async def _query(self, messages: Messages, options: ResearchOptions) -> ProviderResult:
        requested_model = self.deep_research_model if options.deep else self.model

        data = None
        last_error: Optional[ProviderError] = None
        for model in [requested_model] + [m for m in self.fallback_models if m != requested_model]:
            try:
                data = await self._post(self._build_payload(model, messages, options))
                break
            except ProviderError as e:
                last_error = e
                if e.status != 503:
                    break
                logger.warning(f"Perplexity model {model} unavailable, trying fallback.")
        if data is None:
            logger.error(f"Perplexity request failed: {last_error}")
            raise last_error

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Invalid response format from Perplexity API", data=data, service=self.name) from e

        citations = data.get("citations") or []
        if not citations:
            logger.warning("No citations returned from Perplexity.")
        usage = data.get("usage") or {}
        self.last_used = utcnow()
        return ProviderResult(
            content=content,
            citations=[str(c) for c in citations],
            model=data.get("model") or requested_model,
            service=self.name,
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0) or 0,
                output_tokens=usage.get("completion_tokens", 0) or 0,
            ),
        )

    async def aclose(self):
        await self.client.aclose()

# --- Provider Factory ---

def get_provider(name: str) -> BaseProvider:
    provider = name.lower()
    if provider == "claude":
        return AnthropicProvider()
    elif provider == "perplexity":
        return PerplexityProvider()
    raise ValueError(f"Unsupported provider: {name}")


def build_providers() -> Dict[str, BaseProvider]:
    """One instance of every supported provider, keyed by service name."""
    return {name: get_provider(name) for name in ("claude", "perplexity")}
