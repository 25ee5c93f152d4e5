from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from pydantic import BaseModel

log = logging.getLogger(__name__)

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "").strip()
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "devstral-2512:free").strip()
OPENROUTER_FALLBACK_MODEL_1 = os.getenv("OPENROUTER_FALLBACK_MODEL_1", "google/gemma-3n-e2b-it:free").strip()
OPENROUTER_FALLBACK_MODEL_2 = os.getenv("OPENROUTER_FALLBACK_MODEL_2", "deepseek/deepseek-chat-v3.1:free").strip()
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

GROQ_API_KEY = os.getenv("GROQ_API_KEY", "").strip()
GROQ_MODEL = os.getenv("GROQ_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct").strip()
GROQ_FALLBACK_MODEL = os.getenv("GROQ_FALLBACK_MODEL", "llama-3.1-8b-instant").strip()
GROQ_ENDPOINT = "https://api.groq.com/openai/v1/chat/completions"

try:
    LLM_TIMEOUT_SECS = int(os.getenv("LLM_TIMEOUT_SECS", "75"))
except Exception:
    LLM_TIMEOUT_SECS = 75
try:
    BACKOFF_INITIAL = float(os.getenv("OPENROUTER_BACKOFF_INITIAL", "3.0") or 3.0)
except Exception:
    BACKOFF_INITIAL = 3.0
try:
    BACKOFF_MAX = float(os.getenv("OPENROUTER_BACKOFF_MAX", "45.0") or 45.0)
except Exception:
    BACKOFF_MAX = 45.0
BACKOFF_FACTOR = 1.5

# Provider preference for each task when the request does not pick one.
TASK_PREFERENCES: Dict[str, Sequence[str]] = {
    "widget": ("openrouter", "groq"),
    "iterate": ("openrouter", "groq"),
    "variation": ("groq", "openrouter"),
}


class ProviderError(Exception):
    """Raised by providers; the generator turns it into a failed result."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderResponse(BaseModel):
    content: str
    model: str
    name: str


class OpenAICompatibleProvider:
    """Async chat-completions client for OpenAI-compatible endpoints."""

    name = "openai-compatible"
    supports_json_mode = True

    def __init__(
        self,
        api_key: str,
        model: str,
        endpoint: str,
        fallback_models: Sequence[str] = (),
        timeout: float = LLM_TIMEOUT_SECS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        extra_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self.fallback_models = [m for m in fallback_models if m and m != model]
        self.timeout = timeout
        self._transport = transport
        self._extra_headers = dict(extra_headers or {})
        self._backoff_delay = 0.0
        self._backoff_until = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def status(self) -> Dict[str, Any]:
        return {"provider": self.name, "model": self.model, "has_token": self.configured}

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> ProviderResponse:
        if not self.configured:
            raise ProviderError(f"{self.name} API key is not configured", provider=self.name)
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        body: Dict[str, Any] = {"model": model or self.model, "messages": messages}
        if temperature is not None:
            body["temperature"] = float(temperature)
        if max_tokens is not None:
            body["max_tokens"] = int(max_tokens)
        if self.supports_json_mode:
            body["response_format"] = {"type": "json_object"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await self._send(client, body)
            if resp.status_code != 200 and "response_format" in body and _rejects_json_mode(resp):
                log.warning("providers.%s: JSON mode rejected; retrying without response_format", self.name)
                body.pop("response_format", None)
                resp = await self._send(client, body)
            if resp.status_code != 200:
                for fallback in self.fallback_models:
                    log.warning(
                        "providers.%s: model '%s' failed with HTTP %s; retrying with fallback '%s'",
                        self.name, body["model"], resp.status_code, fallback,
                    )
                    resp = await self._send(client, dict(body, model=fallback))
                    if resp.status_code == 200:
                        body["model"] = fallback
                        break
            if resp.status_code != 200:
                raise ProviderError(
                    f"{self.name} HTTP {resp.status_code}: {resp.text[:400]}",
                    provider=self.name,
                    status_code=resp.status_code,
                )
            content = _message_content(resp)
        if not content:
            raise ProviderError(f"{self.name} returned an empty completion", provider=self.name)
        return ProviderResponse(content=content, model=body["model"], name=self.name)

    async def _send(self, client: httpx.AsyncClient, body: Dict[str, Any]) -> httpx.Response:
        await self._sleep_if_needed()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            **self._extra_headers,
        }
        try:
            resp = await client.post(self.endpoint, headers=headers, json=body)
        except httpx.HTTPError as exc:
            log.warning("providers.%s: request error: %r", self.name, exc)
            raise ProviderError(f"{self.name} request failed: {exc}", provider=self.name) from exc
        if resp.status_code == 429:
            self._register_rate_limit(resp.headers.get("Retry-After"))
        elif resp.status_code == 200:
            self._backoff_delay = 0.0
            self._backoff_until = 0.0
        return resp

    async def _sleep_if_needed(self) -> None:
        wait_for = self._backoff_until - time.time()
        if wait_for > 0:
            log.info("providers.%s: backoff active; waiting %.2fs", self.name, wait_for)
            await asyncio.sleep(min(wait_for, BACKOFF_MAX))

    def _register_rate_limit(self, retry_after: Optional[str]) -> None:
        delay = None
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                delay = None
        if delay is None:
            delay = (self._backoff_delay or BACKOFF_INITIAL) * BACKOFF_FACTOR
        delay = max(BACKOFF_INITIAL, min(delay, BACKOFF_MAX))
        self._backoff_delay = delay
        self._backoff_until = time.time() + delay
        log.warning("providers.%s: rate limited; backing off for %.2fs", self.name, delay)


def _rejects_json_mode(resp: httpx.Response) -> bool:
    txt = resp.text or ""
    return "JSON mode is not enabled" in txt or "response_format" in txt


def _message_content(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        log.warning("providers: non-JSON HTTP body")
        return None
    try:
        text = data.get("choices", [{}])[0].get("message", {}).get("content")
    except (AttributeError, IndexError, TypeError):
        text = None
    return text if isinstance(text, str) and text.strip() else None


class OpenRouterProvider(OpenAICompatibleProvider):
    name = "openrouter"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("fallback_models", (OPENROUTER_FALLBACK_MODEL_1, OPENROUTER_FALLBACK_MODEL_2))
        kwargs.setdefault("extra_headers", {"X-Title": "widgetgen"})
        endpoint = kwargs.pop("endpoint", OPENROUTER_ENDPOINT)
        super().__init__(
            api_key=OPENROUTER_API_KEY if api_key is None else api_key,
            model=model or OPENROUTER_MODEL,
            endpoint=endpoint,
            **kwargs,
        )


class GroqProvider(OpenAICompatibleProvider):
    name = "groq"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("fallback_models", (GROQ_FALLBACK_MODEL,))
        endpoint = kwargs.pop("endpoint", GROQ_ENDPOINT)
        super().__init__(
            api_key=GROQ_API_KEY if api_key is None else api_key,
            model=model or GROQ_MODEL,
            endpoint=endpoint,
            **kwargs,
        )


class ProviderRegistry:
    """Named providers plus task-based automatic selection."""

    def __init__(self, providers: Optional[Mapping[str, Any]] = None) -> None:
        if providers is None:
            providers = {"openrouter": OpenRouterProvider(), "groq": GroqProvider()}
        self._providers: Dict[str, Any] = dict(providers)

    def register(self, name: str, provider: Any) -> None:
        self._providers[name] = provider

    def get(self, name: str) -> Optional[Any]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers)

    def is_configured(self, name: str) -> bool:
        provider = self._providers.get(name)
        return provider is not None and bool(getattr(provider, "configured", True))

    def for_task(self, task: str = "widget") -> Any:
        order = list(TASK_PREFERENCES.get(task, TASK_PREFERENCES["widget"]))
        order += [n for n in self._providers if n not in order]
        for name in order:
            if self.is_configured(name):
                return self._providers[name]
        raise ProviderError("No AI provider configured")

    def select(self, provider_type: Optional[str] = None, task: str = "widget") -> Any:
        if provider_type and provider_type != "auto":
            if not self.is_configured(provider_type):
                raise ProviderError(f"Provider '{provider_type}' is not configured", provider=provider_type)
            return self._providers[provider_type]
        return self.for_task(task)

    def status(self) -> Dict[str, Any]:
        providers = {}
        for name, provider in self._providers.items():
            if hasattr(provider, "status"):
                providers[name] = provider.status()
            else:
                providers[name] = {"provider": name, "has_token": True}
        try:
            using = getattr(self.for_task("widget"), "name", None)
        except ProviderError:
            using = None
        return {"using": using, "providers": providers}
