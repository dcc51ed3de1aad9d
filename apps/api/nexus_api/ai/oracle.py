from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from typing import Protocol, TypeVar

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from nexus_api.ai.errors import OracleError, RateLimitedError
from nexus_api.core.config import get_settings
from nexus_api.metrics import observe_oracle_rate_limited
from nexus_api.otel import ai_span

logger = logging.getLogger("nexus_api.ai.oracle")
tracer = trace.get_tracer("nexus_api.ai.oracle")

ModelT = TypeVar("ModelT", bound=BaseModel)


class Oracle(Protocol):
    def generate_structured(self, system_prompt: str, prompt: str, schema: type[ModelT]) -> ModelT: ...


class SlidingWindowLimiter:
    """Allows at most `max_calls` acquisitions in any trailing `window_seconds`."""

    def __init__(self, max_calls: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            while self._calls and self._calls[0] <= now - self.window_seconds:
                self._calls.popleft()
            if len(self._calls) >= self.max_calls:
                wait_ms = max(int((self._calls[0] + self.window_seconds - now) * 1000), 1)
                raise RateLimitedError(
                    f"Rate limit: max {self.max_calls} requests/min. Try again in {-(-wait_ms // 1000)}s.",
                    wait_ms,
                )
            self._calls.append(now)

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()


class _ResponseCache:
    def __init__(self, ttl_seconds: float, max_entries: int = 100, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, str]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, text = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return text

    def put(self, key: str, text: str) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), text)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)


class GeminiOracle:
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        limiter: SlidingWindowLimiter | None = None,
        client: genai.Client | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.limiter = limiter or SlidingWindowLimiter(settings.oracle_max_requests_per_minute)
        self._cache = _ResponseCache(settings.oracle_cache_ttl_seconds)
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise OracleError("Gemini API key is not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate_structured(self, system_prompt: str, prompt: str, schema: type[ModelT]) -> ModelT:
        cache_key = f"{schema.__name__}:{system_prompt[:200]}:{prompt[:200]}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.info("ai.oracle.cache_hit", extra={"outcome": schema.__name__})
            return schema.model_validate_json(cached)

        try:
            self.limiter.acquire()
        except RateLimitedError:
            observe_oracle_rate_limited("local_window")
            raise

        with ai_span(tracer, "ai.oracle.generate", model=self.model, schema=schema.__name__) as span:
            client = self._get_client()
            try:
                response = client.models.generate_content(
                    model=self.model,
                    contents=prompt,
                    config=types.GenerateContentConfig(
                        system_instruction=system_prompt,
                        temperature=0.3,
                        response_mime_type="application/json",
                        response_schema=schema,
                    ),
                )
            except genai_errors.APIError as exc:
                span.record_exception(exc)
                if exc.code == 429:
                    observe_oracle_rate_limited("provider")
                    raise RateLimitedError(
                        "Gemini quota exhausted (429)",
                        get_settings().oracle_provider_backoff_ms,
                    ) from exc
                raise OracleError(f"Gemini request failed: {exc}") from exc

            text = response.text or ""
            try:
                result = schema.model_validate_json(text)
            except ValidationError as exc:
                raise OracleError(f"Gemini returned malformed {schema.__name__}") from exc

        self._cache.put(cache_key, text)
        return result


_default_oracle: GeminiOracle | None = None
_default_lock = threading.Lock()


def get_oracle() -> Oracle:
    global _default_oracle
    with _default_lock:
        if _default_oracle is None:
            _default_oracle = GeminiOracle()
        return _default_oracle
