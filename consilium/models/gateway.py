"""Agent call gateway: one entry point for chat, embeddings and model listing."""
from __future__ import annotations

from concurrent.futures import Future, TimeoutError as FutureTimeout
from functools import partial
from typing import Any, Callable, Dict, List, TypeVar
import logging
import threading
import time

from consilium.errors import CallTimeoutError, ProviderError
from consilium.models.anthropic import AnthropicClient
from consilium.models.base import ChatResult, EmbeddingResult, PromptBundle
from consilium.models.embeddings import EmbeddingClient
from consilium.models.gemini import GeminiClient
from consilium.models.openai_compat import OpenAICompatClient

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "anthropic", "gemini", "siliconflow", "modelscope")

T = TypeVar("T")


def simulated_reply(doctor_name: str) -> str:
    return (
        f"[Simulated reply - {doctor_name}]\n"
        "Based on the case record and the discussion so far, further physical examination "
        "and supporting investigations are needed to confirm the diagnosis."
    )


def call_with_timeout(fn: Callable[..., T], timeout_seconds: float, *args: Any, **kwargs: Any) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout_seconds``.

    On expiry ``CallTimeoutError`` is raised and the late result is discarded;
    the call itself is not aborted.
    """
    future: Future = Future()

    def _runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)

    threading.Thread(target=_runner, name="consilium-call", daemon=True).start()
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout:
        raise CallTimeoutError(
            f"Call timed out after {timeout_seconds:g}s; check the model configuration or network"
        ) from None


class ModelGateway:
    def __init__(
        self,
        request_timeout: float = 45.0,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        retry_backoff: float = 2.0,
        simulated_delay: float = 0.0,
    ) -> None:
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.simulated_delay = simulated_delay

    @classmethod
    def from_config(cls, providers: Dict[str, Any]) -> "ModelGateway":
        return cls(
            request_timeout=float(providers.get("request_timeout_seconds", 45)),
            max_retries=int(providers.get("max_retries", 2)),
            retry_delay=float(providers.get("retry_delay_seconds", 2.0)),
            retry_backoff=float(providers.get("retry_backoff", 2.0)),
            simulated_delay=float(providers.get("simulated_delay_seconds", 0.0)),
        )

    def generate(self, doctor: Any, prompt: PromptBundle, history: List[Dict[str, Any]]) -> str:
        """Ask ``doctor``'s model for a reply.

        Doctors without an api key get a simulated reply. Any other failure
        raises ``ProviderError`` once retries are exhausted.
        """
        if not doctor.api_key:
            if self.simulated_delay > 0:
                time.sleep(self.simulated_delay)
            return simulated_reply(doctor.name)

        provider = doctor.provider
        if provider in ("openai", "siliconflow", "modelscope"):
            client = OpenAICompatClient.for_provider(
                provider, doctor.api_key, doctor.base_url, timeout=self.request_timeout
            )
            call = partial(client.chat, doctor.model, prompt, history)
        elif provider == "anthropic":
            anthropic = AnthropicClient(doctor.api_key, doctor.base_url, timeout=self.request_timeout)
            call = partial(anthropic.chat, doctor.model, prompt, history)
        elif provider == "gemini":
            gemini = GeminiClient(doctor.api_key, doctor.base_url, timeout=self.request_timeout)
            call = partial(gemini.generate, doctor.model, prompt, history)
        else:
            raise ProviderError(f"Unsupported provider: {provider}")

        result = self._with_retries(f"{provider}:{doctor.model}", call)
        if not result.ok:
            raise ProviderError(
                f"{provider} call failed: {result.error}", status=result.status, body=result.body
            )
        return result.text

    def embed(self, config: Dict[str, Any], text: str) -> List[float]:
        if not text or not str(text).strip():
            return []
        api_key = config.get("api_key") or ""
        if not api_key:
            raise ProviderError("Embedding api key is not configured")
        client = EmbeddingClient(
            api_key,
            model=config.get("model") or "",
            base_url=config.get("base_url") or "",
            timeout=self.request_timeout,
        )
        result = self._with_retries("embedding", partial(client.embed, str(text)))
        if not result.ok:
            raise ProviderError(
                f"Embedding call failed: {result.error}", status=result.status, body=result.body
            )
        return result.vector

    def list_models(self, provider: str, api_key: str, base_url: str = "") -> List[Dict[str, Any]]:
        if provider in ("openai", "siliconflow", "modelscope"):
            client = OpenAICompatClient.for_provider(
                provider, api_key, base_url, timeout=self.request_timeout, listing=True
            )
            return client.list_models()
        if provider == "anthropic":
            return AnthropicClient(api_key, base_url, timeout=self.request_timeout).list_models()
        if provider == "gemini":
            return GeminiClient(api_key, base_url, timeout=self.request_timeout).list_models()
        return []

    def _with_retries(self, label: str, call: Callable[[], Any]) -> Any:
        max_attempts = self.max_retries + 1
        result = None
        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self.retry_delay * (self.retry_backoff ** (attempt - 1))
                logger.info(f"{label} retry {attempt}/{max_attempts - 1} after {delay:.1f}s delay")
                time.sleep(delay)
            result = call()
            if result.ok:
                return result
            if result.timed_out:
                logger.warning(f"{label} timed out, not retrying")
                break
            if not self._is_retryable(result):
                logger.warning(f"{label} error not retryable: {result.error}")
                break
            logger.warning(f"{label} attempt {attempt + 1} failed: {result.error}")
        return result

    @staticmethod
    def _is_retryable(result: ChatResult | EmbeddingResult) -> bool:
        """Network errors, rate limits and server errors are worth retrying."""
        if result.status is None:
            return True
        return result.status == 429 or result.status >= 500
