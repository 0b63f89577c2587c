"""
Generator Client with Retry Logic & Error Handling
Every call to the generative backend goes through here: per-call timeout,
exponential backoff with jitter, and the shared circuit breaker.
"""
import asyncio
import random
import re
import time
from typing import Optional, Protocol, Type, TypeVar, runtime_checkable

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ValidationError
from pydantic_ai import Agent

from src.config import get_settings
from src.core.exceptions import GenerationError
from src.utils.circuit_breaker import CircuitBreaker, get_generator_circuit
from src.utils.metrics import metrics
from src.utils.observability import log_llm_call
from src.utils.result import Result

M = TypeVar("M", bound=BaseModel)


@runtime_checkable
class GenerativeBackend(Protocol):
    """Text-in, text-out model endpoint."""

    model_name: str

    async def complete(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 300,
        temperature: float = 0.7,
    ) -> str:
        ...


class PydanticAIBackend:
    """
    Backend built on pydantic-ai agents (plain text output).

    One agent per distinct system prompt, created lazily.
    """

    def __init__(self, model_name: Optional[str] = None):
        load_dotenv()
        self.model_name = model_name or get_settings().response_model
        self._agents: dict[str, Agent[None, str]] = {}

    def _agent_for(self, system_prompt: str) -> Agent[None, str]:
        agent = self._agents.get(system_prompt)
        if agent is None:
            agent = Agent(
                self.model_name,
                output_type=str,
                instructions=system_prompt,
                defer_model_check=True,
            )
            self._agents[system_prompt] = agent
        return agent

    async def complete(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 300,
        temperature: float = 0.7,
    ) -> str:
        result = await self._agent_for(system_prompt).run(
            prompt,
            model_settings={"max_tokens": max_tokens, "temperature": temperature},
        )
        return result.output


def _categorize(error: Exception) -> tuple[str, bool]:
    """Map a backend exception to (error_type, retryable)."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout", True

    error_msg = str(error).lower()
    if "rate" in error_msg and "limit" in error_msg:
        return "rate_limit", True
    if "timeout" in error_msg or "timed out" in error_msg:
        return "timeout", True
    if any(code in error_msg for code in ["500", "502", "503", "504"]):
        return "server_error", True
    if "authentication" in error_msg or "api key" in error_msg or "401" in error_msg:
        return "auth", False
    if "invalid" in error_msg and "request" in error_msg:
        return "invalid_request", False
    return "unknown", True


class GeneratorClient:
    """
    Resilient wrapper around a GenerativeBackend.

    A client without a backend is "unavailable": `complete` raises
    GenerationError immediately and callers take their static fallbacks.

    Example:
        >>> client = GeneratorClient(PydanticAIBackend("openai:gpt-4o-mini"))
        >>> text = await client.complete("Hi!", system_prompt="Be brief.", operation="respond")
    """

    def __init__(
        self,
        backend: Optional[GenerativeBackend] = None,
        circuit: Optional[CircuitBreaker] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        settings = get_settings()
        self.backend = backend
        self.circuit = circuit or get_generator_circuit()
        self.timeout_seconds = timeout_seconds or settings.generator_timeout_seconds
        self.max_retries = max_retries or settings.max_retries
        self._min_wait = settings.retry_min_wait_seconds
        self._max_wait = settings.retry_max_wait_seconds

    @property
    def available(self) -> bool:
        return self.backend is not None

    @property
    def model_name(self) -> str:
        return getattr(self.backend, "model_name", "unconfigured")

    async def complete(
        self,
        prompt: str,
        system_prompt: str,
        operation: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Run one completion.

        Raises:
            GenerationError: backend missing, circuit open, retries exhausted,
                non-retryable failure, or empty completion
        """
        if self.backend is None:
            raise GenerationError("Generative backend is not configured", retryable=False)

        settings = get_settings()
        max_tokens = max_tokens or settings.response_max_tokens
        temperature = settings.generation_temperature if temperature is None else temperature

        start = time.perf_counter()
        attempts = [0]

        async def execute() -> str:
            return await self._complete_with_retry(prompt, system_prompt, max_tokens, temperature, attempts)

        try:
            text = await self.circuit.call(execute)
            if not isinstance(text, str) or not text.strip():
                raise GenerationError("Generator returned an empty completion", retryable=False)
        except GenerationError as e:
            duration = time.perf_counter() - start
            metrics.generator_calls.inc(operation=operation, outcome="failure")
            metrics.generator_duration.observe(duration, operation=operation)
            log_llm_call(operation, self.model_name, duration * 1000, attempts[0], success=False, error=str(e))
            raise

        duration = time.perf_counter() - start
        metrics.generator_calls.inc(operation=operation, outcome="success")
        metrics.generator_duration.observe(duration, operation=operation)
        log_llm_call(operation, self.model_name, duration * 1000, attempts[0])
        return text.strip()

    async def _complete_with_retry(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
        attempts: list[int],
    ) -> str:
        for attempt in range(1, self.max_retries + 1):
            attempts[0] = attempt
            try:
                logger.debug(f"Generator attempt {attempt}/{self.max_retries}")
                return await asyncio.wait_for(
                    self.backend.complete(prompt, system_prompt, max_tokens=max_tokens, temperature=temperature),
                    timeout=self.timeout_seconds,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error_type, retryable = _categorize(e)

                if not retryable:
                    logger.error(f"🚨 Non-retryable generator failure ({error_type}): {e}")
                    raise GenerationError(f"{error_type}: {e}", retryable=False) from e

                if attempt == self.max_retries:
                    logger.error(f"❌ Max retries ({self.max_retries}) exhausted. Last error: {e}")
                    raise GenerationError(
                        f"Failed after {self.max_retries} attempts: {e}",
                        details={"error_type": error_type},
                    ) from e

                wait_time = min(self._min_wait * (2 ** (attempt - 1)), self._max_wait)
                wait_time = wait_time * (0.8 + 0.4 * random.random())
                logger.info(f"⏳ Retrying in {wait_time:.1f}s... (error: {error_type})")
                await asyncio.sleep(wait_time)

        raise GenerationError("Generator retry loop exited without a result")


_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def parse_structured_output(text: Optional[str], model_cls: Type[M]) -> Result[M]:
    """
    Strictly validate generator JSON against `model_cls`.

    Markdown code fences are stripped; anything else that is not valid JSON
    for the schema is a failure.
    """
    if not isinstance(text, str) or not text.strip():
        return Result.failure("empty output", "empty")

    cleaned = _FENCE.sub("", text)
    try:
        return Result.success(model_cls.model_validate_json(cleaned))
    except ValidationError as e:
        code = "invalid_json" if any(err["type"] == "json_invalid" for err in e.errors()) else "schema"
        return Result.failure(str(e), code)


def build_generator(model_name: str) -> GeneratorClient:
    """Client for `model_name`, or an unavailable client when no API key is configured."""
    if not get_settings().generator_configured:
        logger.warning(f"No API key configured; generator for {model_name} disabled, using static fallbacks")
        return GeneratorClient(backend=None)
    return GeneratorClient(backend=PydanticAIBackend(model_name))
