import pytest

from src.config import get_settings
from src.models.context import ContentCandidate, OriginType
from src.models.conversation import BusinessProfile
from src.utils import circuit_breaker
from src.utils.circuit_breaker import CircuitBreaker
from src.utils.llm_client import GeneratorClient
from src.utils.metrics import metrics


class FakeBackend:
    """
    Scripted GenerativeBackend.

    `responder` is a string, a list consumed in order (the last item repeats),
    or a callable(prompt, system_prompt). Exceptions in the script are raised.
    """

    model_name = "test:fake"

    def __init__(self, responder="Happy to help!"):
        self.responder = responder
        self.calls = []

    async def complete(self, prompt, system_prompt, max_tokens=300, temperature=0.7):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "max_tokens": max_tokens})
        if callable(self.responder):
            reply = self.responder(prompt, system_prompt)
        elif isinstance(self.responder, list):
            reply = self.responder.pop(0) if len(self.responder) > 1 else self.responder[0]
        else:
            reply = self.responder
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """No real API key, fresh settings, fresh metrics and circuit for every test."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    circuit_breaker._generator_circuit = None
    metrics.reset()
    yield
    get_settings.cache_clear()
    circuit_breaker._generator_circuit = None


@pytest.fixture
def make_generator():
    """Build a GeneratorClient around a FakeBackend with a private circuit."""
    def _make(responder="Happy to help!", max_retries=1, failure_threshold=100):
        backend = FakeBackend(responder)
        client = GeneratorClient(
            backend=backend,
            circuit=CircuitBreaker(name="test", failure_threshold=failure_threshold, recovery_timeout=60),
            timeout_seconds=1.0,
            max_retries=max_retries,
        )
        return client, backend
    return _make


@pytest.fixture
def business():
    return BusinessProfile(id="biz-1", name="Bright Marketing", industry="marketing agency")


@pytest.fixture
def services_candidate():
    return ContentCandidate(
        id="tpl-services",
        origin_type=OriginType.TEMPLATE,
        section_name="Services",
        title="Our services",
        content=(
            "We offer web design, SEO and social media marketing services. "
            "Every plan includes monthly reporting and a dedicated account manager."
        ),
    )


@pytest.fixture
def hours_candidate():
    return ContentCandidate(
        id="ctx-hours",
        origin_type=OriginType.CONTEXT,
        section_name="Opening hours",
        content="Our office is open Monday to Friday from 9am to 6pm.",
    )
