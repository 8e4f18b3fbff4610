"""Tests for the completion client, its HTTP backend, assessment sinks and retries."""

import json

import httpx
import pytest

from conftest import FakeBackend
from verbapath.core.assessment_sink import (
    HttpAssessmentSink,
    InMemoryAssessmentSink,
    NullAssessmentSink,
    build_assessment_sink,
)
from verbapath.core.completion_client import (
    CompletionClient,
    CompletionRequest,
    OpenAICompatibleBackend,
    build_completion_client,
)
from verbapath.core.error_recovery import RetryConfig, execute_async_with_retry
from verbapath.core.exceptions import (
    CompletionError,
    CompletionUnavailableError,
    ConfigurationError,
    StructuredOutputError,
)
from verbapath.core.schema_compiler import compile_schema

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.001, jitter=False)


def chat_response(text, status_code=200):
    return httpx.Response(status_code, json={
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"total_tokens": 5},
    })


def make_backend(handler):
    return OpenAICompatibleBackend(
        api_key="test-key",
        base_url="https://llm.example.test/v1/",
        transport=httpx.MockTransport(handler),
    )


class TestOpenAICompatibleBackend:
    """Chat completions over HTTP."""

    @pytest.mark.asyncio
    async def test_complete_sends_chat_payload(self):
        """Test the request body and the parsed reply."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return chat_response("Hello there")

        backend = make_backend(handler)
        result = await backend.complete(CompletionRequest(
            prompt="Hi", system="Be kind", model="gpt-4o-mini", temperature=0.2, max_output_tokens=50,
        ))

        assert result.text == "Hello there"
        assert result.finish_reason == "stop"
        assert seen["url"] == "https://llm.example.test/v1/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Be kind"},
            {"role": "user", "content": "Hi"},
        ]
        assert seen["body"]["max_tokens"] == 50
        assert "response_format" not in seen["body"]

    @pytest.mark.asyncio
    async def test_json_mode_requests_json_object(self):
        """Test that json_mode sets the response format."""
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return chat_response("{}")

        await make_backend(handler).complete(CompletionRequest(
            prompt="Hi", model="m", temperature=0, json_mode=True,
        ))

        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert seen["body"]["messages"] == [{"role": "user", "content": "Hi"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,recoverable", [(500, True), (429, True), (401, False)])
    async def test_http_errors_raise_completion_error(self, status_code, recoverable):
        """Test status code mapping to recoverable errors."""
        backend = make_backend(lambda request: httpx.Response(status_code, json={"error": "nope"}))

        with pytest.raises(CompletionError) as exc_info:
            await backend.complete(CompletionRequest(prompt="Hi", model="m", temperature=0))

        assert exc_info.value.recoverable is recoverable
        assert exc_info.value.details["status_code"] == status_code

    @pytest.mark.asyncio
    async def test_empty_choices_raise(self):
        """Test that a reply without choices is an error."""
        backend = make_backend(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(CompletionError):
            await backend.complete(CompletionRequest(prompt="Hi", model="m", temperature=0))

    @pytest.mark.asyncio
    async def test_connection_failure_raises_completion_error(self):
        """Test that transport errors are wrapped."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(CompletionError):
            await make_backend(handler).complete(CompletionRequest(prompt="Hi", model="m", temperature=0))

    @pytest.mark.asyncio
    async def test_stream_yields_delta_tokens(self):
        """Test parsing of server-sent chunks."""
        def chunk(text):
            return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\n\n"

        body = chunk("Hel") + ": keep-alive\n\n" + "data: {broken\n\n" + chunk("lo") + "data: [DONE]\n\n"
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=body.encode(), headers={"Content-Type": "text/event-stream"})

        tokens = [
            token async for token in make_backend(handler).stream(
                CompletionRequest(prompt="Hi", model="m", temperature=0)
            )
        ]

        assert tokens == ["Hel", "lo"]
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_generate_image_returns_url(self):
        """Test the image endpoint."""
        backend = make_backend(lambda request: httpx.Response(200, json={"data": [{"url": "https://img/1.png"}]}))

        assert await backend.generate_image("a cat", "1024x1024", "standard") == "https://img/1.png"


class TestCompletionClient:
    """The call surface used by node handlers."""

    @pytest.mark.asyncio
    async def test_unconfigured_client_raises_unavailable(self, offline_client):
        """Test that text calls fail cleanly without a backend."""
        assert offline_client.is_configured is False

        with pytest.raises(CompletionUnavailableError):
            await offline_client.complete("Hi")
        with pytest.raises(CompletionUnavailableError):
            async for _ in offline_client.stream("Hi"):
                pass
        with pytest.raises(CompletionUnavailableError):
            await offline_client.complete_structured("Hi", compile_schema({"type": "string"}))

    @pytest.mark.asyncio
    async def test_defaults_fill_request(self, fake_backend, completion_client):
        """Test default model and temperature."""
        await completion_client.complete("Hi")

        request = fake_backend.requests[0]
        assert request.model == "gpt-4o-mini"
        assert request.temperature == 0.3

    @pytest.mark.asyncio
    async def test_explicit_zero_temperature_is_kept(self, fake_backend, completion_client):
        """Test that a zero temperature is not replaced by the default."""
        await completion_client.complete("Hi", temperature=0)

        assert fake_backend.requests[0].temperature == 0

    @pytest.mark.asyncio
    async def test_retry_recovers_from_transient_failure(self):
        """Test that the client retries recoverable errors."""
        class FlakyBackend(FakeBackend):
            calls = 0

            async def complete(self, request):
                self.calls += 1
                if self.calls == 1:
                    raise CompletionError("temporarily down")
                return await super().complete(request)

        backend = FlakyBackend(default="recovered")
        client = CompletionClient(backend=backend, retry_config=FAST_RETRY)

        result = await client.complete("Hi")

        assert result.text == "recovered"
        assert backend.calls == 2

    @pytest.mark.asyncio
    async def test_structured_reply_is_validated(self):
        """Test a fenced JSON reply."""
        client = CompletionClient(backend=FakeBackend(responses=['```\n["a", "b"]\n```']))

        result = await client.complete_structured("List letters", compile_schema({"type": "array"}))

        assert result.object == ["a", "b"]

    @pytest.mark.asyncio
    async def test_structured_reply_not_json(self):
        """Test that prose replies raise StructuredOutputError."""
        client = CompletionClient(backend=FakeBackend(default="Sure! Here it is."))

        with pytest.raises(StructuredOutputError):
            await client.complete_structured("Hi", compile_schema({"type": "string"}))

    @pytest.mark.asyncio
    async def test_structured_system_prompt_carries_schema(self, fake_backend):
        """Test that the schema is described to the model."""
        fake_backend.default = '"ok"'
        client = CompletionClient(backend=fake_backend)

        await client.complete_structured("Hi", compile_schema({"type": "string"}), system="Be brief")

        system = fake_backend.requests[0].system
        assert system.startswith("Be brief")
        assert '"type": "string"' in system

    @pytest.mark.asyncio
    async def test_image_placeholder_when_disabled(self, completion_client):
        """Test the placeholder image."""
        image = await completion_client.generate_image("a volcano", style="photo")

        assert image.url == "/visuals/placeholder-photo.svg"
        assert image.generated_by_ai is False

    @pytest.mark.asyncio
    async def test_image_generation_enabled(self):
        """Test that generated images get a descriptive alt text."""
        backend = make_backend(lambda request: httpx.Response(200, json={"data": [{"url": "https://img/2.png"}]}))
        client = CompletionClient(backend=backend, image_generation_enabled=True)

        image = await client.generate_image("a volcano", style="diagram")

        assert image.url == "https://img/2.png"
        assert image.alt_text == "Diagram explaining a volcano"
        assert image.generated_by_ai is True

    @pytest.mark.asyncio
    async def test_image_failure_falls_back_to_placeholder(self):
        """Test that image errors never reach the handler."""
        backend = make_backend(lambda request: httpx.Response(500))
        client = CompletionClient(backend=backend, image_generation_enabled=True)

        image = await client.generate_image("a volcano")

        assert image.generated_by_ai is False

    def test_status(self, completion_client, offline_client):
        """Test the status summary."""
        assert completion_client.status()["configured"] is True
        assert completion_client.status()["backend"] == "fake"
        assert offline_client.status()["backend"] is None
        assert offline_client.status()["imageGenerationEnabled"] is False

    def test_build_from_config(self):
        """Test client construction from application config."""
        from verbapath.config import get_testing_config

        config = get_testing_config()
        config.ai_api_key = None
        assert build_completion_client(config).is_configured is False

        config.ai_api_key = "key"
        client = build_completion_client(config)
        assert isinstance(client.backend, OpenAICompatibleBackend)
        assert client.backend.base_url == config.ai_base_url.rstrip("/")


class TestRetry:
    """Retry policy."""

    @pytest.mark.asyncio
    async def test_non_recoverable_error_is_not_retried(self):
        """Test that non-recoverable engine errors fail immediately."""
        calls = []

        async def fails():
            calls.append(1)
            raise ConfigurationError("bad")

        with pytest.raises(ConfigurationError):
            await execute_async_with_retry(fails, FAST_RETRY)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test that the last error propagates."""
        calls = []

        async def fails():
            calls.append(1)
            raise CompletionError("still down")

        with pytest.raises(CompletionError):
            await execute_async_with_retry(fails, FAST_RETRY)

        assert len(calls) == 3

    def test_delay_is_capped(self):
        """Test exponential backoff with a cap."""
        config = RetryConfig(base_delay=1, max_delay=3, jitter=False)

        assert [config.get_delay(n) for n in (1, 2, 3, 4)] == [1, 2, 3, 3]


class TestAssessmentSinks:
    """Destinations for scored assessments."""

    @pytest.mark.asyncio
    async def test_null_sink_discards(self):
        """Test that the null sink reports nothing saved."""
        assert await NullAssessmentSink().save_assessment({"studentId": "s"}) is False

    @pytest.mark.asyncio
    async def test_memory_sink_keeps_payloads(self):
        """Test the in-memory sink."""
        sink = InMemoryAssessmentSink()

        assert await sink.save_assessment({"studentId": "s"}) is True
        assert sink.payloads == [{"studentId": "s"}]

    @pytest.mark.asyncio
    async def test_http_sink_posts_payload(self):
        """Test that the HTTP sink posts JSON."""
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(201, json={"ok": True})

        sink = HttpAssessmentSink("https://lms.example.test/assessments", retry_config=FAST_RETRY,
                                  transport=httpx.MockTransport(handler))

        assert await sink.save_assessment({"studentId": "s", "score": 80}) is True
        assert received == [{"studentId": "s", "score": 80}]

    @pytest.mark.asyncio
    async def test_http_sink_retries_server_errors(self):
        """Test retries on 5xx and the final failure result."""
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(503)

        sink = HttpAssessmentSink("https://lms.example.test/assessments", retry_config=FAST_RETRY,
                                  transport=httpx.MockTransport(handler))

        assert await sink.save_assessment({"studentId": "s"}) is False
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_http_sink_does_not_retry_client_errors(self):
        """Test that 4xx responses fail without retrying."""
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(422)

        sink = HttpAssessmentSink("https://lms.example.test/assessments", retry_config=FAST_RETRY,
                                  transport=httpx.MockTransport(handler))

        assert await sink.save_assessment({"studentId": "s"}) is False
        assert len(attempts) == 1

    def test_build_sink_from_config(self):
        """Test sink selection."""
        from verbapath.config import AssessmentSinkType, get_testing_config

        config = get_testing_config()
        config.assessment_sink = AssessmentSinkType.NONE
        assert isinstance(build_assessment_sink(config), NullAssessmentSink)

        config.assessment_sink = AssessmentSinkType.HTTP
        config.assessment_sink_url = "https://lms.example.test/assessments"
        assert isinstance(build_assessment_sink(config), HttpAssessmentSink)
