"""Uniform call surface over an OpenAI-compatible completion backend."""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .error_recovery import RetryConfig, execute_async_with_retry
from .exceptions import CompletionError, CompletionUnavailableError, StructuredOutputError
from .logging import get_logger


logger = get_logger(__name__)


class CompletionRequest(BaseModel):
    prompt: str
    system: Optional[str] = None
    model: str
    temperature: float
    max_output_tokens: Optional[int] = None
    json_mode: bool = False


class CompletionResult(BaseModel):
    text: str
    usage: Optional[Dict[str, Any]] = None
    finish_reason: Optional[str] = None


class StructuredResult(BaseModel):
    object: Any
    usage: Optional[Dict[str, Any]] = None


class ImageResult(BaseModel):
    url: str
    alt_text: str
    generated_by_ai: bool = False


PLACEHOLDER_IMAGES = {
    "illustration": "/visuals/placeholder-illustration.svg",
    "diagram": "/visuals/placeholder-diagram.svg",
    "photo": "/visuals/placeholder-photo.svg",
    "graphic-organizer": "/visuals/placeholder-graphic-organizer.svg",
}

IMAGE_STYLE_INSTRUCTIONS = {
    "illustration": "Create a clean, colorful, child-friendly illustration. Use simple shapes and bright colors. Avoid text in the image.",
    "diagram": "Create a clear educational diagram with labeled parts. Use simple lines and shapes. Suitable for K-12 students.",
    "photo": "Create a realistic, high-quality photograph suitable for educational materials. Safe for all ages.",
    "graphic-organizer": "Create a visual graphic organizer with clear sections and connections. Use boxes, arrows, and clean lines.",
}

ALT_TEXT_LABELS = {
    "illustration": "Illustration showing",
    "diagram": "Diagram explaining",
    "photo": "Photograph depicting",
    "graphic-organizer": "Graphic organizer for",
}


class CompletionBackend(ABC):
    """Transport to a concrete model provider."""
    
    name = "backend"
    
    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        ...
    
    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        ...
    
    async def generate_image(self, prompt: str, size: str, quality: str) -> Optional[str]:
        raise CompletionUnavailableError("Image generation is not supported by this backend")


class OpenAICompatibleBackend(CompletionBackend):
    """Chat completions, streaming and image generation over HTTP."""
    
    name = "openai-compatible"
    
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        image_model: str = "dall-e-3",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.image_model = image_model
        self._transport = transport
    
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport,
        )
    
    def _payload(self, request: CompletionRequest, stream: bool = False) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})
        
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
        }
        if request.max_output_tokens:
            payload["max_tokens"] = request.max_output_tokens
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
        return payload
    
    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            error = CompletionError(
                f"Completion backend returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
            error.recoverable = retryable
            raise error
    
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        try:
            async with self._client() as client:
                response = await client.post("/chat/completions", json=self._payload(request))
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion backend unreachable: {e}") from e
        
        self._raise_for_status(response)
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise CompletionError("Completion backend returned no choices")
        
        return CompletionResult(
            text=(choices[0].get("message") or {}).get("content") or "",
            usage=data.get("usage"),
            finish_reason=choices[0].get("finish_reason"),
        )
    
    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", "/chat/completions", json=self._payload(request, stream=True)
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                    self._raise_for_status(response)
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            logger.warning(f"Skipping malformed stream chunk: {data[:80]}")
                            continue
                        for choice in chunk.get("choices") or []:
                            token = (choice.get("delta") or {}).get("content")
                            if token:
                                yield token
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion stream failed: {e}") from e
    
    async def generate_image(self, prompt: str, size: str, quality: str) -> Optional[str]:
        try:
            async with self._client() as client:
                response = await client.post("/images/generations", json={
                    "model": self.image_model,
                    "prompt": prompt,
                    "n": 1,
                    "size": size,
                    "quality": quality,
                })
        except httpx.HTTPError as e:
            raise CompletionError(f"Image backend unreachable: {e}") from e
        
        self._raise_for_status(response)
        items = response.json().get("data") or []
        return items[0].get("url") if items else None


class CompletionClient:
    """What node handlers call for text, streams, structured data and images.

    Text, stream and structured calls raise ``CompletionUnavailableError`` when
    no backend is configured so handlers can switch to their deterministic
    fallbacks. ``generate_image`` never raises and returns a placeholder instead.
    """
    
    def __init__(
        self,
        backend: Optional[CompletionBackend] = None,
        default_model: str = "gpt-4o-mini",
        default_temperature: float = 0.3,
        image_generation_enabled: bool = False,
        image_quality: str = "standard",
        retry_config: Optional[RetryConfig] = None,
    ):
        self.backend = backend
        self.default_model = default_model
        self.default_temperature = default_temperature
        self.image_generation_enabled = image_generation_enabled
        self.image_quality = image_quality
        self.retry_config = retry_config
    
    @property
    def is_configured(self) -> bool:
        return self.backend is not None
    
    def _require_backend(self) -> CompletionBackend:
        if self.backend is None:
            raise CompletionUnavailableError()
        return self.backend
    
    def _request(self, prompt, system, model, temperature, max_output_tokens, json_mode=False) -> CompletionRequest:
        return CompletionRequest(
            prompt=prompt,
            system=system,
            model=model or self.default_model,
            temperature=self.default_temperature if temperature is None else temperature,
            max_output_tokens=max_output_tokens,
            json_mode=json_mode,
        )
    
    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> CompletionResult:
        backend = self._require_backend()
        request = self._request(prompt, system, model, temperature, max_output_tokens)
        return await self._call(backend.complete, request)
    
    async def stream(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        backend = self._require_backend()
        request = self._request(prompt, system, model, temperature, max_output_tokens)
        async for token in backend.stream(request):
            yield token
    
    async def complete_structured(
        self,
        prompt: str,
        schema: TypeAdapter,
        system: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> StructuredResult:
        """Ask for JSON matching ``schema`` and validate the reply.

        Raises ``StructuredOutputError`` when the reply is not JSON or fails
        validation.
        """
        backend = self._require_backend()
        instructions = (
            "Respond with a single JSON value that matches this JSON schema. "
            "Do not include any other text.\n"
            f"{json.dumps(schema.json_schema())}"
        )
        request = self._request(
            prompt,
            f"{system}\n\n{instructions}" if system else instructions,
            model,
            temperature,
            None,
            json_mode=True,
        )
        result = await self._call(backend.complete, request)
        raw_text = _strip_code_fence(result.text)
        
        try:
            value = schema.validate_python(json.loads(raw_text))
        except json.JSONDecodeError as e:
            raise StructuredOutputError(f"Response is not valid JSON: {e}", raw_text=result.text) from e
        except ValidationError as e:
            raise StructuredOutputError(
                f"Response does not match schema: {e.error_count()} validation error(s)",
                raw_text=result.text,
            ) from e
        
        return StructuredResult(object=schema.dump_python(value, mode="json"), usage=result.usage)
    
    async def generate_image(
        self,
        prompt: str,
        style: str = "illustration",
        size: str = "1024x1024",
        quality: Optional[str] = None,
    ) -> ImageResult:
        placeholder = ImageResult(
            url=PLACEHOLDER_IMAGES.get(style, PLACEHOLDER_IMAGES["illustration"]),
            alt_text=f"Visual support: {prompt}",
            generated_by_ai=False,
        )
        if not self.image_generation_enabled or self.backend is None:
            return placeholder
        
        instructions = IMAGE_STYLE_INSTRUCTIONS.get(style, IMAGE_STYLE_INSTRUCTIONS["illustration"])
        enhanced_prompt = (
            f"{instructions}\n\nTopic: {prompt}\n\nRequirements:\n"
            "- Safe and appropriate for elementary and middle school students\n"
            "- Clear and easy to understand\n"
            "- No text unless absolutely necessary\n"
            "- High contrast and accessible colors\n"
            "- Educational and engaging"
        )
        
        try:
            url = await self.backend.generate_image(enhanced_prompt, size, quality or self.image_quality)
        except CompletionError as e:
            logger.warning(f"Image generation failed, using placeholder: {e}")
            return placeholder
        
        if not url:
            return placeholder
        
        return ImageResult(
            url=url,
            alt_text=f"{ALT_TEXT_LABELS.get(style, 'Visual support for')} {prompt}",
            generated_by_ai=True,
        )
    
    def status(self) -> Dict[str, Any]:
        return {
            "configured": self.is_configured,
            "backend": self.backend.name if self.backend else None,
            "defaultModel": self.default_model,
            "defaultTemperature": self.default_temperature,
            "imageGenerationEnabled": self.image_generation_enabled and self.is_configured,
            "imageModel": getattr(self.backend, "image_model", None),
            "imageQuality": self.image_quality,
        }
    
    async def _call(self, func, request: CompletionRequest) -> CompletionResult:
        if self.retry_config is None:
            return await func(request)
        return await execute_async_with_retry(func, self.retry_config, request)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def build_completion_client(config) -> CompletionClient:
    """Create the client described by an ``AppConfig``."""
    backend = None
    if config.ai_api_key:
        backend = OpenAICompatibleBackend(
            api_key=config.ai_api_key,
            base_url=config.ai_base_url,
            timeout=config.ai_request_timeout,
            image_model=config.ai_image_model,
        )
    else:
        logger.info("No completion backend configured; node handlers will use fallback content")
    
    return CompletionClient(
        backend=backend,
        default_model=config.ai_default_model,
        default_temperature=config.ai_default_temperature,
        image_generation_enabled=config.ai_enable_image_generation,
        image_quality=config.ai_image_quality,
        retry_config=RetryConfig(max_attempts=2),
    )
