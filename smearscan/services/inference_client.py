"""
Remote multimodal inference client.

Thin wrapper around an OpenAI-compatible chat-completions endpoint shared by
the smear verifier and the lab-risk predictor. It sends either a text prompt
or an image plus a text prompt and returns the model's raw text. Parsing
the JSON object out of that text also lives here, because both callers
receive the same fenced-or-bare JSON answers.
"""

import json
import re

from openai import AsyncOpenAI, OpenAIError

from smearscan.config.config import Settings, get_settings
from smearscan.config.logging_config import get_logger
from smearscan.services.errors import RemoteInferenceError, ResponseParseError
from smearscan.services.image_preprocessor import InlineImage

logger = get_logger(__name__)

FENCE_OPEN_PATTERN = re.compile(r"^```(?:json)?[ \t]*\n?", re.IGNORECASE)
FENCE_CLOSE_PATTERN = re.compile(r"\n?```\s*$")


def strip_code_fences(content: str) -> str:
    """Remove a ```json ... ``` or bare ``` ... ``` wrapper around a response."""
    text = content.strip()
    text = FENCE_OPEN_PATTERN.sub("", text, count=1)
    text = FENCE_CLOSE_PATTERN.sub("", text, count=1)
    return text.strip()


def _parse_embedded_object(text: str) -> dict | None:
    """Try the outermost {...} span, for answers with prose around the object."""
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None


def parse_json_response(content: str) -> dict:
    """
    Parse the single JSON object contained in a model response.

    Raises:
        ResponseParseError: If the content is empty, not JSON, or not an object.
    """
    text = strip_code_fences(content or "")
    if not text:
        raise ResponseParseError("Empty response from remote model")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        parsed = _parse_embedded_object(text)
        if parsed is None:
            logger.warning("JSON parse failed", content=text[:100])
            raise ResponseParseError(f"Malformed JSON in remote response: {e}") from e

    if not isinstance(parsed, dict):
        raise ResponseParseError(
            f"Expected a JSON object, got {type(parsed).__name__}"
        )
    return parsed


class InferenceClient:
    """
    Client for the remote multimodal model.

    Stateless apart from the lazily created HTTP client, so one instance is
    safe to share across concurrent scans. No retries are performed here.
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the inference client.

        Args:
            settings: Application settings. Uses default if not provided.
        """
        self.settings = settings or get_settings()
        self._client: AsyncOpenAI | None = None

    @property
    def configured(self) -> bool:
        return self.settings.llm_configured

    @property
    def client(self) -> AsyncOpenAI:
        """
        Get or create the OpenAI-compatible client.

        Lazily initialized to avoid issues during testing.
        """
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.llm_api_key,
                base_url=self.settings.llm_base_url,
                timeout=self.settings.llm_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def generate(self, prompt: str, image: InlineImage | None = None) -> str:
        """
        Send one prompt (optionally with an image) and return the text answer.

        Raises:
            RemoteInferenceError: Missing credentials, transport or API failure,
                or an empty answer.
        """
        if not self.configured:
            raise RemoteInferenceError("Remote inference API key not configured")

        if image is not None:
            content = [
                {"type": "image_url", "image_url": {"url": image.data_url}},
                {"type": "text", "text": prompt},
            ]
        else:
            content = prompt

        try:
            response = await self.client.chat.completions.create(
                model=self.settings.llm_model,
                messages=[{"role": "user", "content": content}],
                max_tokens=self.settings.llm_max_tokens,
                temperature=self.settings.llm_temperature,
            )
        except OpenAIError as e:
            logger.error(
                "Remote inference API error",
                error=str(e),
                error_type=type(e).__name__,
                with_image=image is not None,
            )
            raise RemoteInferenceError(f"Remote inference failed: {e}") from e

        if not response.choices:
            raise RemoteInferenceError("Remote inference returned no choices")

        text = response.choices[0].message.content or ""
        if not text.strip():
            raise RemoteInferenceError("Remote inference returned an empty message")

        logger.debug(
            "Remote inference complete",
            with_image=image is not None,
            response_length=len(text),
        )
        return text


# Singleton instance for dependency injection
_inference_client: InferenceClient | None = None


def get_inference_client() -> InferenceClient:
    """Get the shared remote inference client."""
    global _inference_client
    if _inference_client is None:
        _inference_client = InferenceClient()
    return _inference_client
