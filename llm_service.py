"""
Language-model service used by the analyzer and the OCR delegate.

Wraps LangChain chat models (OpenAI or Anthropic). Callers get validated
pydantic objects back, never raw dicts. Rate-limit errors from the SDK are
re-raised unchanged so the shared backoff policy can see them; the SDK's own
retry loop is disabled so there is exactly one retry layer.
"""
import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Type, TypeVar

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from errors import AnalysisServiceError
from retry import is_rate_limit_error

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class LLMConfig:
    """Provider settings for the language-model service."""
    provider: str = "openai"  # "openai", "anthropic"
    model: str = "gpt-4o"
    vision_model: Optional[str] = None  # defaults to `model`
    timeout_seconds: float = 120.0
    default_temperature: float = 0.1
    default_max_tokens: int = 2000

    @classmethod
    def from_env(cls) -> "LLMConfig":
        provider = os.getenv("LLM_PROVIDER", "openai").lower()
        default_model = "claude-3-5-sonnet-latest" if provider == "anthropic" else "gpt-4o"
        return cls(
            provider=provider,
            model=os.getenv("LLM_MODEL", default_model),
            vision_model=os.getenv("LLM_VISION_MODEL") or None,
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
        )


def strip_code_fences(text: str) -> str:
    """Pull the JSON body out of a ```json fenced reply."""
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]
    return text.strip()


class LangChainLLMService:
    """
    Structured-output and transcription calls against a chat model.

    Every call has an explicit timeout. A timeout surfaces as
    AnalysisServiceError like any other non-rate-limit failure.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig.from_env()

    def _build_model(self, temperature: float, max_tokens: int, model: Optional[str] = None) -> Any:
        model = model or self.config.model
        if self.config.provider == "openai":
            if not os.getenv("OPENAI_API_KEY"):
                raise AnalysisServiceError("OPENAI_API_KEY not set", stage="llm")
            return ChatOpenAI(
                model=model,
                temperature=temperature,
                max_completion_tokens=max_tokens,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        if self.config.provider == "anthropic":
            if not os.getenv("ANTHROPIC_API_KEY"):
                raise AnalysisServiceError("ANTHROPIC_API_KEY not set", stage="llm")
            return ChatAnthropic(  # type: ignore[call-arg]
                model_name=model,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        raise AnalysisServiceError(f"Unknown LLM provider: {self.config.provider}", stage="llm")

    def _invoke(self, llm: Any, messages: list) -> str:
        try:
            response = llm.invoke(messages)
        except Exception as e:
            if is_rate_limit_error(e):
                raise
            raise AnalysisServiceError(f"Language-model call failed: {e}", stage="llm") from e
        return str(response.content)

    def complete_json(
        self,
        system: str,
        user: str,
        schema: Type[ModelT],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelT:
        """
        Ask for a JSON object and validate it against `schema`.

        Raises:
            AnalysisServiceError: On transport errors, unparseable JSON or
                output that does not fit the schema
            Exception: Rate-limit errors from the SDK, unchanged
        """
        llm = self._build_model(
            self.config.default_temperature if temperature is None else temperature,
            max_tokens or self.config.default_max_tokens,
        )
        messages = [SystemMessage(content=system), HumanMessage(content=user)]
        response_text = self._invoke(llm, messages)

        try:
            payload = json.loads(strip_code_fences(response_text))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse LLM response as JSON: {e}")
            raise AnalysisServiceError(f"Response was not valid JSON: {e}", stage="llm") from e

        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            logger.error(f"LLM response did not match {schema.__name__}: {e}")
            raise AnalysisServiceError(
                f"Response did not match {schema.__name__}: {e.error_count()} errors", stage="llm"
            ) from e

    def transcribe_image(self, data: bytes, mime_type: str) -> str:
        """Best-effort transcription of all visible text in an image."""
        llm = self._build_model(0.0, 4000, model=self.config.vision_model)
        encoded = base64.b64encode(data).decode("ascii")
        messages = [
            HumanMessage(content=[
                {
                    "type": "text",
                    "text": "Extract all text from this document image. "
                            "Return only the extracted text, preserving layout where possible.",
                },
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
            ])
        ]
        return self._invoke(llm, messages).strip()
