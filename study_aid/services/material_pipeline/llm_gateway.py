"""
Gemini-first LLM gateway for material processing, with optional OpenAI fallback.

Failures are translated into the pipeline error taxonomy so the retry policy
can tell a rate limit from a broken request.
"""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Any, List, Optional

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI
from langchain_openai import ChatOpenAI

from services.material_pipeline.errors import (
    MaterialPipelineError,
    ProviderRateLimitError,
    TransientProviderError,
    describe_error,
    is_rate_limit_message,
    is_retryable_error,
)
from utils.logger import get_logger

logger = get_logger(__name__)

DETERMINISTIC_VECTOR_SIZE = 256

_IMAGE_PROMPT = (
    "You are a vision-language parser preparing study material.\n"
    "Extract ALL visible text from the image, including handwritten notes, printed text, "
    "labels in diagrams and charts, lists and numbered items.\n"
    "Preserve structure where possible and do NOT truncate.\n"
    "Return only the extracted text."
)


class MaterialLLMGateway:
    def __init__(self) -> None:
        load_dotenv()
        self._vertex_model = None
        self._fallback_model = None
        self._embedding_model = None
        self._fallback_enabled = os.getenv("LLM_FALLBACK_ENABLED", "false").strip().lower() in ("1", "true", "yes")

        gcp_project = os.getenv("GCP_PROJECT_ID", "").strip() or None
        gcp_location = os.getenv("GCP_LLM_LOCATION") or os.getenv("GCP_LOCATION", "us-central1")
        gcp_model = os.getenv("GCP_GEMINI_MODEL", "gemini-2.5-flash")
        openai_api_key = os.getenv("OPENAI_API_KEY", "").strip() or None
        openai_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

        if gcp_project:
            try:
                self._vertex_model = ChatVertexAI(
                    model=gcp_model,
                    project=gcp_project,
                    location=gcp_location,
                    temperature=0.2,
                )
            except Exception as exc:
                logger.warning("Gemini model init failed: %s", exc)
                self._vertex_model = None

        if self._fallback_enabled and openai_api_key:
            try:
                self._fallback_model = ChatOpenAI(
                    openai_api_key=openai_api_key,
                    model=openai_model,
                    temperature=0.2,
                )
            except Exception as exc:
                logger.warning("OpenAI fallback init failed: %s", exc)
                self._fallback_model = None

        self._embedding_model = _build_embedding_model(gcp_project, openai_api_key)

    def available(self) -> bool:
        return self._vertex_model is not None or self._fallback_model is not None

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        messages: List[Any] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))
        return self._invoke(messages)

    def extract_image_text(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
        encoded = base64.b64encode(image_bytes).decode("utf-8")
        message = HumanMessage(
            content=[
                {"type": "text", "text": _IMAGE_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
            ]
        )
        return self._invoke([message])

    def embed(self, text: str) -> List[float]:
        if self._embedding_model is None:
            return deterministic_vector(text)
        try:
            vector = self._embedding_model.embed_query(text)
        except Exception as exc:
            raise _classify(exc) from exc
        if not vector:
            raise TransientProviderError("Embedding provider returned an empty vector")
        return [float(value) for value in vector]

    def _invoke(self, messages: List[Any]) -> str:
        if not self.available():
            raise TransientProviderError("No LLM provider configured")
        last_error: Optional[Exception] = None
        if self._vertex_model is not None:
            try:
                text = _to_text(self._vertex_model.invoke(messages))
                if text:
                    return text
                last_error = TransientProviderError("Gemini returned an empty response")
            except Exception as exc:
                logger.warning("Gemini invoke failed: %s", exc)
                last_error = exc
        if self._fallback_enabled and self._fallback_model is not None:
            try:
                text = _to_text(self._fallback_model.invoke(messages))
                if text:
                    logger.warning("material_pipeline_llm_fallback_used model=%s", _model_name(self._fallback_model))
                    return text
                last_error = TransientProviderError("Fallback model returned an empty response")
            except Exception as exc:
                logger.warning("Fallback invoke failed: %s", exc)
                last_error = exc
        if isinstance(last_error, MaterialPipelineError):
            raise last_error
        raise _classify(last_error) from last_error


def _build_embedding_model(gcp_project: Optional[str], openai_api_key: Optional[str]):
    google_api_key = os.getenv("GOOGLE_API_KEY", "").strip() or None
    if gcp_project or google_api_key:
        try:
            from langchain_google_genai import GoogleGenerativeAIEmbeddings

            return GoogleGenerativeAIEmbeddings(
                model=os.getenv("EMBEDDING_MODEL", "gemini-embedding-001").strip() or "gemini-embedding-001",
                project=gcp_project,
            )
        except Exception as exc:
            logger.warning("Gemini embedding init failed: %s", exc)
    if openai_api_key:
        try:
            from langchain_openai import OpenAIEmbeddings

            return OpenAIEmbeddings(
                openai_api_key=openai_api_key,
                model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            )
        except Exception as exc:
            logger.warning("OpenAI embedding init failed: %s", exc)
    logger.info("No embedding model configured; using deterministic vectors")
    return None


def _classify(exc: Optional[BaseException]) -> MaterialPipelineError:
    message = describe_error(exc) if exc is not None else "No LLM response available"
    if is_rate_limit_message(message):
        return ProviderRateLimitError(message)
    if exc is None or is_retryable_error(exc):
        return TransientProviderError(message)
    return MaterialPipelineError(message, error_code="provider_error")


def deterministic_vector(text: str, size: int = DETERMINISTIC_VECTOR_SIZE) -> List[float]:
    """Stable pseudo-embedding for local runs without an embedding provider."""
    values = [0.0] * size
    for token in (text or "").lower().split():
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        pos = int.from_bytes(digest[:4], "big") % size
        values[pos] += 1.0 if digest[4] & 1 else -1.0
    norm = sum(value * value for value in values) ** 0.5 or 1.0
    return [value / norm for value in values]


def _to_text(message_obj) -> str:
    value = getattr(message_obj, "content", "")
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("text"):
                parts.append(str(item["text"]))
        return "\n".join(parts).strip()
    return str(value or "").strip()


def _model_name(model_obj) -> str:
    return getattr(model_obj, "model_name", None) or getattr(model_obj, "model", None) or "unknown_model"
