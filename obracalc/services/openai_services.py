"""OpenAI-backed extraction, embedding and generation services."""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Sequence
from typing import Any

from openai import AsyncOpenAI
from pydantic import ValidationError

from obracalc.config import LLMConfig
from obracalc.core.errors import EmbeddingError, ExtractionError, GenerationError
from obracalc.models import TokenUsage
from obracalc.services.ports import (
    EmbeddingBatch,
    EmbeddingService,
    ExtractionService,
    GenerationService,
    T,
)

logger = logging.getLogger(__name__)


def build_client(config: LLMConfig) -> AsyncOpenAI:
    if not config.api_key:
        raise ValueError("OPENAI_API_KEY is required for extraction, embedding and judge calls")
    return AsyncOpenAI(
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.request_timeout,
        max_retries=0,  # Retries are handled by the callers
    )


def _parse_json(content: str | None) -> dict[str, Any]:
    if not content:
        raise ValueError("Empty response from model")
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class OpenAIExtractionService(ExtractionService):
    """Structured extraction over PDF pages via chat completions.

    The page is sent as a base64 ``file`` content part and the model is
    asked for a JSON object matching ``output_model``.
    """

    def __init__(self, config: LLMConfig, client: AsyncOpenAI | None = None):
        self.config = config
        self.client = client or build_client(config)
        self.model = config.extraction_model

    async def extract(
        self, document: bytes, instructions: str, output_model: type[T]
    ) -> tuple[T, TokenUsage]:
        encoded = base64.b64encode(document).decode("ascii")
        schema = json.dumps(output_model.model_json_schema(), ensure_ascii=False)

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": (
                        "You extract structured data from construction price books. "
                        "Answer with a single JSON object matching this JSON schema:\n"
                        f"{schema}"
                    ),
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instructions},
                        {
                            "type": "file",
                            "file": {
                                "filename": "page.pdf",
                                "file_data": f"data:application/pdf;base64,{encoded}",
                            },
                        },
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=self.config.temperature,
        )

        usage = TokenUsage(
            extraction_tokens=response.usage.total_tokens if response.usage else 0
        )
        try:
            data = _parse_json(response.choices[0].message.content)
            return output_model.model_validate(data), usage
        except (ValueError, ValidationError) as e:
            raise ExtractionError(f"Invalid extraction output: {e}") from e


class OpenAIEmbeddingService(EmbeddingService):
    """Embeddings with a fixed output dimensionality."""

    def __init__(self, config: LLMConfig, dimension: int, client: AsyncOpenAI | None = None):
        self.config = config
        self.client = client or build_client(config)
        self.model = config.embeddings_model
        self.max_dimension = dimension

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        if not texts:
            return EmbeddingBatch(vectors=[], tokens=0)

        response = await self.client.embeddings.create(
            model=self.model,
            input=list(texts),
            dimensions=self.max_dimension,  # Force dimension to match DB schema
        )
        ordered = sorted(response.data, key=lambda d: d.index)
        if len(ordered) != len(texts):
            raise EmbeddingError(
                f"Embedding count mismatch: sent {len(texts)}, got {len(ordered)}"
            )
        tokens = response.usage.total_tokens if response.usage else 0
        return EmbeddingBatch(vectors=[d.embedding for d in ordered], tokens=tokens)


class OpenAIGenerationService(GenerationService):
    """JSON-mode chat completion for judging and decomposition."""

    def __init__(self, config: LLMConfig, client: AsyncOpenAI | None = None):
        self.config = config
        self.client = client or build_client(config)
        self.model = config.judge_model

    async def generate(
        self, prompt: str, output_model: type[T] | None = None
    ) -> T | dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a Spanish construction cost estimator. Always answer in JSON.",
                },
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=self.config.temperature,
        )

        try:
            data = _parse_json(response.choices[0].message.content)
        except ValueError as e:
            raise GenerationError(f"Unparseable model answer: {e}") from e

        if output_model is None:
            return data
        try:
            return output_model.model_validate(data)
        except ValidationError as e:
            raise GenerationError(f"Model answer does not match {output_model.__name__}: {e}") from e


__all__ = [
    "OpenAIEmbeddingService",
    "OpenAIExtractionService",
    "OpenAIGenerationService",
    "build_client",
]
