import asyncio
import logging
import math
from typing import Iterable, Sequence

import openai

from alchemorsel.config import Config
from alchemorsel.errors import EmbeddingUnavailable


logger = logging.getLogger(__name__)


type Vector = list[float]


def recipe_embedding_text(
    name: str,
    description: str,
    ingredients: Iterable[str],
    dietary_tags: Iterable[str],
    category: str,
) -> str:
    """The text a recipe is embedded from. Changing it means backfilling every recipe."""
    return (
        f"{name} {description} "
        f"Ingredients: {', '.join(ingredients)} "
        f"Category: {category} "
        f"Dietary: {', '.join(dietary_tags)}"
    )


def zero_vector(dimensions: int) -> Vector:
    return [0.0] * dimensions


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """0 for mismatched lengths and zero vectors, so placeholders never match."""
    if len(a) != len(b):
        return 0.0
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / norm


class EmbeddingGenerator:
    def __init__(
        self,
        *,
        openai_client: openai.AsyncClient | None = None,
        config: Config | None = None,
    ) -> None:
        config = Config() if config is None else config
        # Retries belong to the pipeline, the client makes exactly one call.
        self.openai_client = (
            openai.AsyncClient(api_key=config.openai_api_key, max_retries=0)
            if openai_client is None
            else openai_client
        )
        self.model = config.embedding_model
        self.dimensions = config.embedding_dimensions
        self.timeout = config.embedding_timeout

    async def embed_text(self, text: str, *, timeout: float | None = None) -> Vector:
        timeout = self.timeout if timeout is None else timeout
        try:
            async with asyncio.timeout(timeout):
                emb = await self.openai_client.embeddings.create(
                    input=text,
                    model=self.model,
                    dimensions=self.dimensions,
                    encoding_format="float",
                )
        except TimeoutError as exc:
            raise EmbeddingUnavailable(
                f"Embedding timed out after {timeout}s."
            ) from exc
        except openai.OpenAIError as exc:
            raise EmbeddingUnavailable(f"Embedding call failed. {exc!r}") from exc

        if not emb.data:
            raise EmbeddingUnavailable("Embedding response has no data.")
        vector = list(emb.data[0].embedding)
        if len(vector) != self.dimensions:
            raise EmbeddingUnavailable(
                f"Expected {self.dimensions} dimensions, got {len(vector)}."
            )
        logger.debug("Embedded %d characters", len(text))
        return vector

    async def embed(
        self,
        name: str,
        description: str,
        ingredients: Iterable[str],
        dietary_tags: Iterable[str],
        category: str,
        *,
        timeout: float | None = None,
    ) -> Vector:
        text = recipe_embedding_text(
            name, description, ingredients, dietary_tags, category
        )
        return await self.embed_text(text, timeout=timeout)

    async def close(self) -> None:
        await self.openai_client.close()
