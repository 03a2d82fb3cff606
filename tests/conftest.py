from typing import Any, Callable, Iterable, Sequence
import zlib

import pytest

from alchemorsel.config import Config
from alchemorsel.drafts import InMemoryDraftStore
from alchemorsel.embeddings import recipe_embedding_text
from alchemorsel.errors import (
    AlchemorselError,
    EmbeddingUnavailable,
    GenerationError,
    ValidationError,
)
from alchemorsel.models import RecipeCandidate
from alchemorsel.pipeline import RecipePipeline
from alchemorsel.repository import InMemoryRecipeRepository


DIMENSIONS = 8


def bag_of_words(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    vector = [0.0] * dimensions
    for word in text.lower().replace(",", " ").split():
        vector[zlib.crc32(word.encode()) % dimensions] += 1.0
    return vector


def pasta(**kwargs: Any) -> RecipeCandidate:
    data: dict[str, Any] = {
        "name": "Tomato Basil Pasta",
        "description": "Quick vegetarian pasta",
        "category": "Pasta",
        "cuisine": "Italian",
        "ingredients": ["200 g pasta", "2 tomatoes", "1 handful basil"],
        "instructions": ["Boil the pasta", "Toss with tomatoes and basil"],
        "servings": "2",
    }
    data.update(kwargs)
    return RecipeCandidate(**data)


def chicken_stir_fry(**kwargs: Any) -> RecipeCandidate:
    data: dict[str, Any] = {
        "name": "Chicken Stir Fry",
        "description": "Weeknight stir fry",
        "category": "Main Course",
        "ingredients": ["300 g chicken", "1 cup rice", "1 tbsp soy sauce"],
        "instructions": ["Fry the chicken", "Serve over rice"],
        "servings": "2",
    }
    data.update(kwargs)
    return RecipeCandidate(**data)


def default_response(
    prompt: str, prior_recipe: RecipeCandidate | None
) -> RecipeCandidate:
    if prior_recipe is not None:
        return prior_recipe.model_copy(deep=True)
    return pasta(name=prompt.strip().title())


class FakeGenerator:
    def __init__(
        self,
        respond: Callable[[str, RecipeCandidate | None], RecipeCandidate] = default_response,
        *,
        failures: int = 0,
        failing_prompts: Iterable[str] = (),
        batch_error: GenerationError | None = None,
    ) -> None:
        self.respond = respond
        self.failures = failures
        self.failing_prompts = set(failing_prompts)
        self.batch_error = batch_error
        self.calls: list[dict[str, Any]] = []
        self.batch_calls: list[list[str]] = []

    async def generate(
        self,
        prompt: str,
        *,
        dietary_prefs: Iterable[str] = (),
        allergens: Iterable[str] = (),
        prior_recipe: RecipeCandidate | None = None,
        constraints: Iterable[str] = (),
        timeout: float | None = None,
    ) -> RecipeCandidate:
        self.calls.append(
            {
                "prompt": prompt,
                "dietary_prefs": list(dietary_prefs),
                "allergens": list(allergens),
                "prior_recipe": prior_recipe,
                "constraints": list(constraints),
            }
        )
        if self.failures:
            self.failures -= 1
            raise GenerationError("provider down")
        return self.respond(prompt, prior_recipe)

    async def generate_batch(
        self, prompts: Sequence[str], *, timeout: float | None = None
    ) -> list[RecipeCandidate | AlchemorselError]:
        self.batch_calls.append(list(prompts))
        if self.batch_error is not None:
            raise self.batch_error
        slots: list[RecipeCandidate | AlchemorselError] = []
        for i, prompt in enumerate(prompts):
            if not prompt.strip():
                slots.append(ValidationError("prompt_required"))
            elif prompt in self.failing_prompts:
                slots.append(GenerationError(f"No recipe returned for request {i}."))
            else:
                slots.append(self.respond(prompt, None))
        return slots


class FakeEmbedder:
    def __init__(
        self,
        dimensions: int = DIMENSIONS,
        *,
        failures: int = 0,
        always_fail: bool = False,
    ) -> None:
        self.dimensions = dimensions
        self.failures = failures
        self.always_fail = always_fail
        self.texts: list[str] = []

    async def embed_text(self, text: str, *, timeout: float | None = None) -> list[float]:
        self.texts.append(text)
        if self.always_fail:
            raise EmbeddingUnavailable("embeddings down")
        if self.failures:
            self.failures -= 1
            raise EmbeddingUnavailable("embeddings down")
        return bag_of_words(text, self.dimensions)

    async def embed(
        self,
        name: str,
        description: str,
        ingredients: Iterable[str],
        dietary_tags: Iterable[str],
        category: str,
        *,
        timeout: float | None = None,
    ) -> list[float]:
        text = recipe_embedding_text(
            name, description, ingredients, dietary_tags, category
        )
        return await self.embed_text(text, timeout=timeout)


class Sleeper:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def config() -> Config:
    return Config(
        _env_file=None,  # pyright: ignore[reportCallIssue]
        embedding_dimensions=DIMENSIONS,
        retry_attempts=3,
        retry_backoff=0.5,
        batch_size=2,
        batch_delay=2.0,
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def drafts() -> InMemoryDraftStore:
    return InMemoryDraftStore()


@pytest.fixture
def repository() -> InMemoryRecipeRepository:
    return InMemoryRecipeRepository()


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def pipeline(
    generator: FakeGenerator,
    embedder: FakeEmbedder,
    drafts: InMemoryDraftStore,
    repository: InMemoryRecipeRepository,
    config: Config,
    sleeper: Sleeper,
) -> RecipePipeline:
    return RecipePipeline(
        generator=generator,  # pyright: ignore[reportArgumentType]
        embedder=embedder,  # pyright: ignore[reportArgumentType]
        drafts=drafts,
        repository=repository,
        config=config,
        sleep=sleeper,
    )
