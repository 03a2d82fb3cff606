import asyncio
from typing import Any

import pytest

from alchemorsel.config import Config, EmbeddingFailurePolicy
from alchemorsel.drafts import InMemoryDraftStore
from alchemorsel.embeddings import cosine_similarity, recipe_embedding_text
from alchemorsel.errors import (
    ConcurrentModificationConflict,
    DraftNotFound,
    EmbeddingUnavailable,
    GenerationError,
    PermissionDenied,
    RecipeNotFound,
    ValidationError,
)
from alchemorsel.macros import calculate_macros
from alchemorsel.models import (
    CommitTarget,
    GenerationIntent,
    Macros,
    Modification,
    Recipe,
    RecipeCandidate,
    RecipeDraft,
    RecipeUpdate,
)
from alchemorsel.pipeline import PipelineState, RecipePipeline, apply_substitutions
from alchemorsel.repository import InMemoryRecipeRepository

from conftest import (
    DIMENSIONS,
    FakeEmbedder,
    FakeGenerator,
    Sleeper,
    bag_of_words,
    chicken_stir_fry,
    pasta,
)


MEAT = ("chicken", "beef", "pork", "bacon", "lamb", "fish", "turkey")


def make_pipeline(config: Config, **kwargs: Any) -> RecipePipeline:
    kwargs.setdefault("generator", FakeGenerator())
    kwargs.setdefault("embedder", FakeEmbedder())
    kwargs.setdefault("drafts", InMemoryDraftStore())
    kwargs.setdefault("repository", InMemoryRecipeRepository())
    kwargs.setdefault("sleep", Sleeper())
    return RecipePipeline(config=config, **kwargs)


def expected_embedding(candidate: RecipeCandidate, dietary_tags: list[str]) -> list[float]:
    return bag_of_words(
        recipe_embedding_text(
            candidate.name,
            candidate.description,
            candidate.ingredients,
            dietary_tags,
            candidate.category,
        )
    )


def stir_fry_generator() -> FakeGenerator:
    return FakeGenerator(
        lambda prompt, prior: chicken_stir_fry() if prior is None else prior
    )


async def stored_stir_fry(pipeline: RecipePipeline) -> Recipe:
    recipe = await pipeline.generate_recipe(
        GenerationIntent(
            prompt="chicken stir fry", owner_id="ada", commit=CommitTarget.recipe
        )
    )
    assert isinstance(recipe, Recipe)
    return recipe


# Generate


@pytest.mark.asyncio
async def test_vegetarian_pasta_draft(
    pipeline: RecipePipeline, generator: FakeGenerator
) -> None:
    intent = GenerationIntent(
        prompt="vegetarian pasta with tomatoes and basil",
        owner_id="ada",
        dietary_prefs=["vegetarian"],
    )

    draft = await pipeline.generate_recipe(intent)

    assert isinstance(draft, RecipeDraft)
    ingredients = " ".join(draft.candidate.ingredients).lower()
    assert not any(meat in ingredients for meat in MEAT)
    assert draft.macros == calculate_macros(draft.candidate.ingredients)
    assert draft.macros.calories > 0
    assert draft.embedding == expected_embedding(draft.candidate, ["vegetarian"])
    assert len(draft.embedding) == DIMENSIONS
    assert not draft.embedding_pending
    assert draft.dietary_tags == ["vegetarian"]
    assert await pipeline.get_draft(draft.id, owner_id="ada") == draft
    assert generator.calls[0]["dietary_prefs"] == ["vegetarian"]
    assert generator.calls[0]["prior_recipe"] is None


@pytest.mark.asyncio
async def test_generate_commits_recipe(
    pipeline: RecipePipeline, repository: InMemoryRecipeRepository
) -> None:
    recipe = await pipeline.generate_recipe(
        GenerationIntent(prompt="pasta", owner_id="ada", commit=CommitTarget.recipe)
    )

    assert isinstance(recipe, Recipe)
    assert recipe.version == 1
    stored = await repository.get_by_id(recipe.id)
    assert stored.candidate.ingredients == recipe.candidate.ingredients
    assert stored.macros == calculate_macros(recipe.candidate.ingredients)
    assert stored.embedding == expected_embedding(recipe.candidate, [])


@pytest.mark.asyncio
async def test_generation_is_retried(config: Config) -> None:
    sleeper = Sleeper()
    generator = FakeGenerator(failures=2)
    pipeline = make_pipeline(config, generator=generator, sleep=sleeper)

    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    assert isinstance(draft, RecipeDraft)
    assert len(generator.calls) == 3
    assert sleeper.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_generation_failure_stores_nothing(config: Config) -> None:
    drafts = InMemoryDraftStore()
    pipeline = make_pipeline(
        config, generator=FakeGenerator(failures=10), drafts=drafts
    )

    with pytest.raises(GenerationError) as exc_info:
        await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    assert exc_info.value.state is PipelineState.GENERATING
    assert drafts._drafts == {}


@pytest.mark.asyncio
async def test_blank_prompt(pipeline: RecipePipeline, generator: FakeGenerator) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await pipeline.generate_recipe(GenerationIntent(prompt="  ", owner_id="ada"))

    assert exc_info.value.invariant == "prompt_required"
    assert exc_info.value.state is PipelineState.RECEIVED
    assert generator.calls == []


@pytest.mark.asyncio
async def test_embedding_failure_rejects(config: Config) -> None:
    repository = InMemoryRecipeRepository()
    embedder = FakeEmbedder(always_fail=True)
    pipeline = make_pipeline(config, embedder=embedder, repository=repository)

    with pytest.raises(EmbeddingUnavailable) as exc_info:
        await pipeline.generate_recipe(
            GenerationIntent(prompt="pasta", owner_id="ada", commit=CommitTarget.recipe)
        )

    assert exc_info.value.state is PipelineState.MACRO_COMPUTED
    assert len(embedder.texts) == config.retry_attempts
    assert await repository.list_by_owner("ada") == []


@pytest.mark.asyncio
async def test_embedding_failure_placeholder(config: Config) -> None:
    config = config.model_copy(
        update={"embedding_failure_policy": EmbeddingFailurePolicy.placeholder}
    )
    pipeline = make_pipeline(config, embedder=FakeEmbedder(always_fail=True))

    recipe = await pipeline.generate_recipe(
        GenerationIntent(prompt="pasta", owner_id="ada", commit=CommitTarget.recipe)
    )

    assert recipe.embedding == [0.0] * DIMENSIONS
    assert recipe.embedding_pending


@pytest.mark.asyncio
async def test_wrong_embedding_length_is_rejected(config: Config) -> None:
    drafts = InMemoryDraftStore()
    pipeline = make_pipeline(config, embedder=FakeEmbedder(dimensions=3), drafts=drafts)

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    assert exc_info.value.invariant == "embedding_dimension"
    assert exc_info.value.state is PipelineState.EMBEDDED
    assert drafts._drafts == {}


@pytest.mark.asyncio
async def test_negative_macros_are_rejected(config: Config) -> None:
    pipeline = make_pipeline(
        config, calculator=lambda _: Macros.model_construct(calories=-1.0, protein=0.0, carbs=0.0, fat=0.0)
    )

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    assert exc_info.value.invariant == "macros_non_negative"


@pytest.mark.asyncio
async def test_cancelled_request_stores_nothing(config: Config) -> None:
    started = asyncio.Event()

    class SlowGenerator(FakeGenerator):
        async def generate(self, prompt: str, **kwargs: Any) -> RecipeCandidate:
            started.set()
            await asyncio.sleep(60)
            return pasta()

    drafts = InMemoryDraftStore()
    pipeline = make_pipeline(config, generator=SlowGenerator(), drafts=drafts)

    task = asyncio.create_task(
        pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))
    )
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert drafts._drafts == {}


# Modify


def test_apply_substitutions() -> None:
    got = apply_substitutions(
        chicken_stir_fry(instructions=["Fry the Chicken", "Add chickpeas"]),
        {"chicken": "tofu"},
    )
    assert got.name == "tofu Stir Fry"
    assert got.ingredients[0] == "300 g tofu"
    assert got.instructions == ["Fry the tofu", "Add chickpeas"]


@pytest.mark.asyncio
async def test_modify_chicken_to_tofu(config: Config) -> None:
    generator = stir_fry_generator()
    repository = InMemoryRecipeRepository()
    pipeline = make_pipeline(config, generator=generator, repository=repository)
    original = await stored_stir_fry(pipeline)

    modified = await pipeline.modify_recipe(
        original.id, Modification(substitutions={"chicken": "tofu"}), owner_id="ada"
    )

    ingredients = " ".join(modified.candidate.ingredients).lower()
    assert "tofu" in ingredients
    assert "chicken" not in ingredients
    assert modified.macros == calculate_macros(modified.candidate.ingredients)
    assert modified.macros != original.macros
    assert modified.embedding == expected_embedding(modified.candidate, [])
    assert modified.version == original.version + 1
    assert modified.id == original.id
    assert await repository.get_by_id(original.id) == modified

    call = generator.calls[-1]
    assert call["prior_recipe"] == original.candidate
    assert any('Replace "chicken" with "tofu"' in c for c in call["constraints"])


@pytest.mark.asyncio
async def test_modify_scale(config: Config) -> None:
    generator = stir_fry_generator()
    pipeline = make_pipeline(config, generator=generator)
    original = await stored_stir_fry(pipeline)

    await pipeline.modify_recipe(
        original.id, Modification(request="for a crowd", scale=2), owner_id="ada"
    )

    call = generator.calls[-1]
    assert call["prompt"] == "for a crowd"
    assert any("factor of 2" in c for c in call["constraints"])


@pytest.mark.asyncio
async def test_modify_someone_elses_recipe(config: Config) -> None:
    pipeline = make_pipeline(config, generator=stir_fry_generator())
    original = await stored_stir_fry(pipeline)

    with pytest.raises(PermissionDenied):
        await pipeline.modify_recipe(
            original.id, Modification(request="spicier"), owner_id="mallory"
        )


@pytest.mark.asyncio
async def test_modify_missing_recipe(pipeline: RecipePipeline) -> None:
    with pytest.raises(RecipeNotFound) as exc_info:
        await pipeline.modify_recipe("nope", Modification(request="spicier"), owner_id="ada")
    assert exc_info.value.state is PipelineState.RECEIVED


@pytest.mark.asyncio
async def test_modify_needs_a_change(pipeline: RecipePipeline) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await pipeline.modify_recipe("nope", Modification(), owner_id="ada")
    assert exc_info.value.invariant == "modification_required"


@pytest.mark.asyncio
async def test_modify_conflict(config: Config) -> None:
    repository = InMemoryRecipeRepository()

    class RacingGenerator(FakeGenerator):
        """Someone else edits the recipe while this request is generating."""

        async def generate(self, prompt: str, **kwargs: Any) -> RecipeCandidate:
            prior = kwargs.get("prior_recipe")
            if prior is None:
                return chicken_stir_fry()
            (recipe,) = await repository.list_by_owner("ada")
            await repository.update_atomic(
                recipe.id,
                RecipeUpdate(
                    candidate=prior, macros=recipe.macros, embedding=recipe.embedding
                ),
            )
            return prior

    pipeline = make_pipeline(config, generator=RacingGenerator(), repository=repository)
    original = await stored_stir_fry(pipeline)

    with pytest.raises(ConcurrentModificationConflict) as exc_info:
        await pipeline.modify_recipe(
            original.id, Modification(substitutions={"chicken": "tofu"}), owner_id="ada"
        )

    assert exc_info.value.state is PipelineState.EMBEDDED
    stored = await repository.get_by_id(original.id)
    assert stored.version == 2
    assert "300 g chicken" in stored.candidate.ingredients


# Batch


@pytest.mark.asyncio
async def test_batch_failure_at_one_index(config: Config) -> None:
    prompts = ["soup", "salad", "curry", "cake", "bread"]
    generator = FakeGenerator(failing_prompts=["cake"])
    repository = InMemoryRecipeRepository()
    sleeper = Sleeper()
    pipeline = make_pipeline(
        config, generator=generator, repository=repository, sleep=sleeper
    )

    results = await pipeline.generate_batch(prompts, owner_id="ada")

    assert [r.index for r in results] == [0, 1, 2, 3, 4]
    assert [r.prompt for r in results] == prompts
    assert [r.ok for r in results] == [True, True, True, False, True]
    assert isinstance(results[3].error, GenerationError)
    assert results[3].state is PipelineState.REJECTED
    assert results[3].error.state is PipelineState.GENERATING
    assert all(r.state is PipelineState.COMMITTED for r in results if r.ok)
    assert [r.recipe.name for r in results if r.recipe is not None] == [
        "Soup",
        "Salad",
        "Curry",
        "Bread",
    ]
    assert len(await repository.list_by_owner("ada")) == 4
    assert generator.batch_calls == [["soup", "salad"], ["curry", "cake"], ["bread"]]
    assert sleeper.delays == [2.0, 2.0]


@pytest.mark.asyncio
async def test_batch_group_failure_does_not_stop_the_batch(config: Config) -> None:
    generator = FakeGenerator(batch_error=GenerationError("unreachable"))
    sleeper = Sleeper()
    pipeline = make_pipeline(config, generator=generator, sleep=sleeper)

    results = await pipeline.generate_batch(["soup", "salad", "curry"], owner_id="ada")

    assert len(results) == 3
    assert all(isinstance(r.error, GenerationError) for r in results)
    # Both groups are tried, each with the full retry budget.
    assert len(generator.batch_calls) == 2 * config.retry_attempts
    assert sleeper.delays == [0.5, 1.0, 2.0, 0.5, 1.0]


@pytest.mark.asyncio
async def test_batch_blank_prompt(config: Config) -> None:
    pipeline = make_pipeline(config)

    results = await pipeline.generate_batch(["soup", " "], owner_id="ada")

    assert results[0].ok
    assert isinstance(results[1].error, ValidationError)
    assert results[1].error.state is PipelineState.RECEIVED


@pytest.mark.asyncio
async def test_batch_to_drafts(config: Config) -> None:
    drafts = InMemoryDraftStore()
    pipeline = make_pipeline(config, drafts=drafts)

    results = await pipeline.generate_batch(
        ["soup"], owner_id="ada", commit=CommitTarget.draft, dietary_tags=["vegan"]
    )

    draft = results[0].recipe
    assert isinstance(draft, RecipeDraft)
    assert draft.dietary_tags == ["vegan"]
    assert list(drafts._drafts) == [draft.id]


@pytest.mark.asyncio
async def test_batch_embedding_failure_is_per_item(config: Config) -> None:
    pipeline = make_pipeline(config, embedder=FakeEmbedder(always_fail=True))

    results = await pipeline.generate_batch(["soup", "salad"], owner_id="ada")

    assert [type(r.error) for r in results] == [EmbeddingUnavailable] * 2
    assert all(r.error.state is PipelineState.MACRO_COMPUTED for r in results if r.error)


# Drafts


@pytest.mark.asyncio
async def test_draft_lifecycle(pipeline: RecipePipeline, repository: InMemoryRecipeRepository) -> None:
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    with pytest.raises(DraftNotFound):
        await pipeline.get_draft(draft.id, owner_id="mallory")

    recipe = await pipeline.promote_draft(draft.id, owner_id="ada")

    assert recipe.candidate == draft.candidate
    assert recipe.macros == draft.macros
    assert recipe.embedding == draft.embedding
    assert await repository.get_by_id(recipe.id) == recipe
    with pytest.raises(DraftNotFound):
        await pipeline.get_draft(draft.id, owner_id="ada")


@pytest.mark.asyncio
async def test_get_after_delete(pipeline: RecipePipeline) -> None:
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    await pipeline.delete_draft(draft.id, owner_id="ada")

    with pytest.raises(DraftNotFound):
        await pipeline.get_draft(draft.id, owner_id="ada")
    with pytest.raises(DraftNotFound):
        await pipeline.delete_draft(draft.id, owner_id="ada")


@pytest.mark.asyncio
async def test_update_draft_ingredients(pipeline: RecipePipeline) -> None:
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))
    ingredients = ["200 g pasta", "100 g parmesan"]

    updated = await pipeline.update_draft(
        draft.id, {"ingredients": ingredients}, owner_id="ada"
    )

    assert updated.candidate.ingredients == ingredients
    assert updated.macros == calculate_macros(ingredients)
    assert updated.embedding == expected_embedding(updated.candidate, [])
    assert await pipeline.get_draft(draft.id, owner_id="ada") == updated


@pytest.mark.asyncio
async def test_update_draft_other_fields(
    pipeline: RecipePipeline, embedder: FakeEmbedder
) -> None:
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))
    embedded = len(embedder.texts)

    updated = await pipeline.update_draft(draft.id, {"cuisine": "Sicilian"}, owner_id="ada")

    assert updated.candidate.cuisine == "Sicilian"
    assert updated.embedding == draft.embedding
    assert len(embedder.texts) == embedded


@pytest.mark.parametrize(
    "fields,invariant",
    (
        ({"macros": {"calories": 1}}, "derived_field"),
        ({"embedding": [1.0] * DIMENSIONS}, "derived_field"),
        ({"ingredients": []}, "ingredients_required"),
        ({"name": " "}, "name_required"),
        ({"owner_id": "mallory"}, "unknown_field"),
    ),
)
@pytest.mark.asyncio
async def test_update_draft_rejects(
    pipeline: RecipePipeline, fields: dict[str, Any], invariant: str
) -> None:
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    with pytest.raises(ValidationError) as exc_info:
        await pipeline.update_draft(draft.id, fields, owner_id="ada")

    assert exc_info.value.invariant == invariant
    assert await pipeline.get_draft(draft.id, owner_id="ada") == draft


class SlowEmbedder(FakeEmbedder):
    """Embeds text that mentions `slow_word` later than anything else."""

    def __init__(self, slow_word: str) -> None:
        super().__init__()
        self.slow_word = slow_word

    async def embed_text(self, text: str, *, timeout: float | None = None) -> list[float]:
        await asyncio.sleep(0.05 if self.slow_word in text else 0.01)
        return await super().embed_text(text, timeout=timeout)


@pytest.mark.asyncio
async def test_concurrent_draft_edits_keep_macros_in_step(config: Config) -> None:
    embedder = SlowEmbedder("tofu")
    pipeline = make_pipeline(config, embedder=embedder)
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    await asyncio.gather(
        pipeline.update_draft(draft.id, {"ingredients": ["300 g chicken"]}, owner_id="ada"),
        pipeline.update_draft(draft.id, {"description": "with tofu"}, owner_id="ada"),
    )

    got = await pipeline.get_draft(draft.id, owner_id="ada")
    assert got.candidate.ingredients == ["300 g chicken"]
    assert got.candidate.description == "with tofu"
    assert got.macros == calculate_macros(["300 g chicken"])
    assert got.embedding == expected_embedding(got.candidate, [])
    assert got.version == draft.version + 2


@pytest.mark.asyncio
async def test_concurrent_draft_edit_gives_up(config: Config) -> None:
    pipeline = make_pipeline(
        config.model_copy(update={"retry_attempts": 1}), embedder=SlowEmbedder("tofu")
    )
    draft = await pipeline.generate_recipe(GenerationIntent(prompt="pasta", owner_id="ada"))

    first, second = await asyncio.gather(
        pipeline.update_draft(draft.id, {"ingredients": ["300 g chicken"]}, owner_id="ada"),
        pipeline.update_draft(draft.id, {"description": "with tofu"}, owner_id="ada"),
        return_exceptions=True,
    )

    assert isinstance(first, RecipeDraft)
    assert isinstance(second, ConcurrentModificationConflict)
    got = await pipeline.get_draft(draft.id, owner_id="ada")
    assert got == first
    assert got.macros == calculate_macros(got.candidate.ingredients)


@pytest.mark.asyncio
async def test_modify_draft(config: Config) -> None:
    pipeline = make_pipeline(config, generator=stir_fry_generator())
    draft = await pipeline.generate_recipe(
        GenerationIntent(prompt="stir fry", owner_id="ada", dietary_prefs=["dairy-free"])
    )

    modified = await pipeline.modify_draft(
        draft.id,
        Modification(substitutions={"chicken": "tofu"}, dietary_prefs=["vegan"]),
        owner_id="ada",
    )

    assert modified.id == draft.id
    assert "300 g tofu" in modified.candidate.ingredients
    assert modified.macros == calculate_macros(modified.candidate.ingredients)
    assert modified.dietary_tags == ["vegan"]
    assert modified.embedding == expected_embedding(modified.candidate, ["vegan"])


# Recipes


@pytest.mark.asyncio
async def test_user_recipes_and_favorites(config: Config) -> None:
    pipeline = make_pipeline(config)
    intent = GenerationIntent(prompt="soup", owner_id="ada", commit=CommitTarget.recipe)
    mine = await pipeline.generate_recipe(intent)
    theirs = await pipeline.generate_recipe(intent.model_copy(update={"owner_id": "bob"}))

    await pipeline.favorite_recipe(theirs.id, user_id="ada")
    await pipeline.favorite_recipe(mine.id, user_id="ada")

    got = await pipeline.get_user_recipes("ada")
    assert [r.id for r in got] == [mine.id, theirs.id]

    await pipeline.unfavorite_recipe(theirs.id, user_id="ada")
    assert [r.id for r in await pipeline.get_user_recipes("ada")] == [mine.id]


@pytest.mark.asyncio
async def test_delete_recipe(config: Config) -> None:
    pipeline = make_pipeline(config)
    recipe = await pipeline.generate_recipe(
        GenerationIntent(prompt="soup", owner_id="ada", commit=CommitTarget.recipe)
    )

    with pytest.raises(PermissionDenied):
        await pipeline.delete_recipe(recipe.id, owner_id="bob")
    await pipeline.delete_recipe(recipe.id, owner_id="ada")
    assert await pipeline.get_user_recipes("ada") == []


@pytest.mark.asyncio
async def test_search_recipes(config: Config) -> None:
    embedder = FakeEmbedder()
    pipeline = make_pipeline(config, embedder=embedder)
    for prompt in ("tomato soup", "chocolate cake", "green salad"):
        await pipeline.generate_recipe(
            GenerationIntent(prompt=prompt, owner_id="ada", commit=CommitTarget.recipe)
        )
    best = (await pipeline.get_user_recipes("ada"))[-1]
    query = recipe_embedding_text(
        best.name,
        best.candidate.description,
        best.candidate.ingredients,
        best.dietary_tags,
        best.candidate.category,
    )

    got = await pipeline.search_recipes(query, n=2)

    assert len(got) == 2
    assert embedder.texts[-1] == query
    assert cosine_similarity(got[0].embedding, bag_of_words(query)) == pytest.approx(1.0)
    assert await pipeline.search_recipes(query, owner_id="bob") == []


@pytest.mark.asyncio
async def test_search_needs_a_query(pipeline: RecipePipeline) -> None:
    with pytest.raises(ValidationError):
        await pipeline.search_recipes(" ")


@pytest.mark.asyncio
async def test_backfill_embeddings(config: Config) -> None:
    config = config.model_copy(
        update={"embedding_failure_policy": EmbeddingFailurePolicy.placeholder}
    )
    embedder = FakeEmbedder(always_fail=True)
    repository = InMemoryRecipeRepository()
    pipeline = make_pipeline(config, embedder=embedder, repository=repository)
    recipe = await pipeline.generate_recipe(
        GenerationIntent(prompt="soup", owner_id="ada", commit=CommitTarget.recipe)
    )
    assert recipe.embedding_pending

    assert await pipeline.backfill_embeddings() == 0

    embedder.always_fail = False
    assert await pipeline.backfill_embeddings() == 1

    stored = await repository.get_by_id(recipe.id)
    assert not stored.embedding_pending
    assert stored.embedding == expected_embedding(stored.candidate, [])
    assert stored.version == 2
    assert await repository.list_pending_embeddings() == []
