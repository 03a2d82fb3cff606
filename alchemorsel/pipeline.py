"""From a cooking request to a stored recipe.

Every request walks the same states:

    RECEIVED -> GENERATING -> PARSED -> MACRO_COMPUTED -> EMBEDDED -> COMMITTED

and drops to REJECTED from wherever it fails. Nothing is written before
COMMITTED, so a request that fails or is cancelled on the way leaves no trace.
"""

import asyncio
from enum import Enum
import logging
import re
from types import TracebackType
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from alchemorsel.config import Config, EmbeddingFailurePolicy
from alchemorsel.drafts import DraftStore
from alchemorsel.embeddings import EmbeddingGenerator, zero_vector
from alchemorsel.errors import (
    AlchemorselError,
    ConcurrentModificationConflict,
    DraftNotFound,
    EmbeddingUnavailable,
    GenerationError,
    PermissionDenied,
    RecipeNotFound,
    ValidationError,
)
from alchemorsel.generation import GenerationClient
from alchemorsel.macros import calculate_macros
from alchemorsel.models import (
    CommitTarget,
    GenerationIntent,
    Macros,
    Modification,
    Recipe,
    RecipeCandidate,
    RecipeDraft,
    RecipeFavorite,
    RecipeUpdate,
    new_id,
)
from alchemorsel.prompts import modification_constraints
from alchemorsel.repository import RecipeRepository
from alchemorsel.retry import retry


logger = logging.getLogger(__name__)


class PipelineState(Enum):
    RECEIVED = "received"
    GENERATING = "generating"
    PARSED = "parsed"
    MACRO_COMPUTED = "macro_computed"
    EMBEDDED = "embedded"
    COMMITTED = "committed"
    REJECTED = "rejected"


STATE_ORDER = (
    PipelineState.RECEIVED,
    PipelineState.GENERATING,
    PipelineState.PARSED,
    PipelineState.MACRO_COMPUTED,
    PipelineState.EMBEDDED,
    PipelineState.COMMITTED,
)
TERMINAL_STATES = frozenset({PipelineState.COMMITTED, PipelineState.REJECTED})

# Fields the embedding text is built from.
EMBEDDED_FIELDS = frozenset(
    {"name", "description", "ingredients", "category", "dietary_tags"}
)
DERIVED_FIELDS = frozenset({"macros", "embedding", "embedding_pending"})


class PipelineRun:
    """State of one request. Used as a context manager it rejects on any error.

    The state reached before the failure is stamped on the raised
    `AlchemorselError` as `error.state`.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.id = new_id()[:8]
        self.state = PipelineState.RECEIVED
        logger.debug("%s %s: %s", kind, self.id, self.state.name)

    def advance(self, state: PipelineState) -> None:
        if (
            self.state in TERMINAL_STATES
            or state not in STATE_ORDER
            or STATE_ORDER.index(state) != STATE_ORDER.index(self.state) + 1
        ):
            raise RuntimeError(
                f"{self.kind} {self.id} cannot go from {self.state.name} to {state.name}"
            )
        self.state = state
        logger.debug("%s %s: %s", self.kind, self.id, state.name)

    def reject(self, exc: BaseException) -> None:
        if isinstance(exc, AlchemorselError):
            exc.state = self.state
        logger.warning(
            "%s %s rejected after %s: %s", self.kind, self.id, self.state.name, exc
        )
        self.state = PipelineState.REJECTED

    def __enter__(self) -> "PipelineRun":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None and self.state not in TERMINAL_STATES:
            self.reject(exc)


class BatchResult:
    """Outcome of one prompt of a batch. Exactly one of `recipe` and `error` is set."""

    def __init__(
        self,
        *,
        index: int,
        prompt: str,
        state: PipelineState,
        recipe: Recipe | RecipeDraft | None = None,
        error: AlchemorselError | None = None,
    ) -> None:
        self.index = index
        self.prompt = prompt
        self.state = state
        self.recipe = recipe
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        outcome = self.recipe if self.error is None else repr(self.error)
        return f"<BatchResult(index={self.index}, {outcome})>"


def apply_substitutions(
    candidate: RecipeCandidate, substitutions: Mapping[str, str]
) -> RecipeCandidate:
    """Whole word, case insensitive, in the name, ingredients and instructions."""
    name = candidate.name
    ingredients = list(candidate.ingredients)
    instructions = list(candidate.instructions)
    for old, new in substitutions.items():
        if not old.strip():
            continue
        pattern = re.compile(rf"\b{re.escape(old.strip())}\b", re.IGNORECASE)

        def sub(text: str) -> str:
            return pattern.sub(lambda _: new, text)

        name = sub(name)
        ingredients = [sub(i) for i in ingredients]
        instructions = [sub(i) for i in instructions]
    return candidate.model_copy(
        update={"name": name, "ingredients": ingredients, "instructions": instructions}
    )


class RecipePipeline:
    def __init__(
        self,
        *,
        generator: GenerationClient,
        embedder: EmbeddingGenerator,
        drafts: DraftStore,
        repository: RecipeRepository,
        config: Config | None = None,
        calculator: Callable[[Sequence[Any]], Macros] = calculate_macros,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.generator = generator
        self.embedder = embedder
        self.drafts = drafts
        self.repository = repository
        self.config = Config() if config is None else config
        self.calculator = calculator
        self.sleep = sleep

    # Stages

    async def _generate(
        self,
        run: PipelineRun,
        prompt: str,
        *,
        dietary_prefs: Iterable[str] = (),
        allergens: Iterable[str] = (),
        prior_recipe: RecipeCandidate | None = None,
        constraints: Iterable[str] = (),
    ) -> RecipeCandidate:
        run.advance(PipelineState.GENERATING)
        dietary_prefs, allergens, constraints = (
            list(dietary_prefs),
            list(allergens),
            list(constraints),
        )
        candidate = await retry(
            lambda: self.generator.generate(
                prompt,
                dietary_prefs=dietary_prefs,
                allergens=allergens,
                prior_recipe=prior_recipe,
                constraints=constraints,
            ),
            attempts=self.config.retry_attempts,
            backoff=self.config.retry_backoff,
            retry_on=(GenerationError,),
            sleep=self.sleep,
        )
        run.advance(PipelineState.PARSED)
        return candidate

    def _macros(self, run: PipelineRun, candidate: RecipeCandidate) -> Macros:
        macros = self.calculator(candidate.ingredients)
        run.advance(PipelineState.MACRO_COMPUTED)
        return macros

    async def _embedding(
        self, candidate: RecipeCandidate, dietary_tags: Sequence[str]
    ) -> tuple[list[float], bool]:
        """The vector and whether it is a placeholder waiting for a backfill."""
        try:
            vector = await retry(
                lambda: self.embedder.embed(
                    candidate.name,
                    candidate.description,
                    candidate.ingredients,
                    dietary_tags,
                    candidate.category,
                ),
                attempts=self.config.retry_attempts,
                backoff=self.config.retry_backoff,
                retry_on=(EmbeddingUnavailable,),
                sleep=self.sleep,
            )
        except EmbeddingUnavailable:
            if self.config.embedding_failure_policy is EmbeddingFailurePolicy.reject:
                raise
            logger.warning(
                "No embedding for %r, storing a placeholder", candidate.name
            )
            return zero_vector(self.config.embedding_dimensions), True
        return vector, False

    async def _embed(
        self, run: PipelineRun, candidate: RecipeCandidate, dietary_tags: Sequence[str]
    ) -> tuple[list[float], bool]:
        embedding = await self._embedding(candidate, dietary_tags)
        run.advance(PipelineState.EMBEDDED)
        return embedding

    def validate(
        self, candidate: RecipeCandidate, macros: Macros, embedding: Sequence[float]
    ) -> None:
        """Last look before anything is written."""
        candidate.check()
        if not macros.is_non_negative():
            raise ValidationError("macros_non_negative", f"Negative macros: {macros}")
        if len(embedding) != self.config.embedding_dimensions:
            raise ValidationError(
                "embedding_dimension",
                f"Embedding has {len(embedding)} dimensions, "
                f"expected {self.config.embedding_dimensions}.",
            )

    async def _commit(
        self,
        run: PipelineRun,
        candidate: RecipeCandidate,
        macros: Macros,
        embedding: tuple[list[float], bool],
        *,
        owner_id: str,
        dietary_tags: Sequence[str],
        commit: CommitTarget,
    ) -> Recipe | RecipeDraft:
        vector, pending = embedding
        self.validate(candidate, macros, vector)
        if commit is CommitTarget.draft:
            draft_id = await self.drafts.save(
                candidate,
                macros,
                vector,
                owner_id=owner_id,
                dietary_tags=dietary_tags,
                embedding_pending=pending,
            )
            result: Recipe | RecipeDraft = await self.drafts.get(draft_id)
        else:
            result = await self.repository.create(
                Recipe(
                    owner_id=owner_id,
                    candidate=candidate,
                    macros=macros,
                    embedding=vector,
                    embedding_pending=pending,
                    dietary_tags=list(dietary_tags),
                )
            )
        run.advance(PipelineState.COMMITTED)
        logger.info("%s %s committed %s %s", run.kind, run.id, commit.value, result.id)
        return result

    # Generation

    async def generate_recipe(self, intent: GenerationIntent) -> Recipe | RecipeDraft:
        with PipelineRun("generate") as run:
            if not intent.prompt.strip():
                raise ValidationError("prompt_required", "Nothing to make a recipe for.")
            candidate = await self._generate(
                run,
                intent.prompt,
                dietary_prefs=intent.dietary_prefs,
                allergens=intent.allergens,
            )
            macros = self._macros(run, candidate)
            embedding = await self._embed(run, candidate, intent.dietary_prefs)
            return await self._commit(
                run,
                candidate,
                macros,
                embedding,
                owner_id=intent.owner_id,
                dietary_tags=intent.dietary_prefs,
                commit=intent.commit,
            )

    async def _modified_candidate(
        self,
        run: PipelineRun,
        original: RecipeCandidate,
        modification: Modification,
        dietary_prefs: Sequence[str],
    ) -> RecipeCandidate:
        candidate = await self._generate(
            run,
            modification.request,
            dietary_prefs=dietary_prefs,
            allergens=modification.allergens,
            prior_recipe=original,
            constraints=modification_constraints(modification),
        )
        return apply_substitutions(candidate, modification.substitutions)

    async def modify_recipe(
        self,
        recipe_id: str,
        modification: Modification,
        *,
        owner_id: str,
    ) -> Recipe:
        """A variant of the recipe replaces it in place, in one write."""
        with PipelineRun("modify") as run:
            modification.check()
            recipe = await self.get_owned_recipe(recipe_id, owner_id=owner_id)
            dietary_prefs = (
                recipe.dietary_tags
                if modification.dietary_prefs is None
                else modification.dietary_prefs
            )
            candidate = await self._modified_candidate(
                run, recipe.candidate, modification, dietary_prefs
            )
            macros = self._macros(run, candidate)
            vector, pending = await self._embed(run, candidate, dietary_prefs)
            self.validate(candidate, macros, vector)
            updated = await self.repository.update_atomic(
                recipe.id,
                RecipeUpdate(
                    candidate=candidate,
                    macros=macros,
                    embedding=vector,
                    embedding_pending=pending,
                    dietary_tags=list(dietary_prefs),
                ),
                expected_version=recipe.version,
            )
            run.advance(PipelineState.COMMITTED)
            logger.info("modify %s committed recipe %s", run.id, updated.id)
            return updated

    async def generate_batch(
        self,
        prompts: Sequence[str],
        *,
        owner_id: str,
        commit: CommitTarget = CommitTarget.recipe,
        dietary_tags: Sequence[str] = (),
    ) -> list[BatchResult]:
        """One result per prompt, in order. A failed prompt never stops the others."""
        results: list[BatchResult] = []
        size = self.config.batch_size
        for start in range(0, len(prompts), size):
            if start:
                await self.sleep(self.config.batch_delay)
            group = list(prompts[start : start + size])
            logger.info(
                "Batch group %d-%d of %d", start, start + len(group) - 1, len(prompts)
            )
            results.extend(
                await self._generate_group(
                    start,
                    group,
                    owner_id=owner_id,
                    commit=commit,
                    dietary_tags=dietary_tags,
                )
            )

        failed = sum(1 for r in results if not r.ok)
        logger.info("Batch finished: %d committed, %d failed", len(results) - failed, failed)
        return results

    async def _generate_group(
        self,
        offset: int,
        group: list[str],
        *,
        owner_id: str,
        commit: CommitTarget,
        dietary_tags: Sequence[str],
    ) -> list[BatchResult]:
        runs = [PipelineRun("batch") for _ in group]
        for run, prompt in zip(runs, group):
            if prompt.strip():
                run.advance(PipelineState.GENERATING)

        slots: list[RecipeCandidate | AlchemorselError]
        try:
            slots = await retry(
                lambda: self.generator.generate_batch(group),
                attempts=self.config.retry_attempts,
                backoff=self.config.retry_backoff,
                retry_on=(GenerationError,),
                sleep=self.sleep,
            )
        except GenerationError as exc:
            slots = []
            for _ in group:
                error = GenerationError(f"Batch request failed. {exc}")
                error.__cause__ = exc
                slots.append(error)

        return list(
            await asyncio.gather(
                *(
                    self._commit_batch_item(
                        run,
                        offset + i,
                        prompt,
                        slot,
                        owner_id=owner_id,
                        commit=commit,
                        dietary_tags=dietary_tags,
                    )
                    for i, (run, prompt, slot) in enumerate(zip(runs, group, slots))
                )
            )
        )

    async def _commit_batch_item(
        self,
        run: PipelineRun,
        index: int,
        prompt: str,
        slot: RecipeCandidate | AlchemorselError,
        *,
        owner_id: str,
        commit: CommitTarget,
        dietary_tags: Sequence[str],
    ) -> BatchResult:
        try:
            with run:
                if not prompt.strip():
                    raise ValidationError("prompt_required", f"Prompt {index} is empty.")
                if isinstance(slot, AlchemorselError):
                    raise slot
                run.advance(PipelineState.PARSED)
                macros = self._macros(run, slot)
                embedding = await self._embed(run, slot, dietary_tags)
                recipe = await self._commit(
                    run,
                    slot,
                    macros,
                    embedding,
                    owner_id=owner_id,
                    dietary_tags=dietary_tags,
                    commit=commit,
                )
        except AlchemorselError as exc:
            return BatchResult(index=index, prompt=prompt, state=run.state, error=exc)
        return BatchResult(index=index, prompt=prompt, state=run.state, recipe=recipe)

    # Drafts

    async def get_draft(self, draft_id: str, *, owner_id: str) -> RecipeDraft:
        draft = await self.drafts.get(draft_id)
        # Someone else's draft does not exist as far as the caller can tell.
        if draft.owner_id != owner_id:
            raise DraftNotFound(draft_id)
        return draft

    async def update_draft(
        self,
        draft_id: str,
        fields: Mapping[str, Any],
        *,
        owner_id: str,
    ) -> RecipeDraft:
        """Edit a draft. Macros and embedding follow the edited fields."""
        derived = DERIVED_FIELDS & set(fields)
        if derived:
            raise ValidationError(
                "derived_field", f"{sorted(derived)} are computed, not set."
            )
        attempt = 1
        while True:
            draft = await self.get_draft(draft_id, owner_id=owner_id)
            edited = draft.with_fields(fields)
            changes = dict(fields)

            if EMBEDDED_FIELDS & set(fields):
                macros = self.calculator(edited.candidate.ingredients)
                vector, pending = await self._embedding(
                    edited.candidate, edited.dietary_tags
                )
                changes.update(
                    macros=macros, embedding=vector, embedding_pending=pending
                )
                self.validate(edited.candidate, macros, vector)
            else:
                edited.candidate.check()

            # Derived fields only hold for the version they were computed from.
            try:
                return await self.drafts.update(
                    draft_id, changes, expected_version=draft.version
                )
            except ConcurrentModificationConflict:
                if attempt >= self.config.retry_attempts:
                    raise
                logger.info("Draft %s changed while editing, recomputing", draft_id)
                attempt += 1

    async def modify_draft(
        self,
        draft_id: str,
        modification: Modification,
        *,
        owner_id: str,
    ) -> RecipeDraft:
        with PipelineRun("modify_draft") as run:
            modification.check()
            draft = await self.get_draft(draft_id, owner_id=owner_id)
            dietary_prefs = (
                draft.dietary_tags
                if modification.dietary_prefs is None
                else modification.dietary_prefs
            )
            candidate = await self._modified_candidate(
                run, draft.candidate, modification, dietary_prefs
            )
            macros = self._macros(run, candidate)
            vector, pending = await self._embed(run, candidate, dietary_prefs)
            self.validate(candidate, macros, vector)
            updated = await self.drafts.update(
                draft_id,
                {
                    **candidate.model_dump(),
                    "macros": macros,
                    "embedding": vector,
                    "embedding_pending": pending,
                    "dietary_tags": list(dietary_prefs),
                },
                expected_version=draft.version,
            )
            run.advance(PipelineState.COMMITTED)
            return updated

    async def delete_draft(self, draft_id: str, *, owner_id: str) -> None:
        await self.get_draft(draft_id, owner_id=owner_id)
        await self.drafts.delete(draft_id)

    async def promote_draft(self, draft_id: str, *, owner_id: str) -> Recipe:
        """The draft becomes a recipe and is gone afterwards."""
        draft = await self.get_draft(draft_id, owner_id=owner_id)
        self.validate(draft.candidate, draft.macros, draft.embedding)
        recipe = await self.repository.create(
            Recipe(
                owner_id=draft.owner_id,
                candidate=draft.candidate,
                macros=draft.macros,
                embedding=draft.embedding,
                embedding_pending=draft.embedding_pending,
                dietary_tags=draft.dietary_tags,
            )
        )
        await self.drafts.delete(draft_id)
        logger.info("Promoted draft %s to recipe %s", draft_id, recipe.id)
        return recipe

    # Recipes

    async def get_owned_recipe(self, recipe_id: str, *, owner_id: str) -> Recipe:
        recipe = await self.repository.get_by_id(recipe_id)
        if recipe.owner_id != owner_id:
            raise PermissionDenied(f"{owner_id} does not own recipe {recipe_id}")
        return recipe

    async def delete_recipe(self, recipe_id: str, *, owner_id: str) -> None:
        await self.get_owned_recipe(recipe_id, owner_id=owner_id)
        await self.repository.delete(recipe_id)

    async def get_user_recipes(self, owner_id: str) -> list[Recipe]:
        """Own recipes first, then favorites, each recipe once."""
        owned, favorites = await asyncio.gather(
            self.repository.list_by_owner(owner_id),
            self.repository.list_favorites(owner_id),
        )
        seen: set[str] = set()
        recipes: list[Recipe] = []
        for recipe in [*owned, *favorites]:
            if recipe.id not in seen:
                seen.add(recipe.id)
                recipes.append(recipe)
        return recipes

    async def favorite_recipe(self, recipe_id: str, *, user_id: str) -> RecipeFavorite:
        return await self.repository.add_favorite(recipe_id, user_id)

    async def unfavorite_recipe(self, recipe_id: str, *, user_id: str) -> None:
        await self.repository.remove_favorite(recipe_id, user_id)

    async def search_recipes(
        self,
        query: str,
        *,
        n: int = 3,
        owner_id: str | None = None,
    ) -> list[Recipe]:
        if not query.strip():
            raise ValidationError("query_required", "Nothing to search for.")
        vector = await retry(
            lambda: self.embedder.embed_text(query),
            attempts=self.config.retry_attempts,
            backoff=self.config.retry_backoff,
            retry_on=(EmbeddingUnavailable,),
            sleep=self.sleep,
        )
        return await self.repository.search_similar(vector, n=n, owner_id=owner_id)

    async def backfill_embeddings(self, *, limit: int = 100) -> int:
        """Embed recipes stored with a placeholder. Returns how many were fixed."""
        done = 0
        for recipe in await self.repository.list_pending_embeddings(limit):
            try:
                vector = await retry(
                    lambda: self.embedder.embed(
                        recipe.name,
                        recipe.candidate.description,
                        recipe.candidate.ingredients,
                        recipe.dietary_tags,
                        recipe.candidate.category,
                    ),
                    attempts=self.config.retry_attempts,
                    backoff=self.config.retry_backoff,
                    retry_on=(EmbeddingUnavailable,),
                    sleep=self.sleep,
                )
            except EmbeddingUnavailable as exc:
                logger.warning("Still no embedding for recipe %s: %s", recipe.id, exc)
                continue
            try:
                await self.repository.update_atomic(
                    recipe.id,
                    RecipeUpdate(
                        candidate=recipe.candidate,
                        macros=recipe.macros,
                        embedding=vector,
                        embedding_pending=False,
                    ),
                    expected_version=recipe.version,
                )
            except (ConcurrentModificationConflict, RecipeNotFound):
                logger.info("Recipe %s changed while backfilling, skipped", recipe.id)
                continue
            done += 1
        logger.info("Backfilled %d embeddings", done)
        return done
