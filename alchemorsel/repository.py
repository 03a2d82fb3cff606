import asyncio
from collections import defaultdict
import json
import logging
from typing import Any, Mapping, Protocol

from databases import Database

from alchemorsel.embeddings import cosine_similarity
from alchemorsel.errors import (
    ConcurrentModificationConflict,
    NotFound,
    RecipeNotFound,
)
from alchemorsel.models import (
    Macros,
    Recipe,
    RecipeCandidate,
    RecipeFavorite,
    RecipeUpdate,
)
from alchemorsel.vector_index import RecipeVectorIndex


logger = logging.getLogger(__name__)


class RecipeRepository(Protocol):
    async def get_by_id(self, recipe_id: str) -> Recipe: ...

    async def create(self, recipe: Recipe) -> Recipe: ...

    async def update_atomic(
        self,
        recipe_id: str,
        update: RecipeUpdate,
        *,
        expected_version: int | None = None,
    ) -> Recipe: ...

    async def list_by_owner(self, owner_id: str) -> list[Recipe]: ...

    async def delete(self, recipe_id: str) -> None: ...

    async def add_favorite(self, recipe_id: str, user_id: str) -> RecipeFavorite: ...

    async def remove_favorite(self, recipe_id: str, user_id: str) -> None: ...

    async def list_favorites(self, user_id: str) -> list[Recipe]: ...

    async def search_similar(
        self,
        vector: list[float],
        *,
        n: int = 3,
        owner_id: str | None = None,
    ) -> list[Recipe]: ...

    async def list_pending_embeddings(self, limit: int = 100) -> list[Recipe]: ...


def _check_version(recipe: Recipe, expected_version: int | None) -> None:
    if expected_version is not None and recipe.version != expected_version:
        raise ConcurrentModificationConflict(
            f"Recipe {recipe.id} is at version {recipe.version}, "
            f"update was made against {expected_version}."
        )


def rank_by_similarity(
    vector: list[float], recipes: list[Recipe], n: int
) -> list[Recipe]:
    scored = [
        (cosine_similarity(vector, r.embedding), r)
        for r in recipes
        if not r.embedding_pending
    ]
    scored.sort(key=lambda s: s[0], reverse=True)
    return [r for _, r in scored[:n]]


class InMemoryRecipeRepository:
    def __init__(self) -> None:
        self._recipes: dict[str, Recipe] = {}
        self._favorites: dict[tuple[str, str], RecipeFavorite] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_by_id(self, recipe_id: str) -> Recipe:
        try:
            return self._recipes[recipe_id].model_copy(deep=True)
        except KeyError:
            raise RecipeNotFound(recipe_id) from None

    async def create(self, recipe: Recipe) -> Recipe:
        self._recipes[recipe.id] = recipe.model_copy(deep=True)
        logger.debug("Created %r", recipe)
        return recipe

    async def update_atomic(
        self,
        recipe_id: str,
        update: RecipeUpdate,
        *,
        expected_version: int | None = None,
    ) -> Recipe:
        async with self._locks[recipe_id]:
            current = await self.get_by_id(recipe_id)
            _check_version(current, expected_version)
            updated = current.apply(update)
            self._recipes[recipe_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_owner(self, owner_id: str) -> list[Recipe]:
        recipes = [
            r.model_copy(deep=True)
            for r in self._recipes.values()
            if r.owner_id == owner_id
        ]
        return sorted(recipes, key=lambda r: r.created_at, reverse=True)

    async def delete(self, recipe_id: str) -> None:
        async with self._locks[recipe_id]:
            if self._recipes.pop(recipe_id, None) is None:
                raise RecipeNotFound(recipe_id)
            for key in [k for k in self._favorites if k[0] == recipe_id]:
                del self._favorites[key]

    async def add_favorite(self, recipe_id: str, user_id: str) -> RecipeFavorite:
        await self.get_by_id(recipe_id)
        favorite = self._favorites.get((recipe_id, user_id))
        if favorite is None:
            favorite = RecipeFavorite(recipe_id=recipe_id, user_id=user_id)
            self._favorites[(recipe_id, user_id)] = favorite
        return favorite

    async def remove_favorite(self, recipe_id: str, user_id: str) -> None:
        if self._favorites.pop((recipe_id, user_id), None) is None:
            raise NotFound(f"{user_id} has not favorited {recipe_id}")

    async def list_favorites(self, user_id: str) -> list[Recipe]:
        favorites = sorted(
            (f for f in self._favorites.values() if f.user_id == user_id),
            key=lambda f: f.created_at,
            reverse=True,
        )
        return [self._recipes[f.recipe_id].model_copy(deep=True) for f in favorites]

    async def search_similar(
        self,
        vector: list[float],
        *,
        n: int = 3,
        owner_id: str | None = None,
    ) -> list[Recipe]:
        recipes = [
            r
            for r in self._recipes.values()
            if owner_id is None or r.owner_id == owner_id
        ]
        return [r.model_copy(deep=True) for r in rank_by_similarity(vector, recipes, n)]

    async def list_pending_embeddings(self, limit: int = 100) -> list[Recipe]:
        pending = [r for r in self._recipes.values() if r.embedding_pending]
        pending.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in pending[:limit]]


RECIPE_COLUMNS = (
    "id, owner_id, name, description, category, cuisine, ingredients, "
    "instructions, tags, prep_time, cook_time, servings, difficulty, calories, "
    "protein, carbs, fat, embedding, embedding_pending, dietary_tags, version, "
    "created_at, updated_at"
)

CREATE_RECIPE = f"""
INSERT INTO recipes({RECIPE_COLUMNS}) VALUES (
    :id, :owner_id, :name, :description, :category, :cuisine, :ingredients,
    :instructions, :tags, :prep_time, :cook_time, :servings, :difficulty, :calories,
    :protein, :carbs, :fat, :embedding, :embedding_pending, :dietary_tags, :version,
    :created_at, :updated_at
)
"""

GET_RECIPE = "SELECT * FROM recipes WHERE id = :id"

GET_VERSION = "SELECT version FROM recipes WHERE id = :id"

UPDATE_RECIPE = """
UPDATE recipes SET
    name = :name, description = :description, category = :category,
    cuisine = :cuisine, ingredients = :ingredients, instructions = :instructions,
    tags = :tags, prep_time = :prep_time, cook_time = :cook_time,
    servings = :servings, difficulty = :difficulty, calories = :calories,
    protein = :protein, carbs = :carbs, fat = :fat, embedding = :embedding,
    embedding_pending = :embedding_pending, dietary_tags = :dietary_tags,
    version = :version, updated_at = :updated_at
WHERE id = :id AND version = :previous_version
"""

LIST_BY_OWNER = "SELECT * FROM recipes WHERE owner_id = :owner_id ORDER BY created_at DESC"

LIST_EMBEDDED = "SELECT * FROM recipes WHERE embedding_pending = :pending"

LIST_EMBEDDED_FOR_OWNER = (
    "SELECT * FROM recipes WHERE embedding_pending = :pending AND owner_id = :owner_id"
)

LIST_PENDING = """
SELECT * FROM recipes WHERE embedding_pending = :pending ORDER BY created_at LIMIT :limit
"""

DELETE_RECIPE = "DELETE FROM recipes WHERE id = :id"

DELETE_RECIPE_FAVORITES = "DELETE FROM recipe_favorites WHERE recipe_id = :recipe_id"

GET_FAVORITE = """
SELECT * FROM recipe_favorites WHERE recipe_id = :recipe_id AND user_id = :user_id
"""

CREATE_FAVORITE = """
INSERT INTO recipe_favorites(id, recipe_id, user_id, created_at)
VALUES (:id, :recipe_id, :user_id, :created_at)
"""

DELETE_FAVORITE = """
DELETE FROM recipe_favorites WHERE recipe_id = :recipe_id AND user_id = :user_id
"""

LIST_FAVORITES = """
SELECT recipes.* FROM recipes
JOIN recipe_favorites ON recipe_favorites.recipe_id = recipes.id
WHERE recipe_favorites.user_id = :user_id
ORDER BY recipe_favorites.created_at DESC
"""


def recipe_to_row(recipe: Recipe) -> dict[str, Any]:
    c = recipe.candidate
    return {
        "id": recipe.id,
        "owner_id": recipe.owner_id,
        "name": c.name,
        "description": c.description,
        "category": c.category,
        "cuisine": c.cuisine,
        "ingredients": json.dumps(c.ingredients),
        "instructions": json.dumps(c.instructions),
        "tags": json.dumps(c.tags),
        "prep_time": c.prep_time,
        "cook_time": c.cook_time,
        "servings": c.servings,
        "difficulty": c.difficulty,
        "calories": recipe.macros.calories,
        "protein": recipe.macros.protein,
        "carbs": recipe.macros.carbs,
        "fat": recipe.macros.fat,
        "embedding": json.dumps(recipe.embedding),
        "embedding_pending": recipe.embedding_pending,
        "dietary_tags": json.dumps(recipe.dietary_tags),
        "version": recipe.version,
        "created_at": recipe.created_at.isoformat(),
        "updated_at": recipe.updated_at.isoformat(),
    }


def recipe_from_row(row: Mapping[str, Any]) -> Recipe:
    return Recipe(
        id=row["id"],
        owner_id=row["owner_id"],
        candidate=RecipeCandidate(
            name=row["name"],
            description=row["description"],
            category=row["category"],
            cuisine=row["cuisine"],
            ingredients=json.loads(row["ingredients"]),
            instructions=json.loads(row["instructions"]),
            tags=json.loads(row["tags"]),
            prep_time=row["prep_time"],
            cook_time=row["cook_time"],
            servings=row["servings"],
            difficulty=row["difficulty"],
        ),
        macros=Macros(
            calories=row["calories"],
            protein=row["protein"],
            carbs=row["carbs"],
            fat=row["fat"],
        ),
        embedding=json.loads(row["embedding"]),
        embedding_pending=bool(row["embedding_pending"]),
        dietary_tags=json.loads(row["dietary_tags"]),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SqlRecipeRepository:
    """Recipes in SQL. With `vector_index` set, similarity search goes through pinecone."""

    def __init__(
        self,
        db: Database,
        *,
        vector_index: RecipeVectorIndex | None = None,
    ) -> None:
        self.db = db
        self.vector_index = vector_index

    async def _index(self, recipe: Recipe) -> None:
        if self.vector_index is None:
            return
        # The row is committed and stays the source of truth, a stale index
        # entry is fixed by the next write or backfill.
        try:
            await self.vector_index.upsert(recipe)
        except Exception:
            logger.exception("Could not index recipe %s", recipe.id)

    async def _unindex(self, recipe_id: str) -> None:
        if self.vector_index is None:
            return
        try:
            await self.vector_index.delete(recipe_id)
        except Exception:
            logger.exception("Could not remove recipe %s from the index", recipe_id)

    async def get_by_id(self, recipe_id: str) -> Recipe:
        row = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
            GET_RECIPE, values={"id": recipe_id}
        )
        if row is None:
            raise RecipeNotFound(recipe_id)
        return recipe_from_row(row._mapping)

    async def create(self, recipe: Recipe) -> Recipe:
        await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
            CREATE_RECIPE, values=recipe_to_row(recipe)
        )
        logger.debug("Created %r", recipe)
        await self._index(recipe)
        return recipe

    async def update_atomic(
        self,
        recipe_id: str,
        update: RecipeUpdate,
        *,
        expected_version: int | None = None,
    ) -> Recipe:
        async with self.db.transaction():
            current = await self.get_by_id(recipe_id)
            _check_version(current, expected_version)
            updated = current.apply(update)
            row = recipe_to_row(updated)
            del row["owner_id"], row["created_at"]
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                UPDATE_RECIPE, values={**row, "previous_version": current.version}
            )
            version = await self.db.fetch_val(  # pyright: ignore[reportUnknownMemberType]
                GET_VERSION, values={"id": recipe_id}
            )
            if version != updated.version:
                raise ConcurrentModificationConflict(
                    f"Recipe {recipe_id} changed during the update."
                )
        await self._index(updated)
        return updated

    async def list_by_owner(self, owner_id: str) -> list[Recipe]:
        rows = await self.db.fetch_all(  # pyright: ignore[reportUnknownMemberType]
            LIST_BY_OWNER, values={"owner_id": owner_id}
        )
        return [recipe_from_row(r._mapping) for r in rows]

    async def delete(self, recipe_id: str) -> None:
        async with self.db.transaction():
            await self.get_by_id(recipe_id)
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                DELETE_RECIPE_FAVORITES, values={"recipe_id": recipe_id}
            )
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                DELETE_RECIPE, values={"id": recipe_id}
            )
        await self._unindex(recipe_id)

    async def add_favorite(self, recipe_id: str, user_id: str) -> RecipeFavorite:
        values = {"recipe_id": recipe_id, "user_id": user_id}
        async with self.db.transaction():
            await self.get_by_id(recipe_id)
            row = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
                GET_FAVORITE, values=values
            )
            if row is not None:
                return RecipeFavorite.model_validate(dict(row._mapping))
            favorite = RecipeFavorite(recipe_id=recipe_id, user_id=user_id)
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                CREATE_FAVORITE,
                values={
                    "id": favorite.id,
                    "created_at": favorite.created_at.isoformat(),
                    **values,
                },
            )
        return favorite

    async def remove_favorite(self, recipe_id: str, user_id: str) -> None:
        values = {"recipe_id": recipe_id, "user_id": user_id}
        async with self.db.transaction():
            row = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
                GET_FAVORITE, values=values
            )
            if row is None:
                raise NotFound(f"{user_id} has not favorited {recipe_id}")
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                DELETE_FAVORITE, values=values
            )

    async def list_favorites(self, user_id: str) -> list[Recipe]:
        rows = await self.db.fetch_all(  # pyright: ignore[reportUnknownMemberType]
            LIST_FAVORITES, values={"user_id": user_id}
        )
        return [recipe_from_row(r._mapping) for r in rows]

    async def search_similar(
        self,
        vector: list[float],
        *,
        n: int = 3,
        owner_id: str | None = None,
    ) -> list[Recipe]:
        if self.vector_index is not None:
            ids = await self.vector_index.search(vector, n=n, owner_id=owner_id)
            recipes: list[Recipe] = []
            for recipe_id in ids:
                try:
                    recipes.append(await self.get_by_id(recipe_id))
                except RecipeNotFound:
                    logger.warning("Index returned deleted recipe %s", recipe_id)
            return recipes

        if owner_id is None:
            rows = await self.db.fetch_all(  # pyright: ignore[reportUnknownMemberType]
                LIST_EMBEDDED, values={"pending": False}
            )
        else:
            rows = await self.db.fetch_all(  # pyright: ignore[reportUnknownMemberType]
                LIST_EMBEDDED_FOR_OWNER, values={"pending": False, "owner_id": owner_id}
            )
        return rank_by_similarity(vector, [recipe_from_row(r._mapping) for r in rows], n)

    async def list_pending_embeddings(self, limit: int = 100) -> list[Recipe]:
        rows = await self.db.fetch_all(  # pyright: ignore[reportUnknownMemberType]
            LIST_PENDING, values={"pending": True, "limit": limit}
        )
        return [recipe_from_row(r._mapping) for r in rows]
