import asyncio
import logging
from typing import Any

import pinecone  # pyright: ignore[reportMissingTypeStubs]

from alchemorsel.models import Recipe


logger = logging.getLogger(__name__)


class RecipeVectorIndex:
    """Nearest neighbour lookup kept next to the SQL rows, which stay the source of truth."""

    def __init__(
        self,
        *,
        client: pinecone.Pinecone | None = None,
        index_name: str = "recipes",
        index: Any = None,
    ) -> None:
        if index is None:
            client = pinecone.Pinecone() if client is None else client
            index = client.Index(index_name)  # pyright: ignore[reportUnknownMemberType]
            if index is None:
                raise ValueError(f"No pinecone index {index_name!r}")
        self.idx = index

    async def upsert(self, recipe: Recipe) -> None:
        # Placeholder vectors are all zeros and must never match a query.
        if recipe.embedding_pending:
            await self.delete(recipe.id)
            return
        await asyncio.to_thread(
            self.idx.upsert,  # pyright: ignore[reportUnknownArgumentType, reportUnknownMemberType]
            vectors=[
                {
                    "id": recipe.id,
                    "values": recipe.embedding,
                    "metadata": {
                        "owner_id": recipe.owner_id,
                        "name": recipe.name,
                        "category": recipe.candidate.category,
                        "dietary_tags": recipe.dietary_tags,
                    },
                }
            ],
        )
        logger.debug("Indexed recipe %s", recipe.id)

    async def delete(self, recipe_id: str) -> None:
        await asyncio.to_thread(
            self.idx.delete,  # pyright: ignore[reportUnknownArgumentType, reportUnknownMemberType]
            ids=[recipe_id],
        )

    async def search(
        self,
        vector: list[float],
        *,
        n: int = 3,
        owner_id: str | None = None,
    ) -> list[str]:
        kwargs: dict[str, Any] = {"vector": vector, "top_k": n}
        if owner_id is not None:
            kwargs["filter"] = {"owner_id": {"$eq": owner_id}}
        res = await asyncio.to_thread(
            self.idx.query,  # pyright: ignore[reportUnknownArgumentType, reportUnknownMemberType]
            **kwargs,
        )
        return [m["id"] for m in res["matches"]]
