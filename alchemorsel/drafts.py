"""Drafts: candidates that were generated for a user but not kept yet."""

import asyncio
from collections import defaultdict
import logging
from typing import Any, Iterable, Mapping, Protocol

from databases import Database

from alchemorsel.errors import ConcurrentModificationConflict, DraftNotFound
from alchemorsel.models import Macros, RecipeCandidate, RecipeDraft


logger = logging.getLogger(__name__)


class DraftStore(Protocol):
    async def save(
        self,
        candidate: RecipeCandidate,
        macros: Macros,
        embedding: list[float],
        *,
        owner_id: str,
        dietary_tags: Iterable[str] = (),
        embedding_pending: bool = False,
    ) -> str: ...

    async def get(self, draft_id: str) -> RecipeDraft: ...

    async def update(
        self,
        draft_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> RecipeDraft: ...

    async def delete(self, draft_id: str) -> None: ...


def _check_version(draft: RecipeDraft, expected_version: int | None) -> None:
    if expected_version is not None and draft.version != expected_version:
        raise ConcurrentModificationConflict(
            f"Draft {draft.id} is at version {draft.version}, "
            f"update was made against {expected_version}."
        )


def _new_draft(
    candidate: RecipeCandidate,
    macros: Macros,
    embedding: list[float],
    *,
    owner_id: str,
    dietary_tags: Iterable[str],
    embedding_pending: bool,
) -> RecipeDraft:
    return RecipeDraft(
        owner_id=owner_id,
        candidate=candidate.model_copy(deep=True),
        macros=macros,
        embedding=list(embedding),
        embedding_pending=embedding_pending,
        dietary_tags=list(dietary_tags),
    )


class InMemoryDraftStore:
    def __init__(self) -> None:
        self._drafts: dict[str, RecipeDraft] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def save(
        self,
        candidate: RecipeCandidate,
        macros: Macros,
        embedding: list[float],
        *,
        owner_id: str,
        dietary_tags: Iterable[str] = (),
        embedding_pending: bool = False,
    ) -> str:
        draft = _new_draft(
            candidate,
            macros,
            embedding,
            owner_id=owner_id,
            dietary_tags=dietary_tags,
            embedding_pending=embedding_pending,
        )
        self._drafts[draft.id] = draft
        logger.debug("Saved draft %s", draft.id)
        return draft.id

    async def get(self, draft_id: str) -> RecipeDraft:
        try:
            return self._drafts[draft_id].model_copy(deep=True)
        except KeyError:
            raise DraftNotFound(draft_id) from None

    async def update(
        self,
        draft_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> RecipeDraft:
        async with self._locks[draft_id]:
            draft = await self.get(draft_id)
            _check_version(draft, expected_version)
            updated = draft.with_fields(fields)
            self._drafts[draft_id] = updated
            return updated.model_copy(deep=True)

    async def delete(self, draft_id: str) -> None:
        async with self._locks[draft_id]:
            if self._drafts.pop(draft_id, None) is None:
                raise DraftNotFound(draft_id)
        self._locks.pop(draft_id, None)


CREATE_DRAFT = """
INSERT INTO recipe_drafts(id, owner_id, payload, version, created_at, updated_at)
VALUES (:id, :owner_id, :payload, :version, :created_at, :updated_at)
"""

GET_DRAFT = "SELECT payload FROM recipe_drafts WHERE id = :id"

UPDATE_DRAFT = """
UPDATE recipe_drafts
SET payload = :payload, version = :version, updated_at = :updated_at
WHERE id = :id AND version = :previous_version
"""

GET_DRAFT_VERSION = "SELECT version FROM recipe_drafts WHERE id = :id"

DELETE_DRAFT = "DELETE FROM recipe_drafts WHERE id = :id"


class SqlDraftStore:
    """Drafts as one JSON document per row."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(
        self,
        candidate: RecipeCandidate,
        macros: Macros,
        embedding: list[float],
        *,
        owner_id: str,
        dietary_tags: Iterable[str] = (),
        embedding_pending: bool = False,
    ) -> str:
        draft = _new_draft(
            candidate,
            macros,
            embedding,
            owner_id=owner_id,
            dietary_tags=dietary_tags,
            embedding_pending=embedding_pending,
        )
        await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
            CREATE_DRAFT,
            values={
                "id": draft.id,
                "owner_id": draft.owner_id,
                "payload": draft.model_dump_json(),
                "version": draft.version,
                "created_at": draft.created_at.isoformat(),
                "updated_at": draft.updated_at.isoformat(),
            },
        )
        logger.debug("Saved draft %s", draft.id)
        return draft.id

    async def get(self, draft_id: str) -> RecipeDraft:
        row = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
            GET_DRAFT, values={"id": draft_id}
        )
        if row is None:
            raise DraftNotFound(draft_id)
        return RecipeDraft.model_validate_json(row["payload"])

    async def update(
        self,
        draft_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> RecipeDraft:
        async with self.db.transaction():
            draft = await self.get(draft_id)
            _check_version(draft, expected_version)
            updated = draft.with_fields(fields)
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                UPDATE_DRAFT,
                values={
                    "id": draft_id,
                    "payload": updated.model_dump_json(),
                    "version": updated.version,
                    "previous_version": draft.version,
                    "updated_at": updated.updated_at.isoformat(),
                },
            )
            version = await self.db.fetch_val(  # pyright: ignore[reportUnknownMemberType]
                GET_DRAFT_VERSION, values={"id": draft_id}
            )
            if version != updated.version:
                raise ConcurrentModificationConflict(
                    f"Draft {draft_id} changed during the update."
                )
        return updated

    async def delete(self, draft_id: str) -> None:
        async with self.db.transaction():
            await self.get(draft_id)
            await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                DELETE_DRAFT, values={"id": draft_id}
            )
