from typing import Any


class AlchemorselError(Exception):
    """Base for everything the recipe core raises on purpose.

    `state` is filled in by the pipeline with the last state a request reached
    before it was rejected.
    """

    state: Any = None


class GenerationError(AlchemorselError):
    """The text generation call failed or answered with something unusable."""


class EmbeddingUnavailable(AlchemorselError):
    """The embedding call failed, timed out or returned the wrong length."""


class ValidationError(AlchemorselError):
    def __init__(self, invariant: str, message: str | None = None) -> None:
        self.invariant = invariant
        super().__init__(message if message is not None else invariant)


class NotFound(AlchemorselError):
    pass


class DraftNotFound(NotFound):
    pass


class RecipeNotFound(NotFound):
    pass


class ConcurrentModificationConflict(AlchemorselError):
    """An atomic update was made against a stale version of the record."""


class PermissionDenied(AlchemorselError):
    """The caller does not own the recipe."""
