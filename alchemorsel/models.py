import datetime as dt
from enum import Enum
from typing import Any, Mapping, Self
import uuid

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from alchemorsel.errors import ValidationError


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class CommitTarget(Enum):
    draft = "draft"
    recipe = "recipe"


class RecipeCandidate(BaseModel):
    """A parsed recipe that has not been stored anywhere yet."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: str = ""
    description: str = ""
    category: str = ""
    cuisine: str = ""
    ingredients: list[str] = Field(default_factory=list)
    instructions: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    prep_time: str = ""
    cook_time: str = ""
    servings: str = ""
    difficulty: str = ""

    @field_validator(
        "name",
        "description",
        "category",
        "cuisine",
        "prep_time",
        "cook_time",
        "servings",
        "difficulty",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> Any:
        if value is None:
            return ""
        # Models like to answer `"servings": 4`.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return f"{value:g}"
        return value

    @field_validator("ingredients", "instructions", "tags", mode="before")
    @classmethod
    def _split(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            sep = "|" if "|" in value else "\n"
            return value.split(sep)
        return value

    @field_validator("ingredients", "instructions", "tags")
    @classmethod
    def _drop_blank(cls, value: list[str]) -> list[str]:
        return [v.strip() for v in value if v.strip()]

    def check(self) -> None:
        """Raise `ValidationError` naming the first invariant that does not hold."""
        if not self.name:
            raise ValidationError("name_required", "Recipe has no name.")
        if not self.ingredients:
            raise ValidationError("ingredients_required", "Recipe has no ingredients.")
        if not self.instructions:
            raise ValidationError(
                "instructions_required", "Recipe has no instructions."
            )


CANDIDATE_FIELDS = frozenset(RecipeCandidate.model_fields)


class Macros(BaseModel):
    """Totals for the whole recipe."""

    model_config = ConfigDict(frozen=True)

    calories: float = Field(0.0, ge=0, allow_inf_nan=False)
    protein: float = Field(0.0, ge=0, allow_inf_nan=False)
    carbs: float = Field(0.0, ge=0, allow_inf_nan=False)
    fat: float = Field(0.0, ge=0, allow_inf_nan=False)

    def per_serving(self, servings: float) -> "Macros":
        servings = servings if servings > 0 else 1
        return Macros(
            calories=round(self.calories / servings, 1),
            protein=round(self.protein / servings, 1),
            carbs=round(self.carbs / servings, 1),
            fat=round(self.fat / servings, 1),
        )

    def is_non_negative(self) -> bool:
        return min(self.calories, self.protein, self.carbs, self.fat) >= 0


class RecipeDraft(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    candidate: RecipeCandidate
    macros: Macros = Field(default_factory=Macros)
    embedding: list[float] = Field(default_factory=list)
    embedding_pending: bool = False
    dietary_tags: list[str] = Field(default_factory=list)
    version: int = 0
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)

    def with_fields(self, fields: Mapping[str, Any]) -> Self:
        """New draft with `fields` replaced. Candidate fields are given flat."""
        unknown = set(fields) - DRAFT_UPDATE_FIELDS
        if unknown:
            raise ValidationError(
                "unknown_field", f"Drafts have no field(s) {sorted(unknown)}."
            )

        data = self.model_dump()
        for key, value in fields.items():
            if key in CANDIDATE_FIELDS:
                data["candidate"][key] = value
            else:
                data[key] = value
        data["updated_at"] = utcnow()
        data["version"] = self.version + 1

        try:
            return self.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError("invalid_field", str(exc)) from exc


DRAFT_UPDATE_FIELDS = CANDIDATE_FIELDS | {
    "macros",
    "embedding",
    "embedding_pending",
    "dietary_tags",
}


class RecipeUpdate(BaseModel):
    """Everything that changes with the ingredients, written in one go."""

    candidate: RecipeCandidate
    macros: Macros
    embedding: list[float]
    embedding_pending: bool = False
    dietary_tags: list[str] | None = None


class Recipe(BaseModel):
    id: str = Field(default_factory=new_id, frozen=True)
    owner_id: str
    candidate: RecipeCandidate
    macros: Macros
    embedding: list[float]
    embedding_pending: bool = False
    dietary_tags: list[str] = Field(default_factory=list)
    version: int = 1
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return self.candidate.name

    @property
    def tags(self) -> list[str]:
        return self.candidate.tags

    def apply(self, update: RecipeUpdate) -> Self:
        dietary_tags = (
            self.dietary_tags if update.dietary_tags is None else update.dietary_tags
        )
        return self.model_copy(
            update={
                "candidate": update.candidate.model_copy(deep=True),
                "macros": update.macros,
                "embedding": list(update.embedding),
                "embedding_pending": update.embedding_pending,
                "dietary_tags": list(dietary_tags),
                "version": self.version + 1,
                "updated_at": utcnow(),
            }
        )

    def __repr__(self) -> str:
        return f"<Recipe(id={self.id}, name={self.name})>"


class RecipeFavorite(BaseModel):
    id: str = Field(default_factory=new_id)
    recipe_id: str
    user_id: str
    created_at: dt.datetime = Field(default_factory=utcnow)


class GenerationIntent(BaseModel):
    prompt: str
    owner_id: str
    dietary_prefs: list[str] = Field(default_factory=list)
    allergens: list[str] = Field(default_factory=list)
    commit: CommitTarget = CommitTarget.draft


class Modification(BaseModel):
    """How to change an existing recipe. Each part ends up as a prompt constraint."""

    request: str = ""
    scale: float | None = Field(None, gt=0)
    substitutions: dict[str, str] = Field(default_factory=dict)
    dietary_prefs: list[str] | None = None
    allergens: list[str] = Field(default_factory=list)

    def check(self) -> None:
        if not (
            self.request.strip()
            or self.scale is not None
            or self.substitutions
            or self.dietary_prefs
            or self.allergens
        ):
            raise ValidationError(
                "modification_required", "Nothing to change in the recipe."
            )
