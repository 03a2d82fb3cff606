import asyncio
import json
import logging
import re
from typing import Any, Iterable, Mapping, Sequence

import httpx
import pydantic

from alchemorsel.aopenai import Chat, CompletionError, openai_client_factory
from alchemorsel.config import Config
from alchemorsel.errors import AlchemorselError, GenerationError, ValidationError
from alchemorsel.models import RecipeCandidate
from alchemorsel.prompts import (
    BATCH_RECIPE_PROMPT,
    CREATE_RECIPE_PROMPT,
    RecipePrompt,
    batch_request,
)


logger = logging.getLogger(__name__)


type BatchSlot = RecipeCandidate | AlchemorselError


_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")

STRUCTURED_LABELS = {
    "name": "name",
    "description": "description",
    "category": "category",
    "cuisine": "cuisine",
    "ingredients": "ingredients",
    "instructions": "instructions",
    "tags": "tags",
    "prep_time": "prep_time",
    "preptime": "prep_time",
    "cook_time": "cook_time",
    "cooktime": "cook_time",
    "servings": "servings",
    "difficulty": "difficulty",
}
LIST_FIELDS = frozenset({"ingredients", "instructions", "tags"})


def strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = _FENCE.sub("", content).strip()
    return content


def parse_structured_text(content: str) -> dict[str, Any] | None:
    """Read the labelled format some models fall back to.

    NAME: Tomato Soup
    INGREDIENTS: 4 tomatoes|1 onion
    INSTRUCTIONS: Chop|Simmer|Blend

    List fields may also continue on the following lines as `- item` or `1. step`.
    """
    lines = [line.strip() for line in content.splitlines()]
    start = next(
        (i for i, line in enumerate(lines) if line.upper().startswith("NAME:")), None
    )
    if start is None:
        return None

    data: dict[str, Any] = {}
    current: str | None = None
    for line in lines[start:]:
        if not line:
            continue
        label, sep, value = line.partition(":")
        field = (
            STRUCTURED_LABELS.get(label.strip().lower().replace(" ", "_"))
            if sep
            else None
        )
        if field is not None:
            current = field
            value = value.strip()
            if field in LIST_FIELDS:
                data[field] = [v.strip() for v in value.split("|")] if value else []
            else:
                data[field] = value
        elif current in LIST_FIELDS:
            data[current].append(re.sub(r"^(?:[-*•]|\d+[.)])\s*", "", line))

    return data if "name" in data else None


def _decode(content: str) -> Any:
    content = strip_fences(content)
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        data = parse_structured_text(content)
        if data is None:
            raise GenerationError(
                f"Could not read a recipe from the response: {content[:200]!r}"
            ) from exc
        return data


def parse_candidate(raw: str | Mapping[str, Any]) -> RecipeCandidate:
    """Decode, then validate. Anything short of a usable recipe is a `GenerationError`."""
    data = _decode(raw) if isinstance(raw, str) else raw
    if isinstance(data, Mapping) and isinstance(data.get("recipe"), Mapping):
        data = data["recipe"]
    if not isinstance(data, Mapping):
        raise GenerationError("Recipe is not a JSON object.")

    try:
        candidate = RecipeCandidate.model_validate(data)
    except pydantic.ValidationError as exc:
        raise GenerationError(f"Recipe does not match the schema. {exc}") from exc

    try:
        candidate.check()
    except ValidationError as exc:
        raise GenerationError(f"Invalid recipe: {exc}") from exc

    return candidate


def split_batch(content: str, n: int) -> list[BatchSlot]:
    """One slot per request, in request order."""
    try:
        data = json.loads(strip_fences(content))
    except json.JSONDecodeError:
        return [GenerationError("Batch response is not JSON.") for _ in range(n)]

    items = data.get("recipes") if isinstance(data, Mapping) else data
    if not isinstance(items, list):
        return [GenerationError("Batch response has no recipes.") for _ in range(n)]

    slots: list[BatchSlot | None] = [None] * n
    for position, item in enumerate(items):
        index = item.get("index", position) if isinstance(item, Mapping) else position
        if (
            not isinstance(index, int)
            or isinstance(index, bool)
            or not 0 <= index < n
            or slots[index] is not None
        ):
            continue
        if isinstance(item, Mapping) and "error" in item and "name" not in item:
            slots[index] = GenerationError(
                f"Provider could not answer request {index}: {item['error']}"
            )
            continue
        try:
            slots[index] = parse_candidate(item)
        except GenerationError as exc:
            slots[index] = exc

    return [
        GenerationError(f"No recipe returned for request {i}.") if s is None else s
        for i, s in enumerate(slots)
    ]


class GenerationClient:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        config: Config | None = None,
    ) -> None:
        config = Config() if config is None else config
        self.http_client = (
            openai_client_factory(
                base_url=config.generation_base_url,
                token=config.generation_api_key,
                timeout=config.generation_timeout,
            )
            if http_client is None
            else http_client
        )
        self.model = config.generation_model
        self.max_tokens = config.generation_max_tokens
        self.temperature = config.generation_temperature
        self.timeout = config.generation_timeout

    def _chat(self, system_prompt: str, *, max_tokens: int | None = None) -> Chat:
        return Chat.from_system_prompt(
            system_prompt,
            model=self.model,
            client=self.http_client,
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            temperature=self.temperature,
        )

    async def _complete(self, chat: Chat, message: str, timeout: float) -> str:
        try:
            async with asyncio.timeout(timeout):
                return await chat.chat(message)
        except TimeoutError as exc:
            raise GenerationError(f"Generation timed out after {timeout}s.") from exc
        except (httpx.HTTPError, CompletionError) as exc:
            raise GenerationError(f"Generation call failed. {exc!r}") from exc

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
        """One recipe. With `prior_recipe` the answer is a variant of that dish."""
        user_prompt = RecipePrompt(
            prompt,
            dietary_prefs=dietary_prefs,
            allergens=allergens,
            prior_recipe=prior_recipe,
            constraints=constraints,
        )
        if not user_prompt.query and prior_recipe is None:
            raise ValidationError("prompt_required", "Nothing to make a recipe for.")

        timeout = self.timeout if timeout is None else timeout
        content = await self._complete(
            self._chat(CREATE_RECIPE_PROMPT), str(user_prompt), timeout
        )
        candidate = parse_candidate(content)
        logger.info("Generated recipe %r", candidate.name)
        return candidate

    async def generate_batch(
        self,
        prompts: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> list[BatchSlot]:
        """One round trip for all prompts. Slots fail on their own.

        Raises `GenerationError` only when the api cannot be reached at all.
        """
        timeout = self.timeout if timeout is None else timeout
        slots: list[BatchSlot | None] = [None] * len(prompts)
        sent: list[int] = []
        for i, prompt in enumerate(prompts):
            if prompt.strip():
                sent.append(i)
            else:
                slots[i] = ValidationError("prompt_required", f"Prompt {i} is empty.")

        if sent:
            chat = self._chat(
                BATCH_RECIPE_PROMPT, max_tokens=self.max_tokens * len(sent)
            )
            try:
                content = await self._complete(
                    chat, batch_request(prompts[i] for i in sent), timeout
                )
            except GenerationError as exc:
                if isinstance(exc.__cause__, httpx.ConnectError):
                    raise
                answers: list[BatchSlot] = [
                    GenerationError(f"Batch generation failed. {exc}") for _ in sent
                ]
            else:
                answers = split_batch(content, len(sent))

            for i, answer in zip(sent, answers):
                slots[i] = answer

        failed = sum(1 for s in slots if isinstance(s, AlchemorselError))
        logger.info("Batch of %d prompts, %d failed", len(prompts), failed)
        return [s for s in slots if s is not None]

    async def close(self) -> None:
        await self.http_client.aclose()
