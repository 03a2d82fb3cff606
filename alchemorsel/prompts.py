from typing import Iterable

from alchemorsel.models import Modification, RecipeCandidate


RECIPE_SCHEMA = """
{
    "name": "Recipe name",
    "description": "Brief description of the recipe",
    "category": "One of: Main Course, Dessert, Snack, Appetizer, Breakfast, Lunch, Dinner, Side Dish, Beverage, Soup, Salad, Bread, Pasta, Seafood",
    "cuisine": "Italian",
    "ingredients": ["2 cups flour", "1 cup sugar", "3 large eggs"],
    "instructions": ["Mix the dry ingredients", "Add the wet ingredients", "Bake at 350F for 30 minutes"],
    "tags": ["comfort food"],
    "prep_time": "15 minutes",
    "cook_time": "30 minutes",
    "servings": "4",
    "difficulty": "Easy"
}
""".strip()


CREATE_RECIPE_PROMPT = f"""
You are a professional chef who strictly respects dietary restrictions and allergens.

Safety rules:
1. When the user has dietary restrictions (vegan, vegetarian, gluten-free, etc.), every ingredient must comply.
2. Vegan: no meat, dairy, eggs, honey or any other animal product.
3. Vegetarian: no meat, poultry or fish. Dairy and eggs are fine unless stated otherwise.
4. Gluten-free: no wheat, barley, rye or anything containing gluten.
5. Dairy-free: no milk, cheese, butter, cream, yogurt or any other dairy.
6. Never include a listed allergen in any form, including derivatives.
7. Be decisive. Pick one substitute ("seitan", not "seitan or tofu").
8. Name the recipe after what is actually in it.

Every ingredient must carry a quantity ("2 cups flour", "1 tbsp salt").

Respond with a single JSON object and nothing else, using this structure:

{RECIPE_SCHEMA}
""".strip()


BATCH_RECIPE_PROMPT = f"""
You are a professional chef. You will be sent several numbered recipe requests.
Answer every request, in order, with one recipe each.

Every ingredient must carry a quantity ("2 cups flour", "1 tbsp salt").

Respond with a single JSON object and nothing else: {{"recipes": [...]}}.
Each element of "recipes" has an "index" field with the request number and
otherwise uses this structure:

{RECIPE_SCHEMA}

If a request cannot be answered, put {{"index": <number>, "error": "<why>"}} in its place.
""".strip()


def dietary_constraints(
    dietary_prefs: Iterable[str] = (),
    allergens: Iterable[str] = (),
) -> list[str]:
    constraints: list[str] = []
    dietary_prefs = [d for d in dietary_prefs if d]
    allergens = [a for a in allergens if a]
    if dietary_prefs:
        constraints.append(
            f"This recipe MUST be suitable for: {', '.join(dietary_prefs)}. "
            "Never include ingredients that violate these dietary preferences."
        )
    if allergens:
        constraints.append(
            f"Absolutely avoid these allergens: {', '.join(allergens)}. "
            "Check every ingredient and sub-ingredient for them."
        )
    return constraints


def modification_constraints(modification: Modification) -> list[str]:
    constraints: list[str] = []
    if modification.scale is not None:
        constraints.append(
            f"Scale every ingredient quantity by a factor of {modification.scale:g} "
            "and adjust the servings to match."
        )
    for old, new in modification.substitutions.items():
        constraints.append(
            f'Replace "{old}" with "{new}" everywhere. '
            f'"{old}" must not appear in the ingredients.'
        )
    return constraints


class RecipePrompt:
    """The user message for one recipe request."""

    def __init__(
        self,
        query: str,
        *,
        dietary_prefs: Iterable[str] = (),
        allergens: Iterable[str] = (),
        prior_recipe: RecipeCandidate | None = None,
        constraints: Iterable[str] = (),
    ) -> None:
        self.query = query.strip()
        self.prior_recipe = prior_recipe
        self.constraints = [
            *constraints,
            *dietary_constraints(dietary_prefs, allergens),
        ]

    def __str__(self) -> str:
        if self.prior_recipe is None:
            content = f"Generate a recipe for: {self.query}"
        else:
            prior = self.prior_recipe
            content = (
                f"Modify this recipe: {prior.name}\n\n"
                "Keep it the same dish, only change what is asked for.\n\n"
                "Original recipe:\n"
                f"Name: {prior.name}\n"
                f"Description: {prior.description}\n"
                f"Servings: {prior.servings}\n"
                "Ingredients:\n" + "\n".join(prior.ingredients) + "\n"
                "Instructions:\n" + "\n".join(prior.instructions) + "\n\n"
                f"Modification request: {self.query or 'see the requirements below'}"
            )

        if self.constraints:
            content += "\n\nRequirements (must be followed):\n" + "\n".join(
                f"- {c}" for c in self.constraints
            )
        return content


def batch_request(prompts: Iterable[str]) -> str:
    return "\n".join(
        f"Request {i}: Generate a recipe for: {prompt.strip()}"
        for i, prompt in enumerate(prompts)
    )
