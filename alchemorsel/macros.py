"""Macros from an ingredient list, without asking anyone.

Each ingredient line is read as `<quantity> <unit> <food>`, e.g. "1 1/2 cups
cooked rice" or "400g pasta", converted to grams and looked up in a small per
100 g table. Anything that cannot be read contributes nothing, so the
calculation never fails.
"""

from dataclasses import dataclass
import math
import re
from typing import Iterable, Mapping

from alchemorsel.models import Macros


@dataclass(frozen=True)
class Nutrients:
    """Per 100 g, plus the weight of one item and of one cup."""

    calories: float
    protein: float
    carbs: float
    fat: float
    unit_grams: float = 100.0
    cup_grams: float = 240.0


NUTRIENTS: dict[str, Nutrients] = {
    # Protein
    "chicken": Nutrients(165, 31, 0, 3.6, unit_grams=150),
    "turkey": Nutrients(135, 30, 0, 1, unit_grams=150),
    "beef": Nutrients(250, 26, 0, 15, unit_grams=150),
    "pork": Nutrients(242, 27, 0, 14, unit_grams=150),
    "lamb": Nutrients(294, 25, 0, 21, unit_grams=150),
    "bacon": Nutrients(541, 37, 1.4, 42, unit_grams=8),
    "salmon": Nutrients(208, 20, 0, 13, unit_grams=150),
    "tuna": Nutrients(132, 28, 0, 1.3, unit_grams=150),
    "fish": Nutrients(82, 18, 0, 0.7, unit_grams=150),
    "shrimp": Nutrients(99, 24, 0.2, 0.3, unit_grams=15),
    "egg": Nutrients(155, 13, 1.1, 11, unit_grams=50),
    "tofu": Nutrients(76, 8, 1.9, 4.8, unit_grams=120),
    "tempeh": Nutrients(192, 20, 7.6, 11, unit_grams=100),
    "seitan": Nutrients(370, 75, 14, 1.9, unit_grams=100),
    "lentil": Nutrients(116, 9, 20, 0.4, cup_grams=200),
    "chickpea": Nutrients(164, 8.9, 27, 2.6, cup_grams=165),
    "bean": Nutrients(127, 8.7, 23, 0.5, unit_grams=130, cup_grams=180),
    # Grains and starch
    "pasta": Nutrients(131, 5, 25, 1.1, cup_grams=140),
    "spaghetti": Nutrients(131, 5, 25, 1.1, cup_grams=140),
    "noodle": Nutrients(138, 4.5, 25, 2.1, cup_grams=160),
    "rice": Nutrients(130, 2.7, 28, 0.3, unit_grams=150, cup_grams=185),
    "quinoa": Nutrients(120, 4.4, 21, 1.9, unit_grams=185, cup_grams=185),
    "oat": Nutrients(389, 16.9, 66, 6.9, unit_grams=40, cup_grams=90),
    "flour": Nutrients(364, 10, 76, 1, unit_grams=30, cup_grams=125),
    "bread": Nutrients(265, 9, 49, 3.2, unit_grams=30),
    "tortilla": Nutrients(218, 5.7, 46, 2.9, unit_grams=45),
    "potato": Nutrients(77, 2, 17, 0.1, unit_grams=170, cup_grams=150),
    "corn": Nutrients(86, 3.3, 19, 1.4, cup_grams=145),
    # Dairy and fat
    "milk": Nutrients(42, 3.4, 5, 1, unit_grams=240),
    "coconut milk": Nutrients(230, 2.3, 6, 24, unit_grams=240),
    "cream": Nutrients(340, 2.8, 2.7, 36, unit_grams=15),
    "yogurt": Nutrients(59, 10, 3.6, 0.4, unit_grams=170),
    "cheese": Nutrients(402, 25, 1.3, 33, unit_grams=28, cup_grams=113),
    "parmesan": Nutrients(431, 38, 4.1, 29, unit_grams=10, cup_grams=100),
    "mozzarella": Nutrients(280, 28, 3.1, 17, unit_grams=28, cup_grams=113),
    "butter": Nutrients(717, 0.9, 0.1, 81, unit_grams=14, cup_grams=227),
    "peanut butter": Nutrients(588, 25, 20, 50, unit_grams=32, cup_grams=258),
    "oil": Nutrients(884, 0, 0, 100, unit_grams=14, cup_grams=218),
    "olive oil": Nutrients(884, 0, 0, 100, unit_grams=14, cup_grams=216),
    "almond": Nutrients(579, 21, 22, 50, unit_grams=28, cup_grams=143),
    "avocado": Nutrients(160, 2, 8.5, 14.7, unit_grams=200, cup_grams=150),
    # Vegetables, herbs and fruit
    "tomato": Nutrients(18, 0.9, 3.9, 0.2, unit_grams=120, cup_grams=180),
    "onion": Nutrients(40, 1.1, 9.3, 0.1, unit_grams=110, cup_grams=160),
    "garlic": Nutrients(149, 6.4, 33, 0.5, unit_grams=3, cup_grams=136),
    "basil": Nutrients(23, 3.2, 2.7, 0.6, unit_grams=2, cup_grams=24),
    "spinach": Nutrients(23, 2.9, 3.6, 0.4, unit_grams=30, cup_grams=30),
    "lettuce": Nutrients(15, 1.4, 2.9, 0.2, unit_grams=50, cup_grams=50),
    "carrot": Nutrients(41, 0.9, 10, 0.2, unit_grams=60, cup_grams=128),
    "broccoli": Nutrients(34, 2.8, 7, 0.4, unit_grams=90, cup_grams=90),
    "mushroom": Nutrients(22, 3.1, 3.3, 0.3, unit_grams=70, cup_grams=70),
    "pepper": Nutrients(31, 1, 6, 0.3, unit_grams=120, cup_grams=150),
    "black pepper": Nutrients(251, 10, 64, 3.3, unit_grams=1, cup_grams=100),
    "cucumber": Nutrients(15, 0.7, 3.6, 0.1, unit_grams=300, cup_grams=120),
    "banana": Nutrients(89, 1.1, 23, 0.3, unit_grams=118, cup_grams=150),
    "apple": Nutrients(52, 0.3, 14, 0.2, unit_grams=180, cup_grams=125),
    "lemon": Nutrients(29, 1.1, 9.3, 0.3, unit_grams=60),
    # Sweet and seasoning
    "sugar": Nutrients(387, 0, 100, 0, unit_grams=12, cup_grams=200),
    "honey": Nutrients(304, 0.3, 82, 0, unit_grams=21, cup_grams=340),
    "maple syrup": Nutrients(260, 0, 67, 0.1, unit_grams=20, cup_grams=320),
    "soy sauce": Nutrients(53, 8, 4.9, 0.6, unit_grams=16, cup_grams=255),
    "salt": Nutrients(0, 0, 0, 0, unit_grams=6),
    "water": Nutrients(0, 0, 0, 0, unit_grams=240),
}


# Canonical unit -> grams, when the unit does not depend on the food.
MASS_UNITS: dict[str, float] = {
    "g": 1.0,
    "kg": 1000.0,
    "oz": 28.35,
    "lb": 453.6,
}

# Fractions of a cup.
VOLUME_UNITS: dict[str, float] = {
    "cup": 1.0,
    "tbsp": 1 / 16,
    "tsp": 1 / 48,
    "ml": 1 / 240,
    "l": 1000 / 240,
}

FIXED_UNITS: dict[str, float] = {
    "can": 400.0,
    "handful": 30.0,
    "pinch": 0.4,
}

# Units that mean "one of the food".
COUNT_UNITS = frozenset({"clove", "piece", "slice", "fillet", "breast", "stalk"})

UNIT_ALIASES: dict[str, str] = {
    "g": "g",
    "gr": "g",
    "gram": "g",
    "grams": "g",
    "kg": "kg",
    "kilogram": "kg",
    "kilograms": "kg",
    "oz": "oz",
    "ounce": "oz",
    "ounces": "oz",
    "lb": "lb",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    "cup": "cup",
    "cups": "cup",
    "c": "cup",
    "tbsp": "tbsp",
    "tbs": "tbsp",
    "tablespoon": "tbsp",
    "tablespoons": "tbsp",
    "tsp": "tsp",
    "teaspoon": "tsp",
    "teaspoons": "tsp",
    "ml": "ml",
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "l": "l",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "can": "can",
    "cans": "can",
    "handful": "handful",
    "handfuls": "handful",
    "pinch": "pinch",
    "pinches": "pinch",
    "clove": "clove",
    "cloves": "clove",
    "piece": "piece",
    "pieces": "piece",
    "slice": "slice",
    "slices": "slice",
    "fillet": "fillet",
    "fillets": "fillet",
    "breast": "breast",
    "breasts": "breast",
    "stalk": "stalk",
    "stalks": "stalk",
}

VULGAR_FRACTIONS: dict[str, float] = {
    "½": 1 / 2,
    "⅓": 1 / 3,
    "⅔": 2 / 3,
    "¼": 1 / 4,
    "¾": 3 / 4,
    "⅛": 1 / 8,
}

_QUANTITY = re.compile(
    r"^\s*(?:(?P<whole>\d+(?:\.\d+)?)(?:\s+(?P<num>\d+)/(?P<den>\d+)|/(?P<over>\d+))?)?"
    r"\s*(?P<vulgar>[½⅓⅔¼¾⅛])?"
)
_UNIT = re.compile(
    r"^(?P<unit>"
    + "|".join(sorted(map(re.escape, UNIT_ALIASES), key=len, reverse=True))
    + r")\.?(?![a-z])",
    re.IGNORECASE,
)


def _quantity(match: re.Match[str]) -> float | None:
    whole, num, den, over, vulgar = match.group("whole", "num", "den", "over", "vulgar")
    if whole is None and vulgar is None:
        return None

    value = float(whole) if whole is not None else 0.0
    if over is not None:
        value = value / float(over) if float(over) else 0.0
    elif num is not None and den is not None:
        value += float(num) / float(den) if float(den) else 0.0
    if vulgar is not None:
        value += VULGAR_FRACTIONS[vulgar]
    return value


def parse_ingredient(text: str) -> tuple[float | None, str | None, str]:
    """Split an ingredient line into quantity, canonical unit and food name."""
    match = _QUANTITY.match(text)
    quantity = _quantity(match) if match else None
    rest = text[match.end() :] if match else text
    rest = rest.strip()

    unit = None
    unit_match = _UNIT.match(rest)
    # A bare "c" or "l" only counts as a unit after a number.
    if unit_match and (quantity is not None or len(unit_match.group("unit")) > 1):
        unit = UNIT_ALIASES[unit_match.group("unit").lower()]
        rest = rest[unit_match.end() :].strip()

    name = re.sub(r"^of\s+", "", rest.lower()).strip(" ,.-")
    return quantity, unit, name


def _lookup(name: str, table: Mapping[str, Nutrients]) -> Nutrients | None:
    for key in sorted(table, key=len, reverse=True):
        if re.search(rf"\b{re.escape(key)}(?:e?s)?\b", name):
            return table[key]
    return None


def _grams(quantity: float | None, unit: str | None, food: Nutrients) -> float:
    amount = 1.0 if quantity is None else quantity
    if unit is None or unit in COUNT_UNITS:
        return amount * food.unit_grams
    if unit in MASS_UNITS:
        return amount * MASS_UNITS[unit]
    if unit in VOLUME_UNITS:
        return amount * VOLUME_UNITS[unit] * food.cup_grams
    return amount * FIXED_UNITS.get(unit, 0.0)


def calculate_macros(
    ingredients: Iterable[str],
    *,
    table: Mapping[str, Nutrients] | None = None,
) -> Macros:
    """Total macros of the recipe. Always returns, unknown lines count as zero."""
    table = NUTRIENTS if table is None else table

    calories = protein = carbs = fat = 0.0
    for line in ingredients:
        if not isinstance(line, str):
            continue
        quantity, unit, name = parse_ingredient(line)
        food = _lookup(name, table)
        if food is None or (quantity is not None and not math.isfinite(quantity)):
            continue
        factor = max(_grams(quantity, unit, food), 0.0) / 100
        totals = (
            calories + food.calories * factor,
            protein + food.protein * factor,
            carbs + food.carbs * factor,
            fat + food.fat * factor,
        )
        # Quantities too large to add up are as unreadable as garbage.
        if not all(map(math.isfinite, totals)):
            continue
        calories, protein, carbs, fat = totals

    return Macros(
        calories=round(calories, 1),
        protein=round(protein, 1),
        carbs=round(carbs, 1),
        fat=round(fat, 1),
    )


def parse_servings(servings: str) -> float:
    """First number in e.g. "24 cookies" or "serves 4", else 1."""
    match = re.search(r"\d+(?:\.\d+)?", servings or "")
    if match is None:
        return 1.0
    value = float(match.group())
    return value if value > 0 else 1.0
