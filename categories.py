import random
from typing import Iterable, Optional

from models import TransactionType
from schemas import FALLBACK_CATEGORY_ID, CategoryOut

# Returned for every id the registry does not know, including "" and None.
# The lookup never fails.
FALLBACK_CATEGORY = CategoryOut(id=FALLBACK_CATEGORY_ID, name="Outros", color="#607D8B")

DEFAULT_CATEGORIES: list[tuple[str, str, Optional[TransactionType]]] = [
    ("Alimentação", "#FF8042", TransactionType.expense),
    ("Transporte", "#00C49F", TransactionType.expense),
    ("Moradia", "#0088FE", TransactionType.expense),
    ("Lazer", "#FFBB28", TransactionType.expense),
    ("Saúde", "#FF0000", TransactionType.expense),
    ("Educação", "#9C27B0", TransactionType.expense),
    ("Salário", "#4CAF50", TransactionType.income),
    ("Investimentos", "#2196F3", TransactionType.income),
    ("Outros", "#607D8B", None),
]

CATEGORY_PALETTE = [
    "#F44336",
    "#E91E63",
    "#9C27B0",
    "#673AB7",
    "#3F51B5",
    "#2196F3",
    "#03A9F4",
    "#00BCD4",
    "#009688",
    "#4CAF50",
    "#8BC34A",
    "#CDDC39",
    "#FFC107",
    "#FF9800",
    "#FF5722",
]


def random_category_color(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(CATEGORY_PALETTE)


class CategoryRegistry:
    """In-memory view of one user's categories, keyed by id."""

    def __init__(self, categories: Iterable[CategoryOut] = ()) -> None:
        self._by_id: dict[str, CategoryOut] = {}
        self.replace(categories)

    def replace(self, categories: Iterable[CategoryOut]) -> None:
        self._by_id = {c.id: c for c in categories}

    def lookup(self, category_id: Optional[str]) -> CategoryOut:
        if not category_id:
            return FALLBACK_CATEGORY
        return self._by_id.get(category_id, FALLBACK_CATEGORY)

    def name_of(self, category_id: Optional[str]) -> str:
        return self.lookup(category_id).name

    def all(self) -> list[CategoryOut]:
        return sorted(self._by_id.values(), key=lambda c: c.name)

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)
