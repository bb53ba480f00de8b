"""
Product kinds and their capabilities.

Products are a sealed set of variants tagged by `kind`. Behavior that differs
by kind is looked up here instead of being spread over subclasses:

- `schedulable`: whether the product is booked through reservations
- `rating`: whether usage is priced by duration or by quantity
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ProductKind(str, Enum):
    INSTRUMENT = "instrument"
    ITEM = "item"
    SERVICE = "service"
    TIMED_SERVICE = "timed_service"


class RatingStrategy(str, Enum):
    DURATION = "duration"
    QUANTITY = "quantity"


@dataclass(frozen=True)
class ProductCapabilities:
    schedulable: bool
    rating: RatingStrategy


_CAPABILITIES: Dict[ProductKind, ProductCapabilities] = {
    ProductKind.INSTRUMENT: ProductCapabilities(schedulable=True, rating=RatingStrategy.DURATION),
    ProductKind.TIMED_SERVICE: ProductCapabilities(schedulable=False, rating=RatingStrategy.DURATION),
    ProductKind.ITEM: ProductCapabilities(schedulable=False, rating=RatingStrategy.QUANTITY),
    ProductKind.SERVICE: ProductCapabilities(schedulable=False, rating=RatingStrategy.QUANTITY),
}


def capabilities_for(kind: str) -> ProductCapabilities:
    """
    Look up the capabilities of a product kind.

    Raises:
        ValueError: If kind is not a known product kind
    """
    try:
        return _CAPABILITIES[ProductKind(kind)]
    except ValueError as e:
        raise ValueError(f"Unknown product kind: {kind}") from e
