"""Ports for the catalogue and coupon collaborators.

Both are owned by other parts of the platform. Ordering only needs a
server-side price for a variant and the discount a coupon grants.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class ResolvedVariant:
    """Authoritative catalogue data for a purchasable variant."""

    product_id: str
    variant_id: str
    title: str
    unit_price: float


class Catalogue(ABC):
    @abstractmethod
    def resolve(self, variant_id: str) -> ResolvedVariant | None:
        """Return the variant's current price, or None if it cannot be sold."""
        ...


class CouponValidator(ABC):
    @abstractmethod
    def validate(self, code: str, buyer_id: str, items: list[dict]) -> float:
        """Return the discount ``code`` grants on ``items``.

        Raises ValidationError when the coupon is unknown, expired or not
        applicable to this buyer or basket.
        """
        ...
