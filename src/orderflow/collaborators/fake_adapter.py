"""In-memory catalogue and coupon validator for development and tests."""

from protean.exceptions import ValidationError

from orderflow.collaborators.port import Catalogue, CouponValidator, ResolvedVariant


class FakeCatalogue(Catalogue):
    def __init__(self):
        self.variants: dict[str, ResolvedVariant] = {}

    def add_variant(self, variant_id: str, unit_price: float, title: str = "Item", product_id: str | None = None):
        self.variants[variant_id] = ResolvedVariant(
            product_id=product_id or f"prod-{variant_id}",
            variant_id=variant_id,
            title=title,
            unit_price=unit_price,
        )

    def resolve(self, variant_id: str) -> ResolvedVariant | None:
        return self.variants.get(variant_id)


class FakeCouponValidator(CouponValidator):
    def __init__(self):
        self.coupons: dict[str, dict] = {}
        self.calls: list[str] = []

    def add_coupon(self, code: str, flat: float = 0.0, percent: float = 0.0, min_order: float = 0.0):
        self.coupons[code.upper()] = {"flat": flat, "percent": percent, "min_order": min_order}

    def validate(self, code: str, buyer_id: str, items: list[dict]) -> float:
        self.calls.append(code)
        coupon = self.coupons.get(code.upper())
        if coupon is None:
            raise ValidationError({"coupon_code": [f"Coupon {code} is not valid"]})

        subtotal = sum(item["unit_price"] * item["quantity"] for item in items)
        if subtotal < coupon["min_order"]:
            raise ValidationError({"coupon_code": [f"Coupon {code} requires a minimum order of {coupon['min_order']}"]})

        return round(coupon["flat"] + subtotal * coupon["percent"] / 100, 2)
