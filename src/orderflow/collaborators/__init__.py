"""External collaborators consulted at order creation time."""

_catalogue_instance = None
_coupon_validator_instance = None


def get_catalogue():
    """Return the catalogue collaborator (singleton)."""
    global _catalogue_instance
    if _catalogue_instance is None:
        from orderflow.collaborators.fake_adapter import FakeCatalogue

        _catalogue_instance = FakeCatalogue()
    return _catalogue_instance


def set_catalogue(catalogue) -> None:
    global _catalogue_instance
    _catalogue_instance = catalogue


def get_coupon_validator():
    """Return the coupon validator collaborator (singleton)."""
    global _coupon_validator_instance
    if _coupon_validator_instance is None:
        from orderflow.collaborators.fake_adapter import FakeCouponValidator

        _coupon_validator_instance = FakeCouponValidator()
    return _coupon_validator_instance


def set_coupon_validator(validator) -> None:
    global _coupon_validator_instance
    _coupon_validator_instance = validator


def reset_collaborators() -> None:
    """Reset both singletons (useful for testing)."""
    global _catalogue_instance, _coupon_validator_instance
    _catalogue_instance = None
    _coupon_validator_instance = None
