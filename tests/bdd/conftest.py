"""Shared BDD fixtures for the order fulfillment scenarios."""

import pytest


@pytest.fixture()
def error():
    """Container for captured domain errors."""
    return {"exc": None}


@pytest.fixture()
def context():
    """Values handed from one step to the next."""
    return {}
