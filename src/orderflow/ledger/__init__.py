"""Ledger store access: one shared store per process."""

from orderflow.config import get_settings

_ledger_instance = None


def get_ledger():
    """Return the configured ledger store (singleton).

    Uses LEDGER_DATABASE_URI, creating the schema on first use.
    """
    global _ledger_instance
    if _ledger_instance is None:
        from orderflow.ledger.store import LedgerStore

        _ledger_instance = LedgerStore(get_settings().ledger_database_uri)
        _ledger_instance.create_schema()
    return _ledger_instance


def configure_ledger(database_uri: str):
    """Replace the ledger with a fresh store at ``database_uri``."""
    from orderflow.ledger.store import LedgerStore

    ledger = LedgerStore(database_uri)
    ledger.create_schema()
    set_ledger(ledger)
    return ledger


def set_ledger(ledger) -> None:
    """Override the ledger instance (useful for testing)."""
    global _ledger_instance
    _ledger_instance = ledger


def reset_ledger() -> None:
    """Dispose of the ledger singleton (useful for testing)."""
    global _ledger_instance
    if _ledger_instance is not None:
        _ledger_instance.dispose()
    _ledger_instance = None
