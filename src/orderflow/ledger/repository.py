"""Maps aggregates onto ledger records.

The ledger document is Protean's ``to_dict()`` of the aggregate, minus the
version, which lives in its own column. Loading walks the declared fields to
rebuild child entities and value objects. The repository owns the status and
version bookkeeping.
"""

from protean.exceptions import ObjectNotFoundError
from protean.fields import HasMany, HasOne, ValueObject
from protean.utils.reflection import declared_fields

from orderflow.ledger import get_ledger


def document_of(aggregate) -> dict:
    document = aggregate.to_dict()
    document.pop("version", None)
    return {key: value for key, value in document.items() if not key.startswith("_")}


def _field_values(element_cls, document: dict) -> dict:
    values = {}
    for name, field_obj in declared_fields(element_cls).items():
        value = document.get(name)
        # Missing and null values fall back to the field default
        if value is None:
            continue
        if isinstance(field_obj, HasMany):
            value = [load_element(field_obj.to_cls, item) for item in value]
        elif isinstance(field_obj, HasOne):
            value = load_element(field_obj.to_cls, value)
        elif isinstance(field_obj, ValueObject):
            value = field_obj.value_object_cls(**value)
        values[name] = value
    return values


def load_element(element_cls, document: dict, **overrides):
    return element_cls(**_field_values(element_cls, document), **overrides)


class LedgerRepository:
    table: str = ""
    aggregate_cls = None

    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()

    # Subclasses override these to index records for lookups
    def owner_of(self, aggregate) -> str | None:
        return None

    def lookup_key_of(self, aggregate) -> str | None:
        return None

    def _load(self, record):
        return self.aggregate_cls.from_document(record.document, version=record.version)

    def get(self, identifier):
        record = self.ledger.get(self.table, str(identifier))
        if record is None:
            raise ObjectNotFoundError(f"`{self.aggregate_cls.__name__}` object with identifier {identifier} does not exist.")
        return self._load(record)

    def find_by_owner(self, owner_id, status: str | None = None) -> list:
        return [self._load(r) for r in self.ledger.find(self.table, owner_id=str(owner_id), status=status)]

    def find_by_status(self, status: str) -> list:
        return [self._load(r) for r in self.ledger.find(self.table, status=status)]

    def find_by_lookup_key(self, lookup_key):
        records = self.ledger.find(self.table, lookup_key=str(lookup_key))
        return self._load(records[-1]) if records else None

    def add(self, aggregate):
        self.ledger.insert(
            self.table,
            str(aggregate.id),
            aggregate.status,
            aggregate.to_document(),
            owner_id=self.owner_of(aggregate),
            lookup_key=self.lookup_key_of(aggregate),
        )
        aggregate.version = 0
        return aggregate

    def save(self, aggregate, expected_status: str, expected_version: int | None = None):
        """Persist ``aggregate`` only if the stored row is still at the expected state."""
        if expected_version is None:
            expected_version = aggregate.version
        aggregate.version = self.ledger.compare_and_set(
            self.table,
            str(aggregate.id),
            expected_status,
            expected_version,
            aggregate.status,
            aggregate.to_document(),
            lookup_key=self.lookup_key_of(aggregate),
        )
        return aggregate
