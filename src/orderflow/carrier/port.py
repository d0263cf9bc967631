"""Carrier port: abstract interface for courier integrations.

The courier service programs against this port; adapters are swapped via the
CARRIER_ADAPTER setting. Business failures come back as dicts carrying an
``error`` key. Adapters raise ExternalServiceError when the courier cannot be
reached within the configured timeout.
"""

from abc import ABC, abstractmethod


class CarrierPort(ABC):
    """Abstract interface for carrier adapters."""

    name: str = ""

    @abstractmethod
    def check_serviceability(self, pincode: str) -> bool:
        """Whether the courier delivers to ``pincode``. Side-effect free."""
        ...

    @abstractmethod
    def create_shipment(self, request: dict) -> dict:
        """Manifest a forward shipment.

        Returns:
            dict with keys: waybill, label_url (or error)
        """
        ...

    @abstractmethod
    def request_pickup(self, pickup_location: str, waybills: list[str], pickup_date: str) -> dict:
        """Ask the courier to collect ``waybills`` from ``pickup_location``.

        Returns:
            dict with keys: pickup_id (or error)
        """
        ...

    @abstractmethod
    def cancel_shipment(self, waybill: str) -> dict:
        """Cancel a shipment with the carrier.

        Returns:
            dict with keys: cancelled (bool), reason (str)
        """
        ...

    @abstractmethod
    def update_shipment(self, waybill: str, changes: dict) -> dict:
        """Edit parcel details before pickup.

        Returns:
            dict with keys: updated (bool), error (str, on failure)
        """
        ...

    @abstractmethod
    def submit_ndr_action(self, waybill: str, action: str, remarks: str | None = None) -> dict:
        """Instruct the courier after a failed delivery attempt.

        Returns:
            dict with keys: accepted (bool), reference (str), error (on failure)
        """
        ...

    @abstractmethod
    def schedule_reverse_pickup(self, request: dict) -> dict:
        """Book a pickup of returned goods from the buyer.

        Returns:
            dict with keys: waybill (or error)
        """
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: str, signature: str) -> bool:
        """Verify that a webhook callback is authentic."""
        ...
