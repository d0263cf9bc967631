"""Orderflow bounded context: order lifecycle and post-purchase orchestration.

Reconciles an order's state across the payment gateway, the courier and the
returns/QC workflow. Aggregates live in memory as Protean models and are
persisted through the ledger's compare-and-set store.
"""

import structlog
from protean.domain import Domain

orderflow = Domain(name="orderflow")

logger = structlog.get_logger(__name__)
