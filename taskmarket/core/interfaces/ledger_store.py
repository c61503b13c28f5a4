"""Ledger Store Interface

Defines the contract for transactional persistence of the task market.

Every multi-entity mutation runs inside one ``ILedgerTransaction``: reads,
inserts and version-checked updates either all commit or none do. A write
whose entity changed since it was read fails the commit with
``ConflictError``.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

from ..entities import (
    Bid,
    BidStatus,
    Dispute,
    DisputeFollowUp,
    Payment,
    WorkItem,
    WorkItemStatus,
)


class ILedgerTransaction(ABC):
    """
    A unit of work against the ledger store.

    ``update_*`` methods take an entity previously read through this
    transaction; the entity's ``version`` is the expected stored version
    and is bumped on success.
    """

    # ========== Work Items ==========

    @abstractmethod
    async def get_work_item(self, work_item_id: str, for_update: bool = False) -> WorkItem | None:
        """Find work item by ID, optionally locking its row"""
        pass

    @abstractmethod
    async def list_work_items(
        self,
        status: WorkItemStatus | None = None,
        poster_id: str | None = None,
        doer_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkItem]:
        """List work items, newest first"""
        pass

    @abstractmethod
    async def add_work_item(self, work_item: WorkItem) -> None:
        pass

    @abstractmethod
    async def update_work_item(self, work_item: WorkItem) -> None:
        pass

    # ========== Bids ==========

    @abstractmethod
    async def get_bid(self, bid_id: str, for_update: bool = False) -> Bid | None:
        pass

    @abstractmethod
    async def find_bid(self, work_item_id: str, doer_id: str) -> Bid | None:
        """Find a doer's bid on a work item"""
        pass

    @abstractmethod
    async def list_bids(self, work_item_id: str, status: BidStatus | None = None) -> list[Bid]:
        """List bids on a work item, oldest first"""
        pass

    @abstractmethod
    async def add_bid(self, bid: Bid) -> None:
        """Insert a bid (one per doer per work item)"""
        pass

    @abstractmethod
    async def update_bid(self, bid: Bid) -> None:
        pass

    # ========== Payments ==========

    @abstractmethod
    async def get_payment(self, payment_id: str, for_update: bool = False) -> Payment | None:
        pass

    @abstractmethod
    async def get_payment_for_work_item(
        self, work_item_id: str, for_update: bool = False
    ) -> Payment | None:
        """Find the current payment of a work item (the non-FAILED one if any)"""
        pass

    @abstractmethod
    async def get_payment_by_reference(
        self, gateway_reference: str, for_update: bool = False
    ) -> Payment | None:
        """Find payment by the transaction reference sent to the gateway"""
        pass

    @abstractmethod
    async def list_pending_settlements(self, limit: int = 50) -> list[Payment]:
        """List payments whose post-commit gateway call is still owed"""
        pass

    @abstractmethod
    async def add_payment(self, payment: Payment) -> None:
        """Insert a payment (one non-FAILED payment per work item)"""
        pass

    @abstractmethod
    async def update_payment(self, payment: Payment) -> None:
        pass

    # ========== Disputes ==========

    @abstractmethod
    async def get_dispute(self, dispute_id: str, for_update: bool = False) -> Dispute | None:
        """Find dispute by ID, with follow-ups in sequence order"""
        pass

    @abstractmethod
    async def get_open_dispute(self, work_item_id: str) -> Dispute | None:
        """Find the non-CLOSED dispute of a work item, if any"""
        pass

    @abstractmethod
    async def list_disputes(
        self,
        work_item_id: str | None = None,
        party_id: str | None = None,
        limit: int = 50,
    ) -> list[Dispute]:
        """List disputes by work item, or those a party initiated or is bound to"""
        pass

    @abstractmethod
    async def add_dispute(self, dispute: Dispute) -> None:
        pass

    @abstractmethod
    async def update_dispute(self, dispute: Dispute) -> None:
        pass

    @abstractmethod
    async def add_followup(self, followup: DisputeFollowUp) -> None:
        """Append a follow-up; duplicate sequence numbers conflict"""
        pass


class ILedgerStore(ABC):
    """
    Abstract interface for the ledger store

    Infrastructure layer provides concrete implementations (in-memory,
    SQLAlchemy).
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[ILedgerTransaction]:
        """
        Open a transaction.

        Commits when the block exits normally and rolls back when it raises.

        Raises:
            ConflictError: A version check or uniqueness rule failed at commit
        """
        pass

    async def close(self) -> None:
        """Release backend resources"""
        return None
