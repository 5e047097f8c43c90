"""
Data Models
===========

Models shared by the streaming core.

Models:
    Subscription (pydantic, immutable):
        - CommitmentLevel, FilterKind
        - AccountsFilter, MemcmpFilter, LamportsFilter, DataSlice
        - TransactionsFilter, SlotsFilter, BlocksFilter
        - BlocksMetaFilter, EntryFilter
        - SubscriptionRequest

    Update (frozen dataclasses):
        - UpdateKind, SlotStatus
        - Update and its payload variants
"""

from geyser_stream.models.subscription import (
    FILTER_MODELS,
    AccountsFilter,
    BlocksFilter,
    BlocksMetaFilter,
    CommitmentLevel,
    DataSlice,
    EntryFilter,
    FilterKind,
    LamportsFilter,
    MemcmpFilter,
    SlotsFilter,
    SubscriptionRequest,
    TransactionsFilter,
)
from geyser_stream.models.update import (
    AccountInfo,
    AccountPayload,
    BlockMetaPayload,
    BlockPayload,
    EntryPayload,
    PongPayload,
    SlotPayload,
    SlotStatus,
    TransactionInfo,
    TransactionStatusPayload,
    UnknownPayload,
    Update,
    UpdateKind,
)

__all__ = [
    # Subscription
    "FILTER_MODELS",
    "CommitmentLevel",
    "FilterKind",
    "AccountsFilter",
    "MemcmpFilter",
    "LamportsFilter",
    "DataSlice",
    "TransactionsFilter",
    "SlotsFilter",
    "BlocksFilter",
    "BlocksMetaFilter",
    "EntryFilter",
    "SubscriptionRequest",
    # Update
    "UpdateKind",
    "SlotStatus",
    "Update",
    "AccountInfo",
    "AccountPayload",
    "SlotPayload",
    "TransactionInfo",
    "TransactionStatusPayload",
    "EntryPayload",
    "BlockMetaPayload",
    "BlockPayload",
    "PongPayload",
    "UnknownPayload",
]
