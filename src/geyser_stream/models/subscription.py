"""
Subscription Models
===================

Pydantic models for the subscription side of the Geyser stream.

A SubscriptionRequest is one commitment level plus a named-filter map per
kind. Filter names are unique within a kind; the request is immutable once
built (see SubscriptionRequestBuilder for the mutable side).

Example:
    from geyser_stream.models.subscription import (
        AccountsFilter, CommitmentLevel, SubscriptionRequest,
    )

    request = SubscriptionRequest(
        commitment=CommitmentLevel.CONFIRMED,
        accounts={"client": AccountsFilter(owner=("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",))},
    )
"""

import base64
import binascii
import re
from enum import Enum
from types import MappingProxyType
from typing import Dict, Literal, Mapping, Optional, Tuple, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from solders.pubkey import Pubkey
from solders.signature import Signature


_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")


class CommitmentLevel(str, Enum):
    """
    Finality tier requested from the server.

    Attributes:
        PROCESSED: Data from the latest processed slot (may be rolled back)
        CONFIRMED: Data voted on by a supermajority
        FINALIZED: Data rooted by the cluster
    """

    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None

    @property
    def wire_value(self) -> int:
        """Enum number used on the wire."""
        return _COMMITMENT_WIRE[self]


_COMMITMENT_WIRE = {
    CommitmentLevel.PROCESSED: 0,
    CommitmentLevel.CONFIRMED: 1,
    CommitmentLevel.FINALIZED: 2,
}


class FilterKind(str, Enum):
    """Subscription kinds. Values are the request map names on the wire."""

    ACCOUNTS = "accounts"
    SLOTS = "slots"
    TRANSACTIONS = "transactions"
    TRANSACTIONS_STATUS = "transactions_status"
    BLOCKS = "blocks"
    BLOCKS_META = "blocks_meta"
    ENTRY = "entry"


def _check_pubkeys(values: Tuple[str, ...]) -> Tuple[str, ...]:
    for value in values:
        try:
            Pubkey.from_string(value)
        except Exception as e:
            raise ValueError(f"invalid pubkey {value!r}: {e}") from e
    return values


class _Filter(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# =============================================================================
# Account filters
# =============================================================================

class MemcmpFilter(_Filter):
    """Match account data at `offset` against exactly one encoded value."""

    offset: int = Field(..., ge=0, description="Byte offset into account data")
    bytes_: Optional[bytes] = Field(default=None, alias="bytes", description="Raw bytes")
    base58: Optional[str] = Field(default=None, description="Base58-encoded bytes")
    base64: Optional[str] = Field(default=None, description="Base64-encoded bytes")

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        ser_json_bytes="base64",
    )

    @field_validator("base58")
    @classmethod
    def check_base58(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _BASE58_RE.match(value):
            raise ValueError("memcmp base58 data contains non-base58 characters")
        return value

    @field_validator("base64")
    @classmethod
    def check_base64(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                base64.b64decode(value, validate=True)
            except binascii.Error as e:
                raise ValueError(f"memcmp base64 data is invalid: {e}") from e
        return value

    @model_validator(mode="after")
    def check_exactly_one(self) -> "MemcmpFilter":
        present = [v for v in (self.bytes_, self.base58, self.base64) if v is not None]
        if len(present) != 1:
            raise ValueError("memcmp needs exactly one of bytes, base58, base64")
        return self


class LamportsFilter(_Filter):
    """Compare the account lamport balance, e.g. ``gt:1000``."""

    op: Literal["eq", "ne", "lt", "gt"] = Field(..., description="Comparison operator")
    value: int = Field(..., ge=0, description="Lamports to compare against")


class DataSlice(_Filter):
    """Receive only ``data[offset:offset + length]`` of matched accounts."""

    offset: int = Field(..., ge=0)
    length: int = Field(..., ge=0)


class AccountsFilter(_Filter):
    """
    Account subscription predicate.

    Attributes:
        account: Account pubkeys to watch
        owner: Owner program pubkeys to watch
        memcmp: Data comparison sub-filters
        datasize: Exact account data length
        token_account_state: Only valid SPL token accounts
        lamports: Balance comparison sub-filters
        nonempty_txn_signature: Only updates carrying a transaction signature
    """

    account: Tuple[str, ...] = ()
    owner: Tuple[str, ...] = ()
    memcmp: Tuple[MemcmpFilter, ...] = ()
    datasize: Optional[int] = Field(default=None, ge=0)
    token_account_state: bool = False
    lamports: Tuple[LamportsFilter, ...] = ()
    nonempty_txn_signature: Optional[bool] = None

    @field_validator("account", "owner")
    @classmethod
    def check_pubkeys(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _check_pubkeys(value)


# =============================================================================
# Other kinds
# =============================================================================

class TransactionsFilter(_Filter):
    """Transaction (and transaction status) subscription predicate."""

    vote: Optional[bool] = None
    failed: Optional[bool] = None
    signature: Optional[str] = None
    account_include: Tuple[str, ...] = ()
    account_exclude: Tuple[str, ...] = ()
    account_required: Tuple[str, ...] = ()

    @field_validator("account_include", "account_exclude", "account_required")
    @classmethod
    def check_pubkeys(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _check_pubkeys(value)

    @field_validator("signature")
    @classmethod
    def check_signature(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                Signature.from_string(value)
            except Exception as e:
                raise ValueError(f"invalid signature {value!r}: {e}") from e
        return value


class SlotsFilter(_Filter):
    """Slot subscription predicate."""

    filter_by_commitment: Optional[bool] = None
    interslot_updates: Optional[bool] = None


class BlocksFilter(_Filter):
    """Block subscription predicate."""

    account_include: Tuple[str, ...] = ()
    include_transactions: Optional[bool] = None
    include_accounts: Optional[bool] = None
    include_entries: Optional[bool] = None

    @field_validator("account_include")
    @classmethod
    def check_pubkeys(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return _check_pubkeys(value)


class BlocksMetaFilter(_Filter):
    """Block meta subscription (no predicate fields)."""


class EntryFilter(_Filter):
    """Entry subscription (no predicate fields)."""


FILTER_MODELS: Dict[FilterKind, Type[_Filter]] = {
    FilterKind.ACCOUNTS: AccountsFilter,
    FilterKind.SLOTS: SlotsFilter,
    FilterKind.TRANSACTIONS: TransactionsFilter,
    FilterKind.TRANSACTIONS_STATUS: TransactionsFilter,
    FilterKind.BLOCKS: BlocksFilter,
    FilterKind.BLOCKS_META: BlocksMetaFilter,
    FilterKind.ENTRY: EntryFilter,
}


# =============================================================================
# Request
# =============================================================================

_FILTER_MAPS = tuple(kind.value for kind in FilterKind)


class SubscriptionRequest(BaseModel):
    """
    Immutable snapshot of a full subscription.

    Sending a request replaces the previous subscription on the server, so
    this always carries every filter the client wants, never a delta.
    """

    model_config = ConfigDict(frozen=True)

    commitment: Optional[CommitmentLevel] = Field(
        default=CommitmentLevel.PROCESSED,
        description="Commitment level; None leaves the server default",
    )
    accounts: Mapping[str, AccountsFilter] = Field(default_factory=dict)
    slots: Mapping[str, SlotsFilter] = Field(default_factory=dict)
    transactions: Mapping[str, TransactionsFilter] = Field(default_factory=dict)
    transactions_status: Mapping[str, TransactionsFilter] = Field(default_factory=dict)
    blocks: Mapping[str, BlocksFilter] = Field(default_factory=dict)
    blocks_meta: Mapping[str, BlocksMetaFilter] = Field(default_factory=dict)
    entry: Mapping[str, EntryFilter] = Field(default_factory=dict)
    accounts_data_slice: Tuple[DataSlice, ...] = ()
    from_slot: Optional[int] = Field(
        default=None,
        ge=0,
        description="Ask the server to replay from this slot",
    )

    @field_validator(*_FILTER_MAPS, mode="after")
    @classmethod
    def freeze_filter_map(cls, value: Mapping[str, _Filter]) -> Mapping[str, _Filter]:
        return MappingProxyType(dict(value))

    @field_serializer(*_FILTER_MAPS)
    def dump_filter_map(self, value: Mapping[str, _Filter]) -> dict:
        return dict(value)

    def filters(self, kind: FilterKind) -> Dict[str, _Filter]:
        """Copy of the named filters for one kind."""
        return dict(getattr(self, FilterKind(kind).value))

    def is_empty(self) -> bool:
        """True when no kind has any filter."""
        return not any(self.filters(kind) for kind in FilterKind)
