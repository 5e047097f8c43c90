"""
Update Data Model
=================

Typed representation of one inbound Geyser frame.

Every frame becomes exactly one Update: a closed tagged union over the
subscription kinds plus keep-alive (ping/pong) and an UNKNOWN fallback.
Updates are produced per frame and handed to the consumer; the core never
retains them.

Design Rules:
    - Frozen dataclasses, no behaviour beyond presentation helpers
    - Raw ledger data (account data, transactions, meta, rewards) stays bytes
    - `received_at` is local arrival time and does not take part in equality
"""

import base64
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature


class UpdateKind(str, Enum):
    """Discriminant of an Update."""

    ACCOUNT = "account"
    SLOT = "slot"
    TRANSACTION = "transaction"
    TRANSACTION_STATUS = "transaction_status"
    BLOCK = "block"
    BLOCK_META = "block_meta"
    ENTRY = "entry"
    PING = "ping"
    PONG = "pong"
    UNKNOWN = "unknown"

    @property
    def is_keepalive(self) -> bool:
        """Ping/pong frames only prove the connection is alive."""
        return self in (UpdateKind.PING, UpdateKind.PONG)


class SlotStatus(str, Enum):
    """Slot lifecycle status reported by slot updates."""

    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FIRST_SHRED_RECEIVED = "first_shred_received"
    COMPLETED = "completed"
    CREATED_BANK = "created_bank"
    DEAD = "dead"


# Wire enum numbers, in declaration order.
SLOT_STATUS_WIRE: Tuple[SlotStatus, ...] = tuple(SlotStatus)


# =============================================================================
# Payloads
# =============================================================================

@dataclass(frozen=True, slots=True)
class AccountInfo:
    """Account state as carried by account and block updates."""

    pubkey: bytes
    lamports: int
    owner: bytes
    executable: bool
    rent_epoch: int
    data: bytes
    write_version: int
    txn_signature: Optional[bytes] = None

    def __repr__(self) -> str:
        return (
            f"AccountInfo(pubkey={self.pubkey.hex()[:16]}..., "
            f"lamports={self.lamports}, data_len={len(self.data)})"
        )


@dataclass(frozen=True, slots=True)
class AccountPayload:
    account: AccountInfo
    is_startup: bool = False


@dataclass(frozen=True, slots=True)
class SlotPayload:
    status: SlotStatus
    parent: Optional[int] = None
    dead_error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TransactionInfo:
    """
    Transaction as carried by transaction and block updates.

    Attributes:
        signature: First signature (64 bytes)
        is_vote: Whether this is a vote transaction
        index: Position of the transaction within its slot
        transaction: Encoded transaction message, untouched
        meta: Encoded transaction status meta, untouched
    """

    signature: bytes
    is_vote: bool
    index: int
    transaction: bytes = b""
    meta: bytes = b""


@dataclass(frozen=True, slots=True)
class TransactionStatusPayload:
    signature: bytes
    is_vote: bool
    index: int
    err: Optional[bytes] = None


@dataclass(frozen=True, slots=True)
class EntryPayload:
    index: int
    num_hashes: int
    hash: bytes
    executed_transaction_count: int
    starting_transaction_index: int


@dataclass(frozen=True, slots=True)
class BlockMetaPayload:
    blockhash: str
    parent_slot: int
    parent_blockhash: str
    executed_transaction_count: int
    entries_count: int
    block_time: Optional[int] = None
    block_height: Optional[int] = None
    rewards: bytes = b""


@dataclass(frozen=True, slots=True)
class BlockPayload:
    meta: BlockMetaPayload
    transactions: Tuple[TransactionInfo, ...] = ()
    accounts: Tuple[AccountInfo, ...] = ()
    entries: Tuple[EntryPayload, ...] = ()
    updated_account_count: int = 0


@dataclass(frozen=True, slots=True)
class PongPayload:
    id: int


@dataclass(frozen=True, slots=True)
class UnknownPayload:
    """Frame the demultiplexer could not classify."""

    reason: str
    raw: bytes = b""


Payload = Union[
    AccountPayload,
    SlotPayload,
    TransactionInfo,
    TransactionStatusPayload,
    EntryPayload,
    BlockMetaPayload,
    BlockPayload,
    PongPayload,
    UnknownPayload,
    None,
]


# =============================================================================
# Update
# =============================================================================

@dataclass(frozen=True, slots=True)
class Update:
    """
    One classified frame from the subscription stream.

    Attributes:
        kind: Variant discriminant
        slot: Slot the update belongs to (0 for ping/pong/unknown)
        payload: Kind-specific payload
        filters: Names of the server-side filters that matched
        created_at: Server creation time (UTC), if sent
        received_at: Local arrival time (UNIX seconds)
    """

    kind: UpdateKind
    slot: int
    payload: Payload = None
    filters: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    received_at: float = field(default_factory=time.time, compare=False)

    def __repr__(self) -> str:
        return (
            f"Update(kind={self.kind.value}, slot={self.slot}, "
            f"filters={list(self.filters)})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view: keys/signatures in base58, blobs in base64."""
        return {
            "kind": self.kind.value,
            "slot": self.slot,
            "filters": list(self.filters),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "received_at": self.received_at,
            "payload": _payload_dict(self.payload),
        }


def _b58(raw: bytes, cls) -> str:
    try:
        return str(cls.from_bytes(raw))
    except (ValueError, TypeError):
        return raw.hex()


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _account_dict(info: AccountInfo) -> Dict[str, Any]:
    return {
        "pubkey": _b58(info.pubkey, Pubkey),
        "lamports": info.lamports,
        "owner": _b58(info.owner, Pubkey),
        "executable": info.executable,
        "rent_epoch": info.rent_epoch,
        "data": _b64(info.data),
        "write_version": info.write_version,
        "txn_signature": (
            _b58(info.txn_signature, Signature) if info.txn_signature is not None else None
        ),
    }


def _transaction_dict(info: TransactionInfo) -> Dict[str, Any]:
    return {
        "signature": _b58(info.signature, Signature),
        "is_vote": info.is_vote,
        "index": info.index,
        "transaction": _b64(info.transaction),
        "meta": _b64(info.meta),
    }


def _entry_dict(entry: EntryPayload) -> Dict[str, Any]:
    return {
        "index": entry.index,
        "num_hashes": entry.num_hashes,
        "hash": _b58(entry.hash, Hash),
        "executed_transaction_count": entry.executed_transaction_count,
        "starting_transaction_index": entry.starting_transaction_index,
    }


def _block_meta_dict(meta: BlockMetaPayload) -> Dict[str, Any]:
    return {
        "blockhash": meta.blockhash,
        "parent_slot": meta.parent_slot,
        "parent_blockhash": meta.parent_blockhash,
        "executed_transaction_count": meta.executed_transaction_count,
        "entries_count": meta.entries_count,
        "block_time": meta.block_time,
        "block_height": meta.block_height,
        "rewards": _b64(meta.rewards),
    }


def _payload_dict(payload: Payload) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    if isinstance(payload, AccountPayload):
        return {**_account_dict(payload.account), "is_startup": payload.is_startup}
    if isinstance(payload, SlotPayload):
        return {
            "status": payload.status.value,
            "parent": payload.parent,
            "dead_error": payload.dead_error,
        }
    if isinstance(payload, TransactionInfo):
        return _transaction_dict(payload)
    if isinstance(payload, TransactionStatusPayload):
        return {
            "signature": _b58(payload.signature, Signature),
            "is_vote": payload.is_vote,
            "index": payload.index,
            "err": _b64(payload.err) if payload.err is not None else None,
        }
    if isinstance(payload, EntryPayload):
        return _entry_dict(payload)
    if isinstance(payload, BlockMetaPayload):
        return _block_meta_dict(payload)
    if isinstance(payload, BlockPayload):
        return {
            **_block_meta_dict(payload.meta),
            "updated_account_count": payload.updated_account_count,
            "transactions": [_transaction_dict(tx) for tx in payload.transactions],
            "accounts": [_account_dict(acc) for acc in payload.accounts],
            "entries": [_entry_dict(entry) for entry in payload.entries],
        }
    if isinstance(payload, PongPayload):
        return {"id": payload.id}
    if isinstance(payload, UnknownPayload):
        return {"reason": payload.reason, "size": len(payload.raw)}
    raise TypeError(f"unsupported payload type: {type(payload).__name__}")
