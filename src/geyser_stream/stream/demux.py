"""
Update Demultiplexer
====================

Classifies raw SubscribeUpdate frames into typed Update values.

Each frame is decoded once and dispatched once on its ``update_oneof``
discriminant through a decoder table. Frames with a missing or unsupported
discriminant, or that fail to decode, become UNKNOWN updates and are counted;
classify() itself never raises.

Design Rules:
    - One frame in, exactly one Update out
    - Payload bytes (account data, transactions, meta, rewards) are not
      interpreted
    - Block entries carry the slot of their block

Example:
    demux = UpdateDemultiplexer()
    update = demux.classify(frame)
    if update.kind is UpdateKind.UNKNOWN:
        ...
"""

import logging
from typing import Callable, Dict, Optional, Tuple

from google.protobuf.message import DecodeError

from geyser_stream.errors import ProtocolError
from geyser_stream.models.update import (
    SLOT_STATUS_WIRE,
    AccountInfo,
    AccountPayload,
    BlockMetaPayload,
    BlockPayload,
    EntryPayload,
    PongPayload,
    SlotPayload,
    TransactionInfo,
    TransactionStatusPayload,
    UnknownPayload,
    Update,
    UpdateKind,
)
from geyser_stream.protocol import schema
from geyser_stream.protocol.codec import optional_field, timestamp_to_datetime


logger = logging.getLogger(__name__)


class DemuxMetrics:
    """Counters for UpdateDemultiplexer observability."""

    __slots__ = ("frames", "decode_failures", "by_kind")

    def __init__(self) -> None:
        self.frames: int = 0
        self.decode_failures: int = 0
        self.by_kind: Dict[str, int] = {}

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames": self.frames,
            "decode_failures": self.decode_failures,
            "by_kind": dict(self.by_kind),
        }


# =============================================================================
# Payload decoders
# =============================================================================

def _account_info(info) -> AccountInfo:
    return AccountInfo(
        pubkey=info.pubkey,
        lamports=info.lamports,
        owner=info.owner,
        executable=info.executable,
        rent_epoch=info.rent_epoch,
        data=info.data,
        write_version=info.write_version,
        txn_signature=optional_field(info, "txn_signature"),
    )


def _transaction_info(info) -> TransactionInfo:
    return TransactionInfo(
        signature=info.signature,
        is_vote=info.is_vote,
        index=info.index,
        transaction=info.transaction,
        meta=info.meta,
    )


def _entry(entry) -> EntryPayload:
    return EntryPayload(
        index=entry.index,
        num_hashes=entry.num_hashes,
        hash=entry.hash,
        executed_transaction_count=entry.executed_transaction_count,
        starting_transaction_index=entry.starting_transaction_index,
    )


def _block_meta(meta) -> BlockMetaPayload:
    return BlockMetaPayload(
        blockhash=meta.blockhash,
        parent_slot=meta.parent_slot,
        parent_blockhash=meta.parent_blockhash,
        executed_transaction_count=meta.executed_transaction_count,
        entries_count=meta.entries_count,
        block_time=meta.block_time.timestamp if meta.HasField("block_time") else None,
        block_height=(
            meta.block_height.block_height if meta.HasField("block_height") else None
        ),
        rewards=meta.rewards,
    )


def _decode_account(msg) -> Tuple[int, AccountPayload]:
    return msg.slot, AccountPayload(
        account=_account_info(msg.account),
        is_startup=msg.is_startup,
    )


def _decode_slot(msg) -> Tuple[int, SlotPayload]:
    if not 0 <= msg.status < len(SLOT_STATUS_WIRE):
        raise ProtocolError(f"unsupported slot status {msg.status}")
    return msg.slot, SlotPayload(
        status=SLOT_STATUS_WIRE[msg.status],
        parent=optional_field(msg, "parent"),
        dead_error=optional_field(msg, "dead_error"),
    )


def _decode_transaction(msg) -> Tuple[int, TransactionInfo]:
    return msg.slot, _transaction_info(msg.transaction)


def _decode_transaction_status(msg) -> Tuple[int, TransactionStatusPayload]:
    return msg.slot, TransactionStatusPayload(
        signature=msg.signature,
        is_vote=msg.is_vote,
        index=msg.index,
        err=msg.err or None,
    )


def _decode_block(msg) -> Tuple[int, BlockPayload]:
    return msg.slot, BlockPayload(
        meta=_block_meta(msg),
        transactions=tuple(_transaction_info(tx) for tx in msg.transactions),
        accounts=tuple(_account_info(acc) for acc in msg.accounts),
        entries=tuple(_entry(entry) for entry in msg.entries),
        updated_account_count=msg.updated_account_count,
    )


def _decode_block_meta(msg) -> Tuple[int, BlockMetaPayload]:
    return msg.slot, _block_meta(msg)


def _decode_entry(msg) -> Tuple[int, EntryPayload]:
    return msg.slot, _entry(msg)


def _decode_ping(msg) -> Tuple[int, None]:
    return 0, None


def _decode_pong(msg) -> Tuple[int, PongPayload]:
    return 0, PongPayload(id=msg.id)


_DECODERS: Dict[str, Tuple[UpdateKind, Callable]] = {
    "account": (UpdateKind.ACCOUNT, _decode_account),
    "slot": (UpdateKind.SLOT, _decode_slot),
    "transaction": (UpdateKind.TRANSACTION, _decode_transaction),
    "transaction_status": (UpdateKind.TRANSACTION_STATUS, _decode_transaction_status),
    "block": (UpdateKind.BLOCK, _decode_block),
    "block_meta": (UpdateKind.BLOCK_META, _decode_block_meta),
    "entry": (UpdateKind.ENTRY, _decode_entry),
    "ping": (UpdateKind.PING, _decode_ping),
    "pong": (UpdateKind.PONG, _decode_pong),
}


# =============================================================================
# Demultiplexer
# =============================================================================

class UpdateDemultiplexer:
    """
    Turns raw frames into typed Updates.

    Attributes:
        metrics: Frame and decode-failure counters
    """

    def __init__(self) -> None:
        self.metrics = DemuxMetrics()

    @property
    def decode_failures(self) -> int:
        """Frames that could not be classified."""
        return self.metrics.decode_failures

    def classify(self, frame: bytes) -> Update:
        """
        Classify one frame.

        Args:
            frame: Serialized SubscribeUpdate

        Returns:
            The typed Update; UNKNOWN if the frame is unrecognised or corrupt.
        """
        self.metrics.frames += 1

        try:
            message = schema.SubscribeUpdate.FromString(frame)
        except DecodeError as e:
            return self._unknown(f"decode error: {e}", frame)

        which: Optional[str] = message.WhichOneof("update_oneof")
        if which is None or which not in _DECODERS:
            return self._unknown("missing or unsupported update kind", frame)

        kind, decode = _DECODERS[which]
        try:
            slot, payload = decode(getattr(message, which))
        except ProtocolError as e:
            return self._unknown(str(e), frame)

        created_at = None
        if message.HasField("created_at"):
            created_at = timestamp_to_datetime(
                message.created_at.seconds, message.created_at.nanos
            )

        self.metrics.by_kind[kind.value] = self.metrics.by_kind.get(kind.value, 0) + 1
        return Update(
            kind=kind,
            slot=slot,
            payload=payload,
            filters=tuple(message.filters),
            created_at=created_at,
        )

    def _unknown(self, reason: str, frame: bytes) -> Update:
        self.metrics.decode_failures += 1
        logger.warning(
            f"Unclassified frame ({len(frame)} bytes): {reason}. "
            f"Total failures: {self.metrics.decode_failures}"
        )
        return Update(
            kind=UpdateKind.UNKNOWN,
            slot=0,
            payload=UnknownPayload(reason=reason, raw=frame),
        )
