"""
Protocol Codec
==============

Conversion between the typed models and Geyser protobuf messages.

Outbound:
    - request_to_message / encode_request: SubscriptionRequest -> bytes
    - encode_ping: ping-only SubscribeRequest

Inbound decoding lives in the UpdateDemultiplexer; encode_update is the
inverse used by fake servers and the relay's replay tooling.

Design Rules:
    - Requests are serialized deterministically, so resending the same
      SubscriptionRequest produces the same bytes
    - Unset optional predicates stay unset on the wire
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from geyser_stream.errors import ProtocolError
from geyser_stream.models.subscription import (
    AccountsFilter,
    BlocksFilter,
    SlotsFilter,
    SubscriptionRequest,
    TransactionsFilter,
)
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
    Update,
    UpdateKind,
)
from geyser_stream.protocol import schema


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Timestamps
# =============================================================================

def timestamp_to_datetime(seconds: int, nanos: int) -> datetime:
    """Protobuf Timestamp fields -> aware UTC datetime (microsecond precision)."""
    return EPOCH + timedelta(seconds=seconds, microseconds=nanos // 1000)


def datetime_to_timestamp(value: datetime, target) -> None:
    """Write an aware datetime into a protobuf Timestamp message."""
    delta = value - EPOCH
    target.seconds = delta.days * 86400 + delta.seconds
    target.nanos = delta.microseconds * 1000


# =============================================================================
# Requests
# =============================================================================

def _fill_accounts(target, spec: AccountsFilter) -> None:
    target.account.extend(spec.account)
    target.owner.extend(spec.owner)
    for memcmp in spec.memcmp:
        sub = target.filters.add().memcmp
        sub.offset = memcmp.offset
        if memcmp.bytes_ is not None:
            sub.bytes = memcmp.bytes_
        elif memcmp.base58 is not None:
            sub.base58 = memcmp.base58
        else:
            sub.base64 = memcmp.base64
    if spec.datasize is not None:
        target.filters.add().datasize = spec.datasize
    if spec.token_account_state:
        target.filters.add().token_account_state = True
    for lamports in spec.lamports:
        setattr(target.filters.add().lamports, lamports.op, lamports.value)
    if spec.nonempty_txn_signature is not None:
        target.nonempty_txn_signature = spec.nonempty_txn_signature


def _fill_slots(target, spec: SlotsFilter) -> None:
    if spec.filter_by_commitment is not None:
        target.filter_by_commitment = spec.filter_by_commitment
    if spec.interslot_updates is not None:
        target.interslot_updates = spec.interslot_updates


def _fill_transactions(target, spec: TransactionsFilter) -> None:
    if spec.vote is not None:
        target.vote = spec.vote
    if spec.failed is not None:
        target.failed = spec.failed
    if spec.signature is not None:
        target.signature = spec.signature
    target.account_include.extend(spec.account_include)
    target.account_exclude.extend(spec.account_exclude)
    target.account_required.extend(spec.account_required)


def _fill_blocks(target, spec: BlocksFilter) -> None:
    target.account_include.extend(spec.account_include)
    if spec.include_transactions is not None:
        target.include_transactions = spec.include_transactions
    if spec.include_accounts is not None:
        target.include_accounts = spec.include_accounts
    if spec.include_entries is not None:
        target.include_entries = spec.include_entries


def request_to_message(request: SubscriptionRequest):
    """
    Convert a SubscriptionRequest into a ``geyser.SubscribeRequest`` message.

    Args:
        request: Immutable request snapshot

    Returns:
        schema.SubscribeRequest instance
    """
    message = schema.SubscribeRequest()

    if request.commitment is not None:
        message.commitment = request.commitment.wire_value

    for name, spec in request.accounts.items():
        _fill_accounts(message.accounts[name], spec)
    for name, spec in request.slots.items():
        _fill_slots(message.slots[name], spec)
    for name, spec in request.transactions.items():
        _fill_transactions(message.transactions[name], spec)
    for name, spec in request.transactions_status.items():
        _fill_transactions(message.transactions_status[name], spec)
    for name, spec in request.blocks.items():
        _fill_blocks(message.blocks[name], spec)
    for name in request.blocks_meta:
        message.blocks_meta[name].SetInParent()
    for name in request.entry:
        message.entry[name].SetInParent()

    for data_slice in request.accounts_data_slice:
        entry = message.accounts_data_slice.add()
        entry.offset = data_slice.offset
        entry.length = data_slice.length

    if request.from_slot is not None:
        message.from_slot = request.from_slot

    return message


def encode_request(request: SubscriptionRequest) -> bytes:
    """Serialize a SubscriptionRequest for the Subscribe stream."""
    return request_to_message(request).SerializeToString(deterministic=True)


def encode_ping(ping_id: int = 1) -> bytes:
    """Serialize a ping-only SubscribeRequest (keeps the stream alive)."""
    message = schema.SubscribeRequest()
    message.ping.id = ping_id
    return message.SerializeToString(deterministic=True)


# =============================================================================
# Updates
# =============================================================================

def _fill_account_info(target, info: AccountInfo) -> None:
    target.pubkey = info.pubkey
    target.lamports = info.lamports
    target.owner = info.owner
    target.executable = info.executable
    target.rent_epoch = info.rent_epoch
    target.data = info.data
    target.write_version = info.write_version
    if info.txn_signature is not None:
        target.txn_signature = info.txn_signature


def _fill_transaction_info(target, info: TransactionInfo) -> None:
    target.signature = info.signature
    target.is_vote = info.is_vote
    target.index = info.index
    target.transaction = info.transaction
    target.meta = info.meta


def _fill_entry(target, slot: int, entry: EntryPayload) -> None:
    target.slot = slot
    target.index = entry.index
    target.num_hashes = entry.num_hashes
    target.hash = entry.hash
    target.executed_transaction_count = entry.executed_transaction_count
    target.starting_transaction_index = entry.starting_transaction_index


def _fill_block_meta(target, slot: int, meta: BlockMetaPayload) -> None:
    target.slot = slot
    target.blockhash = meta.blockhash
    target.parent_slot = meta.parent_slot
    target.parent_blockhash = meta.parent_blockhash
    target.executed_transaction_count = meta.executed_transaction_count
    target.entries_count = meta.entries_count
    target.rewards = meta.rewards
    if meta.block_time is not None:
        target.block_time.SetInParent()
        target.block_time.timestamp = meta.block_time
    if meta.block_height is not None:
        target.block_height.SetInParent()
        target.block_height.block_height = meta.block_height


def _expect(update: Update, payload_type):
    if not isinstance(update.payload, payload_type):
        raise ProtocolError(
            f"{update.kind.value} update needs a {payload_type.__name__} payload, "
            f"got {type(update.payload).__name__}"
        )
    return update.payload


def encode_update(update: Update) -> bytes:
    """
    Serialize an Update as a ``geyser.SubscribeUpdate`` frame.

    Raises:
        ProtocolError: For UNKNOWN updates or mismatched payloads
    """
    message = schema.SubscribeUpdate()
    message.filters.extend(update.filters)
    if update.created_at is not None:
        datetime_to_timestamp(update.created_at, message.created_at)

    kind = update.kind
    if kind is UpdateKind.ACCOUNT:
        payload = _expect(update, AccountPayload)
        message.account.slot = update.slot
        message.account.is_startup = payload.is_startup
        _fill_account_info(message.account.account, payload.account)
    elif kind is UpdateKind.SLOT:
        payload = _expect(update, SlotPayload)
        message.slot.slot = update.slot
        message.slot.status = SLOT_STATUS_WIRE.index(payload.status)
        if payload.parent is not None:
            message.slot.parent = payload.parent
        if payload.dead_error is not None:
            message.slot.dead_error = payload.dead_error
    elif kind is UpdateKind.TRANSACTION:
        payload = _expect(update, TransactionInfo)
        message.transaction.slot = update.slot
        _fill_transaction_info(message.transaction.transaction, payload)
    elif kind is UpdateKind.TRANSACTION_STATUS:
        payload = _expect(update, TransactionStatusPayload)
        status = message.transaction_status
        status.slot = update.slot
        status.signature = payload.signature
        status.is_vote = payload.is_vote
        status.index = payload.index
        if payload.err is not None:
            status.err = payload.err
    elif kind is UpdateKind.BLOCK:
        payload = _expect(update, BlockPayload)
        _fill_block_meta(message.block, update.slot, payload.meta)
        message.block.updated_account_count = payload.updated_account_count
        for tx in payload.transactions:
            _fill_transaction_info(message.block.transactions.add(), tx)
        for account in payload.accounts:
            _fill_account_info(message.block.accounts.add(), account)
        for entry in payload.entries:
            _fill_entry(message.block.entries.add(), update.slot, entry)
    elif kind is UpdateKind.BLOCK_META:
        _fill_block_meta(message.block_meta, update.slot, _expect(update, BlockMetaPayload))
    elif kind is UpdateKind.ENTRY:
        _fill_entry(message.entry, update.slot, _expect(update, EntryPayload))
    elif kind is UpdateKind.PING:
        message.ping.SetInParent()
    elif kind is UpdateKind.PONG:
        message.pong.id = _expect(update, PongPayload).id
    else:
        raise ProtocolError(f"cannot encode {kind.value} update")

    return message.SerializeToString(deterministic=True)


def optional_field(message, name: str) -> Optional[object]:
    """Value of a proto3 ``optional`` field, or None when unset."""
    return getattr(message, name) if message.HasField(name) else None
