"""
Geyser Wire Schema
==================

Protobuf message classes for the Yellowstone Geyser gRPC service.

The schema is declared here as a FileDescriptorProto and registered in a
private descriptor pool, so no generated ``*_pb2`` module is needed. Field
numbers match the upstream ``geyser.proto``.

Nested Solana storage messages (transaction, transaction meta, rewards,
transaction error) are declared as ``bytes``. They share the length-delimited
wire type with embedded messages, so they decode as opaque blobs and are
passed through to the consumer untouched.

GeyserStub mirrors the stub class protoc would generate for the service.

Example:
    from geyser_stream.protocol import schema

    request = schema.SubscribeRequest()
    request.slots["client"].filter_by_commitment = True
    payload = request.SerializeToString(deterministic=True)
"""

from typing import Dict, List, Tuple

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory, timestamp_pb2


PACKAGE = "geyser"
SERVICE = "geyser.Geyser"

_FDP = descriptor_pb2.FieldDescriptorProto

_SCALARS = {
    "bool": _FDP.TYPE_BOOL,
    "int32": _FDP.TYPE_INT32,
    "int64": _FDP.TYPE_INT64,
    "uint64": _FDP.TYPE_UINT64,
    "string": _FDP.TYPE_STRING,
    "bytes": _FDP.TYPE_BYTES,
}

_ENUMS: Dict[str, List[Tuple[str, int]]] = {
    "CommitmentLevel": [
        ("PROCESSED", 0),
        ("CONFIRMED", 1),
        ("FINALIZED", 2),
    ],
    "SlotStatus": [
        ("SLOT_PROCESSED", 0),
        ("SLOT_CONFIRMED", 1),
        ("SLOT_FINALIZED", 2),
        ("SLOT_FIRST_SHRED_RECEIVED", 3),
        ("SLOT_COMPLETED", 4),
        ("SLOT_CREATED_BANK", 5),
        ("SLOT_DEAD", 6),
    ],
}

# (name, number, type, modifier); modifier is "", "repeated", "optional",
# "map" or "oneof:<group>".
_MESSAGES: Dict[str, List[Tuple[str, int, str, str]]] = {
    # -- Subscribe request ---------------------------------------------------
    "SubscribeRequest": [
        ("accounts", 1, "SubscribeRequestFilterAccounts", "map"),
        ("slots", 2, "SubscribeRequestFilterSlots", "map"),
        ("transactions", 3, "SubscribeRequestFilterTransactions", "map"),
        ("transactions_status", 10, "SubscribeRequestFilterTransactions", "map"),
        ("blocks", 4, "SubscribeRequestFilterBlocks", "map"),
        ("blocks_meta", 5, "SubscribeRequestFilterBlocksMeta", "map"),
        ("entry", 8, "SubscribeRequestFilterEntry", "map"),
        ("commitment", 6, "CommitmentLevel", "optional"),
        ("accounts_data_slice", 7, "SubscribeRequestAccountsDataSlice", "repeated"),
        ("ping", 9, "SubscribeRequestPing", "optional"),
        ("from_slot", 11, "uint64", "optional"),
    ],
    "SubscribeRequestFilterAccounts": [
        ("account", 2, "string", "repeated"),
        ("owner", 3, "string", "repeated"),
        ("filters", 4, "SubscribeRequestFilterAccountsFilter", "repeated"),
        ("nonempty_txn_signature", 5, "bool", "optional"),
    ],
    "SubscribeRequestFilterAccountsFilter": [
        ("memcmp", 1, "SubscribeRequestFilterAccountsFilterMemcmp", "oneof:filter"),
        ("datasize", 2, "uint64", "oneof:filter"),
        ("token_account_state", 3, "bool", "oneof:filter"),
        ("lamports", 4, "SubscribeRequestFilterAccountsFilterLamports", "oneof:filter"),
    ],
    "SubscribeRequestFilterAccountsFilterMemcmp": [
        ("offset", 1, "uint64", ""),
        ("bytes", 2, "bytes", "oneof:data"),
        ("base58", 3, "string", "oneof:data"),
        ("base64", 4, "string", "oneof:data"),
    ],
    "SubscribeRequestFilterAccountsFilterLamports": [
        ("eq", 1, "uint64", "oneof:cmp"),
        ("ne", 2, "uint64", "oneof:cmp"),
        ("lt", 3, "uint64", "oneof:cmp"),
        ("gt", 4, "uint64", "oneof:cmp"),
    ],
    "SubscribeRequestFilterSlots": [
        ("filter_by_commitment", 1, "bool", "optional"),
        ("interslot_updates", 2, "bool", "optional"),
    ],
    "SubscribeRequestFilterTransactions": [
        ("vote", 1, "bool", "optional"),
        ("failed", 2, "bool", "optional"),
        ("signature", 5, "string", "optional"),
        ("account_include", 3, "string", "repeated"),
        ("account_exclude", 4, "string", "repeated"),
        ("account_required", 6, "string", "repeated"),
    ],
    "SubscribeRequestFilterBlocks": [
        ("account_include", 1, "string", "repeated"),
        ("include_transactions", 2, "bool", "optional"),
        ("include_accounts", 3, "bool", "optional"),
        ("include_entries", 4, "bool", "optional"),
    ],
    "SubscribeRequestFilterBlocksMeta": [],
    "SubscribeRequestFilterEntry": [],
    "SubscribeRequestAccountsDataSlice": [
        ("offset", 1, "uint64", ""),
        ("length", 2, "uint64", ""),
    ],
    "SubscribeRequestPing": [
        ("id", 1, "int32", ""),
    ],
    # -- Subscribe update ----------------------------------------------------
    "SubscribeUpdate": [
        ("filters", 1, "string", "repeated"),
        ("account", 2, "SubscribeUpdateAccount", "oneof:update_oneof"),
        ("slot", 3, "SubscribeUpdateSlot", "oneof:update_oneof"),
        ("transaction", 4, "SubscribeUpdateTransaction", "oneof:update_oneof"),
        ("transaction_status", 10, "SubscribeUpdateTransactionStatus", "oneof:update_oneof"),
        ("block", 5, "SubscribeUpdateBlock", "oneof:update_oneof"),
        ("ping", 6, "SubscribeUpdatePing", "oneof:update_oneof"),
        ("pong", 9, "SubscribeUpdatePong", "oneof:update_oneof"),
        ("block_meta", 7, "SubscribeUpdateBlockMeta", "oneof:update_oneof"),
        ("entry", 8, "SubscribeUpdateEntry", "oneof:update_oneof"),
        ("created_at", 11, "google.protobuf.Timestamp", ""),
    ],
    "SubscribeUpdateAccount": [
        ("account", 1, "SubscribeUpdateAccountInfo", ""),
        ("slot", 2, "uint64", ""),
        ("is_startup", 3, "bool", ""),
    ],
    "SubscribeUpdateAccountInfo": [
        ("pubkey", 1, "bytes", ""),
        ("lamports", 2, "uint64", ""),
        ("owner", 3, "bytes", ""),
        ("executable", 4, "bool", ""),
        ("rent_epoch", 5, "uint64", ""),
        ("data", 6, "bytes", ""),
        ("write_version", 7, "uint64", ""),
        ("txn_signature", 8, "bytes", "optional"),
    ],
    "SubscribeUpdateSlot": [
        ("slot", 1, "uint64", ""),
        ("parent", 2, "uint64", "optional"),
        ("status", 3, "SlotStatus", ""),
        ("dead_error", 4, "string", "optional"),
    ],
    "SubscribeUpdateTransaction": [
        ("transaction", 1, "SubscribeUpdateTransactionInfo", ""),
        ("slot", 2, "uint64", ""),
    ],
    "SubscribeUpdateTransactionInfo": [
        ("signature", 1, "bytes", ""),
        ("is_vote", 2, "bool", ""),
        ("transaction", 3, "bytes", ""),
        ("meta", 4, "bytes", ""),
        ("index", 5, "uint64", ""),
    ],
    "SubscribeUpdateTransactionStatus": [
        ("slot", 1, "uint64", ""),
        ("signature", 2, "bytes", ""),
        ("is_vote", 3, "bool", ""),
        ("index", 4, "uint64", ""),
        ("err", 5, "bytes", ""),
    ],
    "SubscribeUpdateBlock": [
        ("slot", 1, "uint64", ""),
        ("blockhash", 2, "string", ""),
        ("rewards", 3, "bytes", ""),
        ("block_time", 4, "UnixTimestamp", ""),
        ("block_height", 5, "BlockHeight", ""),
        ("parent_slot", 7, "uint64", ""),
        ("parent_blockhash", 8, "string", ""),
        ("executed_transaction_count", 9, "uint64", ""),
        ("transactions", 6, "SubscribeUpdateTransactionInfo", "repeated"),
        ("updated_account_count", 10, "uint64", ""),
        ("accounts", 11, "SubscribeUpdateAccountInfo", "repeated"),
        ("entries_count", 12, "uint64", ""),
        ("entries", 13, "SubscribeUpdateEntry", "repeated"),
    ],
    "SubscribeUpdateBlockMeta": [
        ("slot", 1, "uint64", ""),
        ("blockhash", 2, "string", ""),
        ("rewards", 3, "bytes", ""),
        ("block_time", 4, "UnixTimestamp", ""),
        ("block_height", 5, "BlockHeight", ""),
        ("parent_slot", 6, "uint64", ""),
        ("parent_blockhash", 7, "string", ""),
        ("executed_transaction_count", 8, "uint64", ""),
        ("entries_count", 9, "uint64", ""),
    ],
    "SubscribeUpdateEntry": [
        ("slot", 1, "uint64", ""),
        ("index", 2, "uint64", ""),
        ("num_hashes", 3, "uint64", ""),
        ("hash", 4, "bytes", ""),
        ("executed_transaction_count", 5, "uint64", ""),
        ("starting_transaction_index", 6, "uint64", ""),
    ],
    "SubscribeUpdatePing": [],
    "SubscribeUpdatePong": [
        ("id", 1, "int32", ""),
    ],
    "UnixTimestamp": [
        ("timestamp", 1, "int64", ""),
    ],
    "BlockHeight": [
        ("block_height", 1, "uint64", ""),
    ],
    # -- Unary calls ---------------------------------------------------------
    "PingRequest": [("count", 1, "int32", "")],
    "PongResponse": [("count", 1, "int32", "")],
    "GetLatestBlockhashRequest": [("commitment", 1, "CommitmentLevel", "optional")],
    "GetLatestBlockhashResponse": [
        ("slot", 1, "uint64", ""),
        ("blockhash", 2, "string", ""),
        ("last_valid_block_height", 3, "uint64", ""),
    ],
    "GetBlockHeightRequest": [("commitment", 1, "CommitmentLevel", "optional")],
    "GetBlockHeightResponse": [("block_height", 1, "uint64", "")],
    "GetSlotRequest": [("commitment", 1, "CommitmentLevel", "optional")],
    "GetSlotResponse": [("slot", 1, "uint64", "")],
    "GetVersionRequest": [],
    "GetVersionResponse": [("version", 1, "string", "")],
    "IsBlockhashValidRequest": [
        ("blockhash", 1, "string", ""),
        ("commitment", 2, "CommitmentLevel", "optional"),
    ],
    "IsBlockhashValidResponse": [
        ("slot", 1, "uint64", ""),
        ("valid", 2, "bool", ""),
    ],
    "SubscribeReplayInfoRequest": [],
    "SubscribeReplayInfoResponse": [("first_available", 1, "uint64", "optional")],
}


def _camel(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.split("_"))


def _set_type(field: _FDP, type_name: str) -> None:
    if type_name in _SCALARS:
        field.type = _SCALARS[type_name]
    elif type_name in _ENUMS:
        field.type = _FDP.TYPE_ENUM
        field.type_name = f".{PACKAGE}.{type_name}"
    elif type_name.startswith("google.protobuf."):
        field.type = _FDP.TYPE_MESSAGE
        field.type_name = f".{type_name}"
    else:
        field.type = _FDP.TYPE_MESSAGE
        field.type_name = f".{PACKAGE}.{type_name}"


def _add_message(
    file_proto: descriptor_pb2.FileDescriptorProto,
    name: str,
    fields: List[Tuple[str, int, str, str]],
) -> None:
    message = file_proto.message_type.add()
    message.name = name

    # Real oneofs must precede the synthetic ones backing proto3 `optional`.
    oneof_index: Dict[str, int] = {}
    for _, _, _, modifier in fields:
        if modifier.startswith("oneof:"):
            group = modifier.split(":", 1)[1]
            if group not in oneof_index:
                oneof_index[group] = len(message.oneof_decl)
                message.oneof_decl.add().name = group

    for field_name, number, type_name, modifier in fields:
        field = message.field.add()
        field.name = field_name
        field.number = number
        field.label = _FDP.LABEL_OPTIONAL

        if modifier == "map":
            entry = message.nested_type.add()
            entry.name = f"{_camel(field_name)}Entry"
            entry.options.map_entry = True
            key = entry.field.add()
            key.name, key.number, key.label = "key", 1, _FDP.LABEL_OPTIONAL
            key.type = _FDP.TYPE_STRING
            value = entry.field.add()
            value.name, value.number, value.label = "value", 2, _FDP.LABEL_OPTIONAL
            _set_type(value, type_name)
            field.label = _FDP.LABEL_REPEATED
            field.type = _FDP.TYPE_MESSAGE
            field.type_name = f".{PACKAGE}.{name}.{entry.name}"
            continue

        _set_type(field, type_name)
        if modifier == "repeated":
            field.label = _FDP.LABEL_REPEATED
        elif modifier.startswith("oneof:"):
            field.oneof_index = oneof_index[modifier.split(":", 1)[1]]
        elif modifier == "optional":
            field.proto3_optional = True
            field.oneof_index = len(message.oneof_decl)
            message.oneof_decl.add().name = f"_{field_name}"


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "geyser_stream/geyser.proto"
    file_proto.package = PACKAGE
    file_proto.syntax = "proto3"
    file_proto.dependency.append("google/protobuf/timestamp.proto")

    for enum_name, values in _ENUMS.items():
        enum = file_proto.enum_type.add()
        enum.name = enum_name
        for value_name, number in values:
            value = enum.value.add()
            value.name = value_name
            value.number = number

    for message_name, fields in _MESSAGES.items():
        _add_message(file_proto, message_name, fields)

    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
_POOL.AddSerializedFile(_build_file().SerializeToString())


def message_class(name: str):
    """Return the message class for a message declared in this schema."""
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PACKAGE}.{name}"))


def method_path(method: str) -> str:
    """Full gRPC method path for a Geyser RPC, e.g. ``/geyser.Geyser/Subscribe``."""
    return f"/{SERVICE}/{method}"


SubscribeRequest = message_class("SubscribeRequest")
SubscribeRequestFilterAccounts = message_class("SubscribeRequestFilterAccounts")
SubscribeRequestFilterAccountsFilter = message_class("SubscribeRequestFilterAccountsFilter")
SubscribeRequestFilterSlots = message_class("SubscribeRequestFilterSlots")
SubscribeRequestFilterTransactions = message_class("SubscribeRequestFilterTransactions")
SubscribeRequestFilterBlocks = message_class("SubscribeRequestFilterBlocks")
SubscribeRequestAccountsDataSlice = message_class("SubscribeRequestAccountsDataSlice")

SubscribeUpdate = message_class("SubscribeUpdate")
SubscribeUpdateAccountInfo = message_class("SubscribeUpdateAccountInfo")
SubscribeUpdateTransactionInfo = message_class("SubscribeUpdateTransactionInfo")
SubscribeUpdateEntry = message_class("SubscribeUpdateEntry")

PingRequest = message_class("PingRequest")
PongResponse = message_class("PongResponse")
GetLatestBlockhashRequest = message_class("GetLatestBlockhashRequest")
GetLatestBlockhashResponse = message_class("GetLatestBlockhashResponse")
GetBlockHeightRequest = message_class("GetBlockHeightRequest")
GetBlockHeightResponse = message_class("GetBlockHeightResponse")
GetSlotRequest = message_class("GetSlotRequest")
GetSlotResponse = message_class("GetSlotResponse")
GetVersionRequest = message_class("GetVersionRequest")
GetVersionResponse = message_class("GetVersionResponse")
IsBlockhashValidRequest = message_class("IsBlockhashValidRequest")
IsBlockhashValidResponse = message_class("IsBlockhashValidResponse")
SubscribeReplayInfoRequest = message_class("SubscribeReplayInfoRequest")
SubscribeReplayInfoResponse = message_class("SubscribeReplayInfoResponse")


# =============================================================================
# Service stub
# =============================================================================

class GeyserStub:
    """
    Client stub for the geyser.Geyser service.

    Unary methods take and return the message classes above. Subscribe has
    no serializers: frames travel as bytes and are handled by the codec and
    the demultiplexer.

    Example:
        stub = GeyserStub(channel)
        response = await stub.GetSlot(GetSlotRequest(), timeout=10)
    """

    def __init__(self, channel: grpc.aio.Channel) -> None:
        self.Subscribe = channel.stream_stream(method_path("Subscribe"))
        self.SubscribeReplayInfo = _unary(
            channel, "SubscribeReplayInfo", SubscribeReplayInfoRequest, SubscribeReplayInfoResponse
        )
        self.Ping = _unary(channel, "Ping", PingRequest, PongResponse)
        self.GetLatestBlockhash = _unary(
            channel, "GetLatestBlockhash", GetLatestBlockhashRequest, GetLatestBlockhashResponse
        )
        self.GetBlockHeight = _unary(
            channel, "GetBlockHeight", GetBlockHeightRequest, GetBlockHeightResponse
        )
        self.GetSlot = _unary(channel, "GetSlot", GetSlotRequest, GetSlotResponse)
        self.IsBlockhashValid = _unary(
            channel, "IsBlockhashValid", IsBlockhashValidRequest, IsBlockhashValidResponse
        )
        self.GetVersion = _unary(channel, "GetVersion", GetVersionRequest, GetVersionResponse)


def _unary(channel: grpc.aio.Channel, method: str, request_cls, response_cls):
    return channel.unary_unary(
        method_path(method),
        request_serializer=request_cls.SerializeToString,
        response_deserializer=response_cls.FromString,
    )
