"""
Codec and Demultiplexer Tests
=============================

Tests for request encoding and frame classification.
"""

from datetime import datetime, timezone

import pytest

from conftest import TOKEN_PROGRAM, account_frame, ping_frame, slot_frame
from geyser_stream.errors import ProtocolError
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
from geyser_stream.protocol import schema
from geyser_stream.protocol.codec import (
    encode_ping,
    encode_request,
    encode_update,
    request_to_message,
    timestamp_to_datetime,
)
from geyser_stream.stream.builder import SubscriptionRequestBuilder
from geyser_stream.stream.demux import UpdateDemultiplexer


SIGNATURE = bytes(range(64))
CREATED = datetime(2024, 5, 1, 12, 30, 15, 250_000, tzinfo=timezone.utc)

ACCOUNT = AccountInfo(
    pubkey=bytes(range(32)),
    lamports=2_039_280,
    owner=bytes(range(1, 33)),
    executable=False,
    rent_epoch=361,
    data=bytes(165),
    write_version=1_204_882,
    txn_signature=SIGNATURE,
)
META = BlockMetaPayload(
    blockhash="4sGjMW1sUnHzSxGspuhpqLDx6wiyjNtZAMdL4VZHirAn",
    parent_slot=288_999_999,
    parent_blockhash="11111111111111111111111111111111",
    executed_transaction_count=1,
    entries_count=1,
    block_time=1_700_000_000,
    block_height=267_000_000,
    rewards=b"\x0a\x00",
)
ENTRY = EntryPayload(
    index=3,
    num_hashes=12_500,
    hash=bytes(range(32)),
    executed_transaction_count=1,
    starting_transaction_index=0,
)
TRANSACTION = TransactionInfo(
    signature=SIGNATURE,
    is_vote=False,
    index=5,
    transaction=b"\x0a\x03abc",
    meta=b"\x10\x01",
)

SLOT = 289_000_000
UPDATES = [
    Update(
        kind=UpdateKind.ACCOUNT,
        slot=SLOT,
        payload=AccountPayload(account=ACCOUNT, is_startup=True),
        filters=("client",),
        created_at=CREATED,
    ),
    Update(
        kind=UpdateKind.SLOT,
        slot=SLOT,
        payload=SlotPayload(status=SlotStatus.DEAD, parent=SLOT - 1, dead_error="fork"),
        filters=("client",),
        created_at=CREATED,
    ),
    Update(
        kind=UpdateKind.TRANSACTION,
        slot=SLOT,
        payload=TRANSACTION,
        filters=("client", "votes"),
        created_at=CREATED,
    ),
    Update(
        kind=UpdateKind.TRANSACTION_STATUS,
        slot=SLOT,
        payload=TransactionStatusPayload(
            signature=SIGNATURE, is_vote=False, index=5, err=b"\x08\x01"
        ),
        filters=("client",),
    ),
    Update(
        kind=UpdateKind.BLOCK,
        slot=SLOT,
        payload=BlockPayload(
            meta=META,
            transactions=(TRANSACTION,),
            accounts=(ACCOUNT,),
            entries=(ENTRY,),
            updated_account_count=1,
        ),
        filters=("client",),
        created_at=CREATED,
    ),
    Update(kind=UpdateKind.BLOCK_META, slot=SLOT, payload=META, filters=("client",)),
    Update(kind=UpdateKind.ENTRY, slot=SLOT, payload=ENTRY, filters=("client",)),
]


class TestRequestEncoding:
    """Tests for SubscriptionRequest -> SubscribeRequest."""

    def test_commitment_and_named_filters(self):
        request = (
            SubscriptionRequestBuilder()
            .add_filter("slots", "client", {"filter_by_commitment": True})
            .add_filter("blocks_meta", "meta", {})
            .build("finalized")
        )
        message = request_to_message(request)

        assert message.commitment == 2
        assert message.slots["client"].filter_by_commitment is True
        assert not message.slots["client"].HasField("interslot_updates")
        assert "meta" in message.blocks_meta
        assert len(message.accounts) == 0

    def test_account_sub_filters(self):
        request = SubscriptionRequestBuilder().add_filter(
            "accounts",
            "tokens",
            {
                "owner": [TOKEN_PROGRAM],
                "memcmp": [{"offset": 32, "base58": "3Mc6vR"}],
                "datasize": 165,
                "token_account_state": True,
                "lamports": [{"op": "gt", "value": 1}],
            },
        ).build()
        accounts = request_to_message(request).accounts["tokens"]

        assert list(accounts.owner) == [TOKEN_PROGRAM]
        assert len(accounts.filters) == 4
        assert accounts.filters[0].memcmp.offset == 32
        assert accounts.filters[0].memcmp.base58 == "3Mc6vR"
        assert accounts.filters[1].datasize == 165
        assert accounts.filters[2].token_account_state is True
        assert accounts.filters[3].lamports.WhichOneof("cmp") == "gt"

    def test_data_slice_and_from_slot(self):
        request = (
            SubscriptionRequestBuilder()
            .add_filter("accounts", "tokens", {"owner": [TOKEN_PROGRAM]})
            .set_accounts_data_slice((0, 40))
            .set_from_slot(99)
            .build()
        )
        message = request_to_message(request)

        assert message.accounts_data_slice[0].length == 40
        assert message.from_slot == 99

    def test_encoding_is_deterministic(self, slots_request):
        rebuilt = SubscriptionRequestBuilder.from_request(slots_request).build("confirmed")

        assert encode_request(slots_request) == encode_request(rebuilt)

    def test_ping_request_carries_only_ping(self):
        message = schema.SubscribeRequest.FromString(encode_ping(1))

        assert message.HasField("ping")
        assert message.ping.id == 1
        assert len(message.slots) == 0
        assert not message.HasField("commitment")


class TestClassify:
    """Tests for UpdateDemultiplexer.classify()."""

    def test_slot_update(self):
        demux = UpdateDemultiplexer()
        update = demux.classify(slot_frame(100, SlotStatus.CONFIRMED))

        assert update.kind is UpdateKind.SLOT
        assert update.slot == 100
        assert update.filters == ("client",)
        assert update.payload == SlotPayload(status=SlotStatus.CONFIRMED, parent=99)
        assert demux.metrics.by_kind == {"slot": 1}

    def test_account_update(self):
        update = UpdateDemultiplexer().classify(account_frame(7, lamports=42))

        assert update.kind is UpdateKind.ACCOUNT
        assert update.slot == 7
        assert isinstance(update.payload, AccountPayload)
        assert update.payload.account.lamports == 42
        assert update.payload.account.data == b"\x01\x02\x03"
        assert update.payload.account.txn_signature is None

    def test_ping_and_pong(self):
        demux = UpdateDemultiplexer()
        ping = demux.classify(ping_frame())
        pong = demux.classify(encode_update(
            Update(kind=UpdateKind.PONG, slot=0, payload=PongPayload(id=3))
        ))

        assert ping.kind is UpdateKind.PING and ping.payload is None
        assert ping.kind.is_keepalive
        assert pong.payload == PongPayload(id=3)

    def test_transaction_payload_bytes_are_untouched(self):
        info = TransactionInfo(
            signature=SIGNATURE,
            is_vote=False,
            index=5,
            transaction=b"\x0a\x03abc",
            meta=b"\x10\x01",
        )
        update = UpdateDemultiplexer().classify(encode_update(
            Update(kind=UpdateKind.TRANSACTION, slot=12, payload=info)
        ))

        assert update.kind is UpdateKind.TRANSACTION
        assert update.payload == info

    def test_transaction_status_without_error(self):
        payload = TransactionStatusPayload(signature=SIGNATURE, is_vote=True, index=0)
        update = UpdateDemultiplexer().classify(encode_update(
            Update(kind=UpdateKind.TRANSACTION_STATUS, slot=3, payload=payload)
        ))

        assert update.payload.err is None

    def test_block_entries_inherit_block_slot(self):
        meta = BlockMetaPayload(
            blockhash="11111111111111111111111111111111",
            parent_slot=49,
            parent_blockhash="11111111111111111111111111111111",
            executed_transaction_count=0,
            entries_count=1,
            block_time=1_700_000_000,
            block_height=45,
        )
        entry = EntryPayload(
            index=0,
            num_hashes=12,
            hash=bytes(32),
            executed_transaction_count=0,
            starting_transaction_index=0,
        )
        update = UpdateDemultiplexer().classify(encode_update(Update(
            kind=UpdateKind.BLOCK,
            slot=50,
            payload=BlockPayload(meta=meta, entries=(entry,)),
        )))

        assert update.kind is UpdateKind.BLOCK
        assert update.slot == 50
        assert update.payload.meta == meta
        assert update.payload.entries == (entry,)

    def test_block_meta_without_optional_fields(self):
        meta = BlockMetaPayload(
            blockhash="h",
            parent_slot=1,
            parent_blockhash="p",
            executed_transaction_count=3,
            entries_count=2,
        )
        update = UpdateDemultiplexer().classify(encode_update(
            Update(kind=UpdateKind.BLOCK_META, slot=2, payload=meta)
        ))

        assert update.payload.block_time is None
        assert update.payload.block_height is None

    def test_created_at_is_decoded(self):
        created = datetime(2024, 5, 1, 12, 30, 15, 250_000, tzinfo=timezone.utc)
        frame = encode_update(Update(
            kind=UpdateKind.SLOT,
            slot=1,
            payload=SlotPayload(status=SlotStatus.PROCESSED),
            created_at=created,
        ))

        assert UpdateDemultiplexer().classify(frame).created_at == created

    def test_timestamp_conversion(self):
        value = timestamp_to_datetime(1, 500_000_000)

        assert value == datetime(1970, 1, 1, 0, 0, 1, 500_000, tzinfo=timezone.utc)


class TestRoundTrip:
    """Encoding an Update and classifying the frame gives the same Update."""

    @pytest.mark.parametrize("update", UPDATES, ids=lambda u: u.kind.value)
    def test_update_survives_the_wire(self, update):
        demux = UpdateDemultiplexer()

        assert demux.classify(encode_update(update)) == update
        assert demux.decode_failures == 0


class TestUnknownFrames:
    """Frames that cannot be classified become UNKNOWN and are counted."""

    @pytest.mark.parametrize(
        "frame",
        [
            b"",                        # no discriminant
            b"\x78\x01",                # only an unknown field (number 15)
            b"\x0a\xff",                # truncated length-delimited field
            b"\x1a\x04\x08\x64\x18\x63",  # slot update with status 99
        ],
    )
    def test_unknown_frames(self, frame):
        demux = UpdateDemultiplexer()
        update = demux.classify(frame)

        assert update.kind is UpdateKind.UNKNOWN
        assert isinstance(update.payload, UnknownPayload)
        assert update.payload.raw == frame
        assert demux.decode_failures == 1
        assert demux.metrics.frames == 1

    def test_stream_continues_after_unknown(self):
        demux = UpdateDemultiplexer()
        kinds = [demux.classify(f).kind for f in (slot_frame(1), b"\x78\x01", slot_frame(2))]

        assert kinds == [UpdateKind.SLOT, UpdateKind.UNKNOWN, UpdateKind.SLOT]
        assert demux.decode_failures == 1

    def test_unknown_update_cannot_be_encoded(self):
        with pytest.raises(ProtocolError):
            encode_update(Update(kind=UpdateKind.UNKNOWN, slot=0))

    def test_mismatched_payload_cannot_be_encoded(self):
        with pytest.raises(ProtocolError):
            encode_update(Update(kind=UpdateKind.SLOT, slot=1, payload=PongPayload(id=1)))


class TestToDict:
    """Tests for the JSON view used by the relay."""

    def test_account_keys_are_base58(self):
        update = UpdateDemultiplexer().classify(account_frame(9))
        data = update.to_dict()

        assert data["kind"] == "account"
        assert data["payload"]["owner"] == "11111111111111111111111111111111"
        assert data["payload"]["data"] == "AQID"
        assert data["created_at"] is None
