import base64
import binascii
import json

from conftest import OWNER, FakeCollection
from monitor_ws import (
    ProcessedTxs,
    decode_tx_b64_to_json,
    handle_message,
    parse_tx_event,
    quest_sender,
)


def encode_tx(tx):
    return base64.b64encode(binascii.hexlify(json.dumps(tx).encode())).decode()


def quest_tx(sender=OWNER, contract="con_kamon_quests", function="submit_keyword"):
    return {"payload": {"sender": sender, "contract": contract, "function": function,
                        "kwargs": {"keyword": "HENKAKU"}}}


def envelope(tx, tx_hash="HASH1", code=0):
    return {
        "jsonrpc": "2.0",
        "result": {
            "data": {"value": {"TxResult": {"tx": encode_tx(tx), "result": {"code": code}}}},
            "events": {"tx.hash": [tx_hash]},
        },
    }


class RecordingHub:
    def __init__(self, accept=True):
        self.accept = accept
        self.triggers = []

    def quest_completed(self, owner):
        self.triggers.append(owner)
        return self.accept


def test_decode_round_trip_and_garbage():
    tx = quest_tx()
    assert decode_tx_b64_to_json(encode_tx(tx)) == tx
    assert decode_tx_b64_to_json("not-base64!!") is None


def test_parse_skips_subscription_ack():
    assert parse_tx_event({"jsonrpc": "2.0", "id": 1, "result": {}}) is None


def test_quest_sender_filters_failed_and_foreign_txs():
    assert quest_sender(quest_tx()) == OWNER
    assert quest_sender(quest_tx(), code=1) is None
    assert quest_sender(quest_tx(contract="currency", function="transfer")) is None


def test_quest_tx_triggers_sync_once_per_hash():
    hub = RecordingHub()
    processed = ProcessedTxs(FakeCollection())

    assert handle_message(envelope(quest_tx()), hub, processed) == OWNER
    assert handle_message(envelope(quest_tx()), hub, processed) is None

    assert hub.triggers == [OWNER]
    assert processed.seen("HASH1")


def test_other_txs_are_marked_but_not_triggered():
    hub = RecordingHub()
    processed = ProcessedTxs(FakeCollection())

    handle_message(envelope(quest_tx(contract="currency", function="transfer"), tx_hash="HASH2"), hub, processed)
    handle_message(envelope(quest_tx(), tx_hash="HASH3", code=5), hub, processed)

    assert hub.triggers == []
    assert processed.seen("HASH2") and processed.seen("HASH3")


def test_dropped_trigger_is_reported_as_none():
    hub = RecordingHub(accept=False)
    processed = ProcessedTxs(FakeCollection())

    assert handle_message(envelope(quest_tx()), hub, processed) is None
    assert hub.triggers == [OWNER]
