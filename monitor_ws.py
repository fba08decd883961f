#!/usr/bin/env python3
"""
Real-time quest monitor via WebSockets:
- Subscribes to CometBFT Tx events
- Decodes each transaction (base64 -> hex -> JSON)
- Picks out successful quest completions (QUEST_RULES, default
  con_kamon_quests.submit_keyword)
- Triggers a point sync for the sender; the hub drops the trigger if that
  owner already has a cycle running
- Records processed tx hashes in MongoDB so restarts do not re-trigger
"""

import os
import json
import time
import base64
import binascii
import asyncio
from typing import Dict, Any, Optional, Tuple

import websockets         # pip install websockets
from websockets.exceptions import WebSocketException
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from sync_runtime import MongoOutcomeLog, build_hub, get_db, COLL_OUTCOMES

# ======== CONFIG ========
WS_URL         = os.getenv("XIAN_WS_URL",    "ws://127.0.0.1:26657/websocket")
QUEST_CONTRACT = os.getenv("QUEST_CONTRACT", "con_kamon_quests")
QUEST_FUNCTION = os.getenv("QUEST_FUNCTION", "submit_keyword")
COLL_PROCESSED = os.getenv("COLL_PROCESSED", "processed")
WS_BACKOFF     = float(os.getenv("WS_BACKOFF_SECS", "3"))

# (contract, function) pairs that count as a point-earning action
QUEST_RULES = [
    (QUEST_CONTRACT, QUEST_FUNCTION),
]


# ======== HELPERS ========
def decode_tx_b64_to_json(tx_b64: str) -> Optional[Dict[str, Any]]:
    """
    Xian txs arrive as base64-encoded bytes that are *hex* of the JSON payload.
    base64 decode -> hex string -> unhexlify -> JSON.
    """
    try:
        hex_str = base64.b64decode(tx_b64).decode()
        raw = binascii.unhexlify(hex_str)
        return json.loads(raw.decode())
    except (ValueError, binascii.Error, UnicodeDecodeError) as e:
        print("❌ TX decode failed:", e)
        return None


def is_quest_call(contract: str, func: str) -> bool:
    return (contract, func) in QUEST_RULES


def parse_tx_event(message: Dict[str, Any]) -> Optional[Tuple[Optional[str], Dict[str, Any], int]]:
    """
    Pulls (tx_hash, tx_json, result_code) out of a JSON-RPC Tx event envelope.
    None when the message is not a Tx event or carries no decodable tx.
    """
    result = message.get("result")
    if not result:
        return None

    tx_hash = None
    evmap = result.get("events") or {}
    if evmap.get("tx.hash"):
        tx_hash = evmap["tx.hash"][0]

    tx_result = ((result.get("data") or {}).get("value") or {}).get("TxResult") or {}
    tx_b64 = tx_result.get("tx")
    if not tx_b64:
        return None

    tx_json = decode_tx_b64_to_json(tx_b64)
    if not tx_json:
        return None
    code = int((tx_result.get("result") or {}).get("code") or 0)
    return tx_hash, tx_json, code


def quest_sender(tx_json: Dict[str, Any], code: int = 0) -> Optional[str]:
    """Sender of a successful quest call, else None."""
    if code != 0:
        return None
    payload = tx_json.get("payload", {}) or {}
    if not is_quest_call(payload.get("contract"), payload.get("function")):
        return None
    return payload.get("sender") or None


class ProcessedTxs:
    def __init__(self, collection):
        self.collection = collection

    def ensure_indexes(self):
        self.collection.create_index([("tx_hash", ASCENDING)], unique=True)

    def seen(self, tx_hash: str) -> bool:
        return self.collection.find_one({"tx_hash": tx_hash}) is not None

    def mark(self, tx_hash: str):
        try:
            self.collection.insert_one({"tx_hash": tx_hash, "ts": int(time.time())})
        except DuplicateKeyError:
            pass  # another monitor got there first


def handle_message(message: Dict[str, Any], hub, processed: ProcessedTxs) -> Optional[str]:
    """Returns the owner a sync was triggered for, if any."""
    parsed = parse_tx_event(message)
    if parsed is None:
        return None
    tx_hash, tx_json, code = parsed

    if tx_hash and processed.seen(tx_hash):
        return None

    owner = quest_sender(tx_json, code)
    if tx_hash:
        processed.mark(tx_hash)
    if not owner:
        return None

    print(f"🏯 quest completed by {owner} (tx {tx_hash})")
    if not hub.quest_completed(owner):
        return None
    return owner


# ======== WEBSOCKET LOOP ========
async def ws_loop(hub, processed: ProcessedTxs):
    """
    Subscribes to `Tx` events via JSON-RPC over WebSocket and feeds quest
    completions to the hub. Sync cycles run as tasks on this same loop.
    """
    while True:
        try:
            print(f"🔌 Connecting WS: {WS_URL}")
            async with websockets.connect(WS_URL, max_queue=1000) as ws:
                sub = {
                    "jsonrpc": "2.0",
                    "method": "subscribe",
                    "id": 1,
                    "params": {"query": "tm.event='Tx'"}
                }
                await ws.send(json.dumps(sub))
                print("✅ Subscribed: tm.event='Tx'")

                async for raw in ws:
                    try:
                        message = json.loads(raw)
                    except ValueError:
                        continue
                    handle_message(message, hub, processed)

        except (OSError, WebSocketException) as e:
            # Connection dropped or failed -> short backoff, then retry
            print("⚠️  WS error:", e)
            await asyncio.sleep(WS_BACKOFF)


def main():
    print("🚀 Quest monitor via WebSockets (Tx events)")
    print(f"   WS: {WS_URL}")
    print(f"   Quest rules: {QUEST_RULES}")
    db = get_db()
    processed = ProcessedTxs(db[COLL_PROCESSED])
    processed.ensure_indexes()
    outcome_log = MongoOutcomeLog(db[COLL_OUTCOMES])
    outcome_log.ensure_indexes()
    hub = build_hub(outcome_log)
    asyncio.run(ws_loop(hub, processed))


if __name__ == "__main__":
    main()
