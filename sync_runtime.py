"""
Wiring shared by server.py and monitor_ws.py: builds the SyncHub from env
config, records outcomes in MongoDB, and runs the hub on a loop thread when
the caller (Flask) is not itself async.
"""

import asyncio
import os
import threading

from pymongo import DESCENDING, MongoClient

from kamon_clients import (
    ChainTokenReader,
    MetadataFetcher,
    MetadataGeneratorClient,
    SignerTokenWriter,
    make_points_source,
)
from sync_orchestrator import SyncHub, SyncOutcome

# ======== CONFIG ========
MONGO_URI     = os.getenv("MONGO_URI",     "mongodb://localhost:27017/")
DB_NAME       = os.getenv("DB_NAME",       "kamon_sync")
COLL_OUTCOMES = os.getenv("COLL_OUTCOMES", "sync_outcomes")


def get_db(uri: str = None, name: str = None):
    return MongoClient(uri or MONGO_URI)[name or DB_NAME]


class MongoOutcomeLog:
    """Hub subscriber that keeps every terminal outcome for /api/outcomes."""

    def __init__(self, collection):
        self.collection = collection

    def ensure_indexes(self):
        self.collection.create_index([("owner", 1), ("at", DESCENDING)])

    def __call__(self, outcome: SyncOutcome):
        if not outcome.kind.terminal:
            return
        self.collection.insert_one(outcome.to_dict())

    def recent(self, owner: str = None, limit: int = 20):
        flt = {"owner": owner} if owner else {}
        cur = self.collection.find(flt, {"_id": 0}).sort("at", DESCENDING).limit(int(limit))
        return list(cur)


def print_outcome(outcome: SyncOutcome):
    icons = {
        "no_change_needed": "💤",
        "generation_started": "🎨",
        "write_succeeded": "✅",
        "write_rejected": "🙅",
    }
    icon = icons.get(outcome.kind.value, "❌")
    extra = f" | {outcome.message}" if outcome.message else ""
    print(f"{icon} [{outcome.owner}] {outcome.kind.value} token #{outcome.token_id}{extra}")


def build_hub(outcome_log: MongoOutcomeLog = None) -> SyncHub:
    hub = SyncHub(
        reader=ChainTokenReader(),
        points=make_points_source(),
        generator=MetadataGeneratorClient(),
        fetcher=MetadataFetcher(),
        writer=SignerTokenWriter(),
    )
    hub.subscribe(print_outcome)
    if outcome_log is not None:
        hub.subscribe(outcome_log)
    return hub


class LoopThread:
    """An asyncio loop on a daemon thread; sync code hands coroutines to it."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = None
        self._lock = threading.Lock()

    def start(self):
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self.loop.run_forever, daemon=True, name="kamon-sync-loop")
                self._thread.start()
        return self

    def run(self, coro, timeout: float = 10):
        self.start()
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout=timeout)

    def call(self, fn, *args, timeout: float = 10):
        """Run a plain callable on the loop thread (for loop-bound state)."""
        async def _call():
            return fn(*args)
        return self.run(_call(), timeout=timeout)

    def stop(self):
        if self._thread is not None:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)
            self._thread = None
