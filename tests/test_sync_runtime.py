from conftest import OWNER, FakeCollection
from sync_orchestrator import OutcomeKind, SyncOutcome
from sync_runtime import LoopThread, MongoOutcomeLog


def test_outcome_log_keeps_terminal_outcomes_only():
    coll = FakeCollection()
    log = MongoOutcomeLog(coll)

    log(SyncOutcome(OutcomeKind.GENERATION_STARTED, OWNER, 7, points=15))
    log(SyncOutcome(OutcomeKind.WRITE_SUCCEEDED, OWNER, 7, "ipfs://X", 15, at=1700000000.0))

    assert coll.docs == [{
        "kind": "write_succeeded",
        "owner": OWNER,
        "token_id": 7,
        "token_uri": "ipfs://X",
        "points": 15,
        "message": "",
        "failure_kind": None,
        "at": 1700000000.0,
    }]


def test_outcome_log_index():
    coll = FakeCollection()
    MongoOutcomeLog(coll).ensure_indexes()
    assert coll.indexes[0][0] == [("owner", 1), ("at", -1)]


def test_loop_thread_runs_coroutines_and_calls():
    runner = LoopThread()
    try:
        async def add(a, b):
            return a + b

        assert runner.run(add(2, 3)) == 5
        assert runner.call(lambda x: x * 2, 21) == 42
    finally:
        runner.stop()
