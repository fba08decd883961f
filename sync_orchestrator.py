"""
Point-sync saga for Kamon NFTs.

One SyncOrchestrator per owner walks a cycle:
    read token + points -> compare -> generate -> fetch -> write
Every step is awaited before the next one starts. The cycle always ends in
IDLE with the workflow state reset, and publishes exactly one outcome unless
it aborted on an unmet precondition (no token, write already in flight).
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kamon_clients import FailureKind, StepResult, WriteStatus, first_of_batch
from kamon_token import KamonToken, build_payload, points_changed


class SyncPhase(Enum):
    IDLE                     = "idle"
    QUEST_COMPLETED          = "quest_completed"
    POINTS_COMPARED          = "points_compared"
    GENERATION_REQUESTED     = "generation_requested"
    GENERATION_SUCCEEDED     = "generation_succeeded"
    GENERATION_FAILED        = "generation_failed"
    METADATA_FETCH_REQUESTED = "metadata_fetch_requested"
    METADATA_FETCHED         = "metadata_fetched"
    FETCH_FAILED             = "fetch_failed"
    WRITE_REQUESTED          = "write_requested"
    WRITE_SUCCEEDED          = "write_succeeded"
    WRITE_REJECTED           = "write_rejected"
    WRITE_FAILED             = "write_failed"


P = SyncPhase
TRANSITIONS = {
    P.IDLE:                     {P.QUEST_COMPLETED},
    P.QUEST_COMPLETED:          {P.POINTS_COMPARED, P.IDLE},
    P.POINTS_COMPARED:          {P.GENERATION_REQUESTED, P.IDLE},
    P.GENERATION_REQUESTED:     {P.GENERATION_SUCCEEDED, P.GENERATION_FAILED},
    P.GENERATION_SUCCEEDED:     {P.METADATA_FETCH_REQUESTED},
    P.GENERATION_FAILED:        {P.IDLE},
    P.METADATA_FETCH_REQUESTED: {P.METADATA_FETCHED, P.FETCH_FAILED},
    P.METADATA_FETCHED:         {P.WRITE_REQUESTED, P.IDLE},
    P.FETCH_FAILED:             {P.IDLE},
    P.WRITE_REQUESTED:          {P.WRITE_SUCCEEDED, P.WRITE_REJECTED, P.WRITE_FAILED},
    P.WRITE_SUCCEEDED:          {P.IDLE},
    P.WRITE_REJECTED:           {P.IDLE},
    P.WRITE_FAILED:             {P.IDLE},
}


class InvalidTransition(RuntimeError):
    pass


class OutcomeKind(Enum):
    NO_CHANGE_NEEDED   = "no_change_needed"
    READ_FAILED        = "read_failed"
    GENERATION_STARTED = "generation_started"   # progress notice, not terminal
    GENERATION_FAILED  = "generation_failed"
    FETCH_FAILED       = "fetch_failed"
    WRITE_SUCCEEDED    = "write_succeeded"
    WRITE_REJECTED     = "write_rejected"
    WRITE_FAILED       = "write_failed"

    @property
    def terminal(self) -> bool:
        return self is not OutcomeKind.GENERATION_STARTED


WRITE_OUTCOMES = {
    WriteStatus.SUCCESS:  (P.WRITE_SUCCEEDED, OutcomeKind.WRITE_SUCCEEDED, None),
    WriteStatus.REJECTED: (P.WRITE_REJECTED,  OutcomeKind.WRITE_REJECTED,  FailureKind.USER_DECLINED),
    WriteStatus.ERROR:    (P.WRITE_FAILED,    OutcomeKind.WRITE_FAILED,    FailureKind.TRANSIENT_UPSTREAM),
}


@dataclass
class SyncOutcome:
    kind: OutcomeKind
    owner: str
    token_id: int = 0
    token_uri: str = ""
    points: Optional[int] = None
    message: str = ""
    failure_kind: Optional[FailureKind] = None
    at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "owner": self.owner,
            "token_id": self.token_id,
            "token_uri": self.token_uri,
            "points": self.points,
            "message": self.message,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "at": self.at,
        }


@dataclass
class WorkflowState:
    phase: SyncPhase = SyncPhase.IDLE
    token_id: int = 0
    current_token_uri: str = ""
    current_token: Optional[KamonToken] = None
    pending_metadata_uri: str = ""
    pending_token: Optional[KamonToken] = None
    write_in_flight: bool = False
    write_completed: bool = False

    def clear_pending(self):
        self.pending_metadata_uri = ""
        self.pending_token = None
        self.write_in_flight = False
        self.write_completed = False

    def reset(self):
        """Back to the initial shape; token_id is the only carried value."""
        self.clear_pending()
        self.current_token_uri = ""
        self.current_token = None
        self.phase = SyncPhase.IDLE

    def is_initial(self) -> bool:
        return (
            self.phase is SyncPhase.IDLE
            and not self.current_token_uri
            and self.current_token is None
            and not self.pending_metadata_uri
            and self.pending_token is None
            and not self.write_in_flight
            and not self.write_completed
        )


async def call_collaborator(fn: Callable, *args):
    """Await coroutine functions; run blocking clients on a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class SyncOrchestrator:
    """
    Owns the WorkflowState of one owner. Collaborators:
        reader.read_token(owner)        -> TokenSnapshot
        points.get_points(owner)        -> int (or a batch; first element wins)
        generator.generate(payload)     -> StepResult[uri]
        fetcher.fetch(uri)              -> StepResult[KamonToken]
        writer.update_token(id, uri)    -> WriteStatus
    Each may be sync or async.
    """

    def __init__(self, owner: str, reader, points, generator, fetcher, writer):
        self.owner = owner
        self.reader = reader
        self.points = points
        self.generator = generator
        self.fetcher = fetcher
        self.writer = writer
        self.state = WorkflowState()
        self.last_outcome: Optional[SyncOutcome] = None
        self._subscribers: List[Callable] = []
        self._task: Optional[asyncio.Task] = None

    # ---------- observation ----------
    def subscribe(self, callback: Callable) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    async def _publish(self, outcome: SyncOutcome):
        if outcome.kind.terminal:
            self.last_outcome = outcome
        for cb in list(self._subscribers):
            try:
                await call_collaborator(cb, outcome)
            except Exception as e:
                print(f"⚠️  outcome subscriber {cb!r} failed on {outcome.kind.value}: {e}")

    def snapshot(self) -> Dict[str, Any]:
        s = self.state
        return {
            "owner": self.owner,
            "phase": s.phase.value,
            "token_id": s.token_id,
            "current_token_uri": s.current_token_uri,
            "current_points": s.current_token.points() if s.current_token else None,
            "pending_metadata_uri": s.pending_metadata_uri,
            "write_in_flight": s.write_in_flight,
            "write_completed": s.write_completed,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }

    # ---------- transitions ----------
    def _advance(self, phase: SyncPhase):
        if phase not in TRANSITIONS[self.state.phase]:
            raise InvalidTransition(f"{self.state.phase.value} -> {phase.value}")
        self.state.phase = phase

    def busy(self) -> bool:
        return self.state.phase is not SyncPhase.IDLE or self.state.write_in_flight

    def _accept(self) -> bool:
        if self.busy():
            print(f"⏭️  sync for {self.owner} already running ({self.state.phase.value}), trigger dropped")
            return False
        self._advance(SyncPhase.QUEST_COMPLETED)
        self.state.clear_pending()
        return True

    def quest_completed(self) -> bool:
        """
        Start a cycle in the background of the running loop. Returns False
        when a cycle for this owner is still in progress; the trigger is
        dropped, not queued.
        """
        if not self._accept():
            return False
        self._task = asyncio.get_running_loop().create_task(self._cycle())
        return True

    async def sync_now(self) -> Optional[SyncOutcome]:
        """Same as quest_completed() but waits for the cycle to finish."""
        if not self._accept():
            return None
        self._task = asyncio.get_running_loop().create_task(self._cycle())
        return await self._task

    async def wait_idle(self):
        if self._task is not None:
            await self._task

    async def _finish(self, phase: SyncPhase, kind: OutcomeKind, message: str = "",
                      failure_kind: FailureKind = None, token_uri: str = "",
                      points: int = None) -> SyncOutcome:
        if phase is not self.state.phase:
            self._advance(phase)
        outcome = SyncOutcome(
            kind=kind,
            owner=self.owner,
            token_id=self.state.token_id,
            token_uri=token_uri,
            points=points,
            message=message,
            failure_kind=failure_kind,
        )
        self.state.reset()
        await self._publish(outcome)
        return outcome

    def _abort(self):
        # precondition unmet: nothing to do, nothing to report
        self.state.reset()

    # ---------- the cycle ----------
    async def _cycle(self) -> Optional[SyncOutcome]:
        try:
            return await self._run_cycle()
        except asyncio.CancelledError:
            # a cancelled step leaves no outcome, but the owner must not stay locked
            print(f"⚠️  sync for {self.owner} cancelled in {self.state.phase.value}, state reset")
            self.state.reset()
            raise

    async def _run_cycle(self) -> Optional[SyncOutcome]:
        s = self.state
        try:
            snap = await call_collaborator(self.reader.read_token, self.owner)
            s.token_id = int(snap.token_id or 0)
            if s.token_id == 0 or snap.token is None:
                print(f"⛔ {self.owner} has no readable Kamon token, nothing to sync")
                self._abort()
                return None
            s.current_token_uri = snap.token_uri
            s.current_token = snap.token
            points = int(first_of_batch(await call_collaborator(self.points.get_points, self.owner)))
        except Exception as e:
            print(f"❌ read failed for {self.owner}: {e}")
            return await self._finish(SyncPhase.IDLE, OutcomeKind.READ_FAILED, str(e),
                                      FailureKind.TRANSIENT_UPSTREAM)

        self._advance(SyncPhase.POINTS_COMPARED)
        if not points_changed(s.current_token, points):
            print(f"✅ {self.owner} token #{s.token_id} already at {points} pts")
            return await self._finish(SyncPhase.IDLE, OutcomeKind.NO_CHANGE_NEEDED,
                                      token_uri=s.current_token_uri, points=points)

        # payload is captured here; later point changes wait for the next cycle
        payload = build_payload(self.owner, s.current_token, points)
        self._advance(SyncPhase.GENERATION_REQUESTED)
        await self._publish(SyncOutcome(OutcomeKind.GENERATION_STARTED, self.owner,
                                        s.token_id, points=points))
        print(f"🎨 generating Kamon for {self.owner}: {s.current_token.points()} -> {points} pts")
        gen = await self._step(self.generator.generate, payload)
        if not gen.ok:
            print(f"❌ generation failed for {self.owner}: {gen.message}")
            return await self._finish(SyncPhase.GENERATION_FAILED, OutcomeKind.GENERATION_FAILED,
                                      gen.message, gen.kind, points=points)
        self._advance(SyncPhase.GENERATION_SUCCEEDED)
        s.pending_metadata_uri = gen.value

        self._advance(SyncPhase.METADATA_FETCH_REQUESTED)
        doc = await self._step(self.fetcher.fetch, s.pending_metadata_uri)
        if not doc.ok:
            print(f"❌ fetch of {s.pending_metadata_uri} failed: {doc.message}")
            return await self._finish(SyncPhase.FETCH_FAILED, OutcomeKind.FETCH_FAILED,
                                      doc.message, doc.kind,
                                      token_uri=s.pending_metadata_uri, points=points)
        self._advance(SyncPhase.METADATA_FETCHED)
        s.pending_token = doc.value

        return await self.request_write(points)

    async def _step(self, fn: Callable, arg) -> StepResult:
        try:
            res = await call_collaborator(fn, arg)
        except Exception as e:
            return StepResult.failure(FailureKind.TRANSIENT_UPSTREAM, str(e))
        if not isinstance(res, StepResult):
            return StepResult.failure(FailureKind.APPLICATION_SIGNALED, f"unexpected reply {res!r}")
        return res

    async def request_write(self, points: int = None) -> Optional[SyncOutcome]:
        """
        Single-flight guard around the Token Writer. Needs a resolved token id
        and no write in flight, otherwise the cycle ends silently.
        """
        s = self.state
        if s.phase is not SyncPhase.METADATA_FETCHED or s.token_id == 0 or s.write_in_flight:
            print(f"⛔ write for {self.owner} skipped (token #{s.token_id}, in flight={s.write_in_flight})")
            if s.phase is SyncPhase.METADATA_FETCHED:
                self._abort()
            return None

        s.write_in_flight = True
        self._advance(SyncPhase.WRITE_REQUESTED)
        uri = s.pending_metadata_uri
        print(f"⏳ update_token_uri(#{s.token_id}, {uri})")
        try:
            status = await call_collaborator(self.writer.update_token, s.token_id, uri)
            message = ""
        except Exception as e:
            status, message = WriteStatus.ERROR, str(e)
        if not isinstance(status, WriteStatus):
            try:
                status = WriteStatus(str(status).lower())
            except ValueError:
                status = WriteStatus.ERROR
        s.write_completed = True

        phase, kind, failure = WRITE_OUTCOMES[status]
        print(f"{'✅' if status is WriteStatus.SUCCESS else '❌'} token #{s.token_id} write: {status.value}")
        return await self._finish(phase, kind, message, failure, token_uri=uri, points=points)


class SyncHub:
    """One orchestrator per owner, sharing collaborators and subscribers."""

    def __init__(self, reader, points, generator, fetcher, writer):
        self.reader = reader
        self.points = points
        self.generator = generator
        self.fetcher = fetcher
        self.writer = writer
        self._orchestrators: Dict[str, SyncOrchestrator] = {}
        self._subscribers: List[Callable] = []

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    async def _fan_out(self, outcome: SyncOutcome):
        for cb in list(self._subscribers):
            try:
                await call_collaborator(cb, outcome)
            except Exception as e:
                print(f"⚠️  hub subscriber {cb!r} failed on {outcome.kind.value}: {e}")

    def orchestrator_for(self, owner: str) -> SyncOrchestrator:
        owner = owner.strip()
        orch = self._orchestrators.get(owner)
        if orch is None:
            orch = SyncOrchestrator(owner, self.reader, self.points,
                                    self.generator, self.fetcher, self.writer)
            orch.subscribe(self._fan_out)
            self._orchestrators[owner] = orch
        return orch

    def quest_completed(self, owner: str) -> bool:
        return self.orchestrator_for(owner).quest_completed()

    def snapshot(self, owner: str) -> Dict[str, Any]:
        orch = self._orchestrators.get(owner.strip())
        if orch is None:
            return {"owner": owner.strip(), "phase": SyncPhase.IDLE.value, "token_id": 0,
                    "current_token_uri": "", "current_points": None,
                    "pending_metadata_uri": "", "write_in_flight": False,
                    "write_completed": False, "last_outcome": None}
        return orch.snapshot()

    def active_owners(self) -> List[str]:
        return [o for o, orch in self._orchestrators.items() if orch.busy()]

    async def wait_idle(self):
        for orch in list(self._orchestrators.values()):
            await orch.wait_idle()
