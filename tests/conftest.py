import asyncio

import pytest

from kamon_clients import FailureKind, StepResult, TokenSnapshot, WriteStatus
from kamon_token import KamonToken, TokenAttribute

OWNER = "a1b2c3d4e5f6"


def make_token(points=10, roles=("Member",), date=1650000000, image="ipfs://img"):
    attrs = []
    if points is not None:
        attrs.append(TokenAttribute("Points", points, "number"))
    if date is not None:
        attrs.append(TokenAttribute("Date", date, "date"))
    for r in roles:
        attrs.append(TokenAttribute("Role", r))
    return KamonToken("Kamon #7", "Henkaku kamon", image, attrs)


class FakeReader:
    def __init__(self, trace, token_id=7, uri="ipfs://current", token=None, error=None):
        self.trace = trace
        self.snapshot = TokenSnapshot(token_id, uri, token if token is not None else make_token())
        self.error = error
        self.calls = []

    async def read_token(self, owner):
        self.calls.append(owner)
        self.trace.append("read")
        if self.error:
            raise self.error
        return self.snapshot


class FakePoints:
    def __init__(self, trace, value=15):
        self.trace = trace
        self.value = value
        self.calls = []

    async def get_points(self, owner):
        self.calls.append(owner)
        self.trace.append("points")
        return self.value


class FakeGenerator:
    def __init__(self, trace, result=None, error=None):
        self.trace = trace
        self.result = result or StepResult.success("ipfs://X")
        self.error = error
        self.calls = []

    async def generate(self, payload):
        self.calls.append(payload)
        self.trace.append("generate")
        if self.error:
            raise self.error
        return self.result


class FakeFetcher:
    def __init__(self, trace, result=None):
        self.trace = trace
        self.result = result or StepResult.success(make_token(points=15, image="ipfs://new-img"))
        self.calls = []

    async def fetch(self, uri):
        self.calls.append(uri)
        self.trace.append("fetch")
        return self.result


class FakeWriter:
    """Optionally holds the write open until `release()` so tests can race it."""

    def __init__(self, trace, status=WriteStatus.SUCCESS, hold=False, error=None):
        self.trace = trace
        self.status = status
        self.error = error
        self.calls = []
        self.started = asyncio.Event()
        self._gate = asyncio.Event()
        if not hold:
            self._gate.set()

    def release(self):
        self._gate.set()

    async def update_token(self, token_id, uri):
        self.calls.append((token_id, uri))
        self.trace.append("write")
        self.started.set()
        await self._gate.wait()
        if self.error:
            raise self.error
        return self.status


class Collaborators:
    def __init__(self, **overrides):
        self.trace = []
        self.reader = overrides.get("reader") or FakeReader(self.trace)
        self.points = overrides.get("points") or FakePoints(self.trace)
        self.generator = overrides.get("generator") or FakeGenerator(self.trace)
        self.fetcher = overrides.get("fetcher") or FakeFetcher(self.trace)
        self.writer = overrides.get("writer") or FakeWriter(self.trace)

    def as_args(self):
        return (self.reader, self.points, self.generator, self.fetcher, self.writer)


@pytest.fixture
def collab():
    return Collaborators()


@pytest.fixture
def rate_limited():
    return StepResult.failure(FailureKind.APPLICATION_SIGNALED, "Error: rate limited")


class FakeCollection:
    """Just enough of a pymongo collection for the stores under test."""

    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.indexes = []

    def create_index(self, keys, **kw):
        self.indexes.append((keys, kw))

    def find_one(self, flt, projection=None):
        for d in self.docs:
            if all(d.get(k) == v for k, v in flt.items()):
                return dict(d)
        return None

    def insert_one(self, doc):
        self.docs.append(dict(doc))
