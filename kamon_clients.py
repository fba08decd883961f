"""
Clients for the collaborators of a point sync:
- ChainTokenReader          token id + metadata URI held by an owner (GraphQL state)
- MongoPointsSource         off-chain points ledger (traits collection)
- ChainBalancePointsSource  points kept as a fungible balance on-chain
- MetadataGeneratorClient   asks the generator service for a new pinned document
- MetadataFetcher           resolves a metadata URI to a KamonToken
- SignerTokenWriter         sends update_token_uri through the signing relay

Generator and fetcher return StepResult instead of "Error..." strings; the
prefix check lives here and nowhere else.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import requests
from pymongo import MongoClient

from kamon_token import InvalidDocument, KamonToken, SyncRequestPayload

# ======== CONFIG ========
GRAPHQL_URL     = os.getenv("GRAPHQL_URL",     "https://devnet.xian.org/graphql")
KAMON_CONTRACT  = os.getenv("KAMON_CONTRACT",  "con_kamon_nft")
POINTS_SOURCE   = os.getenv("POINTS_SOURCE",   "mongo")    # mongo | chain
POINTS_CONTRACT = os.getenv("POINTS_CONTRACT", "con_henkaku")
MONGO_URI       = os.getenv("MONGO_URI",       "mongodb://localhost:27017/")
DB_NAME         = os.getenv("DB_NAME",         "kamon_sync")
COLL_TRAITS     = os.getenv("COLL_TRAITS",     "traits")
GENERATOR_URL   = os.getenv("GENERATOR_URL",   "http://localhost:8787/api/kamon/generate")
IPFS_GATEWAY    = os.getenv("IPFS_GATEWAY",    "https://gateway.pinata.cloud/ipfs/")
SIGNER_URL      = os.getenv("SIGNER_URL",      "http://localhost:8788/api/sign_and_send")
HTTP_TIMEOUT    = float(os.getenv("HTTP_TIMEOUT_SECS", "20"))

ERROR_PREFIX = "Error"


class FailureKind(Enum):
    TRANSIENT_UPSTREAM   = "transient_upstream"
    APPLICATION_SIGNALED = "application_signaled"
    USER_DECLINED        = "user_declined"
    PRECONDITION_UNMET   = "precondition_unmet"


class WriteStatus(Enum):
    SUCCESS  = "success"
    REJECTED = "rejected"
    ERROR    = "error"


class UpstreamError(Exception):
    """A read collaborator could not be reached or answered garbage."""


@dataclass(frozen=True)
class StepResult:
    ok: bool
    value: Any = None
    kind: Optional[FailureKind] = None
    message: str = ""

    @classmethod
    def success(cls, value) -> "StepResult":
        return cls(True, value=value)

    @classmethod
    def failure(cls, kind: FailureKind, message: str) -> "StepResult":
        return cls(False, kind=kind, message=message)


def _signals_error(value) -> bool:
    return isinstance(value, str) and value.startswith(ERROR_PREFIX)


def _to_num(x):
    try:
        f = float(x)
        return int(f) if f.is_integer() else f
    except (TypeError, ValueError):
        return 0


def first_of_batch(value):
    # batched reads hand back a sequence; callers take the first element
    if isinstance(value, (list, tuple)):
        return value[0] if value else 0
    return value


# ======== GRAPHQL ========
def query_state(key: str, graphql_url: str = None, timeout: float = None) -> Optional[str]:
    """
    Exact-key lookup in the node's state table, e.g. `con_kamon_nft.owners:<addr>`.
    Returns the raw value or None when the key is not set.
    """
    q = {
        "query": f"""
        query {{
          allStates(
            filter: {{ key: {{ equalTo: "{key}" }} }},
            first: 1
          ) {{
            edges {{ node {{ key value }} }}
          }}
        }}
        """
    }
    try:
        r = requests.post(graphql_url or GRAPHQL_URL, json=q, timeout=timeout or HTTP_TIMEOUT)
        r.raise_for_status()
        body = r.json()
    except (requests.RequestException, ValueError) as e:
        raise UpstreamError(f"GraphQL lookup of {key} failed: {e}") from e

    if body.get("errors"):
        raise UpstreamError(f"GraphQL lookup of {key} failed: {body['errors']}")
    edges = ((body.get("data") or {}).get("allStates") or {}).get("edges") or []
    for e in edges:
        node = e.get("node") or {}
        if node.get("key") == key:
            return node.get("value")
    return None


# ======== TOKEN READER ========
@dataclass(frozen=True)
class TokenSnapshot:
    token_id: int = 0
    token_uri: str = ""
    token: Optional[KamonToken] = None


class ChainTokenReader:
    """
    Reads `owners[address] -> token_id` and `metadata[token_id] -> uri`, then
    loads the document behind the uri so the caller can compare its Points.
    """

    def __init__(self, contract: str = None, graphql_url: str = None, document_loader=None):
        self.contract = contract or KAMON_CONTRACT
        self.graphql_url = graphql_url or GRAPHQL_URL
        self.document_loader = document_loader or MetadataFetcher()

    def read_ids(self, owner: str) -> Tuple[int, str]:
        raw_id = query_state(f"{self.contract}.owners:{owner}", self.graphql_url)
        token_id = int(_to_num(first_of_batch(raw_id))) if raw_id is not None else 0
        if token_id == 0:
            return 0, ""
        uri = query_state(f"{self.contract}.metadata:{token_id}", self.graphql_url)
        return token_id, str(uri or "")

    def read_token(self, owner: str) -> TokenSnapshot:
        token_id, uri = self.read_ids(owner)
        if token_id == 0 or not uri:
            return TokenSnapshot(token_id, uri)
        res = self.document_loader.fetch(uri)
        if not res.ok:
            raise UpstreamError(f"token {token_id} document unreadable: {res.message}")
        return TokenSnapshot(token_id, uri, res.value)


# ======== POINTS SOURCES ========
class MongoPointsSource:
    """Points ledger kept by the tx monitor: one document per address."""

    def __init__(self, collection=None):
        if collection is None:
            collection = MongoClient(MONGO_URI)[DB_NAME][COLL_TRAITS]
        self.collection = collection

    def get_points(self, owner: str) -> int:
        try:
            doc = self.collection.find_one({"address": owner}) or {}
        except Exception as e:
            raise UpstreamError(f"points lookup for {owner} failed: {e}") from e
        for k in ("score", "points"):
            if doc.get(k) is not None:
                return int(_to_num(first_of_batch(doc[k])))
        return 0


class ChainBalancePointsSource:
    """Points held as a fungible balance: `<contract>.balances:<owner>`."""

    def __init__(self, contract: str = None, graphql_url: str = None):
        self.contract = contract or POINTS_CONTRACT
        self.graphql_url = graphql_url or GRAPHQL_URL

    def get_points(self, owner: str) -> int:
        raw = query_state(f"{self.contract}.balances:{owner}", self.graphql_url)
        if isinstance(raw, dict) and "__fixed__" in raw:
            raw = raw["__fixed__"]
        return int(_to_num(first_of_batch(raw))) if raw is not None else 0


def make_points_source(kind: str = None):
    kind = (kind or POINTS_SOURCE).lower()
    if kind == "chain":
        return ChainBalancePointsSource()
    if kind == "mongo":
        return MongoPointsSource()
    raise ValueError(f"unknown POINTS_SOURCE {kind!r}")


# ======== GENERATOR ========
class MetadataGeneratorClient:
    """
    POSTs {owner, roles, points, date}; the service renders the new Kamon
    image, pins image + document, and answers {"tokenUri": ...}.
    Every call may pin a new artifact, so callers must not resubmit blindly.
    """

    def __init__(self, url: str = None, timeout: float = None, session=None):
        self.url = url or GENERATOR_URL
        self.timeout = timeout or HTTP_TIMEOUT
        self.http = session or requests

    def generate(self, payload: SyncRequestPayload) -> StepResult:
        try:
            r = self.http.post(self.url, json=payload.to_json(), timeout=self.timeout)
        except requests.RequestException as e:
            return StepResult.failure(FailureKind.TRANSIENT_UPSTREAM, f"generator unreachable: {e}")

        text = (r.text or "").strip()
        if _signals_error(text):
            return StepResult.failure(FailureKind.APPLICATION_SIGNALED, text)
        if r.status_code >= 400:
            return StepResult.failure(FailureKind.TRANSIENT_UPSTREAM, f"generator HTTP {r.status_code}")

        try:
            body = r.json()
        except ValueError:
            body = text
        if isinstance(body, dict):
            if body.get("error"):
                return StepResult.failure(FailureKind.APPLICATION_SIGNALED, str(body["error"]))
            uri = body.get("tokenUri") or body.get("token_uri")
        else:
            uri = body

        if _signals_error(uri):
            return StepResult.failure(FailureKind.APPLICATION_SIGNALED, uri)
        if not isinstance(uri, str) or not uri:
            return StepResult.failure(FailureKind.TRANSIENT_UPSTREAM, "generator answered without a tokenUri")
        return StepResult.success(uri)


# ======== FETCHER ========
def resolve_uri(uri: str, gateway: str = None) -> str:
    """ipfs://CID/x -> <gateway>CID/x; http(s) URIs pass through."""
    if uri.startswith("ipfs://"):
        path = uri[len("ipfs://"):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        gw = gateway or IPFS_GATEWAY
        return gw.rstrip("/") + "/" + path
    return uri


class MetadataFetcher:
    def __init__(self, gateway: str = None, timeout: float = None, session=None):
        self.gateway = gateway or IPFS_GATEWAY
        self.timeout = timeout or HTTP_TIMEOUT
        self.http = session or requests

    def fetch(self, uri: str) -> StepResult:
        url = resolve_uri(uri, self.gateway)
        try:
            r = self.http.get(url, timeout=self.timeout)
            r.raise_for_status()
            raw = r.json()
        except requests.RequestException as e:
            return StepResult.failure(FailureKind.TRANSIENT_UPSTREAM, f"fetch {uri} failed: {e}")
        except ValueError:
            return StepResult.failure(FailureKind.APPLICATION_SIGNALED, f"{uri} is not JSON")

        # generator writes its failure into the image field
        if isinstance(raw, dict) and _signals_error(raw.get("image")):
            return StepResult.failure(FailureKind.APPLICATION_SIGNALED, raw["image"])
        try:
            return StepResult.success(KamonToken.from_dict(raw))
        except InvalidDocument as e:
            return StepResult.failure(FailureKind.APPLICATION_SIGNALED, f"{uri}: {e}")


# ======== WRITER ========
class SignerTokenWriter:
    """
    The node only accepts signed txs, so the unsigned call goes to the signing
    relay holding the key. The relay answers {"status": "success"|"rejected"|..., "tx_hash"}.
    """

    def __init__(self, url: str = None, contract: str = None, timeout: float = None, session=None):
        self.url = url or SIGNER_URL
        self.contract = contract or KAMON_CONTRACT
        self.timeout = timeout or HTTP_TIMEOUT
        self.http = session or requests

    def update_token(self, token_id: int, uri: str) -> WriteStatus:
        call: Dict[str, Any] = {
            "contract": self.contract,
            "function": "update_token_uri",
            "kwargs": {"token_id": int(token_id), "uri": uri},
        }
        try:
            r = self.http.post(self.url, json=call, timeout=self.timeout)
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            print(f"❌ update_token_uri({token_id}) not sent: {e}")
            return WriteStatus.ERROR

        status = str((body or {}).get("status", "")).lower()
        if status == WriteStatus.SUCCESS.value:
            print(f"📝 update_token_uri({token_id}) tx {(body or {}).get('tx_hash')}")
            return WriteStatus.SUCCESS
        if status == WriteStatus.REJECTED.value:
            return WriteStatus.REJECTED
        print(f"❌ update_token_uri({token_id}) failed: {body}")
        return WriteStatus.ERROR
