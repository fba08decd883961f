"""
Kamon token documents and the payload sent to the metadata generator.

A Kamon document is the JSON pinned to IPFS for one NFT:
    {"name", "description", "image", "attributes": [{"trait_type", "value", "display_type"?}]}
Only its URI is stored on-chain.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# Trait names the generator writes into each document
TRAIT_POINTS = "Points"
TRAIT_DATE   = "Date"
TRAIT_ROLE   = "Role"

REQUIRED_FIELDS = ("name", "description", "image", "attributes")


class InvalidDocument(ValueError):
    """Raised when a metadata document is missing fields or badly shaped."""


def _to_int(x, default=None):
    try:
        if isinstance(x, (int, float)):
            return int(x)
        if isinstance(x, str) and x.strip() != "":
            return int(float(x))
    except (TypeError, ValueError):
        pass
    return default


@dataclass
class TokenAttribute:
    trait_type: str
    value: Union[int, float, str]
    display_type: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TokenAttribute":
        if not isinstance(raw, dict) or "trait_type" not in raw or "value" not in raw:
            raise InvalidDocument(f"bad attribute: {raw!r}")
        return cls(str(raw["trait_type"]), raw["value"], raw.get("display_type"))

    def to_dict(self) -> Dict[str, Any]:
        out = {"trait_type": self.trait_type, "value": self.value}
        if self.display_type is not None:
            out["display_type"] = self.display_type
        return out


@dataclass
class KamonToken:
    name: str
    description: str
    image: str
    attributes: List[TokenAttribute] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "KamonToken":
        if not isinstance(raw, dict):
            raise InvalidDocument("document is not an object")
        missing = [k for k in REQUIRED_FIELDS if k not in raw]
        if missing:
            raise InvalidDocument(f"document missing {', '.join(missing)}")
        attrs = raw["attributes"]
        if not isinstance(attrs, list):
            raise InvalidDocument("attributes must be a list")
        return cls(
            name=str(raw["name"]),
            description=str(raw["description"]),
            image=str(raw["image"]),
            attributes=[TokenAttribute.from_dict(a) for a in attrs],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "image": self.image,
            "attributes": [a.to_dict() for a in self.attributes],
        }

    def attribute(self, trait_type: str) -> Optional[TokenAttribute]:
        for a in self.attributes:
            if a.trait_type == trait_type:
                return a
        return None

    def points(self) -> Optional[int]:
        """Points value the document was generated with, None if absent."""
        a = self.attribute(TRAIT_POINTS)
        return _to_int(a.value) if a else None

    def date(self) -> Optional[int]:
        a = self.attribute(TRAIT_DATE)
        return _to_int(a.value) if a else None

    def roles(self) -> List[str]:
        # "Role" repeats; keep first-seen order
        out: List[str] = []
        for a in self.attributes:
            if a.trait_type == TRAIT_ROLE and str(a.value) not in out:
                out.append(str(a.value))
        return out


@dataclass(frozen=True)
class SyncRequestPayload:
    owner: str
    roles: frozenset
    points: int
    date: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "roles": sorted(self.roles),
            "points": self.points,
            "date": self.date,
        }


def points_changed(token: KamonToken, points: int) -> bool:
    """True when the fresh points total differs from the document's "Points" trait."""
    on_token = token.points()
    if on_token is None:
        return True
    return on_token != int(points)


def build_payload(owner: str, token: KamonToken, points: int) -> SyncRequestPayload:
    """
    Roles and date come from the current document; points always come from
    the fresh Points Source read, never from the token.
    """
    date = token.date()
    if date is None:
        date = int(time.time())
    return SyncRequestPayload(
        owner=owner,
        roles=frozenset(token.roles()),
        points=int(points),
        date=date,
    )
