import pytest

from conftest import OWNER, make_token
from kamon_token import (
    InvalidDocument,
    KamonToken,
    TokenAttribute,
    build_payload,
    points_changed,
)

PINNED_DOC = {
    "name": "Kamon #7",
    "description": "Henkaku kamon",
    "image": "ipfs://QmImage",
    "attributes": [
        {"trait_type": "Points", "value": "120", "display_type": "number"},
        {"trait_type": "Date", "value": 1650000000, "display_type": "date"},
        {"trait_type": "Role", "value": "Member"},
        {"trait_type": "Role", "value": "Translator"},
    ],
}


def test_document_parses_and_reads_traits():
    token = KamonToken.from_dict(PINNED_DOC)
    assert token.points() == 120
    assert token.date() == 1650000000
    assert token.roles() == ["Member", "Translator"]
    assert token.to_dict()["attributes"][2] == {"trait_type": "Role", "value": "Member"}


@pytest.mark.parametrize("broken", [
    {"name": "x", "description": "y", "image": "z"},
    {"name": "x", "description": "y", "image": "z", "attributes": "Points=1"},
    {"name": "x", "description": "y", "image": "z", "attributes": [{"value": 3}]},
    ["not", "a", "document"],
])
def test_bad_documents_are_rejected(broken):
    with pytest.raises(InvalidDocument):
        KamonToken.from_dict(broken)


def test_points_changed():
    token = make_token(points=10)
    assert points_changed(token, 10) is False
    assert points_changed(token, 15) is True
    assert points_changed(make_token(points=None), 0) is True


def test_payload_takes_points_from_source_not_token():
    token = make_token(points=10, roles=("Member", "Member", "Builder"), date=1651111111)
    payload = build_payload(OWNER, token, 15)
    assert payload.points == 15
    assert payload.to_json() == {
        "owner": OWNER,
        "roles": ["Builder", "Member"],
        "points": 15,
        "date": 1651111111,
    }


def test_payload_without_date_gets_current_time(monkeypatch):
    monkeypatch.setattr("kamon_token.time.time", lambda: 1700000000.5)
    payload = build_payload(OWNER, make_token(date=None), 3)
    assert payload.date == 1700000000


def test_attribute_without_display_type_omits_it():
    assert TokenAttribute("Role", "Member").to_dict() == {"trait_type": "Role", "value": "Member"}
