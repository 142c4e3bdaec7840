"""Unit tests for principal matching and per-viewer visibility."""

from __future__ import annotations

from teamcal.domain.models import Event, Group
from teamcal.domain.principal import Email, UserId, Viewer, same_principal
from teamcal.services.visibility import (
    GroupMembershipIndex,
    filter_events,
    filter_groups,
    is_event_visible,
    is_group_visible,
)

ALICE = Viewer.of(user_id="uid-alice", email="Alice@Example.com")


def _group(gid: str, members: list[str], created_by: str = "uid-owner") -> Group:
    return Group(id=gid, name=gid, members=members, created_by=created_by)


def _event(eid: str, **overrides) -> Event:
    defaults = dict(id=eid, title=eid, date="2026-06-01", created_by="uid-owner")
    defaults.update(overrides)
    return Event(**defaults)


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


def test_email_matches_case_insensitively():
    assert Email("alice@example.com").matches("ALICE@example.COM")
    assert Email("alice@example.com").matches("  alice@example.com ")


def test_user_id_matches_exactly():
    assert UserId("uid-1").matches("uid-1")
    assert not UserId("uid-1").matches("UID-1")


def test_same_principal_requires_same_tag():
    assert same_principal(Email("a@x.io"), Email("A@X.io"))
    assert not same_principal(UserId("a@x.io"), Email("a@x.io"))
    assert not same_principal(UserId("a"), UserId("A"))


def test_viewer_token_prefers_user_id():
    assert ALICE.token == "uid-alice"
    assert Viewer.of(email="bob@example.com").token == "bob@example.com"
    assert Viewer.of().token is None
    assert Viewer.of().is_anonymous


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


def test_group_visible_to_creator_and_members():
    assert is_group_visible(ALICE, _group("g1", [], created_by="uid-alice"))
    assert is_group_visible(ALICE, _group("g2", ["alice@example.com"]))
    assert is_group_visible(ALICE, _group("g3", ["uid-alice"]))
    assert not is_group_visible(ALICE, _group("g4", ["bob@example.com"]))


def test_anonymous_viewer_sees_all_groups():
    groups = [_group("g1", []), _group("g2", ["bob@example.com"])]
    assert filter_groups(None, groups) == groups
    assert filter_groups(Viewer.of(), groups) == groups


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def test_event_visible_to_creator():
    assert is_event_visible(ALICE, _event("e1", created_by="uid-alice"))
    assert is_event_visible(ALICE, _event("e2", created_by="alice@example.com"))


def test_event_visible_to_assignee_case_insensitive():
    event = _event("e1", assigned_to=["ALICE@EXAMPLE.COM"])
    assert is_event_visible(ALICE, event)


def test_event_visible_through_group_membership():
    index = GroupMembershipIndex.build(
        [_group("g1", ["alice@example.com"]), _group("g2", ["bob@example.com"])], ALICE
    )
    assert is_event_visible(ALICE, _event("e1", group_ids=["g2", "g1"]), index)
    assert not is_event_visible(ALICE, _event("e2", group_ids=["g2"]), index)


def test_group_creator_sees_group_events_even_if_not_listed():
    index = GroupMembershipIndex.build([_group("g1", [], created_by="uid-alice")], ALICE)
    assert is_event_visible(ALICE, _event("e1", group_ids=["g1"]), index)


def test_unrelated_event_is_hidden():
    index = GroupMembershipIndex.build([_group("g1", ["alice@example.com"])], ALICE)
    event = _event("e1", assigned_to=["bob@example.com"], group_ids=["g9"])
    assert not is_event_visible(ALICE, event, index)


def test_pending_index_hides_group_only_events():
    event = _event("e1", group_ids=["g1"])
    assert not is_event_visible(ALICE, event, GroupMembershipIndex.pending())
    assert not is_event_visible(ALICE, event, None)


def test_pending_index_still_allows_direct_visibility():
    event = _event("e1", group_ids=["g1"], assigned_to=["alice@example.com"])
    assert is_event_visible(ALICE, event, GroupMembershipIndex.pending())


def test_filter_events_keeps_store_order():
    index = GroupMembershipIndex.build([_group("g1", ["uid-alice"])], ALICE)
    events = [
        _event("e1", group_ids=["g1"]),
        _event("e2"),
        _event("e3", created_by="uid-alice"),
    ]
    assert [e.id for e in filter_events(ALICE, events, index)] == ["e1", "e3"]


# ---------------------------------------------------------------------------
# Membership index
# ---------------------------------------------------------------------------


def test_membership_index_maps_every_group():
    index = GroupMembershipIndex.build(
        [_group("g1", ["alice@example.com"]), _group("g2", ["bob@example.com"])], ALICE
    )
    assert index.loaded
    assert len(index) == 2
    assert index.is_member("g1")
    assert not index.is_member("g2")
    assert not index.is_member("missing")
    assert index.member_group_ids == {"g1"}


def test_pending_index_is_not_loaded():
    index = GroupMembershipIndex.pending()
    assert not index.loaded
    assert index.member_group_ids == set()


def test_empty_groups_snapshot_is_loaded():
    assert GroupMembershipIndex.build([], ALICE).loaded
