"""Per-viewer visibility of events and groups."""

from __future__ import annotations

from teamcal.domain.models import Event, Group
from teamcal.domain.principal import Viewer


class GroupMembershipIndex:
    """Group id -> "is the viewer a member" for one groups snapshot.

    A pending index (before the first groups snapshot arrives) grants no
    group-derived visibility; events reached only through a group stay hidden
    until the first real index is built.
    """

    def __init__(self, membership: dict[str, bool] | None = None) -> None:
        self._membership = dict(membership or {})
        self.loaded = membership is not None

    @classmethod
    def pending(cls) -> GroupMembershipIndex:
        return cls()

    @classmethod
    def build(cls, groups: list[Group], viewer: Viewer | None) -> GroupMembershipIndex:
        membership: dict[str, bool] = {}
        for group in groups:
            if group.id is None:
                continue
            # Creators count as members even if they were later dropped from
            # the member list.
            membership[group.id] = (
                viewer is not None
                and not viewer.is_anonymous
                and is_group_visible(viewer, group)
            )
        return cls(membership)

    def is_member(self, group_id: str) -> bool:
        return self._membership.get(group_id, False)

    @property
    def member_group_ids(self) -> set[str]:
        return {gid for gid, member in self._membership.items() if member}

    def __len__(self) -> int:
        return len(self._membership)


def is_group_visible(viewer: Viewer | None, group: Group) -> bool:
    if viewer is None or viewer.is_anonymous:
        return True
    return viewer.matches(group.created_by) or viewer.matches_any(group.members)


def is_event_visible(
    viewer: Viewer | None,
    event: Event,
    index: GroupMembershipIndex | None = None,
) -> bool:
    """True if the viewer created the event, is assigned to it, or belongs to
    one of its groups according to ``index``."""
    if viewer is None or viewer.is_anonymous:
        return True
    if viewer.matches(event.created_by) or viewer.matches_any(event.assigned_to):
        return True
    if index is None or not index.loaded:
        return False
    return any(index.is_member(gid) for gid in event.group_ids)


def filter_groups(viewer: Viewer | None, groups: list[Group]) -> list[Group]:
    return [g for g in groups if is_group_visible(viewer, g)]


def filter_events(
    viewer: Viewer | None,
    events: list[Event],
    index: GroupMembershipIndex | None = None,
) -> list[Event]:
    return [e for e in events if is_event_visible(viewer, e, index)]
