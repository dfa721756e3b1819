import asyncio

import pytest

from common.diff import DiffEngine, channel_key, diff_snapshots
from common.errors import NotFound
from common.models import (
    BanRecord,
    CategoryRecord,
    ChannelTree,
    OnboardingRecord,
    RoleRecord,
    Snapshot,
    TextChannelRecord,
    VoiceChannelRecord,
)


def snap(**kw):
    base = dict(id="s", guild_id="g", name="Guild")
    base.update(kw)
    return Snapshot(**base)


def test_role_changed_by_stored_id():
    before = snap(roles=(RoleRecord(name="A", role_id="1"),))
    after = snap(roles=(RoleRecord(name="A*", role_id="1"),))

    d = diff_snapshots(before, after)

    assert d.roles.changed == ["1"]
    assert d.roles.added == []
    assert d.roles.removed == []


def test_role_removed():
    before = snap(roles=(RoleRecord(name="A", role_id="1"),))
    after = snap(roles=())

    d = diff_snapshots(before, after)

    assert d.roles.removed == ["1"]
    assert d.roles.changed == []


def test_identical_snapshots_are_unchanged():
    tree = ChannelTree(
        categories=(
            CategoryRecord(
                name="General",
                channel_id="10",
                children=(TextChannelRecord(name="chat", parent="General", channel_id="11"),),
            ),
        ),
        others=(VoiceChannelRecord(name="lounge", channel_id="12"),),
    )
    a = snap(id="a", created_timestamp=1, channels=tree, bans=(BanRecord("5"),))
    b = snap(id="b", created_timestamp=2, channels=tree, bans=(BanRecord("5"),))

    d = diff_snapshots(a, b)

    assert d.unchanged
    assert not d.config_changed
    assert not d.onboarding_changed


def test_child_change_does_not_mark_category():
    cat = CategoryRecord(
        name="General",
        channel_id="10",
        children=(TextChannelRecord(name="chat", parent="General", channel_id="11"),),
    )
    cat2 = CategoryRecord(
        name="General",
        channel_id="10",
        children=(
            TextChannelRecord(name="chat", parent="General", channel_id="11", topic="new"),
        ),
    )

    d = diff_snapshots(
        snap(channels=ChannelTree(categories=(cat,))),
        snap(channels=ChannelTree(categories=(cat2,))),
    )

    assert d.channels.changed == ["11"]


def test_channel_key_falls_back_to_kind_name_parent():
    assert channel_key(TextChannelRecord(name="chat", parent="General")) == "text:chat:General"
    assert channel_key(VoiceChannelRecord(name="lounge")) == "voice:lounge"
    assert channel_key(TextChannelRecord(name="chat", channel_id="9")) == "9"


def test_config_and_onboarding_flags():
    d = diff_snapshots(
        snap(name="Old"),
        snap(name="New", onboarding=OnboardingRecord(enabled=True)),
    )

    assert d.config_changed
    assert d.onboarding_changed


def test_engine_resolves_ids_through_store():
    class Store:
        async def get(self, sid):
            if sid == "a":
                return snap(bans=(BanRecord("1"),))
            if sid == "b":
                return snap(bans=(BanRecord("1"), BanRecord("2")))
            raise NotFound(sid)

    d = asyncio.run(DiffEngine(Store()).diff("a", "b"))
    assert d.bans.added == ["2"]

    with pytest.raises(NotFound):
        asyncio.run(DiffEngine(Store()).diff("a", "missing"))


def test_engine_without_store_rejects_ids():
    with pytest.raises(NotFound):
        asyncio.run(DiffEngine().diff("a", snap()))


def test_result_names_both_sides():
    a = snap(id="monday", created_timestamp=1_000)
    b = snap(id="tuesday", created_timestamp=2_000)

    d = diff_snapshots(a, b)

    assert (d.from_id, d.to_id) == ("monday", "tuesday")
    assert (d.created_from, d.created_to) == (1_000, 2_000)
    # identity and timestamps never count as a change
    assert d.unchanged
    assert d.to_dict()["to_id"] == "tuesday"
