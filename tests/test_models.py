import json

import pytest

from common.models import (
    CategoryRecord,
    ChannelKind,
    ChannelTree,
    FileRecord,
    ForumChannelRecord,
    ForumTagRecord,
    MessageRecord,
    ScheduledEventRecord,
    Snapshot,
    TextChannelRecord,
    VoiceChannelRecord,
    channel_from_dict,
)
from common.serializer import dumps_snapshot, loads_snapshot, stable_stringify


def test_stable_stringify_sorts_keys_at_every_depth():
    a = {"b": 1, "a": {"z": [3, 1], "y": None}}
    b = {"a": {"y": None, "z": [3, 1]}, "b": 1}

    assert stable_stringify(a) == stable_stringify(b) == '{"a":{"y":null,"z":[3,1]},"b":1}'


def test_stable_stringify_keeps_sequence_order():
    assert stable_stringify([2, 1]) != stable_stringify([1, 2])


def test_stable_stringify_accepts_records():
    rec = VoiceChannelRecord(name="lounge", bitrate=96000)

    out = json.loads(stable_stringify(rec))

    assert out["kind"] == "voice"
    assert out["bitrate"] == 96000


def test_snapshot_document_keeps_nested_channel_kinds():
    tree = ChannelTree(
        categories=(
            CategoryRecord(
                name="Info",
                children=(
                    TextChannelRecord(
                        name="chat",
                        parent="Info",
                        messages=(
                            MessageRecord(
                                username="alice",
                                content="hi",
                                files=(FileRecord(name="a.png", attachment="aGk="),),
                            ),
                        ),
                    ),
                ),
            ),
        ),
        others=(ForumChannelRecord(name="help", available_tags=(ForumTagRecord(name="bug"),)),),
    )
    original = Snapshot(id="s", guild_id="9", name="G", channels=tree, scheduled_events=())

    loaded = loads_snapshot(dumps_snapshot(original, beautify=True))

    assert loaded == original
    chat = loaded.channels.categories[0].children[0]
    assert chat.kind is ChannelKind.TEXT
    assert chat.messages[0].files[0].is_inline
    assert loaded.channels.others[0].kind is ChannelKind.FORUM
    # an empty capture stays distinct from "not captured"
    assert loaded.scheduled_events == ()


def test_from_dict_fills_defaults():
    loaded = Snapshot.from_dict({"id": 5, "name": "Sparse"})

    assert loaded.id == "5"
    assert loaded.roles == ()
    assert loaded.afk is None
    assert loaded.widget.enabled is False
    assert loaded.scheduled_events is None


def test_channel_from_dict_rejects_category_kind():
    with pytest.raises(ValueError):
        channel_from_dict({"name": "x", "kind": "category"})


def test_message_relayable():
    assert not MessageRecord(username="u").is_relayable()
    assert MessageRecord(username="u", embeds=({"title": "t"},)).is_relayable()


def test_remote_file_is_not_inline():
    assert not FileRecord(name="a", attachment="https://cdn.example/a").is_inline


def test_iter_channels_visits_children_then_others():
    tree = ChannelTree(
        categories=(CategoryRecord(name="C", children=(TextChannelRecord(name="a"),)),),
        others=(TextChannelRecord(name="b"),),
    )

    assert [(c.name if c else None, ch.name) for c, ch in tree.iter_channels()] == [
        ("C", "a"),
        (None, "b"),
    ]


def test_summary_counts_sections():
    s = Snapshot(
        id="s",
        guild_id="g",
        name="G",
        channels=ChannelTree(
            categories=(CategoryRecord(name="C", children=(TextChannelRecord(name="a"),)),),
            others=(TextChannelRecord(name="b"),),
        ),
        scheduled_events=(ScheduledEventRecord(name="e"),),
    )

    assert "1 categories, 2 channels" in s.summary()
