import pytest

from headjack.interfaces.room import Room
from headjack.interfaces.tags import Tags, get_tags, replace_tags

from conftest import BOT_ID, FakeClient

ROOM_ID = "!room:example.org"
NS = "org.example.bot"


@pytest.fixture
def client() -> FakeClient:
    client = FakeClient(BOT_ID)
    client.tags[ROOM_ID] = {
        f"{NS}.a": {},
        f"{NS}.b": {},
        "m.favourite": {},
        "org.example.other.a": {},
    }
    return client


@pytest.fixture
def room(client) -> Room:
    return Room(client, ROOM_ID)


@pytest.mark.asyncio
async def test_get_tags_filters_and_strips_namespace(room):
    assert sorted(await get_tags(room, NS)) == ["a", "b"]


@pytest.mark.asyncio
async def test_empty_namespace_returns_every_tag(room):
    assert len(await get_tags(room, "")) == 4


@pytest.mark.asyncio
async def test_replace_tags_sends_only_the_difference(room, client):
    result = await replace_tags(room, NS, ["b", "c"])

    assert result.added == ["c"]
    assert result.removed == ["a"]
    assert sorted(client.tag_calls) == [
        ("remove", ROOM_ID, f"{NS}.a"),
        ("set", ROOM_ID, f"{NS}.c"),
    ]
    # Tags outside the namespace are left alone.
    assert "m.favourite" in client.tags[ROOM_ID]
    assert "org.example.other.a" in client.tags[ROOM_ID]


@pytest.mark.asyncio
async def test_load_sees_stripped_names(room):
    tags = await Tags.load(room, NS)
    assert sorted(tags.tags) == ["a", "b"]
    assert tags.namespace == NS
    assert not tags.is_dirty


@pytest.mark.asyncio
async def test_add_is_idempotent(room):
    tags = await Tags.load(room, NS)
    tags.add("a")
    tags.add("c")
    tags.add("c")
    assert tags.tags.count("c") == 1
    assert tags.tags.count("a") == 1
    assert tags.is_dirty


@pytest.mark.asyncio
async def test_key_value_tags(room):
    tags = Tags(room, NS)
    tags.add_kv("mode", "quiet")
    tags.add_kv("lang", "en")
    assert tags.get_value("mode") == "quiet"
    assert tags.get_kvs() == {"mode": "quiet", "lang": "en"}

    tags.replace_kv("mode", "loud")
    assert tags.get_value("mode") == "loud"
    assert [t for t in tags.tags if t.startswith("mode=")] == ["mode=loud"]

    tags.remove_kv("mode")
    assert tags.get_value("mode") is None
    assert tags.get_value("missing") is None


@pytest.mark.asyncio
async def test_value_keeps_later_equals_signs(room):
    tags = Tags(room, NS, ["url=https://x/?a=b"])
    assert tags.get_value("url") == "https://x/?a=b"


@pytest.mark.asyncio
async def test_key_prefix_does_not_match_longer_key(room):
    tags = Tags(room, NS, ["modes=all"])
    assert tags.get_value("mode") is None


@pytest.mark.asyncio
async def test_close_without_changes_sends_nothing(room, client):
    tags = await Tags.load(room, NS)
    assert await tags.close() is None
    assert client.tag_calls == []


@pytest.mark.asyncio
async def test_remove_of_absent_tag_marks_dirty(room):
    tags = await Tags.load(room, NS)
    tags.remove("nope")
    assert tags.is_dirty


@pytest.mark.asyncio
async def test_sync_pushes_local_changes(room, client):
    tags = await Tags.load(room, NS)
    tags.remove("a")
    tags.add("c")

    result = await tags.sync()

    assert result.changed
    assert not tags.is_dirty
    assert sorted(await get_tags(room, NS)) == ["b", "c"]


@pytest.mark.asyncio
async def test_context_manager_flushes_on_exit(room):
    async with await Tags.load(room, NS) as tags:
        tags.replace_kv("mode", "quiet")
    assert sorted(await get_tags(room, NS)) == ["a", "b", "mode=quiet"]
