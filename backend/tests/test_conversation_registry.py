"""Tests for the conversation registry and its derived list view."""

import itertools
from datetime import timedelta
from types import SimpleNamespace

import pytest

from chatsync.core.exceptions import ConversationNotFound, InvalidMetadata
from chatsync.models.conversation import as_utc
from chatsync.services.conversation_registry import ConversationRegistry, derive_title, derive_view

from conftest import StepClock


@pytest.mark.asyncio
async def test_create_defaults(registry):
    conv = await registry.create("owner-1")

    assert conv.title == "New Chat"
    assert conv.category == "personal"
    assert conv.pinned is False
    assert conv.last_message == ""
    assert conv.created_at == conv.updated_at


@pytest.mark.asyncio
async def test_list_owned_most_recent_first(registry):
    a = await registry.create("owner-1")
    b = await registry.create("owner-1")
    await registry.create("owner-2")

    assert [c.id for c in await registry.list_owned("owner-1")] == [b.id, a.id]

    await registry.update_metadata(a.id, last_message="bump")
    assert [c.id for c in await registry.list_owned("owner-1")] == [a.id, b.id]


@pytest.mark.asyncio
async def test_update_stamps_updated_at(registry):
    conv = await registry.create("owner-1")
    updated = await registry.update_metadata(conv.id, last_message="hi", last_sender="user")

    assert updated.last_message == "hi"
    assert updated.last_sender == "user"
    assert as_utc(updated.updated_at) > as_utc(conv.updated_at)
    assert as_utc(updated.updated_at) >= as_utc(updated.created_at)


@pytest.mark.asyncio
async def test_updated_at_never_moves_backwards(session_factory):
    clock = StepClock()
    registry = ConversationRegistry(session_factory, clock=clock, index_check=None)
    conv = await registry.create("owner-1")

    clock.step = timedelta(hours=-2)
    updated = await registry.update_metadata(conv.id, pinned=True)

    assert as_utc(updated.updated_at) >= as_utc(conv.updated_at)


@pytest.mark.asyncio
async def test_category_is_validated(registry):
    conv = await registry.create("owner-1")

    assert (await registry.set_category(conv.id, "work")).category == "work"
    with pytest.raises(InvalidMetadata):
        await registry.set_category(conv.id, "hobbies")
    with pytest.raises(InvalidMetadata):
        await registry.update_metadata(conv.id, owner_id="someone-else")
    with pytest.raises(InvalidMetadata):
        await registry.update_metadata(conv.id, last_sender="system")


@pytest.mark.asyncio
async def test_toggle_pin(registry):
    conv = await registry.create("owner-1")

    assert (await registry.toggle_pinned(conv.id)).pinned is True
    assert (await registry.toggle_pinned(conv.id)).pinned is False


@pytest.mark.asyncio
async def test_get_checks_owner(registry):
    conv = await registry.create("owner-1")

    assert (await registry.get(conv.id, "owner-1")).id == conv.id
    with pytest.raises(ConversationNotFound):
        await registry.get(conv.id, "owner-2")
    with pytest.raises(ConversationNotFound):
        await registry.update_metadata("missing", title="x")


@pytest.mark.asyncio
async def test_delete_batch_counts_existing(registry):
    a = await registry.create("owner-1")
    b = await registry.create("owner-1")

    assert await registry.delete_batch([a.id, b.id, "missing"]) == 2
    assert await registry.list_owned("owner-1") == []
    assert await registry.delete(a.id) is False


@pytest.mark.asyncio
async def test_subscribe_repushes_on_change(registry):
    snapshots = []
    unsubscribe = registry.subscribe("owner-1", lambda convs: snapshots.append([c.title for c in convs]))
    await registry.feed.drain()

    conv = await registry.create("owner-1")
    await registry.set_title(conv.id, "Trip plans")
    await registry.create("owner-2")
    await registry.delete(conv.id)
    unsubscribe()

    assert snapshots == [[], ["New Chat"], ["Trip plans"], []]


# --- Derived view ---

def _conv(title, pinned=False, category="personal"):
    return SimpleNamespace(title=title, pinned=pinned, category=category)


def test_derive_title():
    assert derive_title("Short question") == "Short question"
    assert derive_title("x" * 41) == "x" * 40 + "..."
    assert derive_title("x" * 40) == "x" * 40
    assert derive_title("") == "Image chat"


def test_view_filters_by_search_and_category():
    convs = [
        _conv("Python help", category="work"),
        _conv("Dinner ideas", category="personal"),
        _conv("python tutorial", category="learning"),
    ]

    assert [c.title for c in derive_view(convs, search="PYTHON")] == ["Python help", "python tutorial"]
    assert [c.title for c in derive_view(convs, category="work")] == ["Python help"]
    assert [c.title for c in derive_view(convs, search="python", category="personal")] == []


def test_view_keeps_incoming_order_within_pin_groups():
    convs = [_conv("a"), _conv("b", pinned=True), _conv("c"), _conv("d", pinned=True)]
    assert [c.title for c in derive_view(convs)] == ["b", "d", "a", "c"]


@pytest.mark.parametrize("search,category", [
    ("", "all"), ("o", "all"), ("", "work"), ("chat", "learning"), ("x", "other"),
])
def test_pinned_always_first(search, category):
    categories = ["work", "personal", "learning", "other"]
    titles = ["chat one", "other chat", "xylophone", "notes", "todo"]
    convs = [
        _conv(title, pinned=pinned, category=cat)
        for title, pinned, cat in itertools.product(titles, [False, True], categories)
    ]

    view = derive_view(convs, search=search, category=category)
    flags = [c.pinned for c in view]
    assert flags == sorted(flags, reverse=True)
    assert any(flags)
