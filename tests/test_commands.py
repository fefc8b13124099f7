# tests/test_commands.py

from __future__ import annotations

from types import SimpleNamespace

import pytest

from auratask.cli.commands import CommandRegistry, registry
from auratask.core.errors import ValidationFailure


@pytest.fixture()
def ctx(store, analyzer):
    return SimpleNamespace(store=store, analyzer=analyzer)


@pytest.mark.asyncio
async def test_command_registry_routes_2_and_3_params() -> None:
    reg = CommandRegistry()
    called = {"h2": 0, "h3": 0}

    def h2(ctx, args):
        called["h2"] += 1
        return "h2"

    async def h3(ctx, args, emit):
        called["h3"] += 1
        if emit is not None:
            emit("note")
        return "h3"

    reg.register("a", h2, "a")
    reg.register("b", h3, "b", aliases=["bee"])
    notes: list[str] = []

    assert await reg.handle(None, "/a x") == "h2"
    assert await reg.handle(None, "/bee y", emit=notes.append) == "h3"
    assert called == {"h2": 1, "h3": 1}
    assert notes == ["note"]


@pytest.mark.asyncio
async def test_command_registry_unknown_and_non_command() -> None:
    reg = CommandRegistry()
    assert await reg.handle(None, "hello") is None
    assert "Unknown command" in (await reg.handle(None, "/nope") or "")
    assert "Empty command" in (await reg.handle(None, "/") or "")


@pytest.mark.asyncio
async def test_command_registry_reports_rejections() -> None:
    reg = CommandRegistry()

    def bad(ctx, args):
        raise ValidationFailure("Task title is required")

    reg.register("bad", bad, "bad")
    assert await reg.handle(None, "/bad") == "Rejected: Task title is required"


@pytest.mark.asyncio
async def test_task_commands_end_to_end(ctx, store) -> None:
    await store.initialize()

    reply = await registry.handle(ctx, "/add Buy milk")
    assert reply.startswith("Added:")
    assert "Buy milk" in reply

    listing = await registry.handle(ctx, "/ls")
    assert "1. [ ]" in listing and "Buy milk" in listing

    assert await registry.handle(ctx, "/done 1") == "Completed: Buy milk"
    assert "Buy milk" in await registry.handle(ctx, "/archive")

    assert await registry.handle(ctx, "/edit 1 Buy oat milk") == "Updated: Buy oat milk"
    assert await registry.handle(ctx, "/del 1") == "Deleted: Buy oat milk"
    assert store.state.tasks == []
    assert await registry.handle(ctx, "/done 1") == "Unknown task: 1"


@pytest.mark.asyncio
async def test_add_with_ai_emits_progress(ctx, store, analyzer) -> None:
    await store.initialize()
    notes: list[str] = []

    reply = await registry.handle(ctx, "/add Launch site --ai --subtasks", emit=notes.append)

    assert notes == ["[AI] Analyzing task..."]
    assert "🚀 Launch site" in reply
    assert len(analyzer.calls) == 1
    assert await registry.handle(ctx, "/sub 1") == "1. [ ] step one\n2. [ ] step two"


@pytest.mark.asyncio
async def test_group_tag_and_move_commands(ctx, store) -> None:
    await store.initialize()
    await registry.handle(ctx, "/add Report")

    assert await registry.handle(ctx, "/group add Work") == "Group added: 💼 Work"
    assert await registry.handle(ctx, "/move 1 work") == "Moved."
    assert store.state.tasks[0].group.name == "Work"

    assert await registry.handle(ctx, "/tag add urgent red") == "Tag added: #urgent"
    assert await registry.handle(ctx, "/tag on 1 urgent") == "Done."
    assert [t.name for t in store.state.tasks[0].tags] == ["urgent"]

    assert await registry.handle(ctx, "/group del Work") == "Group deleted."
    assert store.state.tasks[0].group_id is None


@pytest.mark.asyncio
async def test_filter_and_dark_commands(ctx, store) -> None:
    await store.initialize()
    await registry.handle(ctx, "/add Quiet task")

    reply = await registry.handle(ctx, "/filter priority high")
    assert reply == "No tasks in 'all'."
    assert store.state.ui.filters.priority.value == "high"

    assert await registry.handle(ctx, "/filter clear") == "Filters cleared."
    assert await registry.handle(ctx, "/dark on") == "Dark mode on."
    assert store.state.ui.dark_mode is True


@pytest.mark.asyncio
async def test_settings_command_rejects_short_key(ctx, store, notifier) -> None:
    await store.initialize()

    reply = await registry.handle(ctx, "/settings api_key short")

    assert reply == "Rejected: API key looks too short"
    assert notifier.errors == ["API key looks too short"]


def test_help_lists_commands() -> None:
    text = registry.build_help()
    assert "/add" in text
    assert "/login" in text


@pytest.mark.asyncio
async def test_keys_command_manages_pool_for_admins(ctx, store, backend) -> None:
    await store.initialize()

    assert await registry.handle(ctx, "/keys") == "Rejected: Forbidden"

    backend.seed("user_settings", id=store.identity.id, is_admin=True)
    assert await registry.handle(ctx, "/keys") == "The key pool is empty."
    assert await registry.handle(ctx, "/admin-keys add sk-shared-key-01") == "Key added: sk-s...y-01"
    assert await registry.handle(ctx, "/keys list") == "1. sk-s...y-01 active used=0"
    assert await registry.handle(ctx, "/keys toggle 1") == "Key sk-s...y-01 is now off."
    assert await registry.handle(ctx, "/keys toggle 7") == "Unknown key: 7"
    assert await registry.handle(ctx, "/keys add short") == "Rejected: API key must be at least 10 characters"
    assert await registry.handle(ctx, "/keys del 1") == "Key deleted."
    assert backend.rows("admin_api_keys") == []
