"""Tests for turn handling, plan execution and preemption."""

from __future__ import annotations

import asyncio
import json

import pytest

from mithril.ai.memory.ledger import MemoryLedger
from mithril.ai.orchestration.orchestrator import Orchestrator, OrchestratorConfig
from mithril.ai.orchestration.types import TaskStatus, ToolName
from mithril.services.settings import Settings


def _classified(tool: str, target: str = "chat") -> str:
    return json.dumps({"intent": "test", "tool": tool, "target": target, "confidence": 0.9})


def _orchestrator(client, fs, *, statuses=None, memory=None, runner=None, **config) -> Orchestrator:
    config.setdefault("model", "coder")
    config.setdefault("workspace_root", "/work")
    config.setdefault("step_delay", 0.0)
    return Orchestrator(
        client,
        file_system=fs,
        command_runner=runner,
        memory=memory,
        config=OrchestratorConfig(**config),
        on_status=statuses.append if statuses is not None else None,
    )


async def _wait_for_stream(client) -> None:
    while not client.stream_calls:
        await asyncio.sleep(0.005)


def test_config_from_settings() -> None:
    settings = Settings(model="llama3", workspace_root="/w", step_delay=0.5, planning_enabled=False)

    config = OrchestratorConfig.from_settings(settings)

    assert config.model == "llama3"
    assert config.intent_model == "llama3"
    assert config.workspace_root == "/w"
    assert config.step_delay == 0.5
    assert not config.planning_enabled
    assert config.generation_options["num_ctx"] == settings.num_ctx


@pytest.mark.asyncio
async def test_single_shot_turn_is_recorded(scripted_client, ndjson, memory_fs) -> None:
    client = scripted_client(
        replies=[_classified("chat_response"), '{"needs_plan": false}'],
        streams=[ndjson("Hello there!")],
    )
    memory = MemoryLedger()
    orchestrator = _orchestrator(client, memory_fs, memory=memory)

    result = await orchestrator.handle_message("hi")

    assert result.response == "Hello there!"
    assert result.success
    assert result.intent is not None and result.intent.tool is ToolName.CHAT_RESPONSE
    assert result.plan is None
    assert client.stream_calls[0]["model"] == "coder"
    records = memory.session.conversations
    assert [(r.user_message, r.assistant_response, r.tools_called) for r in records] == [
        ("hi", "Hello there!", ["chat_response"])
    ]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_planning_disabled_skips_plan_decision(scripted_client, ndjson, memory_fs) -> None:
    client = scripted_client(replies=[_classified("chat_response")], streams=[ndjson("ok")])
    orchestrator = _orchestrator(client, memory_fs, planning_enabled=False)

    result = await orchestrator.handle_message("hello")

    assert result.response == "ok"
    assert len(client.generate_calls) == 1
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_unreachable_classifier_falls_back_to_chat(scripted_client, ndjson, memory_fs) -> None:
    client = scripted_client(streams=[ndjson("still here")])
    orchestrator = _orchestrator(client, memory_fs)

    result = await orchestrator.handle_message("anyone there?")

    assert result.intent is not None and result.intent.tool is ToolName.CHAT_RESPONSE
    assert result.response == "still here"
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_empty_message_is_rejected(scripted_client, memory_fs) -> None:
    client = scripted_client()
    orchestrator = _orchestrator(client, memory_fs)

    result = await orchestrator.handle_message("   ")

    assert not result.success
    assert result.response == "Please enter a request."
    assert client.generate_calls == []


@pytest.mark.asyncio
async def test_plan_runs_every_step_and_completes(scripted_client, ndjson, memory_fs, telemetry_events) -> None:
    steps = [
        {"id": "s1", "content": "Create a folder called assets", "tool": "create_folder"},
        {"id": "s2", "content": "Create a file called index.html", "tool": "create_file"},
    ]
    client = scripted_client(
        replies=[_classified("create_file"), '{"needs_plan": true}', json.dumps(steps)],
        streams=[ndjson("```html\n<h1>Site</h1>\n```")],
    )
    memory = MemoryLedger()
    statuses: list[str] = []
    orchestrator = _orchestrator(client, memory_fs, statuses=statuses, memory=memory, plan_clear_delay=0.01)

    result = await orchestrator.handle_message("build a small site")

    assert result.success
    assert result.plan is not None
    assert [task.status for task in result.plan.tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
    assert result.response.endswith("All tasks completed!")
    assert "Step 1/2: Create a folder called assets\nCreated folder: assets" in result.response
    assert "/work/assets" in memory_fs.directories
    assert memory_fs.files["/work/index.html"] == "<h1>Site</h1>\n"
    assert statuses == [
        "Planned 2 step(s).",
        "Step 1/2: Create a folder called assets",
        "Step 2/2: Create a file called index.html",
    ]
    assert result.response.count("All tasks completed!") == 1
    assert len(memory.session.conversations) == 2
    assert len(memory.session.completed_tasks) == 1
    assert [name for name, _ in telemetry_events].count("plan.completed") == 1

    assert orchestrator.current_plan is result.plan
    await asyncio.sleep(0.05)
    assert orchestrator.current_plan is None
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_failed_step_halts_until_resumed(scripted_client, ndjson, memory_fs) -> None:
    steps = [
        {"id": "s1", "content": "Run `npm test`", "tool": "run_command"},
        {"id": "s2", "content": "Create a folder called docs", "tool": "create_folder"},
    ]
    client = scripted_client(
        replies=[
            _classified("run_command"),
            '{"needs_plan": true}',
            json.dumps(steps),
            _classified("chat_response"),
            '{"needs_plan": false}',
        ],
        streams=[ndjson("You're welcome.")],
    )
    memory = MemoryLedger()
    orchestrator = _orchestrator(client, memory_fs, memory=memory)

    halted = await orchestrator.handle_message("test the project and add docs")

    plan = halted.plan
    assert plan is not None and plan.halted and not plan.finished
    assert not halted.success
    assert "Command execution is not available." in halted.response
    assert halted.response.endswith("Use /resume to continue with the next step or /cancel to drop the plan.")
    assert [task.status for task in plan.tasks] == [TaskStatus.FAILED, TaskStatus.PENDING]

    chat = await orchestrator.handle_message("thanks")
    assert chat.response == "You're welcome."
    assert orchestrator.current_plan is plan

    resumed = await orchestrator.resume_plan()

    assert resumed.response == (
        "Step 2/2: Create a folder called docs\nCreated folder: docs\n\nPlan finished: 1/2 tasks completed."
    )
    assert not resumed.success
    assert plan.finished
    assert "/work/docs" in memory_fs.directories
    assert len(memory.session.completed_tasks) == 1
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_resume_without_halted_plan(scripted_client, memory_fs) -> None:
    orchestrator = _orchestrator(scripted_client(), memory_fs)

    result = await orchestrator.resume_plan()

    assert not result.success
    assert result.response == "There is no halted plan to resume."


@pytest.mark.asyncio
async def test_new_message_preempts_running_turn(scripted_client, ndjson, memory_fs) -> None:
    client = scripted_client(
        replies=[_classified("chat_response"), _classified("chat_response")],
        streams=[ndjson("x" * 100, pieces=100), ndjson("Second answer")],
        stream_delay=0.01,
    )
    memory = MemoryLedger()
    orchestrator = _orchestrator(client, memory_fs, memory=memory, planning_enabled=False)

    first = asyncio.create_task(orchestrator.handle_message("first"))
    await _wait_for_stream(client)
    second = await orchestrator.handle_message("second")
    first_result = await first

    assert first_result.cancelled
    assert first_result.response == "Request cancelled."
    assert second.response == "Second answer"
    assert orchestrator.streams.live_text == "Second answer"
    assert [record.user_message for record in memory.session.conversations] == ["second"]
    assert not orchestrator.busy
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_cancel_stops_running_turn(scripted_client, ndjson, memory_fs) -> None:
    client = scripted_client(
        replies=[_classified("chat_response")],
        streams=[ndjson("y" * 100, pieces=100)],
        stream_delay=0.01,
    )
    memory = MemoryLedger()
    orchestrator = _orchestrator(client, memory_fs, memory=memory, planning_enabled=False)

    turn = asyncio.create_task(orchestrator.handle_message("long answer please"))
    await _wait_for_stream(client)

    assert orchestrator.busy
    assert orchestrator.cancel() is True
    result = await turn

    assert result.cancelled
    assert memory.session.conversations == []
    assert orchestrator.cancel() is False
    await orchestrator.aclose()
