"""Tests for the agent runner (subprocess mocked)."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from claude_runner.agent.runner import AgentRunner
from claude_runner.config.models import McpServerConfig, RunnerConfig
from claude_runner.constants import BASE_ARGS, TOKEN_LIMIT_PHRASE
from claude_runner.errors import (
    AgentError,
    AgentExitError,
    AgentStderrError,
    NotStreamingError,
    SessionAlreadyRunningError,
    SpawnError,
)
from claude_runner.events import DECODER_EVENTS, RUNNER_EVENTS

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class FakeStream:
    """Async stream fed on demand; returns ``b""`` forever once closed."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._closed = False

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        data = await self._queue.get()
        if not data:
            self._queue.put_nowait(b"")
        return data

    async def readline(self) -> bytes:
        return await self.read()


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = MagicMock()
        self.stdin.write = MagicMock()
        self.stdin.drain = AsyncMock()
        self.stdin.close = MagicMock()
        self.terminate = MagicMock(side_effect=lambda: self.finish(-15))
        self.kill = MagicMock(side_effect=lambda: self.finish(-9))
        self._exited = asyncio.Event()

    def emit(self, *messages: dict[str, Any]) -> None:
        for msg in messages:
            self.stdout.feed((json.dumps(msg) + "\n").encode())

    def finish(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.close()
        self.stderr.close()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def sent_turns(self) -> list[dict[str, Any]]:
        return [
            json.loads(c.args[0].decode()) for c in self.stdin.write.call_args_list
        ]


class EventLog:
    """Records every event an emitter raises, in order."""

    def __init__(self, runner: AgentRunner) -> None:
        self.events: list[tuple[str, tuple[Any, ...]]] = []
        for name in (*DECODER_EVENTS, *RUNNER_EVENTS):
            runner.on(name, self._make(name))

    def _make(self, name: str) -> Any:
        def _listener(*args: Any) -> None:
            self.events.append((name, args))

        return _listener

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def args(self, name: str) -> list[tuple[Any, ...]]:
        return [args for n, args in self.events if n == name]


SYSTEM_INIT = {"type": "system", "subtype": "init", "session_id": "sess-1"}
ASSISTANT_DONE = {
    "type": "assistant",
    "message": {
        "role": "assistant",
        "content": [{"type": "text", "text": "All done."}],
        "stop_reason": "end_turn",
    },
    "session_id": "sess-1",
}
RESULT = {
    "type": "result",
    "subtype": "success",
    "result": "All done.",
    "session_id": "sess-1",
}


def _config(tmp_path: Path, **kwargs: Any) -> RunnerConfig:
    return RunnerConfig(working_directory=tmp_path / "work", **kwargs)


def _scripted(*messages: dict[str, Any], code: int = 0, stderr: str = "") -> FakeProcess:
    """A process that has already written *messages* and exited."""
    proc = FakeProcess()
    proc.emit(*messages)
    if stderr:
        proc.stderr.feed(stderr.encode())
    proc.finish(code)
    return proc


def _spawn_returning(proc: FakeProcess) -> Any:
    return patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc))


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


# ------------------------------------------------------------------ #
# Invocation
# ------------------------------------------------------------------ #


class TestBuildArgs:
    def test_minimal_config(self) -> None:
        runner = AgentRunner(RunnerConfig())
        assert runner.build_args() == list(BASE_ARGS)

    def test_full_config(self, tmp_path: Path) -> None:
        config = _config(
            tmp_path,
            continue_session=True,
            max_turns=3,
            system_prompt="Be brief.",
            append_system_prompt="Use tabs.",
            model="sonnet",
            fallback_model="haiku",
            allowed_tools=["Read", "Bash", "Read", "Grep"],
            disallowed_tools=["Bash"],
            allowed_directories=[Path("/data")],
            mcp_config_paths=[Path("/etc/mcp.json")],
            mcp_servers={"tracker": McpServerConfig(command="npx", args=["srv"])},
        )
        args = AgentRunner(config).build_args()
        assert args[: len(BASE_ARGS)] == list(BASE_ARGS)
        assert args[len(BASE_ARGS) : -2] == [
            "--continue",
            "--max-turns",
            "3",
            "--system-prompt",
            "Be brief.",
            "--append-system-prompt",
            "Use tabs.",
            "--model",
            "sonnet",
            "--fallback-model",
            "haiku",
            "--allowedTools",
            "Read",
            "--allowedTools",
            "Grep",
            "--disallowedTools",
            "Bash",
            "--add-dir",
            "/data",
            "--mcp-config",
            "/etc/mcp.json",
        ]
        assert args[-2] == "--mcp-config"
        assert json.loads(args[-1]) == {
            "mcpServers": {
                "tracker": {"type": "stdio", "command": "npx", "args": ["srv"]}
            }
        }

    def test_env_overlays_process_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("BASE_VAR", "base")
        runner = AgentRunner(RunnerConfig(env={"EXTRA": "1", "BASE_VAR": "over"}))
        env = runner.build_env()
        assert env["EXTRA"] == "1"
        assert env["BASE_VAR"] == "over"


# ------------------------------------------------------------------ #
# Single-prompt sessions
# ------------------------------------------------------------------ #


class TestStart:
    async def test_spawns_agent_with_args(self, tmp_path: Path) -> None:
        proc = _scripted(SYSTEM_INIT, RESULT)
        runner = AgentRunner(_config(tmp_path, claude_path="/opt/claude"))
        with _spawn_returning(proc) as spawn:
            await runner.start("hi")

        args, kwargs = spawn.call_args
        assert args == ("/opt/claude", *BASE_ARGS)
        assert kwargs["cwd"] == str(tmp_path / "work")
        assert (tmp_path / "work").is_dir()

    async def test_writes_single_turn_and_closes_stdin(self, tmp_path: Path) -> None:
        proc = _scripted(RESULT)
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc):
            await runner.start("fix the tests")

        turns = proc.sent_turns()
        assert len(turns) == 1
        assert turns[0]["type"] == "user"
        assert turns[0]["message"] == {"role": "user", "content": "fix the tests"}
        proc.stdin.close.assert_called_once()

    async def test_event_order(self, tmp_path: Path) -> None:
        proc = _scripted(SYSTEM_INIT, ASSISTANT_DONE, RESULT)
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")

        names = log.names()
        assert names[0] == "session-start"
        assert names[-3:] == ["exit", "complete", "session-end"]
        assert names.count("message") == 3
        assert log.args("text") == [("All done.",)]
        assert log.args("end-turn") == [("All done.",)]
        assert log.args("exit") == [(0,)]
        assert len(log.args("result")) == 1
        assert log.args("error") == []

    async def test_returns_final_info(self, tmp_path: Path) -> None:
        proc = _scripted(SYSTEM_INIT, ASSISTANT_DONE, RESULT)
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc):
            info = await runner.start("hi")

        assert info.session_id == "sess-1"
        assert info.exit_code == 0
        assert info.pid == 4242
        assert not info.is_running
        assert info.exited_at is not None
        assert not runner.is_running()
        assert runner.last_assistant_text == "All done."

    async def test_complete_carries_transcript_copy(self, tmp_path: Path) -> None:
        proc = _scripted(SYSTEM_INIT, RESULT)
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")

        (transcript,) = log.args("complete")[0]
        assert [m["type"] for m in transcript] == ["system", "result"]
        transcript.clear()
        messages = runner.get_messages()
        assert len(messages) == 2
        messages[0]["type"] = "mutated"
        assert runner.get_messages()[0]["type"] == "system"

    async def test_session_id_injected_into_later_messages(
        self, tmp_path: Path
    ) -> None:
        proc = _scripted(SYSTEM_INIT, {"type": "user", "message": {"content": "x"}})
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc):
            await runner.start("hi")
        assert runner.get_messages()[1]["session_id"] == "sess-1"

    async def test_session_info_before_start(self, tmp_path: Path) -> None:
        runner = AgentRunner(_config(tmp_path))
        assert runner.get_session_info() is None
        assert runner.get_messages() == []
        assert not runner.is_running()
        assert not runner.is_streaming()

    async def test_can_start_again_after_completion(self, tmp_path: Path) -> None:
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(_scripted(RESULT)):
            first = await runner.start("one")
        with _spawn_returning(_scripted(SYSTEM_INIT, RESULT)):
            second = await runner.start("two")
        assert first.run_id != second.run_id
        assert len(runner.get_messages()) == 2


# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #


class TestErrors:
    async def test_stderr_lines_are_errors(self, tmp_path: Path) -> None:
        proc = _scripted(RESULT, stderr="warning: slow\n\n")
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")

        errors = [args[0] for args in log.args("error")]
        assert len(errors) == 1
        assert isinstance(errors[0], AgentStderrError)
        assert errors[0].line == "warning: slow"

    async def test_nonzero_exit_emits_exit_error(self, tmp_path: Path) -> None:
        proc = _scripted(SYSTEM_INIT, code=2, stderr="fatal: boom\n")
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            info = await runner.start("hi")

        exit_errors = [
            args[0] for args in log.args("error") if isinstance(args[0], AgentExitError)
        ]
        assert len(exit_errors) == 1
        assert exit_errors[0].code == 2
        assert "fatal: boom" in str(exit_errors[0])
        assert info.exit_code == 2
        assert log.args("exit") == [(2,)]
        assert "session-end" in log.names()

    async def test_agent_error_message_is_wrapped(self, tmp_path: Path) -> None:
        proc = _scripted({"type": "error", "message": "rate limited"})
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")

        (error,) = log.args("error")[0]
        assert isinstance(error, AgentError)
        assert str(error) == "rate limited"

    async def test_malformed_stdout_line_is_reported(self, tmp_path: Path) -> None:
        proc = FakeProcess()
        proc.stdout.feed(b"not json\n")
        proc.emit(RESULT)
        proc.finish(0)
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")

        assert len(log.args("error")) == 1
        assert len(log.args("result")) == 1

    async def test_spawn_failure_is_raised_and_emitted(self, tmp_path: Path) -> None:
        runner = AgentRunner(_config(tmp_path, claude_path="no-such-claude"))
        log = EventLog(runner)
        spawn = AsyncMock(side_effect=FileNotFoundError("no-such-claude"))
        with (
            patch("asyncio.create_subprocess_exec", spawn),
            pytest.raises(SpawnError, match="not found: no-such-claude"),
        ):
            await runner.start("hi")

        assert isinstance(log.args("error")[0][0], SpawnError)
        assert not runner.is_running()
        assert "session-start" not in log.names()

    async def test_token_limit_on_stderr(self, tmp_path: Path) -> None:
        proc = _scripted(RESULT, stderr=f"Error: {TOKEN_LIMIT_PHRASE}\n")
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")
        assert log.args("token-limit") == [()]

    async def test_token_limit_on_stdout(self, tmp_path: Path) -> None:
        proc = _scripted(
            {"type": "error", "message": TOKEN_LIMIT_PHRASE},
            {"type": "result", "is_error": True},
        )
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start("hi")
        assert log.args("token-limit") == [()]
        assert log.args("result") == []


# ------------------------------------------------------------------ #
# Streaming sessions
# ------------------------------------------------------------------ #


class TestStreaming:
    async def test_turns_are_written_as_they_arrive(self, tmp_path: Path) -> None:
        proc = FakeProcess()
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            info = await runner.start_streaming("first")
        assert info.is_running
        assert info.is_streaming
        assert runner.is_streaming()

        await _settle()
        runner.add_stream_message("second")
        await _settle()
        contents = [t["message"]["content"] for t in proc.sent_turns()]
        assert contents == ["first", "second"]
        proc.stdin.close.assert_not_called()

        runner.complete_stream()
        await _settle()
        proc.stdin.close.assert_called_once()

        proc.emit(SYSTEM_INIT, RESULT)
        proc.finish(0)
        final = await runner.wait()
        assert final is not None
        assert final.exit_code == 0
        assert not runner.is_streaming()
        assert log.names()[-3:] == ["exit", "complete", "session-end"]

    async def test_second_start_is_rejected(self, tmp_path: Path) -> None:
        proc = FakeProcess()
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc) as spawn:
            await runner.start_streaming("first")
            proc.emit(SYSTEM_INIT)
            await _settle()
            messages = runner.get_messages()
            info = runner.get_session_info()
            assert info is not None
            assert len(messages) == 1

            with pytest.raises(SessionAlreadyRunningError):
                await runner.start("again")
            with pytest.raises(SessionAlreadyRunningError):
                await runner.start_streaming("again")

        assert spawn.await_count == 1
        assert runner.is_running()
        assert runner.get_messages() == messages
        after = runner.get_session_info()
        assert after is not None
        assert after.run_id == info.run_id
        assert after.session_id == "sess-1"
        assert [t["message"]["content"] for t in proc.sent_turns()] == ["first"]
        runner.stop()
        await runner.wait()

    async def test_stream_calls_require_streaming_session(
        self, tmp_path: Path
    ) -> None:
        runner = AgentRunner(_config(tmp_path))
        with pytest.raises(NotStreamingError):
            runner.add_stream_message("x")
        with pytest.raises(NotStreamingError):
            runner.complete_stream()

        with _spawn_returning(_scripted(RESULT)):
            await runner.start("hi")
        with pytest.raises(NotStreamingError):
            runner.add_stream_message("x")

    async def test_process_exit_ends_stream(self, tmp_path: Path) -> None:
        proc = FakeProcess()
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc):
            await runner.start_streaming("first")
        await _settle()
        proc.finish(1)
        info = await runner.wait()
        assert info is not None
        assert info.exit_code == 1
        proc.stdin.close.assert_called_once()


# ------------------------------------------------------------------ #
# Cancellation
# ------------------------------------------------------------------ #


class TestStop:
    def test_stop_when_idle_is_noop(self, tmp_path: Path) -> None:
        runner = AgentRunner(_config(tmp_path))
        runner.stop()
        runner.stop()
        assert not runner.is_running()

    async def test_stop_terminates_and_suppresses_events(
        self, tmp_path: Path
    ) -> None:
        proc = FakeProcess()
        runner = AgentRunner(_config(tmp_path))
        log = EventLog(runner)
        with _spawn_returning(proc):
            await runner.start_streaming("first")
        await _settle()

        proc.emit(SYSTEM_INIT)
        proc.stderr.feed(b"late noise\n")
        runner.stop()
        assert not runner.is_running()
        assert not runner.is_streaming()
        proc.terminate.assert_called_once()

        info = await runner.wait()
        assert info is not None
        assert info.exit_code == -15
        names = log.names()
        assert "message" not in names
        assert "error" not in names
        assert "complete" not in names
        assert names[-2:] == ["exit", "session-end"]
        assert runner.get_messages() == []

        runner.stop()
        proc.terminate.assert_called_once()

    async def test_restart_after_stop_reports_only_new_exit(
        self, tmp_path: Path
    ) -> None:
        old = FakeProcess(pid=1)
        runner = AgentRunner(_config(tmp_path))
        exits: list[int | None] = []
        ended: list[str] = []
        runner.on("exit", exits.append)
        runner.on("session-end", lambda info: ended.append(info.run_id))
        with _spawn_returning(old):
            first = await runner.start_streaming("first")
        await _settle()

        runner.stop()
        with _spawn_returning(_scripted(SYSTEM_INIT, RESULT)):
            second = await runner.start("second")
        await _settle()

        assert exits == [0]
        assert sorted(ended) == sorted([first.run_id, second.run_id])
        assert second.exit_code == 0
        assert runner.get_session_info().run_id == second.run_id  # type: ignore[union-attr]

    async def test_stop_during_single_prompt(self, tmp_path: Path) -> None:
        proc = FakeProcess()
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc):
            task = asyncio.create_task(runner.start("hi"))
            await _settle()
        assert runner.is_running()

        runner.stop()
        info = await task
        assert info.exit_code == -15
        assert not info.is_running

    async def test_cancelling_start_stops_agent(self, tmp_path: Path) -> None:
        proc = FakeProcess()
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(proc):
            task = asyncio.create_task(runner.start("hi"))
            await _settle()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        proc.terminate.assert_called_once()
        assert not runner.is_running()


# ------------------------------------------------------------------ #
# Callbacks and transcript
# ------------------------------------------------------------------ #


class TestCallbacks:
    async def test_config_callbacks_are_subscribed(self, tmp_path: Path) -> None:
        seen: dict[str, list[Any]] = {"message": [], "error": [], "complete": []}
        config = _config(
            tmp_path,
            on_message=seen["message"].append,
            on_error=seen["error"].append,
            on_complete=seen["complete"].append,
        )
        proc = _scripted(SYSTEM_INIT, RESULT, stderr="oops\n")
        runner = AgentRunner(config)
        with _spawn_returning(proc):
            await runner.start("hi")

        assert len(seen["message"]) == 2
        assert len(seen["error"]) == 1
        assert len(seen["complete"]) == 1

    async def test_async_callback_is_awaited(self, tmp_path: Path) -> None:
        results: list[str] = []

        async def _on_complete(messages: list[dict[str, Any]]) -> None:
            results.append(messages[-1]["type"])

        runner = AgentRunner(_config(tmp_path, on_complete=_on_complete))
        with _spawn_returning(_scripted(RESULT)):
            await runner.start("hi")
        await _settle()
        assert results == ["result"]


class TestTranscript:
    async def test_transcript_is_written(self, tmp_path: Path) -> None:
        config = _config(tmp_path, log_dir=tmp_path / "logs", workspace_name="ws")
        runner = AgentRunner(config)
        with _spawn_returning(_scripted(SYSTEM_INIT, ASSISTANT_DONE, RESULT)):
            info = await runner.start("hi")

        files = list((tmp_path / "logs" / "ws").glob("session-*.jsonl"))
        assert len(files) == 1
        assert info.run_id in files[0].name
        entries = [json.loads(line) for line in files[0].read_text().splitlines()]
        assert [e["type"] for e in entries] == [
            "session-metadata",
            "agent-message",
            "agent-message",
            "agent-message",
            "session-end",
        ]
        assert entries[0]["workspace_name"] == "ws"
        assert entries[-1]["reason"] == "complete"
        assert entries[-1]["session_id"] == "sess-1"
        assert entries[-1]["message_count"] == 3

    async def test_no_transcript_without_log_dir(self, tmp_path: Path) -> None:
        runner = AgentRunner(_config(tmp_path))
        with _spawn_returning(_scripted(RESULT)):
            await runner.start("hi")
        assert list(tmp_path.rglob("*.jsonl")) == []

    async def test_transcript_write_failure_keeps_events(self, tmp_path: Path) -> None:
        recorder = MagicMock()
        recorder.record_message = MagicMock(side_effect=OSError("No space left"))
        runner = AgentRunner(_config(tmp_path, log_dir=tmp_path / "logs"))
        log = EventLog(runner)
        with (
            patch("claude_runner.agent.runner.open_recorder", return_value=recorder),
            _spawn_returning(_scripted(SYSTEM_INIT, ASSISTANT_DONE, RESULT)),
        ):
            info = await runner.start("hi")

        assert len(log.args("message")) == 3
        assert len(runner.get_messages()) == 3
        recorder.record_message.assert_called_once()
        recorder.close.assert_called_once()
        recorder.end.assert_not_called()
        assert info.exit_code == 0
        assert "complete" in log.names()
