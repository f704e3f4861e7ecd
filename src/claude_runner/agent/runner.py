"""Agent runner — spawns the agent CLI and supervises one session at a time."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import functools
import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from claude_runner.agent.helpers import describe_spawn_failure, format_stderr_preview
from claude_runner.config.models import RunnerConfig
from claude_runner.constants import BASE_ARGS, TOKEN_LIMIT_PHRASE
from claude_runner.errors import (
    AgentError,
    AgentExitError,
    AgentStderrError,
    NotStreamingError,
    RunnerError,
    SessionAlreadyRunningError,
    SpawnError,
)
from claude_runner.events import EventEmitter
from claude_runner.protocol.decoder import StreamDecoder
from claude_runner.protocol.models import user_turn
from claude_runner.session.models import RunnerSession, SessionInfo
from claude_runner.session.recorder import EndReason, open_recorder
from claude_runner.streaming import StreamingPrompt, Turn

logger = logging.getLogger(__name__)

#: Bytes requested per stdout read.
_READ_CHUNK = 65_536

#: Maximum bytes per stderr line (1 MB).
_MAX_LINE_BYTES = 1_048_576

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 5.0

#: Decoder events forwarded to runner listeners unchanged.
_FORWARDED_EVENTS = (
    "assistant",
    "tool-use",
    "text",
    "end-turn",
    "result",
    "token-limit",
    "line",
)


class AgentRunner(EventEmitter):
    """Runs the agent CLI as a subprocess and re-emits its decoded output.

    One runner supervises at most one session.  ``start`` waits for the
    agent call to finish; ``start_streaming`` returns as soon as the process
    is up and keeps accepting turns through ``add_stream_message`` until
    ``complete_stream`` is called.

    Events: ``message``, ``assistant``, ``tool-use``, ``text``, ``end-turn``,
    ``result``, ``error``, ``token-limit``, ``line`` (from the decoder) and
    ``session-start``, ``exit``, ``complete``, ``session-end`` (lifecycle).
    Everything on the ``error`` channel is a :class:`RunnerError`.
    """

    def __init__(self, config: RunnerConfig) -> None:
        super().__init__()
        self.config = config
        self._session: RunnerSession | None = None
        self._background: set[asyncio.Task[Any]] = set()

        if config.on_message is not None:
            self.on("message", config.on_message)
        if config.on_error is not None:
            self.on("error", config.on_error)
        if config.on_complete is not None:
            self.on("complete", config.on_complete)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def is_running(self) -> bool:
        return self._session is not None and self._session.is_running

    def is_streaming(self) -> bool:
        session = self._session
        return session is not None and session.is_running and session.streaming

    def get_messages(self) -> list[dict[str, Any]]:
        """Copy of the current session's transcript."""
        if self._session is None:
            return []
        return copy.deepcopy(self._session.messages)

    def get_session_info(self) -> SessionInfo | None:
        """Snapshot of the latest session, or None before the first start."""
        if self._session is None:
            return None
        return self._session.info()

    @property
    def last_assistant_text(self) -> str:
        if self._session is None:
            return ""
        return self._session.last_assistant_text

    # ------------------------------------------------------------------ #
    # Invocation
    # ------------------------------------------------------------------ #

    def build_args(self) -> list[str]:
        """Command-line arguments (without the executable) for the agent."""
        cfg = self.config
        args = list(BASE_ARGS)

        if cfg.continue_session:
            args.append("--continue")
        if cfg.max_turns is not None:
            args.extend(["--max-turns", str(cfg.max_turns)])
        if cfg.system_prompt:
            args.extend(["--system-prompt", cfg.system_prompt])
        if cfg.append_system_prompt:
            args.extend(["--append-system-prompt", cfg.append_system_prompt])
        if cfg.model:
            args.extend(["--model", cfg.model])
        if cfg.fallback_model:
            args.extend(["--fallback-model", cfg.fallback_model])

        for tool in cfg.effective_allowed_tools:
            args.extend(["--allowedTools", tool])
        for tool in cfg.disallowed_tools:
            args.extend(["--disallowedTools", tool])
        for directory in cfg.allowed_directories:
            args.extend(["--add-dir", str(directory)])

        for path in cfg.mcp_config_paths:
            args.extend(["--mcp-config", str(path)])
        if cfg.mcp_servers:
            servers = {name: s.to_wire() for name, s in cfg.mcp_servers.items()}
            args.extend(["--mcp-config", json.dumps({"mcpServers": servers})])

        return args

    def build_env(self) -> dict[str, str]:
        """Process environment: ours, overlaid with the configured extras."""
        env = dict(os.environ)
        env.update(self.config.env)
        return env

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self, prompt: str | Turn) -> SessionInfo:
        """Run one agent call with a single prompt and wait for it to end.

        Raises:
            SessionAlreadyRunningError: A session is already active.
            SpawnError: The agent process could not be started.
        """
        session = self._begin(streaming=False)
        await self._spawn(session)
        turn = user_turn(prompt) if isinstance(prompt, str) else prompt
        session.task = asyncio.create_task(self._supervise(session, turn))
        # Cancelling the caller cancels the supervisor, which stops the agent.
        await session.task
        return session.info()

    async def start_streaming(self, initial_prompt: str | Turn) -> SessionInfo:
        """Start an agent call fed from a :class:`StreamingPrompt`.

        Returns once the process is running; use :meth:`add_stream_message`,
        :meth:`complete_stream` and the ``complete``/``session-end`` events
        (or :meth:`wait`) to drive and observe the rest of the session.
        """
        session = self._begin(streaming=True)
        session.queue = StreamingPrompt(initial_prompt)
        await self._spawn(session)
        session.task = asyncio.create_task(self._supervise(session, None))
        session.task.add_done_callback(self._on_supervisor_done)
        return session.info()

    def add_stream_message(self, turn: str | Turn) -> None:
        """Queue a follow-up turn for the running streaming session."""
        self._active_queue().push(turn)

    def complete_stream(self) -> None:
        """Signal that no more turns will be added to the streaming session."""
        self._active_queue().complete()

    def stop(self) -> None:
        """Cancel the current session.  No-op when nothing is running.

        The runner reports itself idle immediately; the process is terminated
        in the background and anything it still reports is ignored.
        """
        session = self._session
        if session is None or not session.is_running:
            return
        logger.info("Stopping agent session %s", session.run_id)
        self._cancel(session)

    async def wait(self) -> SessionInfo | None:
        """Wait until the current session's supervision has finished."""
        session = self._session
        if session is None:
            return None
        if session.task is not None:
            await asyncio.wait({session.task})
        return session.info()

    # ------------------------------------------------------------------ #
    # Session setup
    # ------------------------------------------------------------------ #

    def _begin(self, streaming: bool) -> RunnerSession:
        if self.is_running():
            msg = "Agent session already running"
            raise SessionAlreadyRunningError(msg)
        session = RunnerSession(streaming=streaming)
        self._session = session
        logger.info(
            "Starting agent session %s (streaming=%s, cwd=%s)",
            session.run_id,
            streaming,
            self.config.working_directory,
        )
        return session

    async def _spawn(self, session: RunnerSession) -> None:
        cfg = self.config
        workdir = cfg.working_directory
        if workdir is not None:
            try:
                workdir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.error("Failed to create working directory %s: %s", workdir, exc)

        session.decoder = self._make_decoder(session)
        cmd = [cfg.claude_path, *self.build_args()]
        logger.debug("Agent command: %s", cmd)

        try:
            session.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(workdir) if workdir is not None else None,
                env=self.build_env(),
                limit=_MAX_LINE_BYTES,
            )
        except OSError as exc:
            error = SpawnError(describe_spawn_failure(exc, cfg.claude_path, workdir))
            logger.error("%s", error)
            session.is_running = False
            session.exited_at = datetime.now(tz=UTC)
            if session.queue is not None:
                session.queue.complete()
            self.emit("error", error)
            raise error from exc

        session.recorder = open_recorder(
            cfg.log_dir,
            cfg.resolved_workspace_name,
            session.run_id,
            session.started_at,
            workdir,
        )
        logger.info(
            "Agent process %s started for session %s",
            session.process.pid,
            session.run_id,
        )

        if session.cancelled:
            # stop() landed while the process was being spawned.
            self._terminate(session)
            return
        self.emit("session-start", session.info())

    def _make_decoder(self, session: RunnerSession) -> StreamDecoder:
        decoder = StreamDecoder()
        decoder.on("message", functools.partial(self._on_message, session))
        decoder.on("error", functools.partial(self._on_decode_error, session))
        for event in _FORWARDED_EVENTS:
            decoder.on(event, functools.partial(self._forward, session, event))
        return decoder

    # ------------------------------------------------------------------ #
    # Decoder callbacks
    # ------------------------------------------------------------------ #

    def _on_message(self, session: RunnerSession, message: dict[str, Any]) -> None:
        if session.cancelled:
            return
        if session.session_id is None:
            session_id = message.get("session_id")
            if isinstance(session_id, str) and session_id:
                session.session_id = session_id
                if session.decoder is not None:
                    session.decoder.session_id = session_id
                logger.info("Agent session id: %s", session_id)
        session.messages.append(message)
        if session.recorder is not None:
            try:
                session.recorder.record_message(message)
            except OSError as exc:
                logger.error("Transcript write failed, disabling transcript: %s", exc)
                with contextlib.suppress(OSError):
                    session.recorder.close()
                session.recorder = None
        self.emit("message", message)

    def _on_decode_error(
        self, session: RunnerSession, error: RunnerError | dict[str, Any]
    ) -> None:
        if session.cancelled:
            return
        if isinstance(error, dict):
            error = AgentError(error)
        self.emit("error", error)

    def _forward(self, session: RunnerSession, event: str, *args: Any) -> None:
        if session.cancelled:
            return
        self.emit(event, *args)

    # ------------------------------------------------------------------ #
    # Supervision
    # ------------------------------------------------------------------ #

    async def _supervise(self, session: RunnerSession, turn: Turn | None) -> None:
        proc = session.process
        assert proc is not None

        writer = asyncio.create_task(self._write_input(session, turn))
        readers = [
            asyncio.create_task(self._read_stdout(session)),
            asyncio.create_task(self._read_stderr(session)),
        ]
        try:
            await asyncio.gather(*readers)
            code = await proc.wait()
        except asyncio.CancelledError:
            self._cancel(session)
            for task in (writer, *readers):
                task.cancel()
            await asyncio.gather(writer, *readers, return_exceptions=True)
            self._finalize(session, proc.returncode)
            raise

        if not writer.done():
            # The process exited while input was still open.
            writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)
        self._finalize(session, code)

    async def _write_input(self, session: RunnerSession, turn: Turn | None) -> None:
        proc = session.process
        assert proc is not None and proc.stdin is not None
        stdin = proc.stdin
        try:
            if session.queue is None:
                if turn is not None:
                    await self._write_turn(stdin, turn)
            else:
                async for queued in session.queue:
                    await self._write_turn(stdin, queued)
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Agent stdin closed early: %s", exc)
        finally:
            if session.queue is not None:
                session.queue.complete()
            with contextlib.suppress(OSError, RuntimeError):
                stdin.close()

    async def _write_turn(self, stdin: asyncio.StreamWriter, turn: Turn) -> None:
        line = json.dumps(turn, ensure_ascii=False) + "\n"
        stdin.write(line.encode("utf-8"))
        await stdin.drain()
        logger.debug("Sent turn to agent (%d bytes)", len(line))

    async def _read_stdout(self, session: RunnerSession) -> None:
        proc = session.process
        decoder = session.decoder
        assert proc is not None and proc.stdout is not None and decoder is not None
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                decoder.feed(chunk)
                session.last_assistant_text = decoder.last_assistant_text
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Error reading agent stdout: %s", exc)
            if not session.cancelled:
                self.emit("error", RunnerError(f"Error reading agent stdout: {exc}"))
        decoder.finish()
        session.last_assistant_text = decoder.last_assistant_text

    async def _read_stderr(self, session: RunnerSession) -> None:
        proc = session.process
        assert proc is not None and proc.stderr is not None
        while True:
            try:
                raw = await proc.stderr.readline()
            except ValueError:
                # Line exceeded the StreamReader limit; skip it and keep reading.
                logger.warning("Agent stderr line exceeded buffer limit, skipping")
                continue
            if not raw:
                break
            text = raw.decode(errors="replace")
            session.stderr += text
            line = text.strip()
            if not line or session.cancelled:
                continue
            logger.debug("Agent stderr: %s", line)
            self.emit("error", AgentStderrError(line))
            if TOKEN_LIMIT_PHRASE.lower() in line.lower() and session.decoder:
                session.decoder.signal_token_limit()

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #

    def _cancel(self, session: RunnerSession) -> None:
        session.cancelled = True
        session.is_running = False
        if session.queue is not None:
            session.queue.complete()
        self._terminate(session)

    def _terminate(self, session: RunnerSession) -> None:
        """SIGTERM the process now, SIGKILL it if it is still alive later."""
        proc = session.process
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            task = asyncio.get_running_loop().create_task(self._kill_after(proc))
        except RuntimeError:
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _kill_after(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_WAIT)
        except TimeoutError:
            logger.warning("Agent process %s ignored SIGTERM, killing", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    def _finalize(self, session: RunnerSession, code: int | None) -> None:
        if session.exited_at is not None:
            return
        session.exit_code = code
        session.exited_at = datetime.now(tz=UTC)
        session.is_running = False
        if session.queue is not None:
            session.queue.complete()

        reason: EndReason
        if session.cancelled:
            reason = "stopped"
        elif code == 0:
            reason = "complete"
        else:
            reason = "error"
            preview = format_stderr_preview(session.stderr)
            self.emit("error", AgentExitError(code if code is not None else -1, preview))

        logger.info(
            "Agent session %s ended (%s, exit code %s, %d messages)",
            session.run_id,
            reason,
            code,
            len(session.messages),
        )
        if session.recorder is not None:
            try:
                session.recorder.end(
                    reason, session.session_id, code, len(session.messages)
                )
            except OSError as exc:
                logger.error("Failed to finish transcript: %s", exc)

        if session is self._session:
            # Only the current session reports its exit code.
            self.emit("exit", code)
        if not session.cancelled:
            self.emit("complete", copy.deepcopy(session.messages))
        self.emit("session-end", session.info())

    def _on_supervisor_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Agent session supervisor failed: %s", exc, exc_info=exc)

    def _active_queue(self) -> StreamingPrompt:
        session = self._session
        if session is None or not session.is_running or session.queue is None:
            msg = "No streaming session is active"
            raise NotStreamingError(msg)
        return session.queue
