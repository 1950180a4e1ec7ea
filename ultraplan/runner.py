"""Agent subprocess runner: stdin prompt, streamed output, idle and hard timeouts."""

import asyncio
import codecs
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from ultraplan.agents.base import AgentError, InvocationTemplate
from ultraplan.agents.registry import get_template
from ultraplan.models import TurnResult

logger = logging.getLogger(__name__)

# Discourage TUI rendering in agent subprocesses
SUBPROCESS_ENV_OVERRIDES: dict[str, str] = {
    "TERM": "dumb",
    "NO_COLOR": "1",
    "CI": "true",
    "FORCE_COLOR": "0",
}

RAW_DUMP_FILENAME = "raw_stdout_debug.txt"

_READ_CHUNK = 64 * 1024
_REAP_TIMEOUT_SEC = 5.0
_FAILURE_KINDS = {"hard_timeout", "exit_error"}


class _Invocation:
    """Settle-once state machine for one running process.

    The idle timer stays unarmed until the template's content probe first
    matches; from then on every stdout chunk re-arms it. The hard timer is
    armed at construction.
    """

    def __init__(self, template: InvocationTemplate, idle_timeout: float, hard_timeout: float) -> None:
        self._template = template
        self._idle_timeout = idle_timeout
        self._loop = asyncio.get_running_loop()
        self.settled: asyncio.Future[tuple[str, str]] = self._loop.create_future()
        self.stdout = ""
        self.stderr = ""
        self.exit_code: int | None = None
        self.has_content = False
        self._idle_handle: asyncio.TimerHandle | None = None
        self._hard_handle = self._loop.call_later(
            hard_timeout, self._settle, "hard_timeout", f"hard timeout ({hard_timeout:g}s)"
        )

    def feed_stdout(self, text: str) -> None:
        if not text:
            return
        if not self.stdout:
            logger.debug("%s: first stdout received", self._template.name)
        self.stdout += text
        if not self.has_content:
            self.has_content = self._template.has_content(self.stdout)
            if self.has_content:
                logger.info("%s: response content detected, starting idle timer", self._template.name)
        if self.has_content:
            self._arm_idle_timer()

    def feed_stderr(self, text: str) -> None:
        self.stderr += text

    def on_exit(self, code: int) -> None:
        self.exit_code = code
        if code != 0 and not self.stdout:
            self._settle("exit_error", f"process exited with error (code={code})")
        elif code != 0:
            logger.warning(
                "%s: non-zero exit (code=%d) but got %d chars stdout, treating as partial success",
                self._template.name, code, len(self.stdout),
            )
            self._settle("partial", f"process exited (code={code}, partial success)")
        else:
            self._settle("exited", "process exited (code=0)")

    def _arm_idle_timer(self) -> None:
        if self.settled.done():
            return
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._idle_handle = self._loop.call_later(
            self._idle_timeout,
            self._settle,
            "idle",
            f"idle timeout (no stdout for {self._idle_timeout:g}s)",
        )

    def _settle(self, kind: str, reason: str) -> None:
        if self.settled.done():
            return
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._hard_handle.cancel()
        self.settled.set_result((kind, reason))


async def _pump(stream: asyncio.StreamReader, sink: Callable[[str], None]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            sink(decoder.decode(b"", final=True))
            return
        sink(decoder.decode(chunk))


async def _deliver_prompt(proc: asyncio.subprocess.Process, prompt: str, name: str) -> None:
    stdin = proc.stdin
    if stdin is None:
        return
    try:
        stdin.write(prompt.encode("utf-8"))
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as exc:
        logger.warning("%s: stdin closed before the prompt was delivered: %s", name, exc)
    finally:
        stdin.close()


async def _reap(proc: asyncio.subprocess.Process, tasks: list[asyncio.Task]) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(proc.wait(), timeout=_REAP_TIMEOUT_SEC)
    except TimeoutError:
        logger.warning("pid %s still running %ss after kill", proc.pid, _REAP_TIMEOUT_SEC)
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _dump_raw_stdout(dump_dir: Path, name: str, stdout: str) -> None:
    try:
        dump_dir.mkdir(parents=True, exist_ok=True)
        (dump_dir / RAW_DUMP_FILENAME).write_text(stdout, encoding="utf-8")
        logger.info("%s: saved raw stdout to %s", name, RAW_DUMP_FILENAME)
    except OSError as exc:
        logger.warning("%s: failed to save raw stdout: %s", name, exc)


async def run_invocation(
    template: InvocationTemplate,
    prompt: str,
    *,
    cwd: Path,
    idle_timeout: float,
    hard_timeout: float,
    env: dict[str, str] | None = None,
    model: str | None = None,
    dump_dir: Path | None = None,
) -> TurnResult:
    """Run one agent process to completion and parse its output.

    Args:
        template: Invocation template of the participant.
        prompt: Full prompt text, written to stdin then closed.
        cwd: Working directory of the process.
        idle_timeout: Seconds of stdout silence, counted only after content
            was detected, that end the turn successfully.
        hard_timeout: Absolute ceiling in seconds for the whole invocation.
        env: Complete environment for the process (None inherits ours).
        model: Optional model override, passed via the template's model flag.
        dump_dir: Where to dump raw stdout when the parser returns nothing.

    Returns:
        TurnResult with outcome "exited", "partial" or "idle".

    Raises:
        AgentError: On spawn error, hard timeout, or non-zero exit without output.
    """
    name = template.name
    argv = template.build_argv(model)
    logger.info("%s: spawning %s (prompt via stdin, %d chars)", name, " ".join(argv), len(prompt))

    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=env,
        )
    except OSError as exc:
        logger.warning("%s: spawn error: %s", name, exc)
        raise AgentError(name, f"spawn error: {exc}") from exc

    invocation = _Invocation(template, idle_timeout, hard_timeout)
    stdout_task = asyncio.create_task(_pump(proc.stdout, invocation.feed_stdout))
    stderr_task = asyncio.create_task(_pump(proc.stderr, invocation.feed_stderr))
    stdin_task = asyncio.create_task(_deliver_prompt(proc, prompt, name))

    async def wait_for_exit() -> None:
        await asyncio.gather(stdout_task, stderr_task)
        invocation.on_exit(await proc.wait())

    exit_task = asyncio.create_task(wait_for_exit())

    try:
        kind, reason = await invocation.settled
    finally:
        await _reap(proc, [stdin_task, stdout_task, stderr_task, exit_task])

    duration = time.monotonic() - start
    parsed = template.parser(invocation.stdout)
    failed = kind in _FAILURE_KINDS
    logger.info(
        "%s: %s %s after %.1fs (stdout=%d, clean=%d, stderr=%d)",
        name, "failed:" if failed else "done:", reason, duration,
        len(invocation.stdout), len(parsed.text), len(invocation.stderr),
    )

    if invocation.stdout and not parsed.text:
        logger.warning(
            "%s: parser returned empty text for %d chars of stdout (first 500):\n%s",
            name, len(invocation.stdout), invocation.stdout[:500],
        )
        if dump_dir is not None:
            _dump_raw_stdout(dump_dir, name, invocation.stdout)

    if failed:
        raise AgentError(name, reason, stderr=invocation.stderr, exit_code=invocation.exit_code)

    return TurnResult(
        participant=name,
        raw=invocation.stdout,
        clean=parsed.text,
        stderr=invocation.stderr,
        exit_code=invocation.exit_code if kind != "idle" else None,
        outcome=kind,  # type: ignore[arg-type]
        parse_source=parsed.source,
        duration_sec=duration,
    )


class AgentRunner:
    """Runs participants from the fixed agent table inside one project directory.

    Holds only immutable settings; concurrent calls share nothing.
    """

    def __init__(self, cwd: Path, env_overrides: dict[str, str] | None = None) -> None:
        self.cwd = cwd
        self._env = {**os.environ, **SUBPROCESS_ENV_OVERRIDES, **(env_overrides or {})}

    async def run(
        self,
        participant: str,
        prompt: str,
        *,
        idle_timeout: float,
        hard_timeout: float,
        model: str | None = None,
        dump_dir: Path | None = None,
    ) -> TurnResult:
        template = get_template(participant)
        return await run_invocation(
            template,
            prompt,
            cwd=self.cwd,
            idle_timeout=idle_timeout,
            hard_timeout=hard_timeout,
            env={**self._env, **template.env},
            model=model,
            dump_dir=dump_dir,
        )
