from __future__ import annotations

import asyncio
import re
import shlex
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pfm.gates import GateStatus
from pfm.state import RunLog, StateStore, WorkItem

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\(|[$]\w)")
CHECK_ORDER = ("verify", "security")


class CommandExecutor(ABC):
    @abstractmethod
    async def execute(self, command: str, cwd: Path) -> tuple[int, str]:
        """Run ``command`` in ``cwd`` and return (exit status, combined output)."""


class SubprocessExecutor(CommandExecutor):
    async def execute(self, command: str, cwd: Path) -> tuple[int, str]:
        command_text = command.strip()
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        argv: list[str] = []
        if not used_shell:
            try:
                argv = shlex.split(command_text)
            except ValueError:
                used_shell = True

        try:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    command_text,
                    cwd=str(cwd),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(cwd),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
        except FileNotFoundError as exc:
            return 127, f"Command not found: {exc.filename or argv[:1]}"

        try:
            output, _ = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        return process.returncode or 0, output.decode("utf-8", errors="replace")


@dataclass(slots=True)
class CheckResult:
    name: str
    command: str
    exit_code: int | None
    output: str = ""

    @property
    def skipped(self) -> bool:
        return self.exit_code is None

    @property
    def passed(self) -> bool:
        return self.exit_code is None or self.exit_code == 0


@dataclass(slots=True)
class CheckReport:
    outcome: GateStatus
    results: list[CheckResult] = field(default_factory=list)

    @property
    def output(self) -> str:
        sections = [
            f"$ {result.command}\n{result.output.rstrip()}"
            for result in self.results
            if not result.skipped
        ]
        return "\n\n".join(sections)


class VerificationRunner:
    """Runs a work item's verify and security commands and settles the tests gate."""

    def __init__(
        self,
        store: StateStore,
        executor: CommandExecutor | None = None,
        *,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.store = store
        self.executor = executor or SubprocessExecutor()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def working_directory(self, item: WorkItem) -> Path:
        if item.workspace.worktree:
            return Path(item.workspace.worktree)
        return self.store.repo_root

    async def run_checks(self, item: WorkItem) -> CheckReport:
        cwd = self.working_directory(item)
        commands = {"verify": item.commands.verify, "security": item.commands.security}
        results: list[CheckResult] = []
        for name in CHECK_ORDER:
            command = commands[name].strip()
            if not command:
                results.append(CheckResult(name=name, command="", exit_code=None))
                self._emit({"event": "check_skipped", "check": name})
                continue
            self._emit({"event": "check_start", "check": name, "command": command})
            exit_code, output = await self.executor.execute(command, cwd)
            results.append(
                CheckResult(name=name, command=command, exit_code=exit_code, output=output)
            )
            self._emit({"event": "check_result", "check": name, "exit_code": exit_code})

        outcome = GateStatus.PASS if all(result.passed for result in results) else GateStatus.FAIL
        return CheckReport(outcome=outcome, results=results)

    async def check(self, work_id: str) -> CheckReport:
        """Run the checks for ``work_id``, audit the output and record the tests outcome."""
        item = self.store.load(work_id)
        report = await self.run_checks(item)

        runlog = RunLog(self.store.runlog_path(work_id))
        for result in report.results:
            if result.skipped:
                runlog.append(f"Check: {result.name}", "No command configured; skipped.")
                continue
            runlog.append_command(
                result.name, result.command, result.exit_code or 0, result.output
            )

        def _settle_tests(current: WorkItem) -> WorkItem:
            current.gates["tests"] = report.outcome
            return current

        self.store.update(work_id, _settle_tests)
        runlog.append("Check Outcome", f"tests gate set to {report.outcome}")
        return report
