"""Human approval handshake for tool calls and proposed file mutations.

Two things can hold a tool call for a human decision. Before dispatch,
the ApprovalPolicy decides from the configured approval level whether
the call may run at all (shell commands are classified against safe
and dangerous patterns). After dispatch, tools such as ``edit_file``
and ``propose_file_changes`` return a JSON payload describing a change
instead of writing it::

    {"requiresApproval": true, "diff": "...",
     "pendingChanges": {"path": ..., "oldContent": ..., "newContent": ...}}

or the ``{"type": "diff_preview", ...}`` variant. The approval gate
turns either case into a PendingApproval, announces it, and suspends
only that tool call until a decision arrives. Each pending approval is
backed by one future, so exactly one decision is ever accepted.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Protocol

from indokq.shared.durable_write import atomic_write_text

from .cancellation import CancellationSignal
from .config import ApprovalCallback, EventCallback, fire_event
from .models import ApprovalDecision, ToolExecutionResult, _make_id

logger = logging.getLogger(__name__)

APPLIED_MESSAGE = "Changes applied to {path}"
APPLY_FAILED_MESSAGE = "Failed to apply changes: {error}"
REJECTED_MESSAGE = "Changes rejected by user"
EDIT_MESSAGE = (
    "Manual edit requested (not yet implemented); changes were not applied"
)
CALL_REJECTED_MESSAGE = "Tool call {tool_name} rejected by user"
CALL_EDIT_MESSAGE = (
    "Manual edit requested (not yet implemented); {tool_name} was not run"
)


class ApprovalLevel(IntEnum):
    """How much the approval surface is asked.

    OFF asks for every tool call, LOW lets read-only tools through,
    MEDIUM also lets file edits and known-safe commands through, and
    HIGH never asks.
    """
    OFF = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


READ_ONLY_TOOLS = frozenset({
    "read_file", "list_files", "search_files", "grep_codebase",
})
FILE_MODIFICATION_TOOLS = frozenset({"edit_file", "write_file", "create_file"})
# Tools whose effect is already held for a diff review.
PROPOSAL_TOOLS = frozenset({"edit_file", "propose_file_changes"})
# Engine-handled tools; their effects are gated where they happen.
CONTROL_TOOLS = frozenset({"task_complete", "spawn_agents"})
EXTERNAL_TOOLS = frozenset({"docker_execute"})

SAFE_COMMAND_PATTERNS = tuple(re.compile(p) for p in (
    r"^git (status|log|diff|show|branch|remote)",
    r"^npm (run )?(test|build|type-check|lint)",
    r"^(ls|cat|head|tail|grep|find|which|pwd|echo)",
    r"^(python|node|cargo|go|rustc|tsc) --version",
    r"^node_modules/\.bin/",
))

DANGEROUS_COMMAND_PATTERNS = tuple(re.compile(p) for p in (
    r"rm -rf",
    r"git push",
    r"npm install",
    r"sudo",
    r">\s*/dev/",
    r"mkfs",
    r"dd if=",
))


@dataclass(frozen=True)
class PolicyDecision:
    requires_approval: bool
    reason: str = ""


_ALLOWED = PolicyDecision(requires_approval=False)


def classify_command(command: str) -> PolicyDecision:
    """Decide whether a shell command can run without asking."""
    command = command.strip()
    if any(p.search(command) for p in DANGEROUS_COMMAND_PATTERNS):
        return PolicyDecision(True, "Dangerous command detected")
    if any(p.match(command) for p in SAFE_COMMAND_PATTERNS):
        return _ALLOWED
    return PolicyDecision(True, "Command safety unknown")


class ApprovalPolicy:
    """Decides which tool calls need a human decision before they run."""

    def __init__(self, level: ApprovalLevel | int = ApprovalLevel.MEDIUM) -> None:
        self.level = ApprovalLevel(min(max(int(level), 0), 3))

    @property
    def auto_approve(self) -> bool:
        return self.level == ApprovalLevel.HIGH

    def should_approve(self, tool_name: str, arguments: dict[str, Any]) -> PolicyDecision:
        if self.level == ApprovalLevel.HIGH:
            return _ALLOWED
        if tool_name in CONTROL_TOOLS or tool_name in PROPOSAL_TOOLS:
            return _ALLOWED
        if self.level == ApprovalLevel.OFF:
            return PolicyDecision(True, "Approval level OFF (all tools require approval)")
        if tool_name in READ_ONLY_TOOLS:
            return _ALLOWED
        if self.level == ApprovalLevel.LOW:
            return PolicyDecision(True, "Tool modifies state")

        if tool_name in FILE_MODIFICATION_TOOLS:
            return _ALLOWED
        if tool_name == "execute_command":
            return classify_command(str(arguments.get("command") or ""))
        if tool_name in EXTERNAL_TOOLS or tool_name.startswith("mcp_"):
            return PolicyDecision(True, "External system modification")
        return _ALLOWED


@dataclass(frozen=True)
class ProposedChange:
    """A file mutation waiting for a human decision."""
    path: str
    before_content: str
    after_content: str
    diff_text: str = ""
    description: str = ""


def detect_proposed_change(output: str) -> ProposedChange | None:
    """Return the proposed change carried by a tool output, if any."""
    text = output.strip() if output else ""
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if not (data.get("requiresApproval") is True or data.get("type") == "diff_preview"):
        return None
    pending = data.get("pendingChanges")
    if not isinstance(pending, dict) or not pending.get("path"):
        logger.warning("Approval payload without pendingChanges.path ignored")
        return None
    return ProposedChange(
        path=str(pending["path"]),
        before_content=str(pending.get("oldContent") or ""),
        after_content=str(pending.get("newContent") or ""),
        diff_text=str(data.get("diff") or data.get("diffPreview") or ""),
        description=str(pending.get("description") or data.get("description") or ""),
    )




class PendingApproval:
    """Single-use handoff between the turn loop and the approval surface.

    Carries either a proposed file change or, for a call held before
    dispatch, the tool name and arguments with the policy's reason.
    """

    def __init__(
        self,
        change: ProposedChange | None = None,
        *,
        agent_id: str = "",
        call_id: str = "",
        tool_name: str = "",
        arguments: dict[str, Any] | None = None,
        reason: str = "",
        approval_id: str | None = None,
    ) -> None:
        self.approval_id = approval_id or _make_id()
        self.agent_id = agent_id
        self.call_id = call_id
        self.change = change
        self.tool_name = tool_name
        self.arguments = arguments or {}
        self.reason = reason
        self._future: asyncio.Future[ApprovalDecision] = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def is_file_change(self) -> bool:
        return self.change is not None

    @property
    def path(self) -> str:
        return self.change.path if self.change else ""

    @property
    def before_content(self) -> str:
        return self.change.before_content if self.change else ""

    @property
    def after_content(self) -> str:
        return self.change.after_content if self.change else ""

    @property
    def diff_text(self) -> str:
        return self.change.diff_text if self.change else ""

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, decision: ApprovalDecision | str) -> bool:
        """Deliver a decision. Returns False if one was already accepted."""
        decision = ApprovalDecision(decision)
        if self._future.done():
            logger.warning(
                "Approval %s already resolved, ignoring %s",
                self.approval_id[:8], decision.value,
            )
            return False
        self._future.set_result(decision)
        return True

    async def wait(self, cancellation: CancellationSignal | None = None) -> ApprovalDecision:
        if cancellation is None:
            return await self._future
        return await cancellation.race(self._future, "awaiting approval")

    def to_event(self) -> dict[str, Any]:
        if self.change is not None:
            diff = self.change.diff_text
            description = self.change.description
        else:
            diff = ""
            description = json.dumps(self.arguments, ensure_ascii=False)
        return {
            "event": "approval_needed",
            "agent_id": self.agent_id,
            "approval_id": self.approval_id,
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "path": self.path,
            "diff": diff,
            "description": description,
            "reason": self.reason,
        }


class FileWriter(Protocol):
    """Write collaborator used once a change is approved."""

    async def apply(self, change: ProposedChange) -> None: ...


class LocalFileWriter:
    """Applies approved changes to the local filesystem atomically."""

    def __init__(self, root: str | Path | None = None, *, check_stale: bool = True) -> None:
        self._root = Path(root) if root is not None else None
        self._check_stale = check_stale

    def _resolve(self, path: str) -> Path:
        target = Path(path)
        if self._root is not None and not target.is_absolute():
            target = self._root / target
        return target

    async def apply(self, change: ProposedChange) -> None:
        target = self._resolve(change.path)
        await asyncio.to_thread(
            atomic_write_text,
            target,
            change.after_content,
            expected_before=change.before_content if self._check_stale else None,
        )
        logger.info("Applied approved change to %s", target)


class ApprovalGate:
    """Suspends individual tool calls until a human decides."""

    def __init__(
        self,
        writer: FileWriter,
        *,
        policy: ApprovalPolicy | None = None,
        event_callback: EventCallback | None = None,
        approval_callback: ApprovalCallback | None = None,
    ) -> None:
        self._writer = writer
        self.policy = policy or ApprovalPolicy()
        self._event_callback = event_callback
        self._approval_callback = approval_callback
        self._pending: dict[str, PendingApproval] = {}

    @property
    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def resolve(self, approval_id: str, decision: ApprovalDecision | str) -> bool:
        """Deliver a decision from the approval surface."""
        pending = self._pending.get(approval_id)
        if pending is None:
            logger.warning("No pending approval %s", approval_id[:8])
            return False
        return pending.resolve(decision)

    def check(self, tool_name: str, arguments: dict[str, Any]) -> PolicyDecision:
        return self.policy.should_approve(tool_name, arguments)

    async def review_call(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        *,
        agent_id: str,
        call_id: str,
        reason: str = "",
        cancellation: CancellationSignal | None = None,
    ) -> ApprovalDecision:
        """Hold a tool call before dispatch and return the decision."""
        pending = PendingApproval(
            agent_id=agent_id,
            call_id=call_id,
            tool_name=tool_name,
            arguments=arguments,
            reason=reason,
        )
        logger.info(
            "Approval %s needed to run %s (agent %s): %s",
            pending.approval_id[:8], tool_name, agent_id[:8], reason,
        )
        return await self._hold(pending, cancellation)

    async def review(
        self,
        change: ProposedChange,
        *,
        agent_id: str,
        call_id: str,
        tool_name: str = "",
        cancellation: CancellationSignal | None = None,
    ) -> ToolExecutionResult:
        """Hold one tool call until its change is approved, rejected or edited."""
        pending = PendingApproval(
            change, agent_id=agent_id, call_id=call_id, tool_name=tool_name,
        )
        logger.info(
            "Approval %s needed for %s (agent %s)",
            pending.approval_id[:8], change.path, agent_id[:8],
        )
        decision = await self._hold(pending, cancellation)
        return await self._apply_decision(change, decision)

    async def _hold(
        self,
        pending: PendingApproval,
        cancellation: CancellationSignal | None,
    ) -> ApprovalDecision:
        self._pending[pending.approval_id] = pending
        try:
            if self.policy.auto_approve:
                pending.resolve(ApprovalDecision.APPROVE)
            else:
                await fire_event(self._event_callback, pending.to_event())
                if self._approval_callback is not None:
                    try:
                        await self._approval_callback(pending)
                    except Exception:
                        logger.exception("Approval callback failed")
            decision = await pending.wait(cancellation)
        finally:
            self._pending.pop(pending.approval_id, None)

        await fire_event(self._event_callback, {
            "event": "approval_resolved",
            "agent_id": pending.agent_id,
            "approval_id": pending.approval_id,
            "call_id": pending.call_id,
            "tool_name": pending.tool_name,
            "path": pending.path,
            "decision": decision.value,
        })
        return decision

    async def _apply_decision(
        self, change: ProposedChange, decision: ApprovalDecision,
    ) -> ToolExecutionResult:
        if decision == ApprovalDecision.APPROVE:
            try:
                await self._writer.apply(change)
            except OSError as exc:
                logger.warning("Applying change to %s failed: %s", change.path, exc)
                return ToolExecutionResult(
                    success=False,
                    error=APPLY_FAILED_MESSAGE.format(error=exc),
                )
            return ToolExecutionResult(
                success=True, output=APPLIED_MESSAGE.format(path=change.path),
            )
        if decision == ApprovalDecision.EDIT:
            logger.info("Edit decision for %s treated as rejection", change.path)
            return ToolExecutionResult(success=True, output=EDIT_MESSAGE)
        return ToolExecutionResult(success=True, output=REJECTED_MESSAGE)
