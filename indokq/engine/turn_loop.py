"""Turn loop: drives one agent's multi-turn tool-use conversation.

Each iteration trims history, opens a model stream, rebuilds the
assistant turn from protocol events, validates and dispatches the
requested tool calls as one concurrent batch, and folds the results
back as a single user turn. The loop ends on a final answer, a
task_complete call, cancellation, or a fatal error.

Cancellation is checked before each request, on every stream read
and before each tool dispatch. Once seen, the loop stops without
sending partial results back to the model.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import Any, Protocol

from .approval import (
    CALL_EDIT_MESSAGE,
    CALL_REJECTED_MESSAGE,
    ApprovalGate,
    ProposedChange,
    detect_proposed_change,
)
from .block_accumulator import BlockAccumulator, events_from_message
from .config import EngineConfig, EventCallback, fire_event
from .errors import (
    CircuitBreakerTrippedError,
    ExecutionCancelledError,
    MaxTurnsExceededError,
    NoProgressError,
    OrchestrationError,
)
from .history import HistoryManager
from .lifecycle import validate_transition
from .models import (
    AgentOutcome,
    AgentSession,
    ApprovalDecision,
    ConversationTurn,
    OutcomeStatus,
    SpawnRequest,
    ToolCallBlock,
    ToolExecutionResult,
    ToolResultBlock,
    TurnPhase,
)
from .providers.base import ModelProvider, ModelRequest
from .tool_dispatcher import ToolExecutor, result_payload
from .tool_specs import ToolCatalog
from .validation import ValidationGate

logger = logging.getLogger(__name__)

SPAWN_TOOL = "spawn_agents"
COMPLETE_TOOL = "task_complete"

NUDGE_PROMPT = (
    "Please proceed with using the appropriate tools to complete the task, "
    "or call task_complete if you are finished."
)


class AgentSpawnHandler(Protocol):
    """Runs nested agents for a spawn_agents call."""

    def spawn(
        self, parent: AgentSession, requests: list[SpawnRequest],
    ) -> Awaitable[str]: ...


async def gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Run awaitables concurrently; on the first failure cancel the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class TurnLoop:
    """Executes one AgentSession to completion."""

    def __init__(
        self,
        session: AgentSession,
        *,
        provider: ModelProvider,
        dispatcher: ToolExecutor,
        catalog: ToolCatalog,
        config: EngineConfig,
        approval_gate: ApprovalGate | None = None,
        spawner: AgentSpawnHandler | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.session = session
        self._provider = provider
        self._dispatcher = dispatcher
        self._config = config
        self._approval_gate = approval_gate
        self._spawner = spawner
        self._event_callback = event_callback
        self._tools = catalog.select(session.definition.tool_names)
        self._gate = ValidationGate(
            ToolCatalog(self._tools),
            threshold=config.validation_failure_threshold,
        )
        max_history = session.definition.history_max_turns
        self._history = HistoryManager(
            config.history_max_turns if max_history is None else max_history
        )
        self._phase = TurnPhase.REQUESTING
        self._requests_made = 0
        self._output: list[str] = []

    @property
    def agent_id(self) -> str:
        return self.session.session_id

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def requests_made(self) -> int:
        return self._requests_made

    async def _transition(self, new_phase: TurnPhase) -> None:
        """Move to *new_phase*; re-entering the current phase is a no-op."""
        if new_phase == self._phase:
            return
        validate_transition(self._phase, new_phase)
        old = self._phase
        self._phase = new_phase
        logger.debug(
            "Agent %s (%s): %s -> %s",
            self.agent_id[:8], self.session.agent_type,
            old.value, new_phase.value,
        )
        await fire_event(self._event_callback, {
            "event": "phase_changed",
            "agent_id": self.agent_id,
            "agent_type": self.session.agent_type,
            "old_phase": old.value,
            "new_phase": new_phase.value,
        })

    async def _emit_text(self, text: str) -> None:
        self._output.append(text)
        await fire_event(self._event_callback, {
            "event": "stream_chunk",
            "agent_id": self.agent_id,
            "text": text,
        })

    async def run(self) -> AgentOutcome:
        """Run the conversation until it terminates."""
        start = time.monotonic()
        session = self.session
        cancellation = session.cancellation
        if not session.history:
            raise ValueError("AgentSession.history must start with the task turn")
        logger.info(
            "Agent %s (%s) starting at depth %d",
            self.agent_id[:8], session.agent_type, session.depth,
        )

        status = OutcomeStatus.COMPLETED
        final_text = ""
        error: str | None = None
        try:
            while True:
                if self._config.max_turns > 0 and self._requests_made >= self._config.max_turns:
                    raise MaxTurnsExceededError(self.agent_id, self._config.max_turns)
                await self._transition(TurnPhase.REQUESTING)
                cancellation.raise_if_cancelled("before request")

                turn = await self._request_turn()
                # The provider rejects assistant turns with no content.
                if turn.content:
                    session.history.append(turn)

                calls = turn.tool_calls
                if not calls:
                    if turn.text.strip():
                        final_text = turn.text
                        break
                    session.turns_without_tool_use += 1
                    if session.turns_without_tool_use >= self._config.max_turns_without_tool_use:
                        raise NoProgressError(self.agent_id, session.turns_without_tool_use)
                    logger.info(
                        "Agent %s produced an empty turn (%d/%d), nudging",
                        self.agent_id[:8], session.turns_without_tool_use,
                        self._config.max_turns_without_tool_use,
                    )
                    session.history.append(ConversationTurn.user_text(NUDGE_PROMPT))
                    continue

                session.turns_without_tool_use = 0
                await self._transition(TurnPhase.DISPATCHING)
                results, summary = await self._run_batch(calls)
                cancellation.raise_if_cancelled("after dispatch")
                session.history.append(ConversationTurn(role="user", content=results))
                if summary is not None:
                    final_text = summary
                    break
        except ExecutionCancelledError as exc:
            status = OutcomeStatus.CANCELLED
            logger.info("Agent %s cancelled (%s)", self.agent_id[:8], exc.where or "idle")
        except OrchestrationError as exc:
            status = OutcomeStatus.FAILED
            error = str(exc)
            logger.warning("Agent %s failed: %s", self.agent_id[:8], error)
        except Exception as exc:
            status = OutcomeStatus.FAILED
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Agent %s session error", self.agent_id[:8])

        # Cancellation takes priority over whatever failure it caused.
        if status == OutcomeStatus.FAILED and cancellation.is_cancelled:
            status = OutcomeStatus.CANCELLED
            error = None

        await self._transition(TurnPhase.TERMINATED)
        outcome = AgentOutcome(
            agent_id=self.agent_id,
            agent_type=session.agent_type,
            status=status,
            output="".join(self._output),
            final_text=final_text,
            error=error,
            turns=self._requests_made,
            duration_seconds=time.monotonic() - start,
        )
        if status == OutcomeStatus.FAILED:
            await fire_event(self._event_callback, {
                "event": "agent_error",
                "agent_id": self.agent_id,
                "agent_type": session.agent_type,
                "error": error,
                "fatal": True,
                "circuit_breaker": error is not None and error.startswith("Circuit breaker"),
            })
        await fire_event(self._event_callback, {
            "event": "agent_completed",
            "agent_id": self.agent_id,
            "agent_type": session.agent_type,
            "parent_id": session.parent_id,
            "status": status.value,
            "final_text": final_text,
            "error": error,
            "turns": outcome.turns,
            "duration_seconds": outcome.duration_seconds,
        })
        logger.info(
            "Agent %s (%s) %s after %d turns in %.1fs",
            self.agent_id[:8], session.agent_type, status.value,
            outcome.turns, outcome.duration_seconds,
        )
        return outcome

    async def _request_turn(self) -> ConversationTurn:
        """Send the (trimmed) history and rebuild the assistant turn."""
        session = self.session
        cancellation = session.cancellation
        request = ModelRequest(
            turns=self._history.trim(session.history),
            # Only the first request carries the system prompt.
            system_prompt=session.system_prompt if self._requests_made == 0 else None,
            tools=self._tools,
            agent_id=self.agent_id,
            agent_type=session.agent_type,
        )
        self._requests_made += 1
        accumulator = BlockAccumulator()
        await self._transition(TurnPhase.STREAMING)

        if self._config.stream_responses:
            stream = self._provider.stream_message(request, cancellation)
            try:
                while True:
                    try:
                        event = await cancellation.race(stream.__anext__(), "streaming")
                    except StopAsyncIteration:
                        break
                    text = accumulator.feed(event)
                    if text:
                        await self._emit_text(text)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    try:
                        await aclose()
                    except RuntimeError:
                        logger.debug("Stream for %s already closing", self.agent_id[:8])
        else:
            message = await cancellation.race(
                self._provider.send_message(request), "request",
            )
            for event in events_from_message(message):
                text = accumulator.feed(event)
                if text:
                    await self._emit_text(text)

        # A stream cut short by cancellation must not reach history.
        cancellation.raise_if_cancelled("stream ended")
        await self._transition(TurnPhase.ACCUMULATING)
        turn = accumulator.finish()
        logger.debug(
            "Agent %s turn %d: %d blocks, %d tool calls, stop_reason=%s",
            self.agent_id[:8], self._requests_made, len(turn.content),
            len(turn.tool_calls), accumulator.stop_reason,
        )
        return turn

    async def _run_batch(
        self, calls: list[ToolCallBlock],
    ) -> tuple[list[ToolResultBlock], str | None]:
        """Validate every call, then dispatch the valid ones concurrently.

        Returns the results in call order and the task_complete summary
        if the batch completed the task.
        """
        slots: list[ToolResultBlock | None] = [None] * len(calls)
        pending: list[tuple[int, ToolCallBlock, dict[str, Any]]] = []

        for index, call in enumerate(calls):
            await fire_event(self._event_callback, {
                "event": "tool_requested",
                "agent_id": self.agent_id,
                "call_id": call.id,
                "tool_name": call.name,
                "arguments": call.arguments,
            })
            try:
                check = self._gate.validate(
                    call.name, call.arguments, call.raw_arguments,
                )
            except CircuitBreakerTrippedError:
                await self._emit_tool_error(call, "circuit breaker tripped")
                raise
            if not check.valid:
                payload = f"Error: {check.error}"
                slots[index] = ToolResultBlock(call.id, payload, is_error=True)
                await self._emit_tool_error(call, check.error or "invalid input")
                continue
            pending.append((index, call, check.arguments or {}))

        executed = await gather_or_cancel(*(
            self._execute(call, arguments) for _, call, arguments in pending
        ))
        summary: str | None = None
        for (index, call, arguments), block in zip(pending, executed):
            slots[index] = block
            if call.name == COMPLETE_TOOL and not block.is_error:
                summary = arguments.get("summary", "")
                await self._emit_text(f"\n{block.payload}\n")

        return [slot for slot in slots if slot is not None], summary

    async def _execute(
        self, call: ToolCallBlock, arguments: dict[str, Any],
    ) -> ToolResultBlock:
        self.session.cancellation.raise_if_cancelled(f"before dispatch of {call.name}")
        try:
            held = await self._check_policy(call, arguments)
            if held is not None:
                result = held
            elif call.name == SPAWN_TOOL:
                result = await self._spawn(arguments)
            else:
                result = await self._dispatcher.dispatch(call.name, arguments)
                if result.success:
                    change = detect_proposed_change(result.output)
                    if change is not None:
                        result = await self._await_approval(call, change)
        except ExecutionCancelledError:
            raise
        except OrchestrationError as exc:
            result = ToolExecutionResult(success=False, error=str(exc))

        payload, is_error = result_payload(result)
        if is_error:
            await self._emit_tool_error(call, result.error or payload)
        else:
            await fire_event(self._event_callback, {
                "event": "tool_result",
                "agent_id": self.agent_id,
                "call_id": call.id,
                "tool_name": call.name,
                "output": payload,
            })
        return ToolResultBlock(call.id, payload, is_error=is_error)

    async def _spawn(self, arguments: dict[str, Any]) -> ToolExecutionResult:
        if self._spawner is None:
            return ToolExecutionResult(
                success=False, error="Agent spawning is not available",
            )
        await self._transition(TurnPhase.SPAWNING)
        requests = [
            SpawnRequest(agent_type=entry["agent_type"], prompt=entry["prompt"])
            for entry in arguments.get("agents", [])
        ]
        text = await self._spawner.spawn(self.session, requests)
        return ToolExecutionResult(success=True, output=text)

    async def _check_policy(
        self, call: ToolCallBlock, arguments: dict[str, Any],
    ) -> ToolExecutionResult | None:
        """Hold *call* for a decision if the approval policy asks for one.

        Returns None when the call may run, otherwise the result to
        report in its place.
        """
        if self._approval_gate is None:
            return None
        verdict = self._approval_gate.check(call.name, arguments)
        if not verdict.requires_approval:
            return None
        await self._transition(TurnPhase.AWAITING_APPROVAL)
        decision = await self._approval_gate.review_call(
            call.name,
            arguments,
            agent_id=self.agent_id,
            call_id=call.id,
            reason=verdict.reason,
            cancellation=self.session.cancellation,
        )
        if decision == ApprovalDecision.APPROVE:
            await self._transition(TurnPhase.DISPATCHING)
            return None
        if decision == ApprovalDecision.EDIT:
            message = CALL_EDIT_MESSAGE
        else:
            message = CALL_REJECTED_MESSAGE
        return ToolExecutionResult(success=True, output=message.format(tool_name=call.name))

    async def _await_approval(
        self, call: ToolCallBlock, change: ProposedChange,
    ) -> ToolExecutionResult:
        if self._approval_gate is None:
            return ToolExecutionResult(
                success=False, error="No approval surface configured; change not applied",
            )
        await self._transition(TurnPhase.AWAITING_APPROVAL)
        return await self._approval_gate.review(
            change,
            agent_id=self.agent_id,
            call_id=call.id,
            tool_name=call.name,
            cancellation=self.session.cancellation,
        )

    async def _emit_tool_error(self, call: ToolCallBlock, error: str) -> None:
        await fire_event(self._event_callback, {
            "event": "tool_error",
            "agent_id": self.agent_id,
            "call_id": call.id,
            "tool_name": call.name,
            "error": error,
        })
