"""
CMDFORGE Controller — The Pipeline Coordinator

It is NOT smart. It is deterministic.

Pipeline per run:
  idle → generating → awaiting_confirmation → executing → idle
  awaiting_confirmation → idle   (cancel: nothing recorded)

Responsibilities:
  - Reject a second generate while one is in flight (guard, not a queue)
  - Compose the prompt from the request + the history it owns
  - Screen generated code before anything executes
  - Snapshot the request/code pair taken into execution
  - Record exactly one ConversationEntry per finished run, failures included

It never writes code. It only coordinates.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from cmdforge.config_loader import CmdForgeConfig, load_config
from cmdforge.event_bus import EventBus
from cmdforge.executor import ExecutionEngine
from cmdforge.history import HistoryRing
from cmdforge.models import (
    ConversationEntry,
    GeneratedCode,
    GenerationResult,
    PipelineState,
    SafetyVerdict,
)
from cmdforge.prompts import compose
from cmdforge.providers import Provider
from cmdforge.router import Router
from cmdforge.safety import CodeSafetyValidator
from cmdforge.settings import SettingsStore

Approver = Callable[[GenerationResult], Union[bool, Awaitable[bool]]]


class PipelineBusyError(Exception):
    """A generation or execution is already in flight."""
    pass


class PipelineStateError(Exception):
    """Operation not valid in the current pipeline state."""
    pass


@dataclass(frozen=True)
class PendingRun:
    """Generated artifact waiting for the user's go/no-go."""
    request: str
    provider: Provider
    model: str
    code: GeneratedCode
    verdict: SafetyVerdict


class Controller:
    """
    The CMDFORGE pipeline coordinator.

    Owns the HistoryRing. The front end drives it with
    generate() → confirm()/cancel(), or run() for the whole cycle.
    """

    def __init__(
        self,
        config: CmdForgeConfig | None = None,
        settings: SettingsStore | None = None,
        router: Router | None = None,
        executor: ExecutionEngine | None = None,
        validator: CodeSafetyValidator | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config or load_config()
        self.settings = settings or SettingsStore(default_provider=self.config.default_provider)
        self.router = router or Router(self.settings, self.config)
        self.executor = executor or ExecutionEngine(self.config.execution)
        self.validator = validator or CodeSafetyValidator()
        self.bus = bus or EventBus()

        self._history = HistoryRing()
        self._state = PipelineState.IDLE
        self._pending: PendingRun | None = None

    # -- read-only views ----------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def pending(self) -> PendingRun | None:
        return self._pending

    @property
    def history(self) -> tuple[ConversationEntry, ...]:
        return self._history.snapshot()

    def clear_history(self) -> None:
        self._history.clear()

    def is_connected(self, provider: Provider | str | None = None) -> bool:
        return self.router.is_connected(provider or self.settings.get_selected_provider())

    async def available_models(self, provider: Provider | str | None = None) -> list[str]:
        return await self.router.available_models(provider or self.settings.get_selected_provider())

    # -- pipeline -----------------------------------------------------------

    async def generate(
        self,
        request: str,
        provider: Provider | str | None = None,
        model: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Turn a request into screened code and park it for confirmation.

        Provider failures do not raise: they are recorded in history and
        returned in `GenerationResult.error`.
        """
        if self._state in (PipelineState.GENERATING, PipelineState.EXECUTING):
            raise PipelineBusyError(f"Pipeline is busy ({self._state.value}).")
        if not request.strip():
            raise ValueError("Request is empty.")

        provider = Provider.parse(provider) if provider else self.settings.get_selected_provider()
        model = model or self.settings.get_selected_model(provider)

        self._pending = None
        self._state = PipelineState.GENERATING
        self._emit("generation_started", {"provider": provider.value, "model": model})

        try:
            prompt = compose(request, provider, self._history.snapshot())
            code = await self.router.generate(prompt, provider, model, cancel=cancel)
        except Exception as e:
            message = f"Error generating code: {e}"
            logger.warning(f"[CONTROLLER] {message}")
            self._record(request, "", message)
            self._state = PipelineState.IDLE
            self._emit("generation_failed", {"provider": provider.value, "error": str(e)})
            return GenerationResult(
                request=request, provider=provider.value, model=model, error=message,
            )
        except BaseException:
            self._state = PipelineState.IDLE
            raise

        verdict = self.validator.review(code.code)
        self._pending = PendingRun(
            request=request, provider=provider, model=model, code=code, verdict=verdict,
        )
        self._state = PipelineState.AWAITING_CONFIRMATION
        self._emit("code_generated", {
            "provider": provider.value,
            "model": model,
            "code_chars": len(code.code),
            "acceptable": verdict.acceptable,
        })
        return GenerationResult(
            request=request, provider=provider.value, model=model, code=code, verdict=verdict,
        )

    async def confirm(
        self,
        code: str | None = None,
        override_safety: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> ConversationEntry:
        """Execute the pending artifact and record the run.

        `code` replaces the pending code (the user edited it before
        confirming); it is re-screened.
        """
        if self._state is not PipelineState.AWAITING_CONFIRMATION or self._pending is None:
            raise PipelineStateError(f"Nothing to confirm (state: {self._state.value}).")

        # Snapshot what goes into this run before anything awaits
        pending = self._pending
        request = pending.request
        source = pending.code.code if code is None else code
        verdict = pending.verdict if code is None else self.validator.review(source)

        self._pending = None
        self._state = PipelineState.EXECUTING

        result = "Error: Execution did not complete"
        try:
            result = await self._execute(source, verdict, override_safety, cancel)
        except Exception as e:
            logger.error(f"[CONTROLLER] Execution step failed: {e}")
            result = f"Error: {e}"
        finally:
            entry = self._record(request, source, result)
            self._state = PipelineState.IDLE

        return entry

    def cancel(self) -> None:
        """Drop the pending artifact without running or recording it."""
        if self._state is not PipelineState.AWAITING_CONFIRMATION:
            return
        self._pending = None
        self._state = PipelineState.IDLE
        self._emit("pending_cancelled", {})

    async def run(
        self,
        request: str,
        approve: Approver,
        provider: Provider | str | None = None,
        model: str | None = None,
    ) -> ConversationEntry | None:
        """generate → approve → confirm/cancel in one call.

        Returns the recorded entry, or None when the user declined.
        """
        generated = await self.generate(request, provider=provider, model=model)
        if not generated.ok:
            return self._history.latest()

        approved = approve(generated)
        if inspect.isawaitable(approved):
            approved = await approved

        if not approved:
            self.cancel()
            return None
        return await self.confirm()

    # -- internals ----------------------------------------------------------

    async def _execute(
        self,
        source: str,
        verdict: SafetyVerdict,
        override_safety: bool,
        cancel: asyncio.Event | None,
    ) -> str:
        if not verdict.acceptable:
            if self.config.safety.enforce and not override_safety:
                self._emit("execution_blocked", {"reason": verdict.reason})
                return f"Error: Code rejected by safety policy ({verdict.reason})"
            logger.warning(f"[CONTROLLER] Running code the validator rejected: {verdict.reason}")

        self._emit("execution_started", {"interpreter": self.executor.interpreter})
        outcome = await self.executor.execute(source, cancel=cancel)
        self._emit("execution_finished", {
            "status": outcome.status,
            "exit_code": outcome.exit_code,
            "duration_seconds": round(outcome.duration_seconds, 3),
        })
        return outcome.display()

    def _record(self, request: str, code: str, result: str | None) -> ConversationEntry:
        entry = ConversationEntry(
            user_request=request,
            generated_code=code,
            execution_result=result,
        )
        self._history.append(entry)
        self._emit("history_recorded", {"entries": len(self._history)})
        return entry

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.debug(f"[EVENT] {event_type}: {payload}")
        self.bus.emit(event_type, "controller", payload)
