"""SMADR pipeline: strategize, four drafts, four critique passes, one synthesis."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Callable, Awaitable, Protocol

from .config import AGENT_COUNT
from .errors import PipelineError, PipelineBusyError, PipelineCancelledError
from .providers import generate, Turn, ProviderConfig, ROLE_USER
from .prompts import (
    STRATEGIST_SYSTEM_INSTRUCTION,
    INITIAL_SYSTEM_INSTRUCTION,
    REFINEMENT_SYSTEM_INSTRUCTION,
    SYNTHESIZER_SYSTEM_INSTRUCTION,
    build_planned_query,
    with_internal_context,
    build_refinement_context,
    build_synthesis_context,
    strategizing_label,
    initializing_label,
    refining_label,
    synthesizing_label,
)

logger = logging.getLogger(__name__)

GenerateFn = Callable[[Sequence[Turn], str, ProviderConfig], Awaitable[str]]
ProgressFn = Callable[[str], None]


class PipelineState(str, Enum):
    IDLE = "idle"
    STRATEGIZING = "strategizing"
    INITIALIZING = "initializing"
    REFINING = "refining"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"


_STATE_ORDER = [
    PipelineState.IDLE,
    PipelineState.STRATEGIZING,
    PipelineState.INITIALIZING,
    PipelineState.REFINING,
    PipelineState.SYNTHESIZING,
    PipelineState.DONE,
]

_TERMINAL_STATES = {PipelineState.DONE, PipelineState.FAILED}


class ProgressSink(Protocol):
    """Receives stage labels during a run and exactly one terminal event."""

    def on_progress(self, label: str) -> None: ...
    def on_complete(self, text: str) -> None: ...
    def on_error(self, error: PipelineError) -> None: ...


@dataclass
class RequestContext:
    """Everything one submission accumulates; dropped once the run ends."""
    history: Tuple[Turn, ...]
    user_query: str
    config: ProviderConfig
    plan: Optional[str] = None
    initial_results: List[str] = field(default_factory=list)
    refined_results: List[str] = field(default_factory=list)
    state: PipelineState = PipelineState.IDLE
    slot: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def planned_query(self) -> str:
        if self.plan is None:
            raise RuntimeError("Execution plan is not available before strategizing")
        return build_planned_query(self.user_query, self.plan)

    def advance(self, state: PipelineState, slot: Optional[int] = None) -> None:
        """Move forward; the same state is only re-entered with a higher slot."""
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"Cannot leave terminal state {self.state.value}")
        if state == PipelineState.FAILED:
            raise RuntimeError("Use fail() to enter the failed state")

        current = _STATE_ORDER.index(self.state)
        target = _STATE_ORDER.index(state)
        if target < current:
            raise RuntimeError(f"Backward transition {self.state.value} -> {state.value}")
        if target == current:
            if slot is None or self.slot is None or slot <= self.slot:
                raise RuntimeError(f"Repeated transition into {state.value}")

        self.state = state
        self.slot = slot

    def fail(self, error: Exception) -> None:
        if self.state in _TERMINAL_STATES:
            return
        self.state = PipelineState.FAILED
        self.error = error


class Pipeline:
    """
    Single-flight orchestrator for one chat session.

    Every provider call runs one after another; at most one request is in
    flight per instance.
    """

    def __init__(self, generate_fn: Optional[GenerateFn] = None, agent_count: int = AGENT_COUNT):
        self._generate = generate_fn
        self.agent_count = agent_count
        self._context: Optional[RequestContext] = None
        self._reserved = False

    @property
    def is_running(self) -> bool:
        return self._reserved or self._context is not None

    def reserve(self):
        """
        Claim the pipeline for a request that will start shortly.

        Lets a caller reject a second submission before any work is
        scheduled. The claim is handed over with run(..., reserved=True)
        and dropped when that run finishes.
        """
        if self.is_running:
            raise PipelineBusyError("A request is already running for this conversation.")
        self._reserved = True

    def release(self):
        self._reserved = False

    @property
    def state(self) -> PipelineState:
        if self._context is None:
            return PipelineState.IDLE
        return self._context.state

    async def run(
        self,
        history: Sequence[Turn],
        user_query: str,
        config: ProviderConfig,
        on_progress: Optional[ProgressFn] = None,
        cancel: Optional[asyncio.Event] = None,
        reserved: bool = False,
    ) -> Optional[str]:
        """
        Run the full pipeline for one user query.

        Args:
            history: Prior conversation turns (snapshot, not mutated)
            user_query: The new user message
            config: Provider configuration captured for this request
            on_progress: Called with a stage label before each provider call
            cancel: Checked before each provider call
            reserved: The caller already holds the claim from reserve()

        Returns:
            Final synthesized text, or None when the query is blank

        Raises:
            PipelineError subclasses; nothing partial is returned
        """
        if not user_query or not user_query.strip():
            if reserved:
                self.release()
            return None
        if not reserved:
            self.reserve()
        elif self._context is not None:
            raise PipelineBusyError("A request is already running for this conversation.")

        ctx = RequestContext(history=tuple(history), user_query=user_query, config=config)
        self._context = ctx
        try:
            config.require_credential()
            final_text = await self._execute(ctx, on_progress, cancel)
            ctx.advance(PipelineState.DONE)
            logger.info("Pipeline finished with %s/%s", config.provider.value, config.model)
            return final_text
        except Exception as e:
            ctx.fail(e)
            logger.warning("Pipeline failed: %s", e)
            raise
        finally:
            self._context = None
            self.release()

    async def submit(
        self,
        history: Sequence[Turn],
        user_query: str,
        config: ProviderConfig,
        sink: ProgressSink,
        cancel: Optional[asyncio.Event] = None,
        reserved: bool = False,
    ) -> Optional[str]:
        """Run and report to a sink instead of raising pipeline errors."""
        try:
            final_text = await self.run(
                history, user_query, config,
                on_progress=sink.on_progress, cancel=cancel, reserved=reserved,
            )
        except PipelineError as e:
            sink.on_error(e)
            return None
        if final_text is not None:
            sink.on_complete(final_text)
        return final_text

    async def _execute(
        self,
        ctx: RequestContext,
        on_progress: Optional[ProgressFn],
        cancel: Optional[asyncio.Event],
    ) -> str:
        history = list(ctx.history)
        total = self.agent_count

        # Stage 0: Strategize
        user_turn = Turn(ROLE_USER, ctx.user_query)
        ctx.plan = await self._call(
            ctx, PipelineState.STRATEGIZING, None, strategizing_label(),
            history + [user_turn], STRATEGIST_SYSTEM_INSTRUCTION, on_progress, cancel,
        )
        planned_query = ctx.planned_query
        planned_turn = Turn(ROLE_USER, planned_query)

        # Stage 1: Initial responses (sequential)
        for slot in range(total):
            response = await self._call(
                ctx, PipelineState.INITIALIZING, slot, initializing_label(slot, total),
                history + [planned_turn], INITIAL_SYSTEM_INSTRUCTION, on_progress, cancel,
            )
            ctx.initial_results.append(response)

        # Stage 2: Refined responses (sequential)
        for slot in range(total):
            own = ctx.initial_results[slot]
            peers = [r for j, r in enumerate(ctx.initial_results) if j != slot]
            refinement_turn = Turn(
                ROLE_USER,
                with_internal_context(planned_query, build_refinement_context(own, peers)),
            )
            response = await self._call(
                ctx, PipelineState.REFINING, slot, refining_label(slot, total),
                history + [refinement_turn], REFINEMENT_SYSTEM_INSTRUCTION, on_progress, cancel,
            )
            ctx.refined_results.append(response)

        # Stage 3: Final synthesis
        synthesis_turn = Turn(
            ROLE_USER,
            with_internal_context(planned_query, build_synthesis_context(ctx.refined_results)),
        )
        return await self._call(
            ctx, PipelineState.SYNTHESIZING, None, synthesizing_label(),
            history + [synthesis_turn], SYNTHESIZER_SYSTEM_INSTRUCTION, on_progress, cancel,
        )

    async def _call(
        self,
        ctx: RequestContext,
        state: PipelineState,
        slot: Optional[int],
        label: str,
        conversation: List[Turn],
        system_instruction: str,
        on_progress: Optional[ProgressFn],
        cancel: Optional[asyncio.Event],
    ) -> str:
        if cancel is not None and cancel.is_set():
            raise PipelineCancelledError("Request was cancelled.")
        ctx.advance(state, slot)
        logger.info(label)
        if on_progress:
            on_progress(label)
        generate_fn = self._generate or generate
        return await generate_fn(conversation, system_instruction, ctx.config)
