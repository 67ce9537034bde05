"""Round orchestration: sequence rounds, enforce budgets, honour operator commands.

The orchestrator task is the only writer of the Session. Other tasks read it
through ``snapshot()`` and talk to it through the command queue; progress
goes out on the event bus.
"""

import asyncio
import copy
import logging
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field, replace
from functools import partial

from config.config_loader import PromptsConfig
from forge.conflicts import ConflictResolver
from forge.control import Command, CommandKind, CommandQueue
from forge.convergence import ConvergenceDetector, parse_vote
from forge.critique_parser import normalize_scores, parse_critique
from forge.debate import SleepFn, backoff_delay, call_provider, fan_out
from forge.directory import ParticipantDirectory
from forge.errors import ForgeError, OrchestrationInvariant, ParseFailure, RoundFailure, RoundTimeout
from forge.events import (
    ConvergenceChecked,
    CostUpdated,
    ErrorEvent,
    EventBus,
    ParticipantError,
    ParticipantResponded,
    RoundCompleted,
    RoundStarted,
    SessionCompleted,
    SessionPaused,
    SessionResumed,
    SessionStarted,
)
from forge.history import focus_areas, latest_content
from forge.models import (
    ConvergenceRound,
    ConvergenceVote,
    Critique,
    CritiqueRound,
    DraftRound,
    Participant,
    RefinementRound,
    ResolutionStrategy,
    Role,
    Round,
    RoundKind,
    Session,
    SessionStatus,
    SynthesisRound,
    TerminalReason,
    TokenUsage,
    utcnow,
)
from forge.prompts import (
    build_critique_request,
    build_draft_request,
    build_refinement_request,
    build_vote_request,
    summarize_prompt,
)
from forge.providers.base import ModelRequest, ModelResponse, ProviderError
from forge.synthesis import synthesize

logger = logging.getLogger(__name__)

DEFAULT_FOCUS_AREA = "overall quality"
_COMPROMISE_MAX_TOKENS = 1024
_VOTE_MAX_TOKENS = 1024

_FINAL_STATUS = {
    TerminalReason.CONVERGED: SessionStatus.COMPLETE,
    TerminalReason.MAX_ROUNDS: SessionStatus.COMPLETE,
    TerminalReason.MAX_COST: SessionStatus.COMPLETE,
    TerminalReason.MAX_DURATION: SessionStatus.TIMED_OUT,
    TerminalReason.ABORTED: SessionStatus.ABORTED,
    TerminalReason.FAILED: SessionStatus.ABORTED,
}


def _successor(
    kind: RoundKind,
    rounds: list[Round],
    converged: bool,
    depth: int,
    recursive_refinement: bool,
    max_refinement_depth: int,
) -> RoundKind | None:
    if kind is RoundKind.DRAFT:
        return RoundKind.CRITIQUE
    if kind is RoundKind.CRITIQUE:
        return RoundKind.SYNTHESIS
    if kind is RoundKind.SYNTHESIS:
        if recursive_refinement and max_refinement_depth > 0 and focus_areas(rounds):
            return RoundKind.REFINEMENT
        return RoundKind.CONVERGENCE
    if kind is RoundKind.REFINEMENT:
        if recursive_refinement and depth < max_refinement_depth and depth < len(focus_areas(rounds)):
            return RoundKind.REFINEMENT
        return RoundKind.CONVERGENCE
    return None if converged else RoundKind.CRITIQUE


def next_round_kind(
    rounds: list[Round],
    recursive_refinement: bool = False,
    max_refinement_depth: int = 2,
) -> RoundKind | None:
    """Kind of the next round, or None when the last check converged. Pure."""
    if not rounds:
        return RoundKind.DRAFT
    last = rounds[-1]
    return _successor(
        last.kind,
        rounds,
        converged=getattr(last, "converged", False),
        depth=getattr(last, "depth", 0),
        recursive_refinement=recursive_refinement,
        max_refinement_depth=max_refinement_depth,
    )


def kind_after_skip(
    skipped: RoundKind,
    rounds: list[Round],
    recursive_refinement: bool = False,
    max_refinement_depth: int = 2,
) -> RoundKind:
    """Kind to run when ``skipped`` is skipped: as if it ran and did not converge."""
    depth = refinement_depth(rounds) if skipped is RoundKind.REFINEMENT else 0
    return _successor(
        skipped,
        rounds,
        converged=False,
        depth=depth,
        recursive_refinement=recursive_refinement,
        max_refinement_depth=max_refinement_depth,
    )


def refinement_depth(rounds: list[Round]) -> int:
    """Depth the next refinement round would have."""
    if rounds and isinstance(rounds[-1], RefinementRound):
        return rounds[-1].depth + 1
    return 1


def final_status(reason: TerminalReason) -> SessionStatus:
    return _FINAL_STATUS[reason]


@dataclass
class _RoundContext:
    number: int
    kind: RoundKind
    feedback: list[str] = field(default_factory=list)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0


class _Aborted(Exception):
    pass


class RoundOrchestrator:
    """Drives one session from its current history to a terminal status.

    Args:
        session: The session to run. May already hold rounds (resume).
        directory: Resolves participants and their providers.
        prompts: Prompt templates from settings.
        events: Bus for progress events; one is created when omitted.
        commands: Operator command queue; one is created when omitted.
        clock: Monotonic clock used for the session time budget.
        sleep: Awaitable used for retry backoff.
    """

    def __init__(
        self,
        session: Session,
        directory: ParticipantDirectory,
        prompts: PromptsConfig,
        events: EventBus | None = None,
        commands: CommandQueue | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._session = session
        self._config = session.config
        self._directory = directory
        self._prompts = prompts
        self.events = events or EventBus(history=session.config.event_history)
        self.commands = commands or CommandQueue()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._detector = ConvergenceDetector(self._config)
        self._detector.history = [
            r.score for r in session.rounds if isinstance(r, ConvergenceRound) and r.metrics
        ]
        self._feedback: list[str] = []
        self._paused = False
        self._aborted = False
        self._skip_pending = False
        preferred = self._config.preferred_resolution
        self._preferred = ResolutionStrategy(preferred) if preferred else None

    # ---- read side ---------------------------------------------------------

    def snapshot(self) -> Session:
        """Deep copy of the session, consistent with respect to in-flight mutations."""
        with self._lock:
            return copy.deepcopy(self._session)

    # ---- commands ----------------------------------------------------------

    def _apply_command(self, command: Command) -> None:
        if command.kind is CommandKind.ABORT:
            logger.info("Abort requested")
            self._aborted = True
        elif command.kind is CommandKind.PAUSE:
            logger.info("Pause requested")
            self._paused = True
        elif command.kind is CommandKind.RESUME:
            if self._paused:
                logger.info("Resume cancels the pending pause")
            else:
                logger.debug("Resume received while not paused, ignored")
            self._paused = False
        elif command.kind is CommandKind.SKIP_ROUND:
            logger.info("Skip requested for the next round")
            self._skip_pending = True
        elif command.kind is CommandKind.INJECT_FEEDBACK:
            logger.info("Operator feedback queued for the next round")
            self._feedback.append(command.text)

    async def _wait_while_paused(self) -> None:
        number = len(self._session.rounds)
        with self._lock:
            self._session.status = SessionStatus.PAUSED
            self._session.updated_at = utcnow()
        self.events.publish(SessionPaused(round_number=number))
        logger.info("Session paused before round %d", number)

        while True:
            command = await self.commands.receive()
            if command.kind is CommandKind.RESUME:
                self._paused = False
                with self._lock:
                    self._session.status = SessionStatus.IN_PROGRESS
                    self._session.updated_at = utcnow()
                self.events.publish(SessionResumed(round_number=number))
                logger.info("Session resumed")
                return
            if command.kind is CommandKind.ABORT:
                self._aborted = True
                return
            if command.kind is not CommandKind.PAUSE:
                self._apply_command(command)

    # ---- main loop ---------------------------------------------------------

    def _termination(self, started: float) -> TerminalReason | None:
        rounds = self._session.rounds
        if self._aborted:
            return TerminalReason.ABORTED
        if rounds and isinstance(rounds[-1], ConvergenceRound) and rounds[-1].converged:
            return TerminalReason.CONVERGED
        if len(rounds) >= self._config.max_rounds:
            return TerminalReason.MAX_ROUNDS
        if self._session.total_cost_usd >= self._config.max_cost_usd:
            return TerminalReason.MAX_COST
        if self._clock() - started >= self._config.max_duration_sec:
            return TerminalReason.MAX_DURATION
        return None

    def _select_kind(self) -> RoundKind | None:
        rounds = self._session.rounds
        kind = next_round_kind(rounds, self._config.recursive_refinement, self._config.max_refinement_depth)
        if not self._skip_pending or kind is None:
            return kind
        self._skip_pending = False
        if kind is RoundKind.DRAFT:
            logger.warning("Cannot skip the draft round; ignoring skip request")
            return kind
        replacement = kind_after_skip(
            kind, rounds, self._config.recursive_refinement, self._config.max_refinement_depth
        )
        logger.info("Skipping %s round, running %s instead", kind.value, replacement.value)
        return replacement

    async def run(self) -> Session:
        """Run rounds until a termination condition holds. Returns a final snapshot."""
        with self._lock:
            self._session.status = SessionStatus.IN_PROGRESS
            self._session.terminal_reason = None
            self._session.updated_at = utcnow()
        self.events.publish(SessionStarted(session_id=self._session.id, topic=self._session.topic.title))
        logger.info("Session %s started: %s", self._session.id, self._session.topic.title)

        started = self._clock()
        reason: TerminalReason | None = None
        try:
            if not self._session.participants:
                roster = self._directory.roster()
                with self._lock:
                    self._session.participants = roster
            while reason is None:
                for command in self.commands.drain():
                    self._apply_command(command)
                if self._paused and not self._aborted:
                    await self._wait_while_paused()

                reason = self._termination(started)
                if reason is not None:
                    break
                kind = self._select_kind()
                if kind is None:
                    reason = TerminalReason.CONVERGED
                    break
                if not await self._run_round(kind):
                    reason = TerminalReason.ABORTED
        except ForgeError as exc:
            logger.error("Session %s failed: %s", self._session.id, exc)
            self.events.publish(ErrorEvent(message=str(exc), recoverable=False))
            reason = TerminalReason.FAILED

        self._finish(reason)
        return self.snapshot()

    async def _run_round(self, kind: RoundKind) -> bool:
        """Run one round, listening for ABORT meanwhile. False when aborted."""
        number = len(self._session.rounds)
        ctx = _RoundContext(number=number, kind=kind, feedback=list(self._feedback))
        with self._lock:
            self._session.current_round = number
        self.events.publish(RoundStarted(round_number=number, kind=kind))
        logger.info("Round %d: %s", number, kind.value)

        task = asyncio.create_task(self._execute_with_retry(ctx))
        try:
            while not task.done():
                receive = asyncio.create_task(self.commands.receive())
                done, _ = await asyncio.wait({task, receive}, return_when=asyncio.FIRST_COMPLETED)
                if receive not in done:
                    receive.cancel()
                    with suppress(asyncio.CancelledError):
                        await receive
                    break
                command = receive.result()
                if command.kind is CommandKind.ABORT:
                    raise _Aborted
                self._apply_command(command)
        except _Aborted:
            self._aborted = True
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            logger.info("Round %d discarded on abort", number)
            return False

        rnd = task.result()
        self._commit(ctx, rnd)
        return True

    async def _execute_with_retry(self, ctx: _RoundContext) -> Round:
        timeout = self._config.timeout_for(ctx.kind.value)
        attempt = 0
        while True:
            ctx.tokens = TokenUsage()
            ctx.cost_usd = 0.0
            try:
                return await asyncio.wait_for(self._execute(ctx), timeout=timeout)
            except asyncio.TimeoutError:
                error = RoundTimeout(ctx.kind.value, timeout)
            self.events.publish(ErrorEvent(message=str(error), recoverable=True))
            if attempt >= self._config.max_retries:
                raise RoundFailure(
                    ctx.kind.value, f"timed out {attempt + 1} times"
                ) from error
            delay = backoff_delay(self._config.retry_base_delay_sec, attempt)
            attempt += 1
            logger.warning("%s; retry %d/%d in %.1fs", error, attempt, self._config.max_retries, delay)
            await self._sleep(delay)

    def _execute(self, ctx: _RoundContext):
        executors = {
            RoundKind.DRAFT: self._draft,
            RoundKind.CRITIQUE: self._critique,
            RoundKind.SYNTHESIS: self._synthesis,
            RoundKind.REFINEMENT: self._refinement,
            RoundKind.CONVERGENCE: self._convergence,
        }
        return executors[ctx.kind](ctx)

    def _commit(self, ctx: _RoundContext, rnd: Round) -> None:
        rnd.tokens = ctx.tokens
        rnd.cost_usd = ctx.cost_usd
        with self._lock:
            if rnd.number != len(self._session.rounds):
                raise OrchestrationInvariant(
                    f"round {rnd.number} committed at position {len(self._session.rounds)}"
                )
            self._session.rounds.append(rnd)
            self._session.total_tokens.add(rnd.tokens)
            self._session.total_cost_usd += rnd.cost_usd
            self._session.updated_at = utcnow()
            total_cost = self._session.total_cost_usd
        # feedback that arrived during the round is kept for the next one
        self._feedback = self._feedback[len(ctx.feedback):]

        self.events.publish(
            RoundCompleted(round_number=rnd.number, kind=rnd.kind, tokens=copy.copy(rnd.tokens))
        )
        self.events.publish(
            CostUpdated(total_usd=total_cost, remaining_usd=max(0.0, self._config.max_cost_usd - total_cost))
        )
        if isinstance(rnd, ConvergenceRound):
            self.events.publish(ConvergenceChecked(score=rnd.score, converged=rnd.converged))
        logger.info(
            "Round %d (%s) committed: %d tokens, $%.4f",
            rnd.number, rnd.kind.value, rnd.tokens.total, rnd.cost_usd,
        )

    def _finish(self, reason: TerminalReason) -> None:
        with self._lock:
            session = self._session
            session.terminal_reason = reason
            session.final_content = latest_content(session.rounds)
            if reason is TerminalReason.CONVERGED:
                session.status = SessionStatus.CONVERGED
                logger.info("Session %s converged after %d rounds", session.id, len(session.rounds))
            session.status = final_status(reason)
            session.updated_at = utcnow()
            status, final_content = session.status, session.final_content
        self.events.publish(SessionCompleted(status=status, reason=reason.value, final_content=final_content))
        logger.info("Session %s finished: %s (%s)", self._session.id, status.value, reason.value)

    # ---- invocation --------------------------------------------------------

    async def _invoke(self, ctx: _RoundContext, participant: Participant, request: ModelRequest) -> ModelResponse:
        """Call a participant's provider, falling back to other healthy models.

        Raises:
            ProviderError: The last failure when every candidate failed.
        """
        if participant.is_human:
            raise OrchestrationInvariant(f"human participant {participant.display_name} cannot be invoked")

        candidates = [participant]
        if self._config.allow_fallback:
            candidates += self._directory.fallbacks_for(participant)

        error: ProviderError | None = None
        for i, candidate in enumerate(candidates):
            provider = self._directory.provider_for(candidate)
            result = await call_provider(
                provider,
                request,
                max_retries=self._config.max_retries if i == 0 else 0,
                base_delay=self._config.retry_base_delay_sec,
                sleep=self._sleep,
            )
            if isinstance(result, ModelResponse):
                usage = TokenUsage(input=result.input_tokens, output=result.output_tokens)
                ctx.tokens.add(usage)
                ctx.cost_usd += provider.cost_usd(result)
                self.events.publish(
                    ParticipantResponded(participant=candidate.display_name, tokens=usage, latency_sec=result.latency_sec)
                )
                return result

            error = result
            retrying_with = candidates[i + 1].display_name if i + 1 < len(candidates) else None
            self.events.publish(
                ParticipantError(participant=candidate.display_name, error=str(result), retrying_with=retrying_with)
            )
            if retrying_with:
                logger.warning("%s failed, falling back to %s", candidate.display_name, retrying_with)
        raise error

    def _require_content(self, kind: RoundKind) -> str:
        content = latest_content(self._session.rounds)
        if content is None:
            raise OrchestrationInvariant(f"{kind.value} round requested before any draft exists")
        return content

    def _check_contributors(self, kind: RoundKind, count: int, requested: int) -> None:
        minimum = self._config.min_contributors_for(kind.value)
        if count < minimum:
            raise RoundFailure(kind.value, f"{count} of {requested} contributions usable, need {minimum}")
        if count < requested:
            logger.warning("%s round: %d/%d contributions usable", kind.value, count, requested)

    # ---- round executors ---------------------------------------------------

    async def _draft(self, ctx: _RoundContext) -> DraftRound:
        drafter = self._directory.resolve(Role.DRAFTER)
        request = build_draft_request(
            self._prompts, drafter, self._session.topic, ctx.feedback, self._config.max_output_tokens
        )
        started = time.monotonic()
        try:
            response = await self._invoke(ctx, drafter, request)
        except ProviderError as exc:
            raise RoundFailure(ctx.kind.value, str(exc)) from exc
        if not response.content.strip():
            raise RoundFailure(ctx.kind.value, f"{drafter.display_name} returned empty content")
        return DraftRound(
            number=ctx.number,
            drafter=drafter,
            content=response.content.strip(),
            prompt_summary=summarize_prompt(self._session.topic),
            duration_sec=time.monotonic() - started,
        )

    async def _critique_one(self, ctx: _RoundContext, critic: Participant, content: str) -> Critique | None:
        request = build_critique_request(
            self._prompts, critic, self._session.topic, content, ctx.feedback, self._config.max_output_tokens
        )
        try:
            response = await self._invoke(ctx, critic, request)
            return parse_critique(
                response.content,
                critic,
                tokens=TokenUsage(input=response.input_tokens, output=response.output_tokens),
                duration_sec=response.latency_sec,
            )
        except (ProviderError, ParseFailure) as exc:
            if isinstance(exc, ProviderError) and not exc.recoverable:
                raise RoundFailure(ctx.kind.value, str(exc)) from exc
            self.events.publish(ErrorEvent(message=str(exc), recoverable=True))
            logger.warning("Critique from %s dropped: %s", critic.display_name, exc)
            return None

    async def _critique(self, ctx: _RoundContext) -> CritiqueRound:
        content = self._require_content(ctx.kind)
        critics = [c for c in self._directory.resolve_all(Role.CRITIC) if not c.is_human]
        results = await fan_out(
            [partial(self._critique_one, ctx, critic, content) for critic in critics],
            parallel=self._config.parallel,
        )
        critiques = [c for c in results if c is not None]
        self._check_contributors(ctx.kind, len(critiques), len(critics))

        scores = normalize_scores([c.score for c in critiques])
        critiques = [replace(c, score=s) for c, s in zip(critiques, scores)]
        return CritiqueRound(number=ctx.number, critiques=critiques)

    async def _synthesis(self, ctx: _RoundContext) -> SynthesisRound:
        self._require_content(ctx.kind)
        synthesizer = self._directory.resolve(Role.SYNTHESIZER)
        invoke = partial(self._invoke, ctx)
        resolver = ConflictResolver(
            invoke=invoke,
            synthesizer=synthesizer,
            prompts=self._prompts,
            preferred=self._preferred,
            max_tokens=_COMPROMISE_MAX_TOKENS,
        )
        try:
            outcome = await synthesize(
                self._session.topic,
                self._session.rounds,
                synthesizer,
                invoke,
                self._prompts,
                resolver,
                feedback=ctx.feedback,
                max_tokens=self._config.max_output_tokens,
            )
        except ProviderError as exc:
            raise RoundFailure(ctx.kind.value, str(exc)) from exc
        return SynthesisRound(
            number=ctx.number,
            synthesizer=synthesizer,
            content=outcome.content,
            resolved_conflicts=outcome.resolutions,
            changes=outcome.changes,
        )

    async def _refinement(self, ctx: _RoundContext) -> RefinementRound:
        content = self._require_content(ctx.kind)
        rounds = self._session.rounds
        depth = refinement_depth(rounds)
        areas = focus_areas(rounds)
        focus = areas[min(depth, len(areas)) - 1] if areas else DEFAULT_FOCUS_AREA
        refiner = self._directory.resolve(Role.SYNTHESIZER)
        request = build_refinement_request(
            self._prompts, refiner, self._session.topic, content, focus, depth, ctx.feedback,
            self._config.max_output_tokens,
        )
        try:
            response = await self._invoke(ctx, refiner, request)
        except ProviderError as exc:
            raise RoundFailure(ctx.kind.value, str(exc)) from exc
        return RefinementRound(
            number=ctx.number,
            refiner=refiner,
            focus_area=focus,
            content=response.content.strip() or content,
            depth=depth,
        )

    async def _vote_one(self, ctx: _RoundContext, voter: Participant, content: str) -> ConvergenceVote | None:
        request = build_vote_request(self._prompts, voter, self._session.topic, content, _VOTE_MAX_TOKENS)
        try:
            response = await self._invoke(ctx, voter, request)
        except ProviderError as exc:
            if not exc.recoverable:
                raise RoundFailure(ctx.kind.value, str(exc)) from exc
            self.events.publish(ErrorEvent(message=str(exc), recoverable=True))
            logger.warning("Vote from %s dropped: %s", voter.display_name, exc)
            return None
        return parse_vote(response.content, voter)

    async def _convergence(self, ctx: _RoundContext) -> ConvergenceRound:
        content = self._require_content(ctx.kind)
        rounds = self._session.rounds
        votes: list[ConvergenceVote] = []
        voters: list[Participant] = []
        if self._detector.ready(rounds):
            voters = self._directory.voters()
            results = await fan_out(
                [partial(self._vote_one, ctx, voter, content) for voter in voters],
                parallel=self._config.parallel,
            )
            votes = [v for v in results if v is not None]
            self._check_contributors(ctx.kind, len(votes), len(voters))

        result = self._detector.evaluate(rounds, votes, len(voters))
        return ConvergenceRound(
            number=ctx.number,
            score=result.score,
            converged=result.converged,
            votes=result.votes,
            remaining_issues=result.remaining_issues,
            metrics=result.metrics,
            trend=result.trend,
            stalled=result.stalled,
        )
