import re
import math
import time
import uuid
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from research_relay.config import settings
from research_relay.core.providers import BaseProvider, Messages
from research_relay.core.router import ServiceRouter
from research_relay.errors import (
    NotFoundError,
    ProviderError,
    ResearchNotReadyError,
    SessionNotFoundError,
    ValidationError,
)
from research_relay.models.job import JobStatus, ResearchOptions, ResearchRequestData, ResearchResult
from research_relay.models.schemas import FollowUpResponse, SubmitResult
from research_relay.models.session import FollowUpExchange, SessionContext
from research_relay.services.context_store import SessionContextStore
from research_relay.services.cost_tracker import CostTracker
from research_relay.services.job_manager import JobManager

logger = logging.getLogger(__name__)

CLARIFYING_SYSTEM_PROMPT = (
    "You are a research assistant. Before researching a topic, ask the clarifying questions "
    "that would most change the scope or focus of the research. Reply with 3 to 5 questions, "
    "one per line, numbered, and nothing else."
)

FOLLOW_UP_SYSTEM_PROMPT = (
    "You are a research assistant answering follow-up questions about research you have "
    "already done. Base your answer on the research findings below and cite the listed "
    "sources by URL where they support a claim. Say so when the findings do not cover the question."
)

_QUESTION_MARKER = re.compile(r"^\s*(?:\d+[.)]|[-*•]|Q\d*[:.])\s*")


def parse_clarifying_questions(text: str, limit: int = 5) -> List[str]:
    """Pulls the numbered or bulleted lines out of a model reply."""
    questions = []
    for line in (text or "").splitlines():
        if not _QUESTION_MARKER.match(line):
            continue
        question = _QUESTION_MARKER.sub("", line, count=1).strip()
        if question:
            questions.append(question)
    return questions[:limit]


class ResearchOrchestrator:
    """
    Decides whether a research request is answered synchronously or handed
    back as a job, and keeps the job manager in step with provider outcomes.

    - Rate limited (locally, or HTTP 429 from the vendor): a queued job is
      created and the provider is not called.
    - Deep requests: a job is created and moved to 'processing' before the
      provider call, then completed or failed with its outcome.
    - Everything else: the provider answer is returned directly and no job
      is created.

    Provider errors are never retried here. On job paths they become the
    job's error; on the synchronous path they propagate to the caller.

    With `run_in_background` set, deep jobs and deferred jobs run as asyncio
    tasks and `submit` returns as soon as the job exists.

    With a `context_store`, every job-backed request opens a research session
    and `answer_follow_up` answers further questions from the job's result.
    """

    def __init__(
        self,
        job_manager: JobManager,
        rate_limiter,
        providers: Dict[str, BaseProvider],
        router: Optional[ServiceRouter] = None,
        cost_tracker: Optional[CostTracker] = None,
        context_store: Optional[SessionContextStore] = None,
        run_in_background: bool = False,
        min_query_length: Optional[int] = None,
        deep_estimated_seconds: Optional[int] = None,
        deferred_max_wait_seconds: Optional[float] = None,
        follow_up_service: Optional[str] = None,
        clarifying_questions_max: Optional[int] = None,
        vendor_retry_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.job_manager = job_manager
        self.rate_limiter = rate_limiter
        self.providers = providers
        self.router = router or ServiceRouter()
        self.cost_tracker = cost_tracker
        self.context_store = context_store
        self.run_in_background = run_in_background
        self.min_query_length = min_query_length if min_query_length is not None else settings.MIN_QUERY_LENGTH
        self.deep_estimated_seconds = (
            deep_estimated_seconds if deep_estimated_seconds is not None else settings.DEEP_RESEARCH_ESTIMATED_SECONDS
        )
        self.deferred_max_wait_seconds = (
            deferred_max_wait_seconds if deferred_max_wait_seconds is not None else settings.DEFERRED_MAX_WAIT_SECONDS
        )
        self.follow_up_service = follow_up_service or settings.FOLLOW_UP_SERVICE
        self.clarifying_questions_max = clarifying_questions_max or settings.CLARIFYING_QUESTIONS_MAX
        self.vendor_retry_seconds = vendor_retry_seconds
        self._sleep = sleep
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def submit(
        self,
        query: str,
        options: Union[ResearchOptions, Dict[str, Any], None] = None,
        session_id: Optional[str] = None,
    ) -> SubmitResult:
        self._validate_query(query)
        options = self._coerce_options(options)
        route = self.router.route(query, options)
        provider = self._provider(route.service)

        data = ResearchRequestData(
            query=query,
            options=options.model_copy(update={"deep": route.deep, "service": route.service}),
            session_id=session_id or self._new_session_id(),
        )

        if not self.rate_limiter.track_request(route.rate_limit_key):
            logger.info(f"Deferring request to {route.service}: local rate limit reached for '{route.rate_limit_key}'")
            return self._defer(data, self._seconds_until_reset(route.rate_limit_key))

        if route.deep:
            job = self.job_manager.create_job(data)
            self.job_manager.update_job_status(job.job_id, JobStatus.PROCESSING, progress=10)
            self._open_session(data, job.job_id)
            logger.info(f"Starting deep research job {job.job_id} on {route.service}")
            if self.run_in_background:
                self._spawn(self._execute_job(job.job_id, provider, data))
            else:
                await self._execute_job(job.job_id, provider, data)
            return SubmitResult(
                mode="async",
                job_id=job.job_id,
                estimated_time=self.deep_estimated_seconds,
                session_id=self._session_handle(data),
            )

        try:
            result = await provider.query(self._build_messages(data), data.options)
        except ProviderError as e:
            if e.is_rate_limited:
                logger.warning(f"{route.service} reported a rate limit (HTTP 429); deferring request.")
                return self._defer(data, self.vendor_retry_seconds)
            logger.error(f"Synchronous request to {route.service} failed: {e}")
            raise

        self._track_cost(result, route.service)
        return SubmitResult(mode="sync", result=result)

    async def run_deferred(self, job_id: str, initial_delay: float = 0) -> None:
        """
        Runs a queued job once its rate limit window admits it. Gives up and
        fails the job after `deferred_max_wait_seconds`. A job deleted before
        or during the wait is dropped quietly.
        """
        try:
            job = self.job_manager.get_job_status(job_id)
        except NotFoundError:
            logger.warning(f"Job {job_id} was deleted before its deferred run started.")
            return
        if job.status != JobStatus.QUEUED:
            logger.warning(f"Job {job_id} is '{job.status.value}', not queued; skipping deferred run.")
            return

        route = self.router.route(job.data.query, job.data.options)
        provider = self._provider(route.service)

        waited = 0.0
        if initial_delay > 0:
            await self._sleep(initial_delay)
            waited += initial_delay

        while not self.rate_limiter.track_request(route.rate_limit_key):
            if waited >= self.deferred_max_wait_seconds:
                logger.error(f"Job {job_id} waited {waited:.0f}s for '{route.rate_limit_key}' without being admitted.")
                try:
                    self.job_manager.update_job_status(job_id, JobStatus.PROCESSING)
                    self.job_manager.fail_job(
                        job_id, f"Rate limit for {route.service} did not clear within {self.deferred_max_wait_seconds:g} seconds."
                    )
                except NotFoundError:
                    logger.warning(f"Job {job_id} was deleted while waiting for its rate limit window.")
                return
            delay = max(self._seconds_until_reset(route.rate_limit_key) or 1.0, 0.5)
            logger.debug(f"Job {job_id} waiting {delay:.1f}s for rate limit '{route.rate_limit_key}'")
            await self._sleep(delay)
            waited += delay

        try:
            self.job_manager.update_job_status(job_id, JobStatus.PROCESSING, progress=10)
        except NotFoundError:
            logger.warning(f"Job {job_id} was deleted while waiting for its rate limit window.")
            return
        logger.info(f"Running deferred job {job_id} on {route.service}")
        await self._execute_job(job_id, provider, job.data)

    async def answer_follow_up(
        self, session_id: str, query: str, answers: Optional[Dict[str, str]] = None
    ) -> FollowUpResponse:
        """
        Answers a follow-up question from the session's completed research and
        appends the exchange to the session history.

        Raises SessionNotFoundError for an unknown or expired session and
        ResearchNotReadyError while the session's job has no result.
        """
        self._validate_query(query)
        if self.context_store is None:
            raise ValidationError("Research sessions are not enabled.")
        answers = dict(answers or {})

        context = self.context_store.get_context(session_id)
        research = self._completed_research(context)

        service = self.follow_up_service
        provider = self._provider(service)
        if not self.rate_limiter.track_request(service):
            retry_after = self._seconds_until_reset(service)
            raise ProviderError(
                f"Rate limit reached for {service}; try again in {math.ceil(retry_after or 1)} seconds.",
                status=429,
                service=service,
            )

        messages: Messages = []
        for exchange in context.history:
            messages.append({"role": "user", "content": exchange.query})
            messages.append({"role": "assistant", "content": exchange.answer})
        messages.append({"role": "user", "content": query})

        options = ResearchOptions(service=service, system_prompt=self._follow_up_prompt(research, answers))
        result = await provider.query(messages, options)
        self._track_cost(result, service)

        exchange = FollowUpExchange(query=query, answer=result.content, answers=answers)
        try:
            self.context_store.update_context(
                session_id, lambda ctx: ctx.model_copy(update={"history": ctx.history + [exchange]})
            )
        except SessionNotFoundError:
            logger.warning(f"Session {session_id} was removed while a follow-up was being answered.")

        logger.info(f"Answered follow-up in session {session_id} ({len(context.history) + 1} exchanges).")
        return FollowUpResponse(
            session_id=session_id,
            query=query,
            response=result.content,
            citations=list(research.citations),
            model=result.model,
        )

    async def generate_clarifying_questions(self, query: str) -> List[str]:
        """Asks the follow-up provider for questions that would sharpen research on `query`."""
        self._validate_query(query)
        service = self.follow_up_service
        provider = self._provider(service)
        if not self.rate_limiter.track_request(service):
            raise ProviderError(f"Rate limit reached for {service}.", status=429, service=service)

        result = await provider.query(
            [{"role": "user", "content": f"Research topic: {query}"}],
            ResearchOptions(service=service, system_prompt=CLARIFYING_SYSTEM_PROMPT, max_tokens=1024),
        )
        self._track_cost(result, service)
        return parse_clarifying_questions(result.content, self.clarifying_questions_max)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Waits briefly for background jobs, then cancels whatever is still running."""
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} background research tasks.")
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} unfinished research tasks at shutdown.")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # --- internals ---

    async def _execute_job(self, job_id: str, provider: BaseProvider, data: ResearchRequestData):
        questions: List[str] = []
        if data.options.deep and data.options.clarifying_questions:
            questions = await self._clarify(job_id, data)

        try:
            result = await provider.query(self._build_messages(data), data.options)
        except Exception as e:
            if isinstance(e, ProviderError):
                logger.error(f"Job {job_id} FAILED: {e}")
                error = f"Provider rate limit reached: {e}" if e.is_rate_limited else str(e)
            else:
                logger.error(f"Job {job_id} FAILED due to exception: {e}", exc_info=True)
                error = f"Research failed: {e}"
            self._finish(job_id, error=error)
            return

        self._track_cost(result, provider.name)
        if questions:
            result = result.model_copy(update={"clarifying_questions": questions})
        self._finish(job_id, result=result)
        logger.info(f"Job {job_id} SUCCESS: {len(result.content)} characters, {len(result.citations)} citations.")

    async def _clarify(self, job_id: str, data: ResearchRequestData) -> List[str]:
        """Clarifying questions for a deep job. Research goes ahead without them if they can't be had."""
        try:
            questions = await self.generate_clarifying_questions(data.query)
        except (ProviderError, ValidationError) as e:
            logger.warning(f"Job {job_id}: could not generate clarifying questions: {e}")
            return []

        logger.info(f"Job {job_id}: generated {len(questions)} clarifying questions.")
        try:
            self.job_manager.update_progress(job_id, 20)
        except NotFoundError:
            logger.warning(f"Job {job_id} was deleted while its clarifying questions were generated.")
        if self.context_store is not None and data.session_id:
            try:
                self.context_store.update_context(
                    data.session_id, lambda ctx: ctx.model_copy(update={"clarifying_questions": questions})
                )
            except SessionNotFoundError:
                logger.debug(f"Session {data.session_id} is gone; clarifying questions kept on the job only.")
        return questions

    def _finish(self, job_id: str, result: Optional[ResearchResult] = None, error: Optional[str] = None):
        try:
            if result is not None:
                self.job_manager.complete_job(job_id, result)
            else:
                self.job_manager.fail_job(job_id, error)
        except NotFoundError:
            logger.warning(f"Job {job_id} was deleted before its research finished.")

    def _defer(self, data: ResearchRequestData, wait_seconds: Optional[float]) -> SubmitResult:
        job = self.job_manager.create_job(data)
        self._open_session(data, job.job_id)
        estimated_time = math.ceil(wait_seconds) if wait_seconds else 0
        if self.run_in_background:
            self._spawn(self.run_deferred(job.job_id, initial_delay=estimated_time))
        return SubmitResult(
            mode="async", job_id=job.job_id, estimated_time=estimated_time, session_id=self._session_handle(data)
        )

    def _open_session(self, data: ResearchRequestData, job_id: str):
        if self.context_store is None:
            return
        self.context_store.store_context(
            SessionContext(
                session_id=data.session_id,
                original_query=data.query,
                job_id=job_id,
                options=data.options,
            )
        )

    def _session_handle(self, data: ResearchRequestData) -> Optional[str]:
        return data.session_id if self.context_store is not None else None

    def _completed_research(self, context: SessionContext) -> ResearchResult:
        if not context.job_id:
            raise ResearchNotReadyError(context.session_id, "the session has no research job")
        try:
            job = self.job_manager.get_job_status(context.job_id)
        except NotFoundError:
            raise ResearchNotReadyError(context.session_id, f"research job {context.job_id} no longer exists")
        if job.status != JobStatus.COMPLETED or job.result is None:
            raise ResearchNotReadyError(context.session_id, f"research job {job.job_id} is {job.status.value}")
        return job.result

    @staticmethod
    def _follow_up_prompt(research: ResearchResult, answers: Dict[str, str]) -> str:
        parts = [FOLLOW_UP_SYSTEM_PROMPT, f"Research findings:\n{research.content}"]
        if research.citations:
            parts.append("Sources:\n" + "\n".join(f"- {url}" for url in research.citations))
        if answers:
            parts.append(
                "Additional context provided by the user:\n"
                + "\n".join(f"Question: {question}\nAnswer: {answer}" for question, answer in answers.items())
            )
        return "\n\n".join(parts)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background research task crashed", exc_info=task.exception())

    def _seconds_until_reset(self, key: str) -> Optional[float]:
        status = self.rate_limiter.check_limit(key)
        if not status.limited or status.reset_time is None:
            return None
        return max(0.0, status.reset_time - self._clock())

    def _track_cost(self, result: ResearchResult, service: str):
        if self.cost_tracker is None:
            return
        self.cost_tracker.track_cost(
            service=result.service or service,
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )

    def _provider(self, service: str) -> BaseProvider:
        provider = self.providers.get(service)
        if provider is None:
            raise ValidationError(f"No provider registered for service '{service}'.")
        return provider

    def _validate_query(self, query):
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string.")
        if len(query.strip()) < self.min_query_length:
            raise ValidationError(f"Query must be at least {self.min_query_length} characters long.")

    @staticmethod
    def _coerce_options(options) -> ResearchOptions:
        if options is None:
            return ResearchOptions()
        if isinstance(options, ResearchOptions):
            return options
        try:
            return ResearchOptions.model_validate(options)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid research options: {e}") from e

    @staticmethod
    def _build_messages(data: ResearchRequestData) -> Messages:
        return list(data.options.history) + [{"role": "user", "content": data.query}]

    @staticmethod
    def _new_session_id() -> str:
        return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
