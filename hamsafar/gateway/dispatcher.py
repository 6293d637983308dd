"""Dispatcher — admission, upstream call and throttling retry orchestration.

Main entry point for callers that need text generated:
  1. Accepts a prompt tied to a correlation id (and optionally a conversation)
  2. Rejects immediately with QUEUE_FULL when the backlog is at its bound
  3. Sequences work per the configured DispatchPolicy (serial FIFO worker or
     one task per request)
  4. Takes a token from the shared TokenBucket before every upstream call
  5. Retries throttled calls in place with exponential backoff
  6. Surfaces every other failure once, without retrying
  7. Appends successful replies to conversation history in submission order

Every accepted submission resolves to exactly one CallResult delivered
through its own future. Tokens spent on an abandoned request are not
refunded: the upstream cost was, or may have been, incurred already.

Usage:
    dispatcher = Dispatcher(upstream, bucket, conversations, config)
    async with dispatcher:
        result = await dispatcher.submit("msg-42", prompt, RequestKind.REPLY, conversation_id="chat-7")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import partial

from hamsafar.core.metrics import (
    ADMISSION_WAIT,
    DISPATCH_RESULTS,
    QUEUE_DEPTH,
    THROTTLE_RETRIES,
    UPSTREAM_CALLS,
)
from hamsafar.gateway.conversation import ConversationStore
from hamsafar.gateway.rate_limiter import TokenBucket
from hamsafar.gateway.request_queue import QueueFullError, QueueItem, RequestQueue
from hamsafar.gateway.retry_policy import RetryPolicy
from hamsafar.gateway.types import (
    CallResult,
    DispatchConfig,
    DispatchPolicy,
    ErrorKind,
    PendingRequest,
    RequestKind,
)
from hamsafar.gateway.upstream import BaseUpstream, UpstreamError, UpstreamThrottled

logger = logging.getLogger(__name__)


class Dispatcher:
    """Admission-controlled dispatcher in front of a single upstream.

    Integrates:
      - TokenBucket: global call-rate ceiling
      - RequestQueue: bounded FIFO backlog (serial policy)
      - RetryPolicy: backoff for throttled calls
      - ConversationStore: ordered reply appends
    """

    def __init__(
        self,
        upstream: BaseUpstream,
        bucket: TokenBucket | None = None,
        conversations: ConversationStore | None = None,
        config: DispatchConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_queued: Callable[[PendingRequest], None] | None = None,
        on_throttled: Callable[[PendingRequest, int, float], None] | None = None,
    ):
        """
        Args:
            upstream: Client that performs the actual generation call
            bucket: Shared admission controller (built from config if omitted)
            conversations: History store replies are appended to
            config: Retry, queue and sequencing settings
            sleep: Coroutine used for backoff and inter-request delays
            on_queued: Called once a submission is accepted; the request
                carries its queue_position
            on_throttled: Called with (request, attempt, delay) before each
                backoff sleep, e.g. to tell the user they are still queued
        """
        self.config = config or DispatchConfig()
        self.upstream = upstream
        self.bucket = bucket or TokenBucket(self.config.bucket_capacity, self.config.refill_rate)
        self.conversations = conversations or ConversationStore()
        self.retry_policy = RetryPolicy.from_config(self.config)
        self.queue = RequestQueue(self.config.max_queue_depth)
        self.on_queued = on_queued
        self.on_throttled = on_throttled
        self._sleep = sleep

        self._outstanding = 0  # Accepted, not yet resolved
        self._tasks: set[asyncio.Task] = set()
        self._worker: asyncio.Task | None = None
        self._current: tuple[PendingRequest, asyncio.Task] | None = None
        self._closed = False

    @property
    def policy(self) -> DispatchPolicy:
        return self.config.policy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the serial worker (no-op for the concurrent policy)."""
        self._closed = False
        self._ensure_worker()

    async def stop(self) -> None:
        """Stop dispatching; anything still pending resolves as CANCELLED."""
        self._closed = True

        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

        for item in self.queue.drain():
            result = CallResult.failure(item.request, ErrorKind.CANCELLED, "Dispatcher stopped")
            self._finish(item.request, result)
            if not item.future.done():
                item.future.set_result(result)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Dispatcher stopped")

    async def __aenter__(self) -> Dispatcher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _ensure_worker(self) -> None:
        if self.policy != DispatchPolicy.SERIAL:
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._worker_loop())

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        correlation_id: str,
        prompt: str,
        kind: RequestKind = RequestKind.REPLY,
        conversation_id: str | None = None,
    ) -> CallResult:
        """Submit a prompt and wait for its terminal outcome.

        Cancelling the awaiting task abandons the request: no history
        append happens and the consumed token is not refunded.
        """
        return await self.submit_nowait(correlation_id, prompt, kind, conversation_id)

    def submit_nowait(
        self,
        correlation_id: str,
        prompt: str,
        kind: RequestKind = RequestKind.REPLY,
        conversation_id: str | None = None,
    ) -> asyncio.Future:
        """Submit a prompt and return the future of its CallResult.

        A rejected submission returns an already-resolved future, so the
        caller never blocks on a full backlog.
        """
        loop = asyncio.get_running_loop()
        request = PendingRequest(
            correlation_id=correlation_id,
            prompt=prompt,
            kind=RequestKind(kind),
            conversation_id=conversation_id,
        )

        if self._closed:
            return self._resolved(loop, request, ErrorKind.CANCELLED, "Dispatcher is stopped")

        if self.policy == DispatchPolicy.SERIAL:
            future = loop.create_future()
            try:
                position = self.queue.enqueue(QueueItem(request=request, future=future))
            except QueueFullError as e:
                return self._resolved(loop, request, ErrorKind.QUEUE_FULL, str(e))
            self._accept(request)
            future.add_done_callback(partial(self._on_caller_done, request, None))
            self._ensure_worker()
        else:
            if self._outstanding >= self.config.max_queue_depth:
                return self._resolved(
                    loop,
                    request,
                    ErrorKind.QUEUE_FULL,
                    f"Request backlog is full ({self.config.max_queue_depth} pending)",
                )
            self._accept(request)
            position = self._outstanding
            future = loop.create_future()
            task = loop.create_task(self._run(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(partial(self._deliver, request, future))
            future.add_done_callback(partial(self._on_caller_done, request, task))

        request.queue_position = position
        logger.info(
            "Accepted %s request %s (position %d)",
            request.kind.value,
            request.correlation_id,
            position,
            extra={"correlation_id": request.correlation_id, "conversation_id": request.conversation_id},
        )
        self._notify(self.on_queued, request)
        return future

    def _notify(self, hook: Callable | None, *args) -> None:
        """Run a caller hook; a failing hook never affects dispatch."""
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            logger.exception("Dispatcher hook %s failed", getattr(hook, "__name__", hook))

    def _accept(self, request: PendingRequest) -> None:
        if request.appends_history:
            request.history_ticket = self.conversations.reserve(request.conversation_id)
        self._outstanding += 1
        QUEUE_DEPTH.set(self._outstanding)

    def _resolved(
        self,
        loop: asyncio.AbstractEventLoop,
        request: PendingRequest,
        kind: ErrorKind,
        message: str,
    ) -> asyncio.Future:
        logger.warning(
            "Rejected %s request %s: %s",
            request.kind.value,
            request.correlation_id,
            message,
            extra={"correlation_id": request.correlation_id},
        )
        result = CallResult.failure(request, kind, message)
        DISPATCH_RESULTS.labels(kind=request.kind.value, status=kind.value).inc()
        future = loop.create_future()
        future.set_result(result)
        return future

    def _on_caller_done(
        self,
        request: PendingRequest,
        task: asyncio.Task | None,
        future: asyncio.Future,
    ) -> None:
        """Caller abandoned the request: stop its work, skip delivery."""
        if not future.cancelled():
            return
        if task is None:
            if self._current is not None and self._current[0] is request:
                task = self._current[1]
            else:
                self.queue.discard(request)
        if task is not None and not task.done():
            task.cancel()
        else:
            self._finish(request, None)

    def _deliver(self, request: PendingRequest, future: asyncio.Future, task: asyncio.Task) -> None:
        """Hand a finished task's outcome to the caller's future."""
        if future.done():
            return
        if task.cancelled():
            self._finish(request, None)
            future.set_result(CallResult.failure(request, ErrorKind.CANCELLED, "Dispatcher stopped"))
        else:
            future.set_result(task.result())

    # ------------------------------------------------------------------
    # Serial worker
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        logger.info("Serial dispatch worker started")
        while True:
            item = await self.queue.dequeue()
            if item.future.done():
                # Abandoned while queued
                continue

            task = asyncio.get_running_loop().create_task(self._run(item.request))
            self._current = (item.request, task)
            try:
                # wait() rather than await, so a caller cancelling the task
                # does not cancel the worker with it
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                self._deliver(item.request, item.future, task)
                raise
            finally:
                self._current = None

            self._deliver(item.request, item.future, task)

            if self.config.inter_request_delay > 0:
                await self._sleep(self.config.inter_request_delay)

    # ------------------------------------------------------------------
    # Per-request algorithm
    # ------------------------------------------------------------------

    async def _run(self, request: PendingRequest) -> CallResult:
        """Execute one request under the optional deadline and resolve it."""
        timeout = self.config.request_timeout_seconds
        try:
            if timeout:
                result = await asyncio.wait_for(self._execute(request), timeout)
            else:
                result = await self._execute(request)
        except asyncio.TimeoutError:
            result = CallResult.failure(
                request,
                ErrorKind.TIMEOUT,
                f"Request exceeded its {timeout:.1f}s deadline",
            )
        except asyncio.CancelledError:
            self._finish(request, None)
            raise
        except Exception as e:
            logger.exception(
                "Dispatch of request %s crashed",
                request.correlation_id,
                extra={"correlation_id": request.correlation_id},
            )
            result = CallResult.failure(request, ErrorKind.UPSTREAM_FAILURE, f"{type(e).__name__}: {e}")

        self._finish(request, result)
        return result

    async def _execute(self, request: PendingRequest) -> CallResult:
        """Admission, upstream call and throttling retries for one request."""
        attempt = 0
        delay = 0.0

        while True:
            attempt += 1

            waited = await self.bucket.consume(1)
            ADMISSION_WAIT.observe(waited)
            if waited > 0:
                logger.debug(
                    "Request %s admitted after %.2fs",
                    request.correlation_id,
                    waited,
                    extra={"correlation_id": request.correlation_id},
                )

            try:
                text = await self.upstream.generate(request.prompt)

            except UpstreamThrottled as e:
                UPSTREAM_CALLS.labels(outcome="throttled").inc()
                delay = self.retry_policy.next_delay(attempt, e.retry_after, previous=delay)

                if self.retry_policy.exhausted(attempt):
                    logger.warning(
                        "Request %s still throttled after %d attempts, giving up (retry after %.1fs)",
                        request.correlation_id,
                        attempt,
                        delay,
                        extra={"correlation_id": request.correlation_id},
                    )
                    return CallResult.failure(
                        request,
                        ErrorKind.THROTTLED,
                        str(e),
                        attempts=attempt,
                        retry_after=delay,
                    )

                logger.info(
                    "Request %s throttled (attempt %d/%d), retrying in %.1fs",
                    request.correlation_id,
                    attempt,
                    self.retry_policy.max_retries,
                    delay,
                    extra={"correlation_id": request.correlation_id},
                )
                THROTTLE_RETRIES.inc()
                self._notify(self.on_throttled, request, attempt, delay)
                await self._sleep(delay)
                continue

            except UpstreamError as e:
                UPSTREAM_CALLS.labels(outcome="error").inc()
                logger.warning(
                    "Request %s failed upstream: %s",
                    request.correlation_id,
                    e,
                    extra={"correlation_id": request.correlation_id},
                )
                return CallResult.failure(request, ErrorKind.UPSTREAM_FAILURE, str(e), attempts=attempt)

            except Exception as e:
                UPSTREAM_CALLS.labels(outcome="error").inc()
                logger.exception(
                    "Unexpected error calling %s for request %s",
                    self.upstream.name,
                    request.correlation_id,
                    extra={"correlation_id": request.correlation_id},
                )
                return CallResult.failure(
                    request,
                    ErrorKind.UPSTREAM_FAILURE,
                    f"{type(e).__name__}: {e}",
                    attempts=attempt,
                )

            UPSTREAM_CALLS.labels(outcome="success").inc()
            return CallResult.ok(request, text, attempts=attempt)

    def _finish(self, request: PendingRequest, result: CallResult | None) -> None:
        """Account for a terminal outcome; `None` means abandoned by the caller."""
        if request.resolved:
            return
        request.resolved = True

        self._outstanding = max(0, self._outstanding - 1)
        QUEUE_DEPTH.set(self._outstanding)

        if request.history_ticket is not None:
            if result is not None and result.success:
                self.conversations.commit(request.conversation_id, request.history_ticket, result.text)
            else:
                self.conversations.release(request.conversation_id, request.history_ticket)

        if result is None:
            status = ErrorKind.CANCELLED.value
        elif result.success:
            status = "success"
        else:
            status = result.error_kind.value
        DISPATCH_RESULTS.labels(kind=request.kind.value, status=status).inc()

        if result is None:
            logger.info(
                "Request %s abandoned by caller",
                request.correlation_id,
                extra={"correlation_id": request.correlation_id},
            )
        else:
            logger.info(
                "Request %s resolved: %s after %d attempt(s) in %dms",
                request.correlation_id,
                status,
                result.attempts,
                result.latency_ms,
                extra={"correlation_id": request.correlation_id},
            )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def status(self) -> dict:
        """Token, backlog and worker state for health surfaces."""
        tokens = self.bucket.status()
        if self.policy == DispatchPolicy.SERIAL:
            queue_depth = self.queue.depth()
            is_processing = self._current is not None
        else:
            queue_depth = self._outstanding
            is_processing = bool(self._tasks)

        return {
            **tokens,
            "queue_depth": queue_depth,
            "max_queue_depth": self.config.max_queue_depth,
            "is_processing": is_processing,
            "policy": self.policy.value,
        }
