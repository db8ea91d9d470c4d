"""Rate-limited outbound delivery of signed activities.

DeliveryQueue releases pending jobs at a fixed rate and runs each as its
own task, with a cap on how many are in flight. ActivityDeliverer is the
handler that actually signs and POSTs a job to a remote inbox. Delivery is
at-most-once: failures are logged and the job is dropped.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

import aiohttp
import structlog

from .activitypub_types import AP_ACCEPT_HEADER, AP_CONTENT_TYPE
from .errors import KnifeError
from .keys import KeyStore
from .resolver import validate_iri
from .signatures import sign_request

logger = structlog.get_logger()


@dataclass(frozen=True)
class DeliveryJob:
    """One serialized activity bound for one inbox."""
    inbox: str
    body: bytes
    actor_iri: str  # Signing actor


DeliveryHandler = Callable[[DeliveryJob], Awaitable[object]]


class DeliveryQueue:
    """Bounded FIFO of delivery jobs drained by a fixed-rate pacing loop."""

    def __init__(
        self,
        handler: DeliveryHandler,
        rate_per_minute: int = 100,
        capacity: int = 100,
        max_in_flight: int = 16,
    ):
        """Initialize queue.

        Args:
            handler: Coroutine function executing one job
            rate_per_minute: Jobs released per minute
            capacity: Pending jobs before enqueue blocks
            max_in_flight: Jobs allowed to run concurrently
        """
        if rate_per_minute < 1:
            raise ValueError("rate_per_minute must be positive")
        self._handler = handler
        self._interval = 60.0 / rate_per_minute
        self._queue: asyncio.Queue[DeliveryJob] = asyncio.Queue(maxsize=capacity)
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._tasks: set[asyncio.Task] = set()
        self._pacer: asyncio.Task | None = None

    @property
    def interval(self) -> float:
        """Seconds between two released jobs."""
        return self._interval

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def running(self) -> bool:
        return self._pacer is not None and not self._pacer.done()

    async def enqueue(self, job: DeliveryJob) -> None:
        """Add a job, waiting while the queue is full."""
        await self._queue.put(job)

    def start(self) -> None:
        """Start the pacing loop on the running event loop."""
        if self.running:
            return
        self._pacer = asyncio.create_task(self._run(), name="delivery-pacer")
        logger.info(
            "Delivery queue started",
            interval=self._interval,
            capacity=self._queue.maxsize,
        )

    async def drain(self) -> None:
        """Wait until every enqueued job has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop releasing jobs and wait for in-flight deliveries.

        Jobs still pending are dropped.
        """
        if self._pacer is not None:
            self._pacer.cancel()
            try:
                await self._pacer
            except asyncio.CancelledError:
                pass
            self._pacer = None

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning("Dropping undelivered jobs", count=dropped)
        logger.info("Delivery queue stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_release = loop.time()
        while True:
            job = await self._queue.get()

            try:
                delay = next_release - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                # Fixed-rate ticker: idle time does not bank extra releases
                next_release = max(next_release, loop.time()) + self._interval

                await self._semaphore.acquire()
            except asyncio.CancelledError:
                # Taken off the queue but never spawned
                self._queue.task_done()
                raise
            task = asyncio.create_task(self._execute(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: DeliveryJob) -> None:
        try:
            await self._handler(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Delivery handler failed", inbox=job.inbox)
        finally:
            self._semaphore.release()
            self._queue.task_done()


class ActivityDeliverer:
    """Signs delivery jobs with the actor's key and POSTs them."""

    def __init__(
        self,
        key_store: KeyStore,
        http_session: aiohttp.ClientSession | None = None,
        timeout: float = 30.0,
        user_agent: str = "knife-activitypub",
        dev_mode: bool = False,
    ):
        self.key_store = key_store
        self._http_session = http_session
        self._owns_session = http_session is None
        self.timeout = timeout
        self.user_agent = user_agent
        self.dev_mode = dev_mode

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session if this deliverer created it."""
        if self._owns_session and self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def build_request(self, job: DeliveryJob) -> tuple[str, dict[str, str], bytes]:
        """Build the signed POST for a job.

        Returns:
            Tuple of (url, headers, body)

        Raises:
            CryptoError: If the key cannot be created or used
            StorageError: If the key cannot be loaded
        """
        keypair = await self.key_store.get_or_create(job.actor_iri)

        headers = {
            "Content-Type": AP_CONTENT_TYPE,
            "Accept": AP_ACCEPT_HEADER,
            "User-Agent": self.user_agent,
        }
        headers["Signature"] = sign_request(
            private_key_pem=keypair.private_key_pem,
            key_id=keypair.key_id,
            method="POST",
            url=job.inbox,
            headers=headers,
            body=job.body,
        )
        return job.inbox, headers, job.body

    async def deliver(self, job: DeliveryJob) -> bool:
        """POST one job. Returns True on a 2xx answer; never raises KnifeError."""
        try:
            await validate_iri(job.inbox, dev_mode=self.dev_mode)
        except KnifeError as e:
            logger.warning("Refusing delivery", inbox=job.inbox, error=str(e))
            return False

        try:
            url, headers, body = await self.build_request(job)
        except KnifeError as e:
            logger.error("Cannot sign delivery", inbox=job.inbox, error=str(e))
            return False

        http_session = await self._get_http_session()
        try:
            async with http_session.post(
                url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                allow_redirects=False,
            ) as response:
                if 200 <= response.status < 300:
                    logger.info("Delivered activity", inbox=url, status=response.status)
                    return True
                error = await response.text()
                logger.warning(
                    "Failed to deliver",
                    inbox=url,
                    status=response.status,
                    body=error[:100],
                )
                return False
        except asyncio.TimeoutError:
            logger.warning("Delivery timed out", inbox=url, timeout=self.timeout)
            return False
        except aiohttp.ClientError as e:
            logger.error("Delivery error", inbox=url, error=str(e))
            return False
