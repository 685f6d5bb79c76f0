"""
Retry with exponential backoff around a single producer call.

Attempt n (0-based) that fails transiently waits base_delay * 2**n before the
next one (2s, 4s, 8s, ... with the default base). ALREADY_EXISTS and INVALID
outcomes stop immediately. Never raises for producer failures; the outcome is
always a ProduceResult.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from bulkqueue.services.producers import ErrorKind, ProduceResult, classify_exception
from bulkqueue.utils.logger import logger
from bulkqueue.utils.metrics import inc, observe


UNKNOWN_ERROR = "Unknown error after retries"


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        service: str = "producer",
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self.service = service

    def backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def call(
        self,
        fn: Callable[..., Awaitable[ProduceResult]],
        *args: Any,
        item: Optional[str] = None,
        **kwargs: Any,
    ) -> ProduceResult:
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            inc(f"{self.service}.attempt")
            start = time.monotonic()
            try:
                result = await fn(*args, **kwargs)
            except Exception as exc:
                observe(f"{self.service}.duration_ms", (time.monotonic() - start) * 1000)
                kind = classify_exception(exc)
                if kind == ErrorKind.ALREADY_EXISTS:
                    return ProduceResult.already_exists()
                if kind == ErrorKind.INVALID:
                    inc(f"{self.service}.invalid")
                    return ProduceResult.invalid(str(exc) or type(exc).__name__)
                last_error = str(exc) or type(exc).__name__
            else:
                observe(f"{self.service}.duration_ms", (time.monotonic() - start) * 1000)
                if result.kind != ErrorKind.TRANSIENT:
                    return result
                last_error = result.error

            inc(f"{self.service}.error")
            if attempt < self.max_retries - 1:
                wait = self.backoff(attempt)
                inc(f"{self.service}.retry")
                logger.warning(
                    "producer.retry",
                    extra={
                        "service": self.service,
                        "item": item,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "error": (last_error or "")[:200],
                        "wait_seconds": wait,
                    },
                )
                await self._sleep(wait)

        return ProduceResult.transient(last_error or UNKNOWN_ERROR)
