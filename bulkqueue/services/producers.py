"""
Producer contract and category registry.

A Producer turns one queue item into one review (or reports why it could not).
Failures are classified into one of three kinds:

  - ALREADY_EXISTS: the review is already there; counted as skipped, no retry
  - INVALID: the item itself is bad; counted as failed, no retry
  - TRANSIENT: network/server/rate-limit trouble; retried with backoff

Producers either return a ProduceResult or raise. ProducerError subclasses
carry their kind; untyped exceptions and untyped results fall back to the
message text ("Already exists", "validation", "invalid").

Usage:
    registry = ProducerRegistry()
    registry.register("game", HttpProducer("game", "https://reviews.internal/produce"))
    producer = registry.get("game")
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import httpx

from bulkqueue.schemas.bulk_job import CATEGORIES, QueueItemIn
from bulkqueue.utils.logger import logger
from bulkqueue.utils.metrics import track_duration


ALREADY_EXISTS_MESSAGE = "Already exists"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    ALREADY_EXISTS = "already_exists"
    INVALID = "invalid"


@dataclass(frozen=True)
class ProduceOptions:
    status: str = "draft"
    skip_existing: bool = True


@dataclass(frozen=True)
class ProduceResult:
    success: bool
    review_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def kind(self) -> Optional[ErrorKind]:
        """error_kind, or ALREADY_EXISTS for an untyped "Already exists" failure"""
        if self.error_kind is None and not self.success and self.error == ALREADY_EXISTS_MESSAGE:
            return ErrorKind.ALREADY_EXISTS
        return self.error_kind

    @classmethod
    def ok(cls, review_id: str) -> "ProduceResult":
        return cls(success=True, review_id=review_id)

    @classmethod
    def already_exists(cls) -> "ProduceResult":
        return cls(success=False, error=ALREADY_EXISTS_MESSAGE, error_kind=ErrorKind.ALREADY_EXISTS)

    @classmethod
    def invalid(cls, error: str) -> "ProduceResult":
        return cls(success=False, error=error, error_kind=ErrorKind.INVALID)

    @classmethod
    def transient(cls, error: str) -> "ProduceResult":
        return cls(success=False, error=error, error_kind=ErrorKind.TRANSIENT)


class ProducerError(Exception):
    """Base class for classified producer failures."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransientProducerError(ProducerError):
    kind = ErrorKind.TRANSIENT


class AlreadyExistsError(ProducerError):
    kind = ErrorKind.ALREADY_EXISTS

    def __init__(self, message: str = ALREADY_EXISTS_MESSAGE):
        super().__init__(message)


class InvalidItemError(ProducerError):
    kind = ErrorKind.INVALID


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Typed producer errors carry their kind. Anything else is classified by
    its message: "Already exists" is a skip, "validation"/"invalid" is a bad
    item, the rest is transient.
    """
    if isinstance(exc, ProducerError):
        return exc.kind
    message = str(exc)
    if ALREADY_EXISTS_MESSAGE in message:
        return ErrorKind.ALREADY_EXISTS
    if "validation" in message or "invalid" in message:
        return ErrorKind.INVALID
    return ErrorKind.TRANSIENT


class Producer(Protocol):
    async def process_item(self, item: QueueItemIn, options: ProduceOptions) -> ProduceResult:
        ...


class ItemSource(Protocol):
    """Catalog lookup that expands a count + query into an ordered item list."""

    async def fetch_items(self, count: int, query_options: Dict[str, Any]) -> List[QueueItemIn]:
        ...


class UnknownCategoryError(LookupError):
    def __init__(self, category: str):
        self.category = category
        super().__init__(f"No producer registered for category: {category}")


class ProducerRegistry:
    """Maps a category to its Producer (and optional ItemSource)."""

    def __init__(self) -> None:
        self._producers: Dict[str, Producer] = {}
        self._sources: Dict[str, ItemSource] = {}

    def register(self, category: str, producer: Producer, source: Optional[ItemSource] = None) -> None:
        self._producers[category] = producer
        if source is not None:
            self._sources[category] = source

    def unregister(self, category: str) -> None:
        self._producers.pop(category, None)
        self._sources.pop(category, None)

    def get(self, category: str) -> Producer:
        producer = self._producers.get(category)
        if producer is None:
            raise UnknownCategoryError(category)
        return producer

    def get_source(self, category: str) -> Optional[ItemSource]:
        return self._sources.get(category)

    def has(self, category: str) -> bool:
        return category in self._producers

    def categories(self) -> List[str]:
        return sorted(self._producers)


# ---------------------------------------------------------------------------
# HTTP producer
# ---------------------------------------------------------------------------

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_INVALID_STATUS_CODES = {400, 404, 422}


class HttpProducer:
    """
    Calls a review-generation service over HTTP.

    POST {base_url}/{category} with {name, external_ref, status, skip_existing}.
    Expects {"review_id": "..."} on success; 409 means the review already exists.
    """

    def __init__(self, category: str, base_url: str, timeout: float = 120.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.category = category
        self.url = f"{base_url.rstrip('/')}/{category}"
        self.timeout = timeout
        self._client = client

    async def process_item(self, item: QueueItemIn, options: ProduceOptions) -> ProduceResult:
        payload = {
            "name": item.name,
            "external_ref": item.external_ref,
            "status": options.status,
            "skip_existing": options.skip_existing,
        }
        async with track_duration(f"http.{self.category}", "post"):
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)

        status = response.status_code
        if 200 <= status < 300:
            body = response.json()
            review_id = body.get("review_id") or body.get("reviewId")
            if not review_id:
                raise InvalidItemError(f"Producer response for {item.name!r} has no review id")
            return ProduceResult.ok(str(review_id))
        if status == 409:
            return ProduceResult.already_exists()
        detail = response.text[:200]
        if status in _INVALID_STATUS_CODES:
            raise InvalidItemError(f"HTTP {status}: {detail}")
        if status in _RETRYABLE_STATUS_CODES:
            raise TransientProducerError(f"HTTP {status}: {detail}")
        logger.warning(
            "producer.unexpected_status",
            extra={"service": self.category, "status": status, "item": item.name},
        )
        raise TransientProducerError(f"HTTP {status}: {detail}")


def register_http_producers(registry: ProducerRegistry, base_url: str, timeout: float) -> List[str]:
    """Register an HttpProducer for every category not already registered."""
    registered = []
    for category in CATEGORIES:
        if not registry.has(category):
            registry.register(category, HttpProducer(category, base_url, timeout=timeout))
            registered.append(category)
    return registered
