"""Background posting for acknowledge-first webhook channels.

Webhook routes answer the provider immediately and hand the payload to the
dispatcher. Each job runs the ingestion gateway on a worker thread with its
own database session. Failures are logged and kept for operator review; they
are never retried here (the provider's redelivery is the retry mechanism).
"""

import logging
import threading
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from rentledger.models.payment import PaymentChannel
from rentledger.services.channels import PaymentIntent
from rentledger.services.config import Settings, get_settings
from rentledger.services.errors import AppError
from rentledger.services.ingestion_service import IngestionGateway, PostingOutcome

logger = logging.getLogger(__name__)


@dataclass
class PostingFailure:
    """A background posting that did not reach the ledger."""

    channel: str
    code: str
    message: str
    external_txn_id: Optional[str] = None
    account_reference: Optional[str] = None
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PostingDispatcher:
    """Run ledger postings on a bounded worker pool."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        max_workers: Optional[int] = None,
        failure_log_size: int = 200,
    ):
        """Initialize dispatcher.

        Args:
            session_factory: Creates a new Session per job
            settings: Settings passed to the ingestion gateway
            max_workers: Pool size (defaults to settings.posting_workers)
            failure_log_size: Number of failures kept in recent_failures
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self.settings.posting_workers,
            thread_name_prefix="posting",
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self.recent_failures: deque[PostingFailure] = deque(maxlen=failure_log_size)
        self.outcomes: Counter[str] = Counter()

    def submit(self, channel: PaymentChannel | str, payload: Mapping[str, Any]) -> Future:
        """Queue a payload for posting and return without waiting."""
        future = self._executor.submit(self._run, PaymentChannel(channel), dict(payload))
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued postings to finish.

        Returns:
            True if nothing is left pending
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Drain outstanding postings and stop the worker pool."""
        if not self.drain(timeout):
            logger.warning("Shutting down with postings still in flight")
        self._executor.shutdown(wait=True)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, channel: PaymentChannel, payload: dict[str, Any]) -> Optional[PostingOutcome]:
        db = self.session_factory()
        intent: Optional[PaymentIntent] = None
        try:
            gateway = IngestionGateway(db, self.settings)
            intent = gateway.normalize(channel, payload)
            result = gateway.post(intent)
            self._count(result.outcome.value)
            return result.outcome
        except AppError as e:
            db.rollback()
            logger.error(
                "Background %s posting rejected (%s): %s txn=%s account=%s",
                channel.value,
                e.code,
                e.message,
                intent.external_txn_id if intent else None,
                intent.account_reference if intent else None,
            )
            self._record_failure(channel, e.code, e.message, intent)
            return None
        except Exception as e:
            db.rollback()
            logger.exception("Background %s posting failed", channel.value)
            self._record_failure(channel, "internal_error", str(e), intent)
            return None
        finally:
            db.close()

    def _count(self, outcome: str) -> None:
        with self._lock:
            self.outcomes[outcome] += 1

    def _record_failure(
        self,
        channel: PaymentChannel,
        code: str,
        message: str,
        intent: Optional[PaymentIntent],
    ) -> None:
        failure = PostingFailure(
            channel=channel.value,
            code=code,
            message=message,
            external_txn_id=intent.external_txn_id if intent else None,
            account_reference=intent.account_reference if intent else None,
        )
        with self._lock:
            self.recent_failures.append(failure)
            self.outcomes["failed"] += 1


# Global dispatcher instance (initialized by the application lifespan)
_dispatcher_instance: Optional[PostingDispatcher] = None


def init_posting_dispatcher(
    session_factory: Callable[[], Session],
    settings: Optional[Settings] = None,
    max_workers: Optional[int] = None,
) -> PostingDispatcher:
    """Initialize the global posting dispatcher, replacing any previous one."""
    global _dispatcher_instance
    if _dispatcher_instance is not None:
        _dispatcher_instance.shutdown()
    _dispatcher_instance = PostingDispatcher(session_factory, settings, max_workers)
    return _dispatcher_instance


def get_posting_dispatcher() -> PostingDispatcher:
    """Get the global posting dispatcher.

    Raises:
        RuntimeError: If init_posting_dispatcher has not been called
    """
    if _dispatcher_instance is None:
        raise RuntimeError("Posting dispatcher not initialized")
    return _dispatcher_instance


def shutdown_posting_dispatcher() -> None:
    global _dispatcher_instance
    if _dispatcher_instance is not None:
        _dispatcher_instance.shutdown()
        _dispatcher_instance = None


__all__ = [
    "PostingDispatcher",
    "PostingFailure",
    "init_posting_dispatcher",
    "get_posting_dispatcher",
    "shutdown_posting_dispatcher",
]
