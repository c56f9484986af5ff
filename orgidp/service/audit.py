from __future__ import annotations

import concurrent.futures
import threading
from typing import Any, Dict, Optional, Protocol

from orgidp.logging import get_logger
from orgidp.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Emits audit events as structured log lines."""

    def __init__(self) -> None:
        self.logger = get_logger("orgidp.audit")

    def record(self, event: AuditEvent) -> None:
        log_fn = self.logger.info if event.success else self.logger.warning
        log_fn(
            "audit_event",
            audit_id=event.id,
            action=event.action,
            actor_id=event.actor_id,
            resource=event.resource,
            success=event.success,
            details=event.details,
            error=event.error,
        )


class StoreAuditSink:
    """Persists audit events through the backing store."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(self, event: AuditEvent) -> None:
        self.store.record_audit_event(event)


class AuditDispatcher:
    """Fire-and-forget front for audit sinks.

    ``record`` returns immediately; sinks run on a small worker pool. Events
    beyond ``max_pending`` in flight are dropped with a warning, and sink
    failures are logged and swallowed.
    """

    DEFAULT_WORKERS = 2
    MAX_WORKERS = 8

    def __init__(
        self,
        *sinks: AuditSink,
        workers: int = DEFAULT_WORKERS,
        max_pending: int = 1000,
    ) -> None:
        self.sinks = list(sinks)
        self.logger = logger
        workers = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="audit"
        )
        self._max_pending = max(1, max_pending)
        self._inflight: set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()
        self._shutdown = False

    def record(
        self,
        action: str,
        *,
        success: bool,
        actor_id: Optional[str] = None,
        resource: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException | str] = None,
    ) -> None:
        event = AuditEvent(
            action=action,
            success=success,
            actor_id=actor_id,
            resource=resource,
            details=dict(details or {}),
            error=str(error) if error is not None else None,
        )
        for sink in self.sinks:
            self._submit(sink, event)

    def _submit(self, sink: AuditSink, event: AuditEvent) -> None:
        with self._pending_lock:
            if self._shutdown or len(self._inflight) >= self._max_pending:
                self.logger.warning(
                    "audit_event_dropped",
                    action=event.action,
                    sink=type(sink).__name__,
                    pending=len(self._inflight),
                )
                return
            try:
                future = self._executor.submit(sink.record, event)
            except RuntimeError as exc:
                # Executor already shut down
                self.logger.warning(
                    "audit_submit_failed", action=event.action, error=str(exc)
                )
                return
            self._inflight.add(future)
        future.add_done_callback(
            lambda fut, sink_name=type(sink).__name__: self._on_done(fut, sink_name, event)
        )

    def _on_done(
        self, future: concurrent.futures.Future, sink_name: str, event: AuditEvent
    ) -> None:
        with self._pending_lock:
            self._inflight.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error(
                "audit_sink_failed",
                action=event.action,
                sink=sink_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def flush(self, timeout: float = 5.0) -> None:
        """Wait for in-flight events; used on shutdown and in tests."""
        with self._pending_lock:
            inflight = list(self._inflight)
        concurrent.futures.wait(inflight, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._pending_lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.info("audit_dispatcher_shutdown", wait=wait)
