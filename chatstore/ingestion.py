"""
Single-writer ingestion pipeline.

Producers (the protocol bridge, or the /events endpoint on its behalf) call
``submit``; one consumer thread applies events to the store strictly in
submission order. The queue is bounded: when it is full a producer blocks
for at most ``put_timeout`` seconds and then gets an
IngestionBackpressureError, so a slow database cannot stall the bridge
indefinitely and no event is dropped without the producer knowing.

Each event is applied as separate idempotent statements (chat first, then
each message). There is no transaction around an event: a crash in the
middle leaves the chat stored without all of its messages, and
re-delivering the event repairs it.
"""

import logging
import queue
import threading
import time
from typing import NamedTuple, Optional

from sqlalchemy.exc import SQLAlchemyError

from chatstore.errors import (
    IngestionBackpressureError,
    IngestionClosedError,
    MalformedInputError,
)
from chatstore.events import ChatUpdateEvent
from chatstore.metrics import record_event_outcome, record_message_outcome, set_queue_depth
from chatstore.storage import Store

logger = logging.getLogger(__name__)

# Queued after the last event; the consumer exits when it reaches it
_CLOSE = object()


class ApplyStats(NamedTuple):
    stored: int
    skipped: int
    failed: int


class IngestionPipeline:

    def __init__(self, store: Store, max_queue_size: int = 1000, put_timeout: float = 5.0):
        self.store = store
        self.put_timeout = put_timeout
        self._queue: queue.Queue = queue.Queue(maxsize=max(max_queue_size, 0))
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        # Serializes submit/close so nothing lands behind the close marker
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the consumer thread. Calling twice is a no-op."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="chatstore-ingest", daemon=True)
        self._thread.start()
        logger.info(f"Ingestion pipeline started (queue size={self._queue.maxsize or 'unbounded'})")

    def submit(self, event: ChatUpdateEvent, timeout: Optional[float] = None) -> None:
        """
        Queue an event for the consumer.

        Args:
            event: The chat update to apply
            timeout: Total seconds to wait, for other producers and for room
                in a full queue; defaults to ``put_timeout``

        Raises:
            IngestionBackpressureError: no room was found before the timeout
            IngestionClosedError: the pipeline has been closed
        """
        if timeout is None:
            timeout = self.put_timeout
        deadline = time.monotonic() + timeout
        # the deadline covers waiting for the lock and waiting for room
        if not self._lock.acquire(timeout=max(timeout, 0)):
            self._reject(event, timeout)
        try:
            if self._closed:
                raise IngestionClosedError("ingestion pipeline is closed")
            try:
                self._queue.put(event, timeout=max(deadline - time.monotonic(), 0))
            except queue.Full:
                self._reject(event, timeout)
        finally:
            self._lock.release()
        set_queue_depth(self._queue.qsize())
        logger.debug(f"Queued {event.kind.value} event for {event.chat.jid} ({len(event.messages)} messages)")

    def _reject(self, event: ChatUpdateEvent, timeout: float) -> None:
        record_event_outcome(event.kind.value, "rejected")
        logger.error(
            f"Ingestion queue full for {timeout}s, rejecting {event.kind.value} "
            f"event for {event.chat.jid}"
        )
        raise IngestionBackpressureError(
            f"ingestion queue full ({self._queue.maxsize} events)"
        ) from None

    def apply(self, event: ChatUpdateEvent) -> ApplyStats:
        """
        Write one event: the chat first, then each message in order.

        A failed chat write skips the whole event (its messages would have no
        parent row). A failed message write is logged and the next message is
        still attempted.
        """
        kind = event.kind.value
        try:
            self.store.upsert_chat(event.chat)
        except (SQLAlchemyError, MalformedInputError) as e:
            logger.error(f"Failed to store chat {event.chat.jid}, skipping {len(event.messages)} messages: {e}")
            record_event_outcome(kind, "chat_failed")
            for _ in event.messages:
                record_message_outcome("failed")
            return ApplyStats(stored=0, skipped=0, failed=len(event.messages))

        stored = skipped = failed = 0
        for msg in event.messages:
            try:
                written = self.store.upsert_message(msg)
            except (SQLAlchemyError, MalformedInputError) as e:
                logger.error(f"Failed to store message {msg.id} in {msg.chat_jid}: {e}")
                record_message_outcome("failed")
                failed += 1
                continue
            if written:
                record_message_outcome("stored")
                stored += 1
            else:
                record_message_outcome("skipped")
                skipped += 1

        if not failed:
            outcome = "applied"
        elif stored or skipped:
            outcome = "partial"
        else:
            outcome = "failed"
        record_event_outcome(kind, outcome)
        logger.info(
            f"Applied {kind} event for {event.chat.jid}: "
            f"stored={stored}, skipped={skipped}, failed={failed}"
        )
        return ApplyStats(stored=stored, skipped=skipped, failed=failed)

    def wait_idle(self) -> None:
        """Block until every queued event has been applied."""
        self._queue.join()

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting events, let the consumer drain what is queued, and
        wait for it to exit.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._thread is None:
                return
            # Blocks while the queue is full; the consumer keeps draining
            self._queue.put(_CLOSE)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"Ingestion pipeline still draining after {timeout}s")
        else:
            logger.info("Ingestion pipeline stopped")

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _CLOSE:
                    return
                self.apply(event)
            except Exception:
                # Keep the single writer alive; the event is lost, not the pipeline
                logger.exception(f"Unexpected error applying {event.kind.value} event for {event.chat.jid}")
            finally:
                self._queue.task_done()
                set_queue_depth(self._queue.qsize())
