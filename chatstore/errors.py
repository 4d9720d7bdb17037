"""
Error types raised by the chat store.

Store and query failures coming from the database are NOT wrapped: they
surface as ``sqlalchemy.exc.SQLAlchemyError`` exactly as the driver raised
them. The types below cover the conditions that are not I/O failures.
"""


class ChatStoreError(Exception):
    """Base class for chatstore errors."""


class NotFoundError(ChatStoreError):
    """A single-entity lookup matched no stored row."""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class MalformedInputError(ChatStoreError):
    """A stored or supplied value has the wrong shape (e.g. a bad timestamp)."""


class IngestionBackpressureError(ChatStoreError):
    """The ingestion queue stayed full for longer than the put timeout."""


class IngestionClosedError(ChatStoreError):
    """An event was submitted after the pipeline was closed."""
