"""
Persistent store contract: keyed, indexed record collections with schema migrations.

Engines implement `Collection` and the `PersistentStore` hooks; callers only ever
see collections wrapped in `RetryingCollection`, so every operation gets
exponential backoff before a `StorageError` is surfaced.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from ..utils.config import StorageRetryConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

MEMORIES = 'memories'
ENTITY_LINKS = 'entity_links'
SUMMARIES = 'summaries'


class StorageError(Exception):
    """Custom exception for persistent store errors."""
    pass


@dataclass(frozen=True)
class CollectionSchema:
    """Key field and secondary indexes (index name -> record field) of a collection."""
    key_field: str
    indexes: Dict[str, str] = field(default_factory=dict)


COLLECTION_SCHEMAS: Dict[str, CollectionSchema] = {
    MEMORIES: CollectionSchema(key_field='id',
                               indexes={
                                   'by-type': 'type',
                                   'by-importance': 'importance',
                                   'by-created': 'createdAt',
                                   'by-accessed': 'lastAccessed',
                                   'by-feedback': 'feedbackScore',
                                   'by-usage': 'usageCount'
                               }),
    ENTITY_LINKS: CollectionSchema(key_field='entityId',
                                   indexes={
                                       'by-type': 'entityType',
                                       'by-name': 'entityName',
                                       'by-memory': 'memoryIds',
                                       'by-updated': 'updatedAt'
                                   }),
    SUMMARIES: CollectionSchema(key_field='id',
                                indexes={
                                    'by-conversation': 'conversationId',
                                    'by-url': 'url',
                                    'by-created': 'createdAt'
                                }),
}


async def with_retry(operation: Callable[[], Awaitable[T]], operation_name: str, retry_config: StorageRetryConfig) -> T:
    """Run a storage operation with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory
        operation_name: Name used in log messages
        retry_config: Attempt count and delay bounds

    Returns:
        The operation's result

    Raises:
        StorageError: If every attempt fails
    """
    last_error: Optional[Exception] = None

    for attempt in range(retry_config.max_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if attempt < retry_config.max_attempts - 1:
                delay = min(retry_config.base_delay * (2**attempt), retry_config.max_delay)
                logger.warning(f'{operation_name} failed (attempt {attempt + 1}/{retry_config.max_attempts}), '
                               f'retrying in {delay:.2f}s: {e}')
                await asyncio.sleep(delay)

    logger.error(f'{operation_name} failed after {retry_config.max_attempts} attempts: {last_error}')
    raise StorageError(f'{operation_name} failed after {retry_config.max_attempts} attempts: {last_error}') from last_error


class Collection(ABC):
    """A keyed record collection. Records are plain dicts in storage format."""

    def __init__(self, name: str, schema: CollectionSchema):
        self.name = name
        self.schema = schema

    @property
    def key_field(self) -> str:
        return self.schema.key_field

    def index_field(self, index_name: str) -> str:
        try:
            return self.schema.indexes[index_name]
        except KeyError:
            raise ValueError(f'Collection {self.name} has no index {index_name!r}')

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_all(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_by_index(self, index_name: str, value: Any) -> List[Dict[str, Any]]:
        """Return records whose indexed field equals `value` (or contains it, for list fields)."""
        ...

    @abstractmethod
    async def put(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def put_many(self, records: Sequence[Dict[str, Any]]) -> None:
        """Write a batch; returns only once every record is acknowledged."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class RetryingCollection(Collection):
    """Wraps an engine collection so each operation is retried with backoff."""

    def __init__(self, inner: Collection, retry_config: StorageRetryConfig):
        super().__init__(inner.name, inner.schema)
        self.inner = inner
        self.retry_config = retry_config

    def _retry(self, operation: Callable[[], Awaitable[T]], action: str) -> Awaitable[T]:
        return with_retry(operation, f'{self.name}.{action}', self.retry_config)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self._retry(lambda: self.inner.get(key), 'get')

    async def get_all(self) -> List[Dict[str, Any]]:
        return await self._retry(self.inner.get_all, 'get_all')

    async def get_by_index(self, index_name: str, value: Any) -> List[Dict[str, Any]]:
        self.index_field(index_name)
        return await self._retry(lambda: self.inner.get_by_index(index_name, value), 'get_by_index')

    async def put(self, record: Dict[str, Any]) -> None:
        await self._retry(lambda: self.inner.put(record), 'put')

    async def put_many(self, records: Sequence[Dict[str, Any]]) -> None:
        if not records:
            return
        await self._retry(lambda: self.inner.put_many(records), 'put_many')

    async def delete(self, key: str) -> None:
        await self._retry(lambda: self.inner.delete(key), 'delete')

    async def clear(self) -> None:
        await self._retry(self.inner.clear, 'clear')

    async def count(self) -> int:
        return await self._retry(self.inner.count, 'count')


@dataclass(frozen=True)
class Migration:
    """A schema step applied once when the store is opened below `version`."""
    version: int
    description: str
    apply: Callable[['PersistentStore'], Awaitable[None]]


class PersistentStore(ABC):
    """Three logical collections plus version-gated migrations run once at open time."""

    def __init__(self, retry_config: Optional[StorageRetryConfig] = None, migrations: Optional[List[Migration]] = None):
        if retry_config is None:
            from ..utils.config import config
            retry_config = config.storage_retry
        if migrations is None:
            from .migrations import DEFAULT_MIGRATIONS
            migrations = DEFAULT_MIGRATIONS

        self.retry_config = retry_config
        self.migrations = sorted(migrations, key=lambda m: m.version)
        self._collections: Dict[str, RetryingCollection] = {}
        self._opened = False

    @abstractmethod
    def _create_collection(self, name: str, schema: CollectionSchema) -> Collection:
        ...

    @abstractmethod
    async def _read_schema_version(self) -> int:
        ...

    @abstractmethod
    async def _write_schema_version(self, version: int) -> None:
        ...

    async def ensure_collection(self, name: str) -> None:
        """Create the backing structure for a collection. Engines without DDL need nothing."""
        return None

    @property
    def schema_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def collection(self, name: str) -> RetryingCollection:
        if name not in COLLECTION_SCHEMAS:
            raise ValueError(f'Unknown collection: {name!r}')
        if name not in self._collections:
            inner = self._create_collection(name, COLLECTION_SCHEMAS[name])
            self._collections[name] = RetryingCollection(inner, self.retry_config)
        return self._collections[name]

    @property
    def memories(self) -> RetryingCollection:
        return self.collection(MEMORIES)

    @property
    def entity_links(self) -> RetryingCollection:
        return self.collection(ENTITY_LINKS)

    @property
    def summaries(self) -> RetryingCollection:
        return self.collection(SUMMARIES)

    async def open(self) -> int:
        """Run pending migrations. Safe to call more than once.

        Returns:
            The schema version after migrating

        Raises:
            StorageError: If reading the version or a migration fails after retries
        """
        if self._opened:
            return self.schema_version

        current = await with_retry(self._read_schema_version, 'schema.read_version', self.retry_config)
        for migration in self.migrations:
            if migration.version <= current:
                continue
            logger.info(f'Applying schema migration v{migration.version}: {migration.description}')
            await migration.apply(self)
            await with_retry(lambda: self._write_schema_version(migration.version), 'schema.write_version', self.retry_config)
            current = migration.version

        self._opened = True
        logger.debug(f'Persistent store open at schema v{current}')
        return current
