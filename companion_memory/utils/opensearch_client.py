"""
OpenSearch storage engine for the persistent store contract.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..storage.base import Collection, CollectionSchema, PersistentStore, StorageError
from .config import OpenSearchConfig, StorageRetryConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SCHEMA_DOC_ID = 'schema'
PAGE_SIZE = 500

# Mapping types for indexed fields; every other field is stored but not indexed explicitly
FIELD_TYPES = {
    'id': 'keyword',
    'type': 'keyword',
    'importance': 'float',
    'createdAt': 'double',
    'lastAccessed': 'double',
    'feedbackScore': 'float',
    'usageCount': 'integer',
    'entityId': 'keyword',
    'entityType': 'keyword',
    'entityName': 'keyword',
    'memoryIds': 'keyword',
    'updatedAt': 'double',
    'conversationId': 'keyword',
    'url': 'keyword',
}


def build_client(config: OpenSearchConfig) -> OpenSearch:
    """Create an OpenSearch client signed with the ambient AWS credentials.

    Args:
        config: OpenSearchConfig instance with connection parameters

    Returns:
        OpenSearch client
    """
    credentials = boto3.Session().get_credentials()
    auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

    endpoint = config.endpoint
    if '://' in endpoint:
        # Remove protocol if present
        endpoint = endpoint.split('://', 1)[1]

    client = OpenSearch(hosts=[{
        'host': endpoint,
        'port': config.port
    }],
                        http_auth=auth,
                        use_ssl=True,
                        verify_certs=True,
                        connection_class=RequestsHttpConnection)

    logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')
    return client


def index_body(schema: CollectionSchema) -> Dict[str, Any]:
    """Index mapping for a collection: key field plus every secondary index field."""
    fields = [schema.key_field, *schema.indexes.values()]
    properties = {name: {'type': FIELD_TYPES.get(name, 'keyword')} for name in fields}
    # Embeddings are opaque to this subsystem
    properties['embedding'] = {'type': 'object', 'enabled': False}
    return {'mappings': {'properties': properties}}


class OpenSearchCollection(Collection):
    """One collection backed by one OpenSearch index. Blocking client calls run in a worker thread.

    Reads page through `search` with `search_after` on the key field, and writes only ask for an
    immediate refresh on provisioned domains, so the same code runs against Serverless collections
    where scroll and refresh are unavailable.
    """

    def __init__(self, name: str, schema: CollectionSchema, client: OpenSearch, index_name: str, refresh: bool = True):
        super().__init__(name, schema)
        self.client = client
        self.index_name = index_name
        self.write_options = {'refresh': True} if refresh else {}

    async def _call(self, action: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except NotFoundError:
            raise
        except OpenSearchException as e:
            logger.debug(f'OpenSearch {action} on {self.index_name} failed: {e}')
            raise StorageError(f'OpenSearch {action} failed: {e}')

    def _search_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        body = {'query': query, 'size': PAGE_SIZE, 'sort': [{self.key_field: 'asc'}]}
        records = []
        while True:
            hits = self.client.search(index=self.index_name, body=body)['hits']['hits']
            records.extend(hit['_source'] for hit in hits)
            if len(hits) < PAGE_SIZE:
                return records
            body = {**body, 'search_after': hits[-1]['sort']}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self._call('get', self.client.get, index=self.index_name, id=key)
        except NotFoundError:
            return None
        return response.get('_source')

    async def get_all(self) -> List[Dict[str, Any]]:
        return await self._call('search', self._search_all, {'match_all': {}})

    async def get_by_index(self, index_name: str, value: Any) -> List[Dict[str, Any]]:
        field_name = self.index_field(index_name)
        if value is None:
            return []
        return await self._call('search', self._search_all, {'term': {field_name: value}})

    async def put(self, record: Dict[str, Any]) -> None:
        response = await self._call('index',
                                    self.client.index,
                                    index=self.index_name,
                                    id=record[self.key_field],
                                    body=record,
                                    **self.write_options)
        if response.get('result') not in ('created', 'updated'):
            raise StorageError(f'Unexpected result indexing document: {response}')

    async def _bulk(self, actions: List[Dict[str, Any]]) -> None:
        success, errors = await self._call('bulk',
                                           helpers.bulk,
                                           self.client,
                                           actions,
                                           raise_on_error=False,
                                           **self.write_options)
        if errors:
            raise StorageError(f'Bulk write to {self.index_name} acknowledged {success}/{len(actions)} records')

    async def put_many(self, records: Sequence[Dict[str, Any]]) -> None:
        await self._bulk([{
            '_op_type': 'index',
            '_index': self.index_name,
            '_id': record[self.key_field],
            '_source': record
        } for record in records])

    async def delete(self, key: str) -> None:
        try:
            await self._call('delete', self.client.delete, index=self.index_name, id=key, **self.write_options)
        except NotFoundError:
            logger.debug(f'Document {key} not found for deletion in {self.index_name}')

    async def clear(self) -> None:
        records = await self.get_all()
        if not records:
            return
        # delete_by_query is not available on Serverless collections
        await self._bulk([{
            '_op_type': 'delete',
            '_index': self.index_name,
            '_id': record[self.key_field]
        } for record in records])

    async def count(self) -> int:
        response = await self._call('count', self.client.count, index=self.index_name)
        return int(response.get('count', 0))


class OpenSearchPersistentStore(PersistentStore):
    """Persistent store with one index per collection and a meta index holding the schema version."""

    def __init__(self,
                 config: OpenSearchConfig,
                 client: Optional[OpenSearch] = None,
                 retry_config: Optional[StorageRetryConfig] = None,
                 migrations=None):
        super().__init__(retry_config=retry_config, migrations=migrations)
        self.config = config
        self.client = client or build_client(config)

    def index_name(self, collection_name: str) -> str:
        return f'{self.config.index_prefix}_{collection_name}'

    @property
    def meta_index(self) -> str:
        return self.index_name('meta')

    def _create_collection(self, name: str, schema: CollectionSchema) -> Collection:
        return OpenSearchCollection(name,
                                    schema,
                                    self.client,
                                    self.index_name(name),
                                    refresh=not self.config.serverless)

    async def ensure_collection(self, name: str) -> None:
        index_name = self.index_name(name)
        schema = self.collection(name).schema
        try:
            exists = await asyncio.to_thread(self.client.indices.exists, index=index_name)
            if exists:
                logger.debug(f'Index {index_name} already exists')
                return
            await asyncio.to_thread(self.client.indices.create, index=index_name, body=index_body(schema))
            logger.info(f'Created index {index_name}')
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise StorageError(f'Failed to create index: {e}')

    async def _read_schema_version(self) -> int:
        try:
            response = await asyncio.to_thread(self.client.get, index=self.meta_index, id=SCHEMA_DOC_ID)
        except NotFoundError:
            return 0
        except OpenSearchException as e:
            raise StorageError(f'Failed to read schema version: {e}')
        return int(response.get('_source', {}).get('version', 0))

    async def _write_schema_version(self, version: int) -> None:
        write_options = {} if self.config.serverless else {'refresh': True}
        try:
            await asyncio.to_thread(self.client.index,
                                    index=self.meta_index,
                                    id=SCHEMA_DOC_ID,
                                    body={'version': version},
                                    **write_options)
        except OpenSearchException as e:
            raise StorageError(f'Failed to write schema version: {e}')
