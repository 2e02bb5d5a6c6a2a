"""
In-process storage engine. Records are deep-copied on the way in and out so
callers never alias stored state.
"""

import copy
from typing import Any, Dict, List, Optional, Sequence

from .base import Collection, CollectionSchema, PersistentStore


class InMemoryCollection(Collection):

    def __init__(self, name: str, schema: CollectionSchema):
        super().__init__(name, schema)
        self._records: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def get_all(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._records.values()]

    async def get_by_index(self, index_name: str, value: Any) -> List[Dict[str, Any]]:
        field_name = self.index_field(index_name)
        matches = []
        for record in self._records.values():
            field_value = record.get(field_name)
            if isinstance(field_value, list):
                hit = value in field_value
            else:
                hit = field_value == value
            if hit:
                matches.append(copy.deepcopy(record))
        return matches

    async def put(self, record: Dict[str, Any]) -> None:
        self._records[record[self.key_field]] = copy.deepcopy(record)

    async def put_many(self, records: Sequence[Dict[str, Any]]) -> None:
        # Validate every key before writing so a bad batch leaves nothing behind
        staged = {record[self.key_field]: copy.deepcopy(record) for record in records}
        self._records.update(staged)

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def clear(self) -> None:
        self._records.clear()

    async def count(self) -> int:
        return len(self._records)


class InMemoryPersistentStore(PersistentStore):
    """Reference engine used for tests and single-process sessions."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._version = 0

    def _create_collection(self, name: str, schema: CollectionSchema) -> Collection:
        return InMemoryCollection(name, schema)

    async def _read_schema_version(self) -> int:
        return self._version

    async def _write_schema_version(self, version: int) -> None:
        self._version = version
