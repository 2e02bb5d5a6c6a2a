"""
Schema migrations for the persistent store.
"""

from typing import Any, Dict, List

from ..utils.logging_config import get_logger
from .base import COLLECTION_SCHEMAS, Migration, PersistentStore

logger = get_logger(__name__)

FEEDBACK_DEFAULTS: Dict[str, Any] = {
    'usageCount': 0,
    'lastUsedAt': None,
    'feedbackScore': 0.0,
    'userVerified': False,
}

ADAPTIVE_DEFAULTS: Dict[str, Any] = {
    'adaptiveDecayRate': 1.0,
    'positiveInteractions': 0,
    'negativeInteractions': 0,
}


async def _create_collections(store: PersistentStore) -> None:
    for name in COLLECTION_SCHEMAS:
        await store.ensure_collection(name)


async def _backfill(store: PersistentStore, defaults: Dict[str, Any]) -> int:
    records = await store.memories.get_all()
    changed = []
    for record in records:
        missing = {key: value for key, value in defaults.items() if key not in record}
        if missing:
            record.update(missing)
            changed.append(record)

    await store.memories.put_many(changed)
    return len(changed)


async def _backfill_feedback_fields(store: PersistentStore) -> None:
    count = await _backfill(store, FEEDBACK_DEFAULTS)
    logger.info(f'Backfilled feedback fields on {count} memories')


async def _backfill_adaptive_fields(store: PersistentStore) -> None:
    count = await _backfill(store, ADAPTIVE_DEFAULTS)
    logger.info(f'Backfilled adaptive decay fields on {count} memories')


DEFAULT_MIGRATIONS: List[Migration] = [
    Migration(version=1, description='create memories, entity link and summary collections', apply=_create_collections),
    Migration(version=2, description='feedback fields on memories', apply=_backfill_feedback_fields),
    Migration(version=3, description='adaptive decay fields on memories', apply=_backfill_adaptive_fields),
]
