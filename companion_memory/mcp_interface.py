"""
MCP Interface Layer using fastmcp, exposing the memory subsystem as agent tools.

Every tool builds a protocol payload and routes it through
`MemorySession.handle_payload`, so the MCP surface accepts exactly what the
request protocol accepts.
"""

import asyncio
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .session import MemorySession
from .storage.base import PersistentStore
from .storage.in_memory import InMemoryPersistentStore
from .utils.config import AppConfig, config
from .utils.logging_config import get_logger
from .utils.opensearch_client import OpenSearchPersistentStore

logger = get_logger(__name__)


def create_server(session: MemorySession, name: str = 'Companion Memory') -> FastMCP:
    """Build a FastMCP application whose tools operate on `session`."""
    mcp = FastMCP(name)

    async def call(payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await session.handle_payload(payload)
        if not response.success:
            logger.error(f'MCP {response.kind} failed: {response.error}')
            raise Exception(f'{response.kind} failed: {response.error}')
        logger.debug(f'MCP {response.kind} succeeded')
        return response.data

    @mcp.tool()
    async def extract_memories(messages: List[Dict[str, Any]],
                               conversation_id: str = '',
                               url: Optional[str] = None,
                               store: bool = True) -> Dict[str, Any]:
        """Extract durable facts about the user from a conversation.

        Args:
            messages: Conversation messages as {role, content} objects
            conversation_id: Conversation the messages belong to
            url: Page the conversation happened on
            store: Store the extracted memories (default: True)

        Returns:
            Stored memories with created/updated counts, or the raw drafts when store is False
        """
        return await call({
            'kind': 'extract_memories',
            'messages': messages,
            'conversationId': conversation_id,
            'url': url,
            'store': store
        })

    @mcp.tool()
    async def add_memories(memories: List[Dict[str, Any]], source: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Store memory drafts ({type, content, importance, confidence, context}), merging duplicates."""
        return await call({'kind': 'add_memories', 'memories': memories, 'source': source})

    @mcp.tool()
    async def update_memory(memory_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Edit a memory's type, content, context, importance, confidence or expiresAt."""
        return await call({'kind': 'update_memory', 'id': memory_id, 'updates': updates})

    @mcp.tool()
    async def delete_memory(memory_id: str) -> Dict[str, Any]:
        return await call({'kind': 'delete_memory', 'id': memory_id})

    @mcp.tool()
    async def delete_memories_by_type(memory_type: str) -> Dict[str, Any]:
        return await call({'kind': 'delete_memories_by_type', 'type': memory_type})

    @mcp.tool()
    async def clear_memories() -> Dict[str, Any]:
        return await call({'kind': 'clear_memories'})

    @mcp.tool()
    async def retrieve_memories(message: str,
                                url: Optional[str] = None,
                                limit: Optional[int] = None,
                                types: Optional[List[str]] = None) -> Dict[str, Any]:
        """Retrieve the memories most relevant to a message.

        Args:
            message: Current user message
            url: Current page URL
            limit: Maximum number of memories
            types: Restrict to these memory types

        Returns:
            Ranked memories and the rendered context text for a system prompt
        """
        return await call({'kind': 'retrieve_memories', 'message': message, 'url': url, 'limit': limit, 'types': types})

    @mcp.tool()
    async def find_related(memory_id: str, limit: int = 5) -> Dict[str, Any]:
        """Memories sharing people, projects, skills or technologies with the given memory."""
        return await call({'kind': 'find_related', 'memoryId': memory_id, 'limit': limit})

    @mcp.tool()
    async def evaluate_proactive(url: str = '', title: str = '', main_content: Optional[str] = None) -> Dict[str, Any]:
        """Ask whether a memory should be brought up unprompted on the current page."""
        return await call({'kind': 'evaluate_proactive', 'url': url, 'title': title, 'mainContent': main_content})

    @mcp.tool()
    async def resolve_proactive(outcome: str) -> Dict[str, Any]:
        """Report the user's response to the pending proactive message: engaged or dismissed."""
        return await call({'kind': 'resolve_proactive', 'outcome': outcome})

    @mcp.tool()
    async def memory_stats() -> Dict[str, Any]:
        return await call({'kind': 'memory_stats'})

    return mcp


def build_store(app_config: AppConfig) -> PersistentStore:
    """OpenSearch-backed store when an endpoint is configured, in-memory otherwise."""
    if app_config.opensearch.endpoint:
        return OpenSearchPersistentStore(app_config.opensearch, retry_config=app_config.storage_retry)
    logger.warning('No OpenSearch endpoint configured, memories will not outlive this process')
    return InMemoryPersistentStore(retry_config=app_config.storage_retry)


if __name__ == '__main__':
    session = MemorySession(store=build_store(config))
    asyncio.run(session.open())
    mcp = create_server(session)
    if config.mcp.transport == 'stdio':
        mcp.run(transport='stdio')
    else:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
