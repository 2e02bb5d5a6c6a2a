"""
Amazon Bedrock text-completion adapter with retry logic and error handling.
"""

import asyncio
import random
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .completion import CompletionRequest, CompletionResponse, TextCompletionClient
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Error codes that mean the session credentials went stale; the client is rebuilt before retrying
AUTH_ERROR_CODES = frozenset({
    'ExpiredTokenException',
    'ExpiredToken',
    'UnrecognizedClientException',
    'InvalidSignatureException',
    'RequestExpired',
})


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def _error_code(error: Exception) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


class BedrockLLM(TextCompletionClient):
    """Amazon Bedrock LLM client with a bounded retry loop.

    Throttling and transport errors back off exponentially with jitter. Auth
    expiry rebuilds the boto3 client and retries within the same attempt budget,
    so a persistently broken credential chain fails after `retry_attempts` tries.
    """

    def __init__(self, config: BedrockLLMConfig, client_factory=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client_factory: Optional zero-argument callable returning a bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self._client_factory = client_factory or self._default_client
        self.bedrock_runtime = self._client_factory()

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _default_client(self):
        # Create Bedrock runtime client with timeout configuration
        return boto3.client(
            'bedrock-runtime',
            region_name=self.config.region,
            config=BotoConfig(
                connect_timeout=60,
                read_timeout=120,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

    def refresh_client(self) -> None:
        logger.info('Rebuilding Bedrock runtime client after authentication failure')
        self.bedrock_runtime = self._client_factory()

    def _converse(self, messages: List[Dict[str, Any]], system_prompt: str) -> str:
        response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                 messages=messages,
                                                 system=[{
                                                     'text': system_prompt
                                                 }],
                                                 inferenceConfig={
                                                     'maxTokens': self.config.max_tokens,
                                                     'temperature': self.config.temperature,
                                                 })
        content = response.get('output', {}).get('message', {}).get('content', [])
        return ''.join(block.get('text', '') for block in content)

    async def generate_response(self, user_prompt: str, system_prompt: str) -> str:
        """
        Generate a response using Bedrock LLM with retry logic.

        Args:
            user_prompt: User turn text
            system_prompt: System prompt for the conversation

        Returns:
            Response text

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        messages = [{'role': 'user', 'content': [{'text': user_prompt}]}]
        last_error: Optional[Exception] = None

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')
                text = await asyncio.to_thread(self._converse, messages, system_prompt)
                logger.debug(f'Bedrock LLM response generated successfully (length: {len(text)})')
                return text

            except (ClientError, BotoCoreError) as e:
                last_error = e
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt == self.config.retry_attempts - 1:
                    break
                if _error_code(e) in AUTH_ERROR_CODES:
                    self.refresh_client()
                    continue
                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                await asyncio.sleep(delay)

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {last_error}')

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        try:
            raw = await self.generate_response(request.user_prompt, request.system_prompt)
        except BedrockLLMError as e:
            logger.error(f'Completion {request.request_id} failed: {e}')
            return CompletionResponse.failure(str(e))
        return CompletionResponse(success=True, raw=raw)
