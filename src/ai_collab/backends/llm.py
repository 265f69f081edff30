"""
Anthropic API backend for swarm model calls.
"""

import logging

from anthropic import Anthropic, AuthenticationError

from .base import ModelClient

logger = logging.getLogger(__name__)


class LLMBackendError(Exception):
    """Raised when an LLM backend operation fails."""


class AnthropicModelClient(ModelClient):
    """
    Model client using the Anthropic Messages API.

    Requires ANTHROPIC_API_KEY environment variable.
    """

    def __init__(self, timeout: float = 120, client: Anthropic | None = None):
        """
        Initialize the API backend.

        Args:
            timeout: Request timeout in seconds
            client: Pre-built Anthropic client (created lazily when omitted)
        """
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> Anthropic:
        if self._client is None:
            try:
                self._client = Anthropic(timeout=self.timeout)
            except AuthenticationError as e:
                raise LLMBackendError(f"Anthropic API key missing or invalid: {e}")
        return self._client

    def complete(
        self,
        model: str,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        seed: int | None = None,
    ) -> str:
        if seed is not None:
            # The Messages API has no sampling seed
            logger.debug("Ignoring seed %d for model %s", seed, model)

        client = self._get_client()
        response = client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response.content:
            raise LLMBackendError(f"Empty response from model {model}")
        return response.content[0].text
