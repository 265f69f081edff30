"""
Model client backends for ai-collab.

- ModelClient: abstract completion interface used by the review swarm
- AnthropicModelClient: Anthropic Messages API implementation
"""

from .base import ModelClient
from .llm import AnthropicModelClient, LLMBackendError

__all__ = [
    "ModelClient",
    "AnthropicModelClient",
    "LLMBackendError",
]
