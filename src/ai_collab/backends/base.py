"""
Abstract base class for model completion backends.
"""

from abc import ABC, abstractmethod


class ModelClient(ABC):
    """
    Abstract interface for single-turn model completions.

    The review swarm only needs "prompt in, text out" with sampling
    controls, so any provider (hosted API, local server, test fake) can
    back it by implementing complete().
    """

    @abstractmethod
    def complete(
        self,
        model: str,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        seed: int | None = None,
    ) -> str:
        """
        Run one completion.

        Args:
            model: Model identifier understood by the backend
            prompt: User prompt text
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            seed: Sampling seed, for providers that support one

        Returns:
            The generated text

        Raises:
            Exception: Backend-specific failures propagate to the caller
        """
        pass
