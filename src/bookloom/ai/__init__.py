"""AI client, prompts, and task orchestration."""

from .client import AIClient, ClientSettings

__all__ = ["AIClient", "ClientSettings"]
