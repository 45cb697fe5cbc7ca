"""Application-level exception types for csva."""

from __future__ import annotations


class CsvaError(Exception):
    """Base exception for csva."""


class ConfigurationError(CsvaError):
    """Base exception for configuration and startup validation errors."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class ModelCallError(CsvaError):
    """Raised when the language model backend cannot produce a reply."""


class ToolError(CsvaError):
    """Base exception for tool execution."""


class UnknownToolError(ToolError):
    """Raised when the model requests a tool that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(ToolError):
    """Raised when a tool fails or times out."""


class StoreError(CsvaError):
    """Raised when the durable store rejects a read or write."""


class SignatureError(CsvaError):
    """Raised when a webhook signature does not verify."""


class QueueError(CsvaError):
    """Raised when a job cannot be enqueued."""
