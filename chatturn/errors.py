"""Structured error types for chatturn."""


class ChatTurnError(Exception):
    """Base error for all chatturn operations."""
    pass


class SignaturePairingError(ChatTurnError):
    """Raised when a reasoning payload is built without the signature it belongs to."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source} reasoning payload: {message}")


class ProviderConnectionError(ChatTurnError, ConnectionError):
    """Raised when the remote model API cannot be reached or rejects a request."""

    def __init__(self, model: str, message: str):
        self.model = model
        super().__init__(f"model={model}: {message}")


class ConfigError(ChatTurnError):
    """Raised when an explicit configuration update is invalid."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{key}: {message}")
