# src/chatcore/exceptions.py
"""
Custom exceptions for the ChatCore library.

This module defines a hierarchy of custom exception classes so that callers
can tell apart a missing record, an operation attempted in the wrong state,
a failure of the persistence transport, and a timeout. Every error carries a
short ``kind`` string and can be rendered with ``to_dict()`` for presentation
layers that must not see stack traces or transport detail.
"""

from typing import Any, Dict


class ChatCoreError(Exception):
    """Base class for all ChatCore specific errors."""

    kind: str = "error"

    def __init__(self, message: str = "An unspecified error occurred in ChatCore."):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Typed, presentation-safe view of the error."""
        return {"kind": self.kind, "type": type(self).__name__, "message": self.message}


class ConfigError(ChatCoreError):
    """Raised for errors related to configuration loading or validation."""

    kind = "config"

    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)


# --- NotFound ---


class NotFoundError(ChatCoreError):
    """Base class for lookups of conversations, sessions or providers that do not exist."""

    kind = "not_found"

    def __init__(self, message: str = "Requested item not found."):
        super().__init__(message)


class ConversationNotFoundError(NotFoundError):
    """Raised when a conversation ID is not known."""

    def __init__(self, conversation_id: str, message: str = "Conversation not found."):
        self.conversation_id = conversation_id
        super().__init__(f"{message} Conversation ID: '{conversation_id}'")


class SessionNotFoundError(NotFoundError):
    """Raised when a session ID is not known to the persistence layer."""

    def __init__(self, session_id: str, message: str = "Session not found."):
        self.session_id = session_id
        super().__init__(f"{message} Session ID: '{session_id}'")


class ProviderNotFoundError(NotFoundError):
    """Raised when a provider ID has not been registered."""

    def __init__(self, provider_id: str, message: str = "Provider not found."):
        self.provider_id = provider_id
        super().__init__(f"{message} Provider ID: '{provider_id}'")


# --- InvalidState ---


class InvalidStateError(ChatCoreError):
    """Raised when an operation is not valid in the component's current state."""

    kind = "invalid_state"

    def __init__(self, message: str = "Invalid state for this operation."):
        super().__init__(message)


class NotInitializedError(InvalidStateError):
    """Raised when a component is used before ``initialize()`` completed."""

    def __init__(self, component: str = "component", message: str = "Component is not initialized."):
        self.component = component
        super().__init__(f"{message} Component: '{component}'")


class NoActiveConversationError(InvalidStateError):
    """Raised when an operation needs a current conversation and none is selected."""

    def __init__(self, message: str = "No active conversation."):
        super().__init__(message)


class ProviderNotConfiguredError(InvalidStateError):
    """Raised when switching to a provider that is registered but not configured."""

    def __init__(self, provider_id: str, message: str = "Provider is not configured."):
        self.provider_id = provider_id
        super().__init__(f"{message} Provider ID: '{provider_id}'")


# --- Transport ---


class TransportError(ChatCoreError):
    """Raised when a call across the persistence boundary fails."""

    kind = "transport"

    def __init__(self, operation: str = "unknown", message: str = "Transport failure."):
        self.operation = operation
        super().__init__(f"{message} Operation: '{operation}'")


class PersistenceError(TransportError):
    """Raised by persistence bridges when the underlying store cannot be read or written."""

    def __init__(self, operation: str = "unknown", message: str = "Persistence failure."):
        super().__init__(operation, message)


# --- Timeout ---


class EventTimeoutError(ChatCoreError):
    """Raised when waiting for an event or a health probe exceeds its bound."""

    kind = "timeout"

    def __init__(self, event_name: str = "unknown", timeout: float = 0.0, message: str = "Timed out waiting for event."):
        self.event_name = event_name
        self.timeout = timeout
        super().__init__(f"{message} Event: '{event_name}', timeout: {timeout}s")


# --- Policy / payload / import ---


class PolicyViolation(ChatCoreError):
    """
    Describes a crossed policy limit such as a cost ceiling.

    The core never raises this; it is attached to warning events so that
    subscribers can decide whether to enforce a hard stop.
    """

    kind = "policy"

    def __init__(self, policy: str = "unknown", message: str = "Policy limit crossed."):
        self.policy = policy
        super().__init__(f"{message} Policy: '{policy}'")


class EventPayloadError(ChatCoreError):
    """Raised in payload-validation mode when an event payload does not match its schema."""

    kind = "payload"

    def __init__(self, event_name: str = "unknown", message: str = "Invalid event payload."):
        self.event_name = event_name
        super().__init__(f"{message} Event: '{event_name}'")


class InvalidMessageError(ChatCoreError):
    """Raised when a message mapping lacks content or carries invalid fields."""

    kind = "validation"

    def __init__(self, message: str = "Invalid message."):
        super().__init__(message)


class ImportFormatError(ChatCoreError):
    """Raised for unsupported or malformed conversation export/import data."""

    kind = "format"

    def __init__(self, message: str = "Unsupported or invalid conversation format."):
        super().__init__(message)


__all__ = [
    "ChatCoreError",
    "ConfigError",
    "NotFoundError",
    "ConversationNotFoundError",
    "SessionNotFoundError",
    "ProviderNotFoundError",
    "InvalidStateError",
    "NotInitializedError",
    "NoActiveConversationError",
    "ProviderNotConfiguredError",
    "TransportError",
    "PersistenceError",
    "EventTimeoutError",
    "PolicyViolation",
    "EventPayloadError",
    "InvalidMessageError",
    "ImportFormatError",
]
