"""Deferred operation handler registry."""

from typing import Any, Callable, Coroutine, Mapping, Optional

from app.provisioning.models import DeferredOperation
from app.provisioning.types import ActionType

# Handler signature: async def handler(operation: DeferredOperation, token: str) -> dict
ActionHandler = Callable[[DeferredOperation, str], Coroutine[Any, Any, dict[str, Any]]]


class ActionRegistry:
    """Registry mapping deferred action types to their handlers."""

    def __init__(self, handlers: Optional[Mapping[ActionType, ActionHandler]] = None):
        self._handlers: dict[ActionType, ActionHandler] = dict(handlers or {})

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        """Register a handler for an action type."""
        self._handlers[action_type] = handler

    def get_handler(self, action_type: ActionType) -> ActionHandler:
        """Get the handler for an action type. Raises KeyError if not found."""
        if action_type not in self._handlers:
            raise KeyError(f"No handler registered for action type: {action_type}")
        return self._handlers[action_type]

    def handler(self, action_type: ActionType) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator to register a handler."""

        def decorator(fn: ActionHandler) -> ActionHandler:
            self.register(action_type, fn)
            return fn

        return decorator

    @property
    def action_types(self) -> list[ActionType]:
        return list(self._handlers)
