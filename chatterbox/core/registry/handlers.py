# chatterbox/core/registry/handlers.py
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterator, MutableMapping

from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.errors import ErrorCode, RegistryError
from chatterbox.core.types.handlers import HandlerId

# Every registered function: one session, one JSON-like document in and out.
Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[dict[str, Any]]]


class NotRegistered(RegistryError, KeyError):
    """Raised when a handler id is unknown or has no implementation.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, handler_name: str) -> None:
        RegistryError.__init__(
            self,
            message=f"handler '{handler_name}' not registered",
            code=ErrorCode.HANDLER_NOT_REGISTERED,
            notes=[f"requested handler: '{handler_name}'"],
            help_text='handler ids must be HandlerId members wired up by the Chatterbox app',
        )
        self.handler_name = handler_name


class DuplicateHandlerError(RegistryError):
    """Raised when a handler id is registered more than once."""

    def __init__(self, handler_id: HandlerId) -> None:
        super().__init__(
            message=f"duplicate handler '{handler_id.value}'",
            code=ErrorCode.HANDLER_DUPLICATE,
            help_text='each HandlerId maps to exactly one implementation',
        )
        self.handler_id = handler_id


class HandlerRegistry(MutableMapping[HandlerId, Handler]):
    """Registry mapping the closed HandlerId enumeration to implementations.

    Resolved once at startup; `missing()` lists ids nothing implements.
    """

    def __init__(self, initial: Dict[HandlerId, Handler] | None = None) -> None:
        self._data: Dict[HandlerId, Handler] = {}
        for handler_id, handler in (initial or {}).items():
            self.register(handler_id, handler)

    def __getitem__(self, key: HandlerId) -> Handler:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(getattr(key, 'value', str(key)))

    def __setitem__(self, key: HandlerId, value: Handler) -> None:
        self.register(key, value)

    def __delitem__(self, key: HandlerId) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[HandlerId]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, handler_id: HandlerId, handler: Handler) -> Handler:
        if handler_id in self._data:
            raise DuplicateHandlerError(handler_id)
        self._data[handler_id] = handler
        return handler

    def resolve(self, name: object) -> Handler:
        """Look up a handler by the raw value found in a queue payload."""
        handler_id = HandlerId.parse(name)
        if handler_id is None:
            raise NotRegistered(str(name))
        return self[handler_id]

    def missing(self) -> list[HandlerId]:
        return [handler_id for handler_id in HandlerId if handler_id not in self._data]
