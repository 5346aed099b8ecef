# chatterbox/core/registry/runner.py
"""
The generic invocation boundary between the worker and business logic.

run_function(name, payload) resolves `name` through the registry and runs
the handler in its own transaction. A raised exception rolls everything
back, including anything the handler enqueued.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatterbox.core.errors import ErrorCode, RegistryError
from chatterbox.core.logging import get_logger
from chatterbox.core.registry.handlers import HandlerRegistry

logger = get_logger('runner')


class InvalidHandlerResult(RegistryError):
    """A handler returned something other than a result document."""

    def __init__(
        self, handler_name: str, got: object, expected: str = 'dict'
    ) -> None:
        super().__init__(
            message=f"handler '{handler_name}' returned {type(got).__name__}, expected {expected}",
            code=ErrorCode.HANDLER_INVALID_RESULT,
        )


class FunctionRunner:
    def __init__(
        self,
        registry: HandlerRegistry,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory

    async def run_function(self, name: object, payload: dict[str, Any]) -> dict[str, Any]:
        """Run the handler registered as `name`; raises NotRegistered when unknown."""
        handler = self.registry.resolve(name)

        async with self.session_factory() as session, session.begin():
            result = await handler(session, payload)
            if not isinstance(result, dict):
                raise InvalidHandlerResult(str(name), result)

        logger.debug(f'{name} -> {result.get("status")}')
        return result
