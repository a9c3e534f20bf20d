"""Provider adapter contract.

A provider adapter is any coroutine function ``(content_type, payload)`` that
returns the generated content (or export result), or raises. Raise
``TransientProviderError`` / ``PermanentProviderError`` to classify a failure
explicitly; any other exception is classified by ``retry.classify_error``.
"""
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from .errors import PermanentProviderError
from .schemas import ContentType


class ProviderResult:
    """Generated output plus the name of the backend that produced it."""

    def __init__(self, output: Any, provider: Optional[str] = None):
        self.output = output
        self.provider = provider

    def __repr__(self) -> str:
        return f"ProviderResult(provider={self.provider!r})"


class ProviderAdapter(Protocol):
    async def __call__(self, content_type: ContentType, payload: Any) -> Any:
        ...


Handler = Callable[[Any], Awaitable[Any]]


class CallableProvider:
    """Routes each content type to its own coroutine.

    ``default`` handles content types without a dedicated handler; with no
    default those requests fail permanently.
    """

    def __init__(self, handlers: Mapping[ContentType, Handler], default: Optional[Handler] = None, name: Optional[str] = None):
        self._handlers: Dict[ContentType, Handler] = dict(handlers)
        self._default = default
        self.name = name

    async def __call__(self, content_type: ContentType, payload: Any) -> Any:
        handler = self._handlers.get(content_type, self._default)
        if handler is None:
            raise PermanentProviderError(f"no provider configured for {content_type.value}", code="UNSUPPORTED_TYPE")
        output = await handler(payload)
        if self.name and not isinstance(output, ProviderResult):
            return ProviderResult(output, provider=self.name)
        return output
