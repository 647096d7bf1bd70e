"""Provider adapter contracts.

A provider is either synchronous (``generate`` blocks until the artifact bytes are
ready) or asynchronous (``submit`` returns a provider task id and completion arrives
later through the webhook). The kind is resolved once, when a worker starts.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Union, runtime_checkable
from uuid import UUID


class ProviderKind(str, Enum):
    """External generation services the engine can dispatch to."""

    GEMINI = "gemini"
    NANOBANANA = "nanobanana"
    REPLICATE = "replicate"


class ProviderMode(str, Enum):
    """Completion protocol of a provider."""

    SYNC = "sync"
    ASYNC = "async"


@dataclass(frozen=True)
class InputImage:
    """An input artifact handed to a provider.

    Synchronous providers receive the bytes inline; asynchronous providers fetch
    the artifact themselves from ``url``.
    """

    asset_id: UUID
    mime_type: str
    data: Optional[bytes] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class GenerationRequest:
    """Everything a provider needs to run one job attempt."""

    job_id: UUID
    user_id: UUID
    job_type: str
    prompt: str
    images: list[InputImage] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GeneratedImage:
    """Artifact bytes returned by a synchronous provider."""

    data: bytes
    mime_type: str
    model: Optional[str] = None
    text: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class SubmittedTask:
    """Acknowledgement of an asynchronous submission."""

    task_id: str
    request: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SyncProvider(Protocol):
    """Blocking provider: returns artifact bytes within its own hard timeout."""

    kind: ProviderKind

    async def generate(self, request: GenerationRequest) -> GeneratedImage: ...


@runtime_checkable
class AsyncProvider(Protocol):
    """Non-blocking provider: only confirms the task was accepted."""

    kind: ProviderKind

    async def submit(self, request: GenerationRequest) -> SubmittedTask: ...


Provider = Union[SyncProvider, AsyncProvider]


def provider_mode(provider: Provider) -> ProviderMode:
    """Classify a provider instance by the capability it exposes."""
    if isinstance(provider, AsyncProvider):
        return ProviderMode.ASYNC
    if isinstance(provider, SyncProvider):
        return ProviderMode.SYNC
    raise TypeError(f"{type(provider).__name__} exposes neither generate() nor submit()")
