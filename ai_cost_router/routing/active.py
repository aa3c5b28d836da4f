"""
In-flight request bookkeeping.

The arena holds one ActiveRequest per request id from the moment
processing starts until the request reaches a terminal state (success,
failure or cancellation). Only the task that started a request mutates
or removes its entry; the arena takes no lock.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from ..core.enums import ProviderId, RequestType


@dataclass(frozen=True)
class AudioChunk:
    """One received audio fragment."""
    data: bytes
    timestamp: float
    size: int


@dataclass
class ActiveRequest:
    """Bookkeeping entry for a request currently being processed."""
    request_id: str
    provider: Optional[ProviderId]
    session_id: Optional[str]
    type: RequestType
    start_time: float = field(default_factory=time.monotonic)
    chunks: List[AudioChunk] = field(default_factory=list)

    @property
    def bytes_received(self) -> int:
        return sum(chunk.size for chunk in self.chunks)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)

    def add_chunk(self, data: bytes) -> AudioChunk:
        chunk = AudioChunk(data=bytes(data), timestamp=time.time(), size=len(data))
        self.chunks.append(chunk)
        return chunk

    def assemble(self) -> bytes:
        """Concatenate chunks in arrival order."""
        return b"".join(chunk.data for chunk in self.chunks)


class ActiveRequestArena:
    """Request id -> ActiveRequest, with insert-on-start / remove-on-terminal lifecycle."""

    def __init__(self):
        self._entries: Dict[str, ActiveRequest] = {}

    def start(
        self,
        request_id: str,
        request_type: RequestType,
        provider: Optional[ProviderId] = None,
        session_id: Optional[str] = None,
    ) -> ActiveRequest:
        """Register a new in-flight request.

        Raises:
            ValueError: If the request id is already in flight
        """
        if request_id in self._entries:
            raise ValueError(f"Request {request_id} is already in flight")
        entry = ActiveRequest(
            request_id=request_id,
            provider=provider,
            session_id=session_id,
            type=request_type,
        )
        self._entries[request_id] = entry
        return entry

    def get(self, request_id: str) -> Optional[ActiveRequest]:
        return self._entries.get(request_id)

    def finish(self, request_id: str, entry: Optional[ActiveRequest] = None) -> Optional[ActiveRequest]:
        """Remove an entry; a no-op for unknown ids.

        Args:
            request_id: Id of the request
            entry: When given, remove only if this exact entry is still
                registered under the id (a later request may reuse it)

        Returns:
            The removed entry, or None if nothing was removed
        """
        current = self._entries.get(request_id)
        if current is None or (entry is not None and current is not entry):
            return None
        return self._entries.pop(request_id)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ActiveRequest]:
        return iter(list(self._entries.values()))
