from __future__ import annotations


class TruncatingBuffer:
    """Byte accumulator with a hard ceiling.

    Bytes past ``limit`` are dropped and ``truncated`` latches on. A limit of
    zero or less marks the buffer truncated before anything is pushed.
    """

    def __init__(self, limit: int) -> None:
        self.limit = int(limit)
        self._chunks: list[bytes] = []
        self._size = 0
        self._truncated = self.limit <= 0

    @property
    def truncated(self) -> bool:
        return self._truncated

    def push(self, chunk: bytes) -> None:
        if not chunk:
            return
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        remaining = self.limit - self._size
        if remaining <= 0:
            self._truncated = True
            return
        if len(chunk) > remaining:
            chunk = chunk[:remaining]
            self._truncated = True
        self._chunks.append(bytes(chunk))
        self._size += len(chunk)

    def size(self) -> int:
        return self._size

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)

    def to_text(self) -> str:
        # A multi-byte sequence cut at the ceiling is dropped, not replaced.
        return self.getvalue().decode("utf-8", errors="ignore")

    def __str__(self) -> str:
        return self.to_text()

    def __len__(self) -> int:
        return self._size
