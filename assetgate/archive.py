"""Zip archives streamed straight into the response body.

``zipfile`` writes into an unseekable sink, so it emits data descriptors after
each member and never needs to rewind. Every chunk written to the sink is
yielded as soon as it exists; nothing is buffered beyond one read chunk.
"""

import logging
import zipfile
from pathlib import Path
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class _StreamSink:
    """Write-only file object collecting bytes until they are drained."""

    def __init__(self):
        self._parts: list[bytes] = []

    def write(self, data) -> int:
        if data:
            self._parts.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def drain(self) -> bytes:
        out = b"".join(self._parts)
        self._parts.clear()
        return out


def iter_zip(members: Iterable[tuple[Path, str]], compresslevel: int = 9) -> Iterator[bytes]:
    """Yield a deflated zip of ``(path, arcname)`` members in the given order.

    Errors after the first chunk propagate; the server then drops the
    connection since headers are already sent. If the consumer stops early
    the generator is closed and the ``with`` blocks release every handle.
    """
    sink = _StreamSink()
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as zf:
        for path, arcname in members:
            info = zipfile.ZipInfo.from_file(path, arcname)
            info.compress_type = zipfile.ZIP_DEFLATED
            # open(ZipInfo) ignores the archive-wide level
            info._compresslevel = compresslevel
            with open(path, "rb") as src, zf.open(info, "w") as dst:
                while True:
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data
    data = sink.drain()
    if data:
        yield data
