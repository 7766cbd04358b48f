"""
Archive Multiplexer
===================

Appends content streams as ZIP entries, one after another, into an async
ArchiveSink.

zipfile writes into a non-seekable drain buffer (so entries use data
descriptors and nothing needs to be rewritten); after every chunk the buffer
is drained into the sink. The working set is one chunk, independent of the
archive size.

Entry read failures are skip-and-continue: the partial entry is dropped from
the central directory, so the finished archive stays valid and simply does
not list it. Encode or sink faults are fatal (ArchiveEncodeError).
"""

import logging
import zipfile
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Optional

from services.errors import ArchiveEncodeError, ArchiveJobError

logger = logging.getLogger(__name__)

# Entries at or above this size use ZIP64 headers
ZIP64_SIZE_THRESHOLD = int(zipfile.ZIP64_LIMIT / 1.05)


class CompressionLevel(str, Enum):
    NONE = "none"
    FAST = "fast"
    BALANCED = "balanced"

    @property
    def zip_method(self) -> int:
        return zipfile.ZIP_STORED if self is CompressionLevel.NONE else zipfile.ZIP_DEFLATED

    @property
    def zlib_level(self) -> Optional[int]:
        return {CompressionLevel.FAST: 1, CompressionLevel.BALANCED: 6}.get(self)


class ArchiveSink:
    """Async destination for encoded archive bytes."""

    async def write(self, data: bytes):
        raise NotImplementedError

    async def close(self):
        pass


class _DrainBuffer:
    """Write-only, tell-able, non-seekable file object for zipfile."""

    def __init__(self):
        self._buffer = bytearray()
        self._position = 0

    def write(self, data) -> int:
        self._buffer += data
        self._position += len(data)
        return len(data)

    def tell(self) -> int:
        return self._position

    def flush(self):
        pass

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class ArchiveMultiplexer:
    """Sequential streaming ZIP writer."""

    def __init__(
        self,
        sink: ArchiveSink,
        compression: CompressionLevel = CompressionLevel.BALANCED,
    ):
        self.sink = sink
        self.compression = CompressionLevel(compression)
        self.bytes_written = 0
        self.entry_count = 0
        self.skipped_entries = 0
        self._buffer = _DrainBuffer()
        self._zip = zipfile.ZipFile(
            self._buffer,
            mode="w",
            compression=self.compression.zip_method,
            allowZip64=True,
        )
        self._finalized = False

    async def _drain(self):
        data = self._buffer.drain()
        if data:
            await self.sink.write(data)
            self.bytes_written += len(data)

    def _entry_info(self, entry_name: str, timestamp: datetime, size_hint: Optional[int]):
        if timestamp.year < 1980:
            timestamp = datetime.now()
        info = zipfile.ZipInfo(entry_name, date_time=timestamp.timetuple()[:6])
        info.compress_type = self.compression.zip_method
        info.external_attr = 0o644 << 16
        level = self.compression.zlib_level
        if level is not None:
            # ZipInfo._compresslevel on 3.7-3.12, compress_level from 3.13
            if hasattr(info, "compress_level"):
                info.compress_level = level
            else:
                info._compresslevel = level
        info.file_size = size_hint or 0
        return info

    async def append(
        self,
        content: AsyncIterator[bytes],
        entry_name: str,
        timestamp: Optional[datetime] = None,
        size_hint: Optional[int] = None,
    ) -> bool:
        """
        Stream one entry into the archive.

        Args:
            content: Async iterator of the entry's bytes
            entry_name: Name inside the archive (used verbatim)
            timestamp: Entry modification time (default: now)
            size_hint: Expected size; unknown or huge sizes force ZIP64 headers

        Returns:
            True if the entry was appended, False if reading ``content`` failed
            and the entry was skipped

        Raises:
            ArchiveEncodeError: Encoding or sink write failed (fatal)
        """
        if self._finalized:
            raise ArchiveEncodeError("Archive already finalized")

        info = self._entry_info(entry_name, timestamp or datetime.now(), size_hint)
        force_zip64 = size_hint is None or size_hint >= ZIP64_SIZE_THRESHOLD
        entries_before = len(self._zip.filelist)
        read_error: Optional[Exception] = None

        try:
            with self._zip.open(info, mode="w", force_zip64=force_zip64) as dest:
                chunks = content.__aiter__()
                while True:
                    try:
                        chunk = await chunks.__anext__()
                    except StopAsyncIteration:
                        break
                    except Exception as e:
                        read_error = e
                        break
                    dest.write(chunk)
                    await self._drain()
            await self._drain()
        except ArchiveJobError:
            raise
        except Exception as e:
            raise ArchiveEncodeError(f"Failed to write entry '{entry_name}': {e}") from e

        if read_error is not None:
            # Bytes already emitted stay in the stream; the central directory
            # will not reference them. close() writes the central directory from
            # filelist, and NameToInfo backs getinfo(); both checked on 3.10-3.13.
            dropped = self._zip.filelist[entries_before:]
            del self._zip.filelist[entries_before:]
            for zinfo in dropped:
                if self._zip.NameToInfo.get(zinfo.filename) is zinfo:
                    del self._zip.NameToInfo[zinfo.filename]
            self.skipped_entries += 1
            logger.warning(f"Entry '{entry_name}' skipped, content read failed: {read_error!r}")
            return False

        self.entry_count += 1
        return True

    async def finalize(self) -> int:
        """
        Write the central directory and end record.

        Returns:
            Total bytes written to the sink
        """
        if self._finalized:
            return self.bytes_written
        try:
            self._zip.close()
            await self._drain()
        except ArchiveJobError:
            raise
        except Exception as e:
            raise ArchiveEncodeError(f"Failed to finalize archive: {e}") from e
        self._finalized = True
        logger.debug(
            f"Archive finalized: {self.entry_count} entries, {self.bytes_written} bytes"
        )
        return self.bytes_written
