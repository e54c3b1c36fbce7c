"""
Report files and sources

A report file is a name plus its payload, which may be plain XML, gzip or
a zip archive. A source yields report files and is told which of them were
accepted.
"""
import gzip
import io
import zipfile
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional

from dmarc_store.exceptions import ReportParseError


class ZipMemberStream(io.RawIOBase):
    """Readable stream of one zip member that closes the archive with it"""

    def __init__(self, archive: zipfile.ZipFile, name: str):
        super().__init__()
        self.archive = archive
        self.member = archive.open(name)

    def readable(self):
        return True

    def read(self, size=-1):
        return self.member.read(size)

    def readinto(self, buffer):
        data = self.member.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)

    def close(self):
        if not self.closed:
            try:
                self.member.close()
            finally:
                self.archive.close()
        super().close()


class ReportFile:
    """One report file as delivered by a source"""

    def __init__(self, filename: str, data: bytes):
        self.filename = filename
        self.data = data

    @classmethod
    def from_path(cls, path) -> "ReportFile":
        path = Path(path)
        return cls(path.name, path.read_bytes())

    def datastream(self) -> BinaryIO:
        """
        Readable stream of the XML document

        Uses magic bytes to detect actual content type, not just filename
        extension. Compressed payloads are decompressed while reading.

        Raises:
            ReportParseError: The file is empty or a broken archive
        """
        if not self.data:
            raise ReportParseError(f"Empty file: {self.filename}")

        raw = io.BytesIO(self.data)
        if self.data[:2] == b'\x1f\x8b':
            return gzip.GzipFile(fileobj=raw, mode="rb")
        if self.data[:2] == b'PK':
            try:
                archive = zipfile.ZipFile(raw)
            except zipfile.BadZipFile as e:
                raise ReportParseError(f"Failed to decompress {self.filename}: {str(e)}")
            try:
                names = [n for n in archive.namelist() if not n.endswith("/")]
                if not names:
                    raise ReportParseError("Empty zip file")
                # Read first file in zip
                return ZipMemberStream(archive, names[0])
            except ReportParseError:
                archive.close()
                raise
            except zipfile.BadZipFile as e:
                archive.close()
                raise ReportParseError(f"Failed to decompress {self.filename}: {str(e)}")
        return raw

    def __repr__(self):
        return f"<ReportFile(filename={self.filename}, size={len(self.data)})>"


class ReportSource:
    """
    Iterable of report files

    Subclasses that fetch from a mailbox or a directory override accepted()
    and rejected() to move or flag the original message or file.
    """

    type = "list"

    def __init__(self, files: Optional[Iterable[ReportFile]] = None):
        self._files: List[ReportFile] = list(files or [])

    def __iter__(self) -> Iterator[ReportFile]:
        return iter(self._files)

    def accepted(self, report_file: ReportFile):
        pass

    def rejected(self, report_file: ReportFile):
        pass
