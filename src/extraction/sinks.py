from pathlib import Path
from typing import Protocol
from tempfile import SpooledTemporaryFile
from zipfile import ZipFile

from loguru import logger

from src.setup.config import extraction_config


class UnsafeMemberError(RuntimeError):
    """Raised when an archive member would be written outside of the destination directory."""


class WriteTarget(Protocol):
    """
    The receiving end of the pipe. It is fed the raw bytes of the archive in order, and is told when the
    stream is over (close) or when whatever it received should be thrown away (abort).
    """

    def write(self, chunk: bytes) -> None:
        ...

    def close(self) -> None:
        ...

    def abort(self) -> None:
        ...


class ArchiveSink(Protocol):

    def open(self, dest_path: Path) -> WriteTarget:
        """
        Prepare a target that will extract the bytes it is given into dest_path.

        Args:
            dest_path: the directory that the entries of the archive will be written into.

        Returns:
            WriteTarget: an object that accepts the archive's bytes.
        """
        ...


def is_within_directory(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False


def check_members(zipfile: ZipFile, dest_path: Path) -> None:
    """
    Make sure that no member of the archive escapes the destination directory once extracted
    (through "../" components or absolute names).

    Args:
        zipfile: the open archive
        dest_path: the directory that the archive is going to be extracted into

    Raises:
        UnsafeMemberError: if any member would land outside of dest_path
    """
    for member in zipfile.infolist():
        if not is_within_directory(base=dest_path, target=dest_path / member.filename):
            raise UnsafeMemberError(f"Zip member escapes the destination directory: {member.filename}")


class SpooledZipTarget:
    def __init__(self, dest_path: Path, spool_size: int) -> None:
        """
        Zip archives keep their central directory at the very end of the file, so the entries can only be
        extracted once every byte has arrived. Until then, the bytes are kept in a spooled temporary file,
        which stays in memory for small archives and moves to disk once it grows past spool_size.

        Args:
            dest_path: the directory that the archive will be extracted into.
            spool_size: the number of bytes to hold in memory before spilling to disk.
        """
        self.dest_path: Path = dest_path
        self.bytes_received: int = 0
        self.spool = SpooledTemporaryFile(max_size=spool_size, mode="w+b")

    def write(self, chunk: bytes) -> None:
        self.spool.write(chunk)
        self.bytes_received += len(chunk)

    def close(self) -> None:
        try:
            self.spool.seek(0)
            with ZipFile(file=self.spool, mode="r") as zipfile:
                check_members(zipfile=zipfile, dest_path=self.dest_path)
                self.dest_path.mkdir(parents=True, exist_ok=True)
                zipfile.extractall(self.dest_path)
                logger.success(f"Extracted {len(zipfile.infolist())} entries to {self.dest_path}")
        finally:
            self.spool.close()

    def abort(self) -> None:
        logger.warning(f"Discarding {self.bytes_received} bytes meant for {self.dest_path}")
        self.spool.close()


class ZipFileSink:
    def __init__(self, spool_size: int = extraction_config.spool_size) -> None:
        self.spool_size: int = spool_size

    def open(self, dest_path: Path) -> SpooledZipTarget:
        return SpooledZipTarget(dest_path=Path(dest_path), spool_size=self.spool_size)
