"""Module that exposes the file system of the relay host to clients."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import os
import os.path
import stat
from typing import List


def _isoformat(timestamp: float) -> str:
    """Format a timestamp like a JSON serialized JavaScript date."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass
class DirEntry:
    """Entry of a directory listing."""

    name: str
    type: str
    path: str

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"

    @staticmethod
    def from_scandir(entry: os.DirEntry) -> DirEntry:
        """Classify an entry without following symbolic links."""
        if entry.is_symlink():
            typ = DirEntry.SYMLINK
        elif entry.is_dir(follow_symlinks=False):
            typ = DirEntry.DIRECTORY
        else:
            typ = DirEntry.FILE

        return DirEntry(name=entry.name, type=typ, path=entry.path)


@dataclass
class FileStat:
    """Metadata of a file system entry (field names as seen on the wire)."""

    size: int
    isFile: bool
    isDirectory: bool
    isSymbolicLink: bool
    modified: str
    created: str
    mode: int

    @staticmethod
    def from_stat(st: os.stat_result, is_link: bool) -> FileStat:
        """Instantiate from the attributes of an os.stat_result object."""
        # Birth time is only available on some platforms
        created = getattr(st, "st_birthtime", st.st_ctime)

        return FileStat(
            size=st.st_size,
            isFile=stat.S_ISREG(st.st_mode),
            isDirectory=stat.S_ISDIR(st.st_mode),
            isSymbolicLink=is_link,
            modified=_isoformat(st.st_mtime),
            created=_isoformat(created),
            mode=st.st_mode,
        )


class FileSystemService:
    """
    Single-shot file system operations.

    Failures are raised as the OSError subclass produced by the operating system,
    which the dispatcher turns into errors with the errno name (ENOENT, EACCES...)
    as code.
    """

    @staticmethod
    def read_dir(path: str) -> List[DirEntry]:
        with os.scandir(path) as it:
            entries = [DirEntry.from_scandir(entry) for entry in it]

        return sorted(entries, key=lambda entry: entry.name)

    @staticmethod
    def read_file(path: str) -> str:
        # newline="" keeps line endings exactly as they are stored
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()

    @staticmethod
    def write_file(path: str, content: str) -> bool:
        parent = os.path.dirname(path)

        if parent:
            os.makedirs(parent, exist_ok=True)

        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)

        return True

    @staticmethod
    def stat(path: str) -> FileStat:
        st = os.stat(path)
        return FileStat.from_stat(st, os.path.islink(path))
