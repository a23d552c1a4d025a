import os
import re

import pytest

from outpost.relay.filesystem import _isoformat, DirEntry, FileSystemService

not_root = pytest.mark.skipif(
    os.geteuid() == 0, reason="permissions are not enforced for root"
)


def test_read_dir(tmp_path):
    (tmp_path / "b.txt").write_text("b")
    (tmp_path / "a").mkdir()
    (tmp_path / "c").symlink_to(tmp_path / "a")

    entries = FileSystemService.read_dir(str(tmp_path))

    assert entries == [
        DirEntry("a", "directory", str(tmp_path / "a")),
        DirEntry("b.txt", "file", str(tmp_path / "b.txt")),
        DirEntry("c", "symlink", str(tmp_path / "c")),
    ]


def test_read_dir_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        FileSystemService.read_dir(str(tmp_path / "missing"))


def test_read_dir_not_a_directory(tmp_path):
    (tmp_path / "file").write_text("")

    with pytest.raises(NotADirectoryError):
        FileSystemService.read_dir(str(tmp_path / "file"))


def test_read_write_file(tmp_path):
    path = str(tmp_path / "file.txt")
    content = "line 1\r\nline 2\nünïcødé ☃\n"

    assert FileSystemService.write_file(path, content) is True
    assert FileSystemService.read_file(path) == content

    with open(path, "rb") as f:
        assert f.read() == content.encode()


def test_write_file_creates_parents(tmp_path):
    path = str(tmp_path / "a" / "b" / "c.txt")

    FileSystemService.write_file(path, "nested")

    assert (tmp_path / "a" / "b" / "c.txt").read_text() == "nested"


def test_read_file_not_utf8(tmp_path):
    (tmp_path / "binary").write_bytes(b"\xff\xfe\x00")

    with pytest.raises(UnicodeDecodeError):
        FileSystemService.read_file(str(tmp_path / "binary"))


def test_read_file_directory(tmp_path):
    with pytest.raises(IsADirectoryError):
        FileSystemService.read_file(str(tmp_path))


@not_root
def test_read_file_permission_denied(tmp_path):
    path = tmp_path / "secret"
    path.write_text("secret")
    path.chmod(0o000)

    with pytest.raises(PermissionError):
        FileSystemService.read_file(str(path))


def test_stat(tmp_path):
    (tmp_path / "file").write_text("12345")

    st = FileSystemService.stat(str(tmp_path / "file"))

    assert st.size == 5
    assert st.isFile
    assert not st.isDirectory
    assert not st.isSymbolicLink
    assert st.mode & 0o777 == os.stat(str(tmp_path / "file")).st_mode & 0o777


def test_stat_symlink(tmp_path):
    (tmp_path / "dir").mkdir()
    (tmp_path / "link").symlink_to(tmp_path / "dir")

    st = FileSystemService.stat(str(tmp_path / "link"))

    assert st.isDirectory
    assert st.isSymbolicLink


def test_stat_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        FileSystemService.stat(str(tmp_path / "missing"))


def test_timestamps_like_json_dates():
    assert _isoformat(0) == "1970-01-01T00:00:00.000Z"
    assert _isoformat(1600000000.1234) == "2020-09-13T12:26:40.123Z"

    st = FileSystemService.stat("/")
    pattern = r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z"

    assert re.fullmatch(pattern, st.modified)
    assert re.fullmatch(pattern, st.created)
