from pathlib import Path
from typing import Callable
from zipfile import ZipFile, ZIP_DEFLATED

import pytest


@pytest.fixture
def entries() -> dict[str, bytes]:
    return {
        "readme.txt": b"tyres and treads\n",
        "images/front.bin": bytes(range(256)) * 40,
        "images/nested/side.bin": b"\x00\x01" * 5000,
        "empty.txt": b"",
    }


@pytest.fixture
def make_archive(tmp_path: Path) -> Callable[..., Path]:
    """Build zipfiles under tmp_path/archives from a mapping of member names to contents."""

    def _make_archive(name: str, members: dict[str, bytes]) -> Path:
        archive_dir = tmp_path / "archives"
        archive_dir.mkdir(exist_ok=True)
        archive_path = archive_dir / name

        with ZipFile(archive_path, mode="w", compression=ZIP_DEFLATED) as zipfile:
            for member_name, content in members.items():
                zipfile.writestr(member_name, content)

        return archive_path

    return _make_archive


@pytest.fixture
def assert_extracted() -> Callable[[Path, dict[str, bytes]], None]:

    def _assert_extracted(dest: Path, members: dict[str, bytes]) -> None:
        for member_name, content in members.items():
            assert (dest / member_name).read_bytes() == content

    return _assert_extracted
