"""Directory enumeration: extension filtering, recursion, missing roots and validation."""

from collections.abc import Callable
from pathlib import Path

import pytest

from photo_indexer import walker
from photo_indexer.kinds import DEEPSTACK_EXTENSIONS, IMAGE_EXTENSIONS


def test_parse_extensions_normalizes_input() -> None:
    """Comma-separated extensions gain a leading dot and lose case."""
    assert walker.parse_extensions("jpg, .PNG ,,webp") == {".jpg", ".png", ".webp"}


def test_iter_media_files_filters_by_extension(make_image: Callable[..., Path], tmp_path: Path) -> None:
    """Only allowed image types are yielded; sidecars and other files are ignored."""
    keep = make_image("a.jpg")
    upper = make_image("B.PNG")
    (tmp_path / "notes.txt").write_text("x")
    (tmp_path / "a.jpg.faces.json").write_text("{}")

    found = list(walker.iter_media_files([tmp_path], IMAGE_EXTENSIONS))

    assert found == sorted([keep.resolve(), upper.resolve()])


def test_iter_media_files_respects_recursion(make_image: Callable[..., Path], tmp_path: Path) -> None:
    top = make_image("top.jpg")
    nested = make_image("nested.jpg", folder=tmp_path / "sub" / "deeper")

    flat = list(walker.iter_media_files([tmp_path], IMAGE_EXTENSIONS, recursive=False))
    deep = list(walker.iter_media_files([tmp_path], IMAGE_EXTENSIONS, recursive=True))

    assert flat == [top.resolve()]
    assert set(deep) == {top.resolve(), nested.resolve()}


def test_kind_specific_extensions(make_image: Callable[..., Path], tmp_path: Path) -> None:
    """TIFFs are candidates for descriptions but not for DeepStack kinds."""
    make_image("scan.tif")

    assert len(list(walker.iter_media_files([tmp_path], IMAGE_EXTENSIONS))) == 1
    assert list(walker.iter_media_files([tmp_path], DEEPSTACK_EXTENSIONS)) == []


def test_missing_root_is_skipped(
    make_image: Callable[..., Path],
    tmp_path: Path,
    log_events: list[str],
) -> None:
    """A missing root is reported and the remaining roots are still scanned."""
    image = make_image("a.jpg")

    found = list(walker.iter_media_files([tmp_path / "missing", tmp_path], IMAGE_EXTENSIONS))

    assert found == [image.resolve()]
    assert "root_directory_not_found" in log_events


def test_overlapping_roots_yield_each_file_once(make_image: Callable[..., Path], tmp_path: Path) -> None:
    image = make_image("a.jpg", folder=tmp_path / "sub")

    found = list(walker.iter_media_files([tmp_path, tmp_path / "sub"], IMAGE_EXTENSIONS, recursive=True))

    assert found == [image.resolve()]


def test_enumeration_is_restartable(make_image: Callable[..., Path], tmp_path: Path) -> None:
    make_image("a.jpg")
    make_image("b.jpg")

    first = list(walker.iter_media_files([tmp_path], IMAGE_EXTENSIONS))
    second = list(walker.iter_media_files([tmp_path], IMAGE_EXTENSIONS))

    assert first == second
    assert len(first) == 2


def test_validate_image_file(make_image: Callable[..., Path], tmp_path: Path) -> None:
    walker.validate_image_file(make_image("ok.png"), IMAGE_EXTENSIONS)

    with pytest.raises(FileNotFoundError):
        walker.validate_image_file(tmp_path / "absent.jpg", IMAGE_EXTENSIONS)

    other = tmp_path / "clip.mp4"
    other.write_bytes(b"\x00")
    with pytest.raises(ValueError, match="Supported formats"):
        walker.validate_image_file(other, IMAGE_EXTENSIONS)
