"""Tests for the maildir message store."""

import os

import pytest

from mailsync.storage import maildir
from mailsync.utils.errors import CorruptionError, IoError, NotFoundError


@pytest.fixture
def box(tmp_path):
    directory = tmp_path / "box"
    maildir.init(directory)
    return directory


def write(directory, data: bytes) -> str:
    key, writer = maildir.create(directory)
    writer.write(data)
    return writer.close()


def test_init_creates_subdirectories_idempotently(tmp_path):
    directory = tmp_path / "a" / "b"
    maildir.init(directory)
    maildir.init(directory)
    for sub in ("tmp", "new", "cur"):
        assert (directory / sub).is_dir()


def test_new_keys_are_unique_and_filename_safe():
    keys = {maildir.new_key() for _ in range(500)}
    assert len(keys) == 500
    for key in keys:
        assert "/" not in key
        assert ":" not in key


def test_create_is_invisible_until_closed(box):
    key, writer = maildir.create(box)
    writer.write(b"Subject: hi\r\n\r\nbody\r\n")
    assert maildir.list_keys(box) == []
    assert (box / "tmp" / key).exists()

    assert writer.close() == key
    assert (box / "new" / key).exists()
    assert not (box / "tmp" / key).exists()
    assert maildir.open_message(box, key) == b"Subject: hi\r\n\r\nbody\r\n"


def test_writer_context_manager_aborts_on_error(box):
    with pytest.raises(RuntimeError):
        with maildir.create(box)[1] as writer:
            writer.write(b"partial")
            raise RuntimeError("boom")
    assert os.listdir(box / "tmp") == []
    assert maildir.list_keys(box) == []


def test_bytes_are_stored_verbatim(box):
    data = b"Header: x\r\n\r\nline1\r\nline2\n\xff\xfe"
    key = write(box, data)
    assert maildir.open_message(box, key) == data


def test_set_flags_moves_to_cur_with_sorted_letters(box):
    key = write(box, b"x")
    path = maildir.set_flags(box, key, {"\\Seen", "\\Flagged"})
    assert path == box / "cur" / f"{key}:2,FS"
    assert maildir.resolve_key(box, key) == path
    assert maildir.flags_of(path) == {"\\Seen", "\\Flagged"}
    assert not (box / "new" / key).exists()


def test_set_flags_with_no_flags_keeps_empty_info(box):
    key = write(box, b"x")
    maildir.set_flags(box, key, {"\\Seen"})
    path = maildir.set_flags(box, key, set())
    assert path.name == f"{key}:2,"
    assert maildir.flags_of(path) == set()


def test_unknown_flags_have_no_letter():
    assert maildir.flag_suffix({"\\Seen", "$Label1", "\\Recent"}) == "S"
    assert maildir.flag_suffix({"\\Deleted", "\\Answered", "\\Draft", "$Forwarded"}) == "DPRT"


def test_resolve_missing_key(box):
    with pytest.raises(NotFoundError):
        maildir.resolve_key(box, "nope")


def test_resolve_ambiguous_key(box):
    key = write(box, b"x")
    (box / "cur" / f"{key}:2,S").write_bytes(b"x")
    with pytest.raises(CorruptionError):
        maildir.resolve_key(box, key)


def test_resolve_does_not_match_key_prefixes(box):
    key = write(box, b"x")
    (box / "new" / f"{key}0").write_bytes(b"y")
    assert maildir.resolve_key(box, key) == box / "new" / key


def test_delete_is_idempotent(box):
    key = write(box, b"x")
    maildir.set_flags(box, key, {"\\Seen"})
    maildir.delete(box, key)
    maildir.delete(box, key)
    assert maildir.list_keys(box) == []


def test_list_keys_strips_flag_suffix(box):
    first = write(box, b"1")
    second = write(box, b"2")
    maildir.set_flags(box, second, {"\\Seen"})
    assert sorted(maildir.list_keys(box)) == sorted([first, second])


def test_create_in_missing_directory_raises_io_error(tmp_path):
    with pytest.raises(IoError):
        maildir.create(tmp_path / "missing")
