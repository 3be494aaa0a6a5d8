import errno
from datetime import datetime, timezone

import pytest

from litefs.files import (
    LAG_SIZE,
    POS_FILE_SIZE,
    FileType,
    FuseError,
    ReadOnlyReplicaError,
    file_type_filename,
    format_lag,
    format_pos,
    format_primary,
    lag_mtime,
    parse_filename,
    read_pos,
    to_error,
)


@pytest.mark.parametrize(
    "file_type,expected",
    [
        (FileType.DATABASE, "database"),
        (FileType.JOURNAL, "journal"),
        (FileType.WAL, "wal"),
        (FileType.SHM, "shm"),
    ],
)
def test_file_type_filename(file_type, expected):
    assert file_type_filename(file_type) == expected


def test_file_type_filename_invalid():
    with pytest.raises(ValueError) as excinfo:
        file_type_filename(1000)
    assert str(excinfo.value) == "invalid file type: 1000"


def test_to_error_enoent():
    err = to_error(FileNotFoundError("file does not exist"))
    assert isinstance(err, FuseError)
    assert str(err) == "file does not exist"
    assert err.errno == errno.ENOENT


def test_to_error_eacces():
    err = to_error(ReadOnlyReplicaError())
    assert isinstance(err, FuseError)
    assert str(err) == "read only replica"
    assert err.errno == errno.EACCES


def test_to_error_passthrough():
    marker = RuntimeError("marker")
    assert to_error(marker) is marker


@pytest.mark.parametrize(
    "name,db_name,file_type",
    [
        ("db", "db", FileType.DATABASE),
        ("db-journal", "db", FileType.JOURNAL),
        ("db-wal", "db", FileType.WAL),
        ("db-shm", "db", FileType.SHM),
        ("db-pos", "db", FileType.POS),
        ("db-lock", "db", FileType.LOCK),
    ],
)
def test_parse_filename(name, db_name, file_type):
    assert parse_filename(name) == (db_name, file_type)


def test_format_lag_primary():
    assert format_lag(0) == b"+000000000\n"
    assert len(format_lag(0)) == LAG_SIZE


def test_format_lag_not_replicated():
    assert format_lag(-1) == b"+2147483647\n"


def test_format_lag_replica():
    assert format_lag(1000, now_ms=1250) == b"+000000250\n"
    assert len(format_lag(1000, now_ms=1250)) == LAG_SIZE


def test_lag_mtime():
    assert lag_mtime(-1) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert lag_mtime(0, now_ms=5000) == datetime(1970, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
    assert lag_mtime(2000, now_ms=9000) == datetime(1970, 1, 1, 0, 0, 2, tzinfo=timezone.utc)


def test_format_pos():
    assert format_pos(1, 0xF630F5AE3060002C) == "0000000000000001/f630f5ae3060002c\n"
    assert format_pos(2, 0xB765DCE8249E9B4B) == "0000000000000002/b765dce8249e9b4b\n"
    assert len(format_pos(2, 0xB765DCE8249E9B4B)) == POS_FILE_SIZE


def test_read_pos_ranges():
    assert read_pos(1, 0xF630F5AE3060002C, 0, POS_FILE_SIZE) == b"0000000000000001/f630f5ae3060002c\n"
    assert read_pos(1, 0xF630F5AE3060002C, 17, 4) == b"f630"
    assert read_pos(1, 0xF630F5AE3060002C, 30, 100) == b"002c\n"


def test_read_pos_past_end():
    with pytest.raises(EOFError):
        read_pos(1, 2, POS_FILE_SIZE, 10)


def test_format_primary():
    assert format_primary("node1") == b"node1\n"


def test_format_primary_missing():
    with pytest.raises(FuseError) as excinfo:
        format_primary(None)
    assert excinfo.value.errno == errno.ENOENT