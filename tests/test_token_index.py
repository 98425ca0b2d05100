from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from app.repository.token_index import TokenIndex, TokenRecord
from app.services.errors import DuplicateToken, IndexReadError, IndexWriteError


def test_put_and_find(token_index):
    record = token_index.put("tok-1", "report.pdf", "users/1-a.pdf")

    assert record == TokenRecord("tok-1", "report.pdf", "users/1-a.pdf")
    assert token_index.find_by_token("tok-1") == record
    assert token_index.find_by_path("users/1-a.pdf") == record


def test_lookups_are_exact(token_index):
    token_index.put("tok-1", "report.pdf", "users/1-a.pdf")

    assert token_index.find_by_token("tok") is None
    assert token_index.find_by_path("users") is None
    assert token_index.find_by_path("users/1-a.pdf/") is None
    assert token_index.find_by_path("USERS/1-a.pdf") is None


def test_duplicate_token(token_index):
    token_index.put("tok-1", "a.pdf", "users/1.pdf")

    with pytest.raises(DuplicateToken):
        token_index.put("tok-1", "b.pdf", "users/2.pdf")
    assert token_index.find_by_path("users/2.pdf") is None


def test_duplicate_path_is_a_write_error(token_index):
    token_index.put("tok-1", "a.pdf", "users/1.pdf")

    with pytest.raises(IndexWriteError) as excinfo:
        token_index.put("tok-2", "a.pdf", "users/1.pdf")
    assert not isinstance(excinfo.value, DuplicateToken)


def test_delete_by_path(token_index):
    token_index.put("tok-1", "a.pdf", "users/1.pdf")

    assert token_index.delete_by_path("users/1.pdf") is True
    assert token_index.delete_by_path("users/1.pdf") is False
    assert token_index.find_by_token("tok-1") is None


def test_delete_by_paths_in_one_go(token_index):
    token_index.put("tok-1", "a.pdf", "a/1.pdf")
    token_index.put("tok-2", "b.pdf", "a/b/2.pdf")
    token_index.put("tok-3", "c.pdf", "c/3.pdf")

    assert token_index.delete_by_paths(["a/1.pdf", "a/b/2.pdf", "a/ghost.pdf"]) == 2
    assert token_index.delete_by_paths([]) == 0
    assert token_index.find_by_path("c/3.pdf") is not None


def test_restore_puts_records_back(token_index):
    records = [
        token_index.put("tok-1", "a.pdf", "a/1.pdf"),
        token_index.put("tok-2", "b.pdf", "a/2.pdf"),
    ]
    token_index.delete_by_paths(["a/1.pdf", "a/2.pdf"])

    token_index.restore(records)

    assert token_index.find_by_paths(["a/1.pdf", "a/2.pdf", "a/3.pdf"]) == records


def test_database_failure_is_an_index_write_error(storage_config):
    index = TokenIndex.from_url(storage_config.database_url)
    index.create_table()
    with patch.object(index.engine, "begin", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
        with pytest.raises(IndexWriteError):
            index.put("tok-1", "a.pdf", "a/1.pdf")
    index.dispose()


def test_create_table_is_idempotent(token_index):
    token_index.create_table()
    token_index.put("tok-1", "a.pdf", "a/1.pdf")
    token_index.create_table()
    assert token_index.find_by_token("tok-1") is not None


def test_database_failure_on_lookup_is_an_index_read_error(token_index):
    token_index.put("tok-1", "a.pdf", "a/1.pdf")
    with patch.object(token_index.engine, "connect", side_effect=OperationalError("SELECT", {}, Exception("db down"))):
        with pytest.raises(IndexReadError):
            token_index.find_by_token("tok-1")
        with pytest.raises(IndexReadError):
            token_index.find_by_path("a/1.pdf")


def test_failed_lookup_after_conflict_is_a_write_error(token_index):
    token_index.put("tok-1", "a.pdf", "a/1.pdf")
    with patch.object(token_index.engine, "connect", side_effect=OperationalError("SELECT", {}, Exception("db down"))):
        with pytest.raises(IndexWriteError) as excinfo:
            token_index.put("tok-1", "b.pdf", "a/2.pdf")
    assert not isinstance(excinfo.value, DuplicateToken)
