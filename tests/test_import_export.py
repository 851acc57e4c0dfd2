"""Tests for chunked export/import, pruning and cloning."""

from unittest.mock import MagicMock, patch

import pytest
from mysql.connector import Error as MySQLError

from shardops.concurrency import in_chunks
from shardops.errors import ConsistencyError, PreconditionError
from shardops.table import INFINITY, Table

MASTER = "10.0.0.1"
CHILD = "10.0.0.2"


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("shardops.db.import_export.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def db(make_db):
    """A child master with users and grants stubbed out."""
    db = make_db(CHILD)
    for name in ("create_user", "grant_privileges", "drop_user", "reconnect", "disable_read_only"):
        setattr(db, name, MagicMock())
    return db


# ===== Export Tests =====

class TestExport:
    """Tests for exporting ID ranges."""

    def test_chunked_export(self, db):
        """Each configured chunk is exported and the row counts summed."""
        db.query = MagicMock(return_value=5)
        table = Table("users", ["user_id"], chunks=4)
        assert db.export_table_data(table, 1, 100) == 20
        statements = sorted(call.args[0] for call in db.query.call_args_list)
        assert len(statements) == 4
        assert any("(user_id >= 1 AND user_id <= 25)" in s for s in statements)
        assert any("(user_id >= 76 AND user_id <= 100)" in s for s in statements)

    def test_infinity_chunk(self, db):
        """An unbounded shard also exports everything above max_id."""
        db.query = MagicMock(return_value=1)
        table = Table("users", ["user_id"], chunks=2)
        assert db.export_table_data(table, 1, 10, infinity=True) == 3
        assert any("user_id >= 11 INTO OUTFILE" in call.args[0] for call in db.query.call_args_list)

    def test_failed_chunk_is_retried(self, db, shell, no_sleep):
        """A failing chunk has its partial file removed and is retried."""
        db.query = MagicMock(side_effect=[MySQLError(msg="Lost connection"), 7])
        table = Table("users", ["user_id"], chunks=1)
        assert db.export_table_data(table, 1, 50) == 7
        assert shell.ran("rm -f /tmp/users1-50.out", ip=CHILD)
        no_sleep.assert_called_once_with(1.0)

    def test_export_data_remembers_counts(self, db, config):
        """Counts are kept for verification on import, and the file user is dropped."""
        db.export_table_data = MagicMock(return_value=12)
        counts = db.export_data(Table.from_config(config), 1, 100)
        assert counts == {"users": 12, "follows": 12}
        assert db._counts == counts
        db.drop_user.assert_called_once_with("shardops")


# ===== Import Tests =====

class TestImport:
    """Tests for importing and verifying ID ranges."""

    def test_requires_binlog_disabled(self, db):
        """Imports run with binary logging off."""
        db.binary_log_enabled = MagicMock(return_value=True)
        with pytest.raises(PreconditionError, match="Binary logging must be disabled"):
            db.import_data([Table("users", ["user_id"])], 1, 100)

    def test_count_mismatch(self, db):
        """An import that loads fewer rows than were exported fails."""
        db.binary_log_enabled = MagicMock(return_value=False)
        db.import_table_data = MagicMock(return_value=9)
        db._counts = {"users": 10}
        with pytest.raises(ConsistencyError, match=r"Import count \(9\) does not match export count \(10\) for table users"):
            db.import_data([Table("users", ["user_id"])], 1, 100)
        db.drop_user.assert_called_once_with("shardops")

    def test_counts_verified(self, db):
        """Matching counts pass and unique checks are relaxed for the session."""
        db.binary_log_enabled = MagicMock(return_value=False)
        db.import_table_data = MagicMock(return_value=10)
        db._counts = {"users": 10}
        assert db.import_data([Table("users", ["user_id"])], 1, 100) == {"users": 10}
        db.reconnect.assert_called_once_with(user="shardops", session_init="SET unique_checks = 0")

    def test_chunk_files_removed(self, db, shell):
        """Each chunk file is deleted once loaded."""
        db.query = MagicMock(return_value=3)
        assert db.import_table_data(Table("users", ["user_id"], chunks=2), 1, 10) == 6
        assert shell.ran("rm -f /tmp/users1-5.out", ip=CHILD)
        assert shell.ran("rm -f /tmp/users6-10.out", ip=CHILD)

    def test_resumed_import_counts_export_files(self, db, shell):
        """Without a recorded export count, the chunk files are counted before loading."""
        db.binary_log_enabled = MagicMock(return_value=False)
        shell.on("wc -l", "  6 /tmp/users1-50.out\n  4 /tmp/users51-100.out\n 10 total", ip=CHILD)
        table = Table("users", ["user_id"], chunks=2)

        def load(*args):
            assert shell.ran("wc -l /tmp/users1-50.out /tmp/users51-100.out", ip=CHILD)
            return 9

        db.import_table_data = MagicMock(side_effect=load)
        with pytest.raises(ConsistencyError, match=r"Import count \(9\) does not match export count \(10\)"):
            db.import_data([table], 1, 100)

        db.import_table_data = MagicMock(return_value=10)
        assert db.import_data([table], 1, 100) == {"users": 10}

    def test_resumed_import_refuses_missing_files(self, db, shell):
        """A missing chunk file stops the import before anything is loaded."""
        db.binary_log_enabled = MagicMock(return_value=False)
        shell.on("wc -l", "  6 /tmp/users1-50.out\n"
                          "wc: /tmp/users51-100.out: No such file or directory\n  6 total", ip=CHILD)
        db.import_table_data = MagicMock()
        with pytest.raises(ConsistencyError, match="Export files missing on 10.0.0.2:3306: /tmp/users51-100.out"):
            db.import_data([Table("users", ["user_id"], chunks=2)], 1, 100)
        db.import_table_data.assert_not_called()

    def test_export_file_paths(self, db):
        """File names follow the chunk layout of the export, plus the infinity chunk."""
        table = Table("users", ["user_id"], chunks=2)
        assert db.export_file_paths(table, 1, 10, infinity=True) == [
            "/tmp/users1-5.out", "/tmp/users6-10.out", "/tmp/users11-and-up.out",
        ]
        assert db.export_file_paths(table) == ["/tmp/users-full.out"]


# ===== Row Count Tests =====

class TestRowCounts:
    """Tests for chunked row counting."""

    def test_chunks_are_summed(self, db):
        """Each chunk is counted separately and the results added up."""
        db.query_return_first_value = MagicMock(return_value=5)
        assert db.row_counts(Table("users", ["user_id"], chunks=4), 1, 100) == {"users": 20}
        statements = [call.args[0] for call in db.query_return_first_value.call_args_list]
        assert len(statements) == 4
        assert "SELECT COUNT(*) FROM users WHERE (user_id >= 76 AND user_id <= 100)" in statements

    def test_worker_ceiling(self, db, config):
        """Concurrent counts never exceed what one connection pool can serve."""
        config.max_concurrency = 2
        db.query_return_first_value = MagicMock(return_value=1)
        with patch("shardops.db.import_export.in_chunks", wraps=in_chunks) as chunked:
            db.row_counts([Table("users", ["user_id"], chunks=8)], 1, 80)
        assert chunked.call_args.kwargs["ceiling"] == 2
        assert db.worker_ceiling == 2

    def test_single_chunk_counts_range(self, db):
        """An unchunked table is still counted within the range."""
        db.query_return_first_value = MagicMock(return_value="7")
        assert db.row_counts(Table("users", ["user_id"]), 1, 50) == {"users": 7}
        db.query_return_first_value.assert_called_once_with(
            "SELECT COUNT(*) FROM users WHERE (user_id >= 1 AND user_id <= 50)"
        )


# ===== Pruning Tests =====

class TestPrune:
    """Tests for deleting rows outside the kept range."""

    def test_ascending_walk(self, db):
        """Key values above the range are deleted one at a time."""
        db.query_return_first_value = MagicMock(side_effect=[150, 160, None])
        db.query = MagicMock(return_value=2)
        deleted = db.delete_table_data_outside_range(Table("users", ["user_id"]), 1, 100, "asc")
        assert deleted == 4
        db.query.assert_any_call("DELETE FROM users WHERE user_id = %s", 150)
        db.query_return_first_value.assert_any_call("SELECT MIN(user_id) FROM users WHERE user_id > 100")

    def test_unbounded_range_has_nothing_above(self, db):
        """The last shard keeps everything above its minimum."""
        db.query = MagicMock()
        assert db.delete_table_data_outside_range(Table("users", ["user_id"]), 101, INFINITY, "asc") == 0
        db.query.assert_not_called()

    def test_unknown_direction(self, db):
        """Only asc and desc walks exist."""
        with pytest.raises(ValueError, match="Unknown direction"):
            db.delete_table_data_outside_range(Table("users", ["user_id"]), 1, 100, "sideways")

    def test_prune_both_directions(self, db):
        """Pruning walks both away from the range."""
        db.delete_table_data_outside_range = MagicMock(return_value=3)
        assert db.prune_data_to_range([Table("users", ["user_id"])], 50, 100) == 6


# ===== Clone Tests =====

class TestCloneTo:
    """Tests for copying a data directory to new machines."""

    def test_refuses_populated_target(self, make_db):
        """Targets holding real data are never overwritten."""
        source = make_db(MASTER)
        target = make_db(CHILD, running=False)
        target.data_set_size = MagicMock(return_value=200000000)
        with pytest.raises(PreconditionError, match="Over 100 MB of existing MySQL data"):
            source.clone_to([target])

    def test_clone(self, make_db, shell):
        """MySQL is stopped everywhere, copied, and targets restart without replication."""
        source = make_db(MASTER)
        target = make_db(CHILD, running=False)
        target.data_set_size = MagicMock(return_value=0)
        shell.on("SHOW DATABASES", "Database: information_schema\nDatabase: test\nDatabase: mysql", ip=MASTER)
        for db in (source, target):
            db.stop_mysql = MagicMock()
            db.start_mysql = MagicMock()
        source.transfer_directory = MagicMock(return_value=True)

        source.clone_to([target])

        source.transfer_directory.assert_called_once_with(
            "/var/lib/mysql", {target: "/var/lib/mysql"}, files=["test", "mysql", "ibdata1"], overwrite=True
        )
        assert shell.ran("rm -rf /var/lib/mysql/ib_logfile*", ip=CHILD)
        source.start_mysql.assert_called_once_with()
        target.start_mysql.assert_called_once_with("--skip-slave-start")
        assert target._master is False
