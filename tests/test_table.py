"""Tests for Table definitions and the SQL they generate."""

from shardops.config import Config
from shardops.table import INFINITY, Table


# ===== Construction Tests =====

class TestTableConstruction:
    """Tests for building tables from configuration."""

    def test_from_dict_accepts_singular_key(self):
        """A single sharding_key string becomes a one-element list."""
        table = Table.from_dict("users", {"sharding_key": "user_id", "chunks": 8})
        assert table.sharding_keys == ["user_id"]
        assert table.chunks == 8

    def test_from_config_uses_keyspace_and_export_location(self, config):
        """Tables of a keyspace pick up the configured export location."""
        config.export_location = "/data/export"
        tables = {t.name: t for t in Table.from_config(config, "shard")}
        assert set(tables) == {"users", "follows"}
        assert tables["follows"].sharding_keys == ["follower_id", "followee_id"]
        assert tables["users"].export_location == "/data/export"

    def test_unknown_keyspace_has_no_tables(self, config):
        """A keyspace with no entry yields nothing."""
        assert Table.from_config(config, "other") == []

    def test_flat_mapping_is_the_only_keyspace(self):
        """A flat table mapping applies to every keyspace."""
        config = Config(sharded_tables={"posts": {"sharding_key": "post_id"}})
        assert [t.name for t in Table.from_config(config, "anything")] == ["posts"]

    def test_first_pk_col(self):
        """The first primary key column is used for counting."""
        assert Table("a", primary_key=["id", "ts"]).first_pk_col == "id"
        assert Table("a", primary_key="id").first_pk_col == "id"
        assert Table("a").first_pk_col is None


# ===== SQL Tests =====

class TestTableSql:
    """Tests for the generated statements."""

    def test_export_range(self):
        """A bounded export selects the range into a per-chunk file."""
        table = Table("users", ["user_id"], export_location="/data")
        assert table.sql_export_range(1, 100) == (
            "SELECT * FROM users WHERE (user_id >= 1 AND user_id <= 100) "
            "INTO OUTFILE '/data/users1-100.out'"
        )

    def test_export_open_ended_range(self):
        """The infinity chunk exports everything from min upward."""
        table = Table("users", ["user_id"])
        assert table.sql_export_range(101, None) == (
            "SELECT * FROM users WHERE user_id >= 101 INTO OUTFILE '/tmp/users101-and-up.out'"
        )

    def test_export_multi_key_uses_or(self):
        """Rows match when any sharding key column is in range."""
        table = Table("follows", ["a", "b"], order_by="a")
        sql = table.sql_export_range(1, 5)
        assert "(a >= 1 AND a <= 5) OR (b >= 1 AND b <= 5)" in sql
        assert "ORDER BY a" in sql

    def test_import_ignores_duplicates_for_multi_key_tables(self):
        """Multi-key chunk files overlap, so duplicates are ignored on load."""
        assert " IGNORE INTO TABLE follows" in Table("follows", ["a", "b"]).sql_import_range(1, 10)
        assert "IGNORE" not in Table("users", ["user_id"]).sql_import_range(1, 10)

    def test_full_import_path(self):
        """Without a range the whole-table file is loaded."""
        assert Table("users", ["user_id"]).sql_import_range() == (
            "LOAD DATA INFILE '/tmp/users-full.out' INTO TABLE users CHARACTER SET binary"
        )

    def test_cleanup_next_id(self):
        """The walk selects the neighbouring key value in either direction."""
        table = Table("users", ["user_id"])
        assert table.sql_cleanup_next_id("user_id", 100, "asc") == "SELECT MIN(user_id) FROM users WHERE user_id > 100"
        assert table.sql_cleanup_next_id("user_id", 1, "desc") == "SELECT MAX(user_id) FROM users WHERE user_id < 1"

    def test_cleanup_delete_preserves_other_columns(self):
        """Rows whose other key falls in the kept range survive."""
        table = Table("follows", ["a", "b"])
        assert table.sql_cleanup_delete("a", 1, 100) == (
            "DELETE FROM follows WHERE a = %s AND NOT (b >= 1 AND b <= 100)"
        )

    def test_cleanup_delete_unbounded_range(self):
        """An INFINITY upper bound keeps everything from min upward."""
        table = Table("follows", ["a", "b"])
        assert table.sql_cleanup_delete("a", 100, INFINITY) == "DELETE FROM follows WHERE a = %s AND NOT (b >= 100)"

    def test_count_rows(self):
        """Counting a range filters on every sharding key."""
        table = Table("users", ["user_id"])
        assert table.sql_count_rows() == "SELECT COUNT(*) FROM users"
        assert table.sql_count_rows(1, 9) == "SELECT COUNT(*) FROM users WHERE (user_id >= 1 AND user_id <= 9)"

    def test_max_pk_query_for_composite_key(self):
        """A composite primary key orders by every column."""
        table = Table("events", primary_key=["id", "ts"])
        assert table.max_pk_val_query() == "SELECT id,ts FROM events ORDER BY id DESC,ts DESC LIMIT 1"
