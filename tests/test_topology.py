"""Tests for pool registration, routing, spares and configuration sync."""

from unittest.mock import MagicMock

import pytest

from shardops.errors import ConfigurationSyncError, InsufficientSparesError, PreconditionError
from shardops.pool import Pool
from shardops.shard import Shard, ShardState
from shardops.table import INFINITY
from shardops.topology import Topology


# ===== Registration Tests =====

class TestRegistration:
    """Tests for adding and finding pools."""

    def test_same_ip_same_object(self, topology):
        """The registry hands out one DB per address."""
        registry = topology.registry
        assert registry.db("10.0.0.1") is registry.db("10.0.0.1:3306")
        assert registry.db("10.0.0.1", 3307) is not registry.db("10.0.0.1")
        assert registry.db("10.0.0.1").host is registry.host("10.0.0.1")

    def test_lookup_by_name_alias_and_master(self, topology, make_db):
        """Pools are found by name, alias or master."""
        master = make_db("10.0.0.1")
        pool = topology.add_pool(Pool("Users", master, topology))
        pool.add_alias("user_db")
        assert topology.pool("users") is pool
        assert topology.pool("USER_DB") is pool
        assert topology.pool(master) is pool
        assert topology.pool("missing") is None

    def test_duplicate_master_rejected(self, topology, make_db):
        """One master belongs to one pool."""
        master = make_db("10.0.0.1")
        topology.add_pool(Pool("a", master, topology))
        with pytest.raises(PreconditionError, match="already the master"):
            topology.add_pool(Pool("b", master, topology))

    def test_duplicate_range_rejected(self, topology, make_db):
        """Two shards of one keyspace cannot cover the same range."""
        topology.add_pool(Shard(1, 100, make_db("10.0.0.1"), topology))
        with pytest.raises(PreconditionError, match="already covers"):
            topology.add_pool(Shard(1, 100, make_db("10.0.0.2"), topology))

    def test_shard_lookup(self, topology, make_db):
        """Shards are found by range, or by min_id alone."""
        first = topology.add_pool(Shard(1, 100, make_db("10.0.0.1"), topology))
        last = topology.add_pool(Shard(101, INFINITY, make_db("10.0.0.2"), topology))
        assert topology.shard(1, 100) is first
        assert topology.shard(101, "infinity") is last
        assert topology.shard(101) is last
        assert topology.functional_partitions == []
        assert topology.keyspaces == ["shard"]


# ===== Routing Tests =====

class TestRouting:
    """Tests for finding the shard that owns an ID."""

    @pytest.fixture
    def split(self, topology, make_db):
        parent = topology.add_pool(Shard(1, 100, make_db("10.0.0.1"), topology, ShardState.DEPRECATED))
        left = Shard(1, 50, make_db("10.0.0.2"), topology, ShardState.CHILD)
        right = Shard(51, 100, make_db("10.0.0.3"), topology, ShardState.REPLICATING)
        for child in (left, right):
            parent.add_child(child)
            topology.add_pool(child)
        return parent, left, right

    def test_in_config_child_wins(self, topology, split):
        """A child in production owns its range."""
        parent, left, _ = split
        assert topology.shard_for_id(10) is left

    def test_building_child_ignored(self, topology, split):
        """A child still replicating leaves its range with the parent."""
        parent, _, _ = split
        assert topology.shard_for_id(60) is parent

    def test_writes_go_to_parent(self, topology, split):
        """A child's writes still reach the parent's master."""
        parent, _, _ = split
        assert topology.shard_db_for_id(10, "write") is parent.master
        assert topology.shard_db_for_id(10, "read").ip == "10.0.0.2"

    def test_unowned_id(self, topology):
        """IDs outside every shard are an error."""
        with pytest.raises(PreconditionError, match="No shard owns ID 5"):
            topology.shard_db_for_id(5)

    def test_cleaned_up_split_routes_to_children(self, topology, make_db):
        """After cleanup the recycled parent no longer owns any ID."""
        parent_master = make_db("10.0.0.1")
        parent = topology.add_pool(Shard(1, 100, parent_master, topology, ShardState.DEPRECATED))
        parent_master.revoke_all_access = MagicMock()
        children = []
        for ip, (lo, hi) in (("10.0.0.2", (1, 50)), ("10.0.0.3", (51, 100))):
            child_master = make_db(ip, master=parent_master)
            child_master.disable_replication = MagicMock()
            child_master.prune_data_to_range = MagicMock()
            child = Shard(lo, hi, child_master, topology, ShardState.NEEDS_CLEANUP)
            parent.add_child(child)
            topology.add_pool(child)
            children.append(child)

        parent.cleanup()

        assert parent.state == ShardState.RECYCLE
        assert parent not in topology.pools
        assert topology.shard_for_id(10) is children[0]
        assert topology.shard_for_id(75) is children[1]
        assert topology.shard_db_for_id(10, "write") is children[0].master

    def test_recycled_shard_ignored(self, topology, make_db):
        """A recycled shard still registered is never routed to."""
        topology.add_pool(Shard(1, 100, make_db("10.0.0.1"), topology, ShardState.RECYCLE))
        assert topology.shard_for_id(10) is None


# ===== Spares Tests =====

class TestSpares:
    """Tests for claiming spare machines."""

    def test_claim_converts_addresses(self, topology):
        """Addresses from the allocator become registry DBs."""
        topology.allocator.claim_spares.return_value = ["10.0.5.1", "10.0.5.2:3307"]
        claimed = topology.claim_spares(2, role="standby_slave")
        assert claimed == [topology.registry.db("10.0.5.1"), topology.registry.db("10.0.5.2", 3307)]

    def test_short_claim(self, topology):
        """An allocator returning too few machines is an error."""
        topology.allocator.claim_spares.return_value = ["10.0.5.1"]
        with pytest.raises(InsufficientSparesError, match="requested 2"):
            topology.claim_spares(2)

    def test_no_allocator(self, config):
        """Claims need an allocator."""
        with pytest.raises(PreconditionError, match="No spare allocator configured"):
            Topology(config).claim_spares(1)


# ===== Roles Tests =====

class TestRoles:
    """Tests for role names."""

    def test_slave_expands(self, topology):
        """'slave' stands for every replica role."""
        assert topology.normalize_roles("MASTER", ["slave"]) == [
            "master", "active_slave", "standby_slave", "backup_slave",
        ]

    def test_unknown_role(self, topology):
        """Unknown roles are rejected."""
        with pytest.raises(ValueError, match="not a valid role"):
            topology.normalize_roles("leader")


# ===== Sync Tests =====

class TestSync:
    """Tests for configuration sync."""

    def test_failed_sync_is_a_warning(self, topology, make_db, capsys):
        """A failing sink does not abort the caller."""
        observer = MagicMock()
        topology.observer = observer
        error = ConfigurationSyncError("sink down")
        topology.sink.persist.side_effect = error
        pool = Pool("users", make_db("10.0.0.1"), topology)

        assert topology.sync(pool) is False

        assert "Configuration sync failed: sink down" in capsys.readouterr().out
        observer.on_after_sync.assert_called_once_with(pool, error)
        assert topology.pool("users") is pool

    def test_loader(self, config, make_db):
        """Pools returned by the loader are registered at construction."""
        loader = MagicMock()
        loader.load.side_effect = lambda topology: [Pool("users", topology.registry.db("10.0.0.1"), topology)]
        topology = Topology(config, loader=loader)
        assert [p.name for p in topology.pools] == ["users"]
        assert topology.refresh() is True
        assert loader.load.call_count == 2
