"""Tests for pool membership and master promotion."""

from unittest.mock import MagicMock, patch

import pytest

from shardops.errors import ConsistencyError, OperationTimeout, PreconditionError
from shardops.pool import Pool

MASTER = "10.0.0.1"
CANDIDATE = "10.0.0.2"
REPLICA = "10.0.0.3"
BACKUP = "10.0.0.4"


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("shardops.pool.time.sleep"):
        yield


@pytest.fixture
def pool(topology, make_db):
    master = make_db(MASTER)
    for ip in (CANDIDATE, REPLICA):
        replica = make_db(ip, master=master, repl_paused=False)
        replica.for_backups = MagicMock(return_value=False)
    pool = Pool("users", master, topology)
    topology.add_pool(pool)
    return pool


def prepare_promotion(registry, status=None):
    """Stub out every server interaction of a promotion of CANDIDATE."""
    candidate = registry.db(CANDIDATE)
    replica = registry.db(REPLICA)
    for db in (candidate, replica):
        db.pause_replication = MagicMock()
    candidate.replicating = MagicMock(return_value=False)
    candidate.replication_credentials = MagicMock(return_value={"user": "repl", "password": "pw"})
    candidate.binlog_coordinates = MagicMock(return_value=("mysql-bin.000003", 120))
    candidate.mysql_root_cmd = MagicMock()
    candidate.disable_replication = MagicMock()
    candidate.disable_read_only = MagicMock()
    replica.change_master_to = MagicMock()
    replica.resume_replication = MagicMock()
    replica.replicating = MagicMock(side_effect=[False, False, True])
    replica.slave_status = MagicMock(return_value=status or {
        "master_host": CANDIDATE,
        "master_user": "repl",
        "master_log_file": "mysql-bin.000003",
        "exec_master_log_pos": "120",
    })
    return candidate, replica


# ===== Membership Tests =====

class TestMembership:
    """Tests for classifying replicas."""

    def test_classification(self, pool, topology, make_db):
        """Replicas are active, standby or backup."""
        backup = make_db(BACKUP, master=pool.master)
        backup.for_backups = MagicMock(return_value=True)
        candidate = topology.registry.db(CANDIDATE)
        pool.has_active_slave(candidate, 50)

        assert pool.active_slaves() == [candidate]
        assert pool.standby_slaves() == [topology.registry.db(REPLICA)]
        assert pool.backup_slaves() == [backup]
        assert pool.nodes[0] is pool.master

    def test_backup_cannot_become_active(self, pool, make_db):
        """Backup replicas never serve reads."""
        backup = make_db(BACKUP, master=pool.master)
        backup.for_backups = MagicMock(return_value=True)
        with pytest.raises(PreconditionError, match="backup slave"):
            pool.mark_slave_active(backup)

    def test_master_is_not_its_own_slave(self, pool):
        """The master cannot be listed as an active replica."""
        with pytest.raises(PreconditionError, match="its own active slave"):
            pool.has_active_slave(pool.master)

    def test_mark_active_syncs(self, pool, topology):
        """Changing membership persists the configuration."""
        pool.mark_slave_active(topology.registry.db(CANDIDATE), 25)
        topology.sink.persist.assert_called_with(pool)
        assert pool.active_slave_weights[topology.registry.db(CANDIDATE)] == 25

    def test_anonymous_pool_not_synced(self, topology, make_db):
        """Anonymous pools never reach the sink."""
        Pool("anon", make_db("10.0.0.9"), topology, anonymous=True).sync_configuration()
        topology.sink.persist.assert_not_called()

    def test_hash_round_trip(self, pool, topology):
        """Active weights survive serialization."""
        pool.has_active_slave(topology.registry.db(CANDIDATE), 70)
        pool.add_alias("user_db")
        data = pool.to_hash()
        assert data["master"] == f"{MASTER}:3306"
        assert {"host": f"{REPLICA}:3306", "role": "STANDBY_SLAVE"} in data["slaves"]

        rebuilt = Pool.from_hash(data, topology)
        assert rebuilt.master is pool.master
        assert rebuilt.aliases == ["user_db"]
        assert rebuilt.active_slave_weights == {topology.registry.db(CANDIDATE): 70}

    def test_app_config_lists_active_slaves_only(self, pool, topology):
        """The application sees active replicas and their weights."""
        pool.has_active_slave(topology.registry.db(CANDIDATE), 70)
        assert pool.to_hash(for_app_config=True)["slaves"] == [{"host": f"{CANDIDATE}:3306", "weight": 70}]


# ===== Promotion Tests =====

class TestPromotion:
    """Tests for promote_slave."""

    def test_rejects_non_replica(self, pool, make_db):
        """Only replicas of the current master can be promoted."""
        with pytest.raises(PreconditionError, match="not a replica"):
            pool.promote_slave(make_db("10.0.0.9"))

    def test_rejects_backup(self, pool, topology):
        """Backup replicas are never promoted."""
        topology.registry.db(CANDIDATE).for_backups = MagicMock(return_value=True)
        with pytest.raises(PreconditionError, match="backup slaves are not suitable"):
            pool.promote_slave(topology.registry.db(CANDIDATE))

    @patch.object(Pool, "_wait_for_replicas_at")
    @patch.object(Pool, "_wait_for_replicas_stable")
    def test_unreachable_master(self, stable, at, pool, topology):
        """A dead master is replaced after the replicas stop making progress."""
        demoted = pool.master
        demoted.is_available = MagicMock(return_value=False)
        candidate, replica = prepare_promotion(topology.registry)

        assert pool.promote_slave(candidate) is True

        stable.assert_called_once()
        at.assert_not_called()
        candidate.mysql_root_cmd.assert_called_once_with("STOP SLAVE; RESET SLAVE ALL")
        replica.change_master_to.assert_called_once_with(
            candidate, log_file="mysql-bin.000003", log_pos=120, user="repl", password="pw"
        )
        replica.resume_replication.assert_called_once_with()
        assert pool.master is candidate
        assert demoted in pool.pending_eject
        assert candidate._master is False
        topology.sink.persist.assert_called_with(pool)

    @patch.object(Pool, "_wait_for_replicas_at")
    def test_reachable_master_is_reattached(self, at, pool, topology):
        """A live master is frozen, drained to, then re-pointed at the candidate."""
        demoted = pool.master
        demoted.is_available = MagicMock(return_value=True)
        demoted.enable_read_only = MagicMock(return_value=True)
        demoted.binlog_coordinates = MagicMock(return_value=("mysql-bin.000009", 500))
        demoted.change_master_to = MagicMock()
        demoted.slave_status = MagicMock(return_value={
            "master_host": CANDIDATE,
            "master_user": "repl",
            "master_log_file": "mysql-bin.000003",
            "exec_master_log_pos": "120",
        })
        demoted.replicating = MagicMock(return_value=True)
        candidate, replica = prepare_promotion(topology.registry)

        pool.promote_slave(candidate)

        at.assert_called_once()
        assert at.call_args.args[1] == ("mysql-bin.000009", 500)
        candidate.disable_replication.assert_called_once_with()
        demoted.change_master_to.assert_called_once()
        assert pool.pending_eject == []

    def test_master_still_taking_writes(self, pool, topology):
        """Promotion stops if the frozen master's position keeps moving."""
        demoted = pool.master
        demoted.is_available = MagicMock(return_value=True)
        demoted.enable_read_only = MagicMock(return_value=True)
        demoted.binlog_coordinates = MagicMock(side_effect=[("mysql-bin.000009", 500), ("mysql-bin.000009", 620)])
        with pytest.raises(ConsistencyError, match="still taking writes"):
            pool.promote_slave(topology.registry.db(CANDIDATE))

    @patch.object(Pool, "_wait_for_replicas_stable")
    def test_verification_mismatch(self, _stable, pool, topology):
        """A re-pointed replica reporting the wrong master aborts the promotion."""
        pool.master.is_available = MagicMock(return_value=False)
        candidate, replica = prepare_promotion(topology.registry, status={
            "master_host": MASTER,
            "master_user": "repl",
            "master_log_file": "mysql-bin.000003",
            "exec_master_log_pos": "120",
        })
        with pytest.raises(ConsistencyError, match="Unexpected slave status value for master_host"):
            pool.promote_slave(candidate)
        replica.resume_replication.assert_not_called()

    @patch.object(Pool, "_wait_for_replicas_stable")
    def test_replica_refuses_to_pause(self, _stable, pool, topology):
        """Replicas still running after the pause abort the promotion."""
        pool.master.is_available = MagicMock(return_value=False)
        candidate, replica = prepare_promotion(topology.registry)
        replica.replicating = MagicMock(return_value=True)
        with pytest.raises(ConsistencyError, match="Unable to pause replication"):
            pool.promote_slave(candidate)


# ===== Drain Wait Tests =====

class TestDrainWaits:
    """Tests for the replica wait loops."""

    def test_stable_after_three_unchanged_polls(self, pool, topology):
        """Progress must stop for three consecutive polls."""
        replica = topology.registry.db(REPLICA)
        replica.repl_binlog_coordinates = MagicMock(side_effect=[
            ("mysql-bin.000001", 1),
            ("mysql-bin.000001", 2),
            ("mysql-bin.000001", 2),
            ("mysql-bin.000001", 2),
            ("mysql-bin.000001", 2),
        ])
        pool._wait_for_replicas_stable([replica], None)
        assert replica.repl_binlog_coordinates.call_count == 5

    def test_wait_for_coordinates_times_out(self, pool, topology):
        """A lagging replica exceeds the bounded wait."""
        replica = topology.registry.db(REPLICA)
        replica.repl_binlog_coordinates = MagicMock(return_value=("mysql-bin.000001", 1))
        with pytest.raises(OperationTimeout, match="did not reach"):
            pool._wait_for_replicas_at([replica], ("mysql-bin.000001", 99), 0)
