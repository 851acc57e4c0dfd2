"""
shardops - MySQL replication topology and shard lifecycle management

This package models a fleet of MySQL instances as pools (one master plus
replicas) and range-partitioned shards, and drives the operations that change
them: master promotion, cloning new replicas through a chained transfer, and
splitting a shard into children.

Python API:
    from shardops import Config, Topology
    from shardops.tracker import JsonFileTracker

    config = Config.load()
    tracker = JsonFileTracker.from_config(config)
    topology = Topology(config, allocator=tracker, sink=tracker, loader=tracker)
    shard = topology.shard_for_id(12345)
    shard.split(2)
"""

__version__ = "1.0.0"

from .config import Config
from .db import DB
from .events import TopologyObserver
from .pool import Pool
from .shard import Shard, ShardState
from .table import Table
from .topology import Topology

__all__ = ["Config", "DB", "Pool", "Shard", "ShardState", "Table", "Topology", "TopologyObserver"]
