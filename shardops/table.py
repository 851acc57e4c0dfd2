"""
Table definitions for sharded data movement.

A Table associates a table name with the column(s) that make up its sharding
key and knows how to build the SQL used to export, import, count and clean up
an ID range. It never executes anything itself; DB methods run the SQL.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# Upper bound of the last range of a keyspace
INFINITY = "INFINITY"


@dataclass
class Table:
    """
    Name, sharding key(s) and chunking settings of one sharded table.

    A table with several sharding key columns (a mapping table) is supported
    but makes exports and cleanup much slower, since rows may be duplicated
    across chunks and every delete must check the other columns.
    """

    name: str
    sharding_keys: List[str] = field(default_factory=list)
    chunks: int = 1
    order_by: Optional[str] = None
    primary_key: Optional[Union[str, List[str]]] = None
    export_location: str = "/tmp"

    def __str__(self) -> str:
        return self.name

    def __hash__(self) -> int:
        return hash(self.name)

    @classmethod
    def from_dict(cls, name: str, params: Dict[str, Any], export_location: str = "/tmp") -> 'Table':
        """Build a Table from a config entry; singular or plural key names are accepted."""
        keys = params.get("sharding_key") or params.get("sharding_keys") or []
        if isinstance(keys, str):
            keys = [keys]
        return cls(
            name=name,
            sharding_keys=list(keys),
            chunks=int(params.get("chunks") or 1),
            order_by=params.get("order_by"),
            primary_key=params.get("primary_key") or params.get("primary_keys"),
            export_location=export_location,
        )

    @classmethod
    def from_config(cls, config, keyspace: str = "shard") -> List['Table']:
        """All tables configured for a keyspace."""
        return [
            cls.from_dict(name, params, export_location=config.export_location)
            for name, params in config.tables_for(keyspace).items()
        ]

    @property
    def first_pk_col(self) -> Optional[str]:
        if isinstance(self.primary_key, list):
            return self.primary_key[0] if self.primary_key else None
        return self.primary_key

    def _range_clause(self, min_id: Optional[int], max_id: Optional[int]) -> str:
        if min_id is not None and max_id is not None:
            clauses = [f"({col} >= {min_id} AND {col} <= {max_id}) " for col in self.sharding_keys]
        elif min_id is not None:
            clauses = [f"{col} >= {min_id} " for col in self.sharding_keys]
        else:
            clauses = [f"{col} <= {max_id} " for col in self.sharding_keys]
        return "WHERE " + "OR ".join(clauses)

    def sql_export_range(self, min_id: Optional[int] = None, max_id: Optional[int] = None) -> str:
        """SELECT ... INTO OUTFILE for an ID range (or the whole table)."""
        sql = f"SELECT * FROM {self.name} "
        if (min_id is not None or max_id is not None) and self.sharding_keys:
            sql += self._range_clause(min_id, max_id)
        if self.order_by:
            sql += f"ORDER BY {self.order_by} "
        sql += f"INTO OUTFILE '{self.export_file_path(min_id, max_id)}'"
        return sql

    def sql_import_range(self, min_id: Optional[int] = None, max_id: Optional[int] = None) -> str:
        # Multi-key tables produce duplicate rows between chunk files
        ranged = min_id is not None or max_id is not None
        ignore = " IGNORE" if len(self.sharding_keys) > 1 and ranged else ""
        return (f"LOAD DATA INFILE '{self.export_file_path(min_id, max_id)}'{ignore} "
                f"INTO TABLE {self.name} CHARACTER SET binary")

    def sql_cleanup_next_id(self, sharding_key: str, id: int, direction: str) -> str:
        """SQL returning the next sharding key value past id, walking asc or desc."""
        if direction == "asc":
            return f"SELECT MIN({sharding_key}) FROM {self.name} WHERE {sharding_key} > {id}"
        if direction == "desc":
            return f"SELECT MAX({sharding_key}) FROM {self.name} WHERE {sharding_key} < {id}"
        raise ValueError(f"Unknown direction parameter {direction}")

    def sql_cleanup_delete(self, sharding_key: str, min_keep_id: int, max_keep_id: int) -> str:
        """
        DELETE statement for one sharding key value, bound as a %s parameter.

        Rows whose other sharding key columns fall inside the kept range are
        preserved.
        """
        sql = f"DELETE FROM {self.name} WHERE {sharding_key} = %s"
        for other in self.sharding_keys:
            if other == sharding_key:
                continue
            if max_keep_id == INFINITY:
                sql += f" AND NOT ({other} >= {min_keep_id})"
            else:
                sql += f" AND NOT ({other} >= {min_keep_id} AND {other} <= {max_keep_id})"
        return sql

    def sql_count_rows(self, min_id: Optional[int] = None, max_id: Optional[int] = None) -> str:
        sql = f"SELECT COUNT(*) FROM {self.name}"
        if min_id is None or max_id is None:
            return sql
        if self.sharding_keys:
            wheres = [f"({col} >= {min_id} AND {col} <= {max_id})" for col in self.sharding_keys]
            sql += " WHERE " + " OR ".join(wheres)
        elif self.first_pk_col:
            sql += f" WHERE {self.first_pk_col} >= {min_id} AND {self.first_pk_col} <= {max_id}"
        return sql

    def max_pk_val_query(self) -> str:
        if isinstance(self.primary_key, list):
            cols = ",".join(self.primary_key)
            ordering = ",".join(f"{key} DESC" for key in self.primary_key)
            return f"SELECT {cols} FROM {self.name} ORDER BY {ordering} LIMIT 1"
        return f"SELECT MAX({self.primary_key}) FROM {self.name}"

    def export_file_path(self, min_id: Optional[int] = None, max_id: Optional[int] = None) -> str:
        base = f"{self.export_location.rstrip('/')}/{self.name}"
        if min_id is not None and max_id is not None:
            return f"{base}{min_id}-{max_id}.out"
        if min_id is not None:
            return f"{base}{min_id}-and-up.out"
        if max_id is not None:
            return f"{base}start-{max_id}.out"
        return f"{base}-full.out"
