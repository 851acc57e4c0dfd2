"""
User and privilege management of DB.

Grants and users are changed with sql_log_bin disabled, so they apply to one
node only and never replicate.
"""

from typing import Optional


class PrivilegesMixin:

    def _grant_ips_command(self, statement_for) -> str:
        commands = ["SET SESSION sql_log_bin = 0"]
        commands += [statement_for(ip) for ip in self.config.mysql_grant_ips]
        commands.append("FLUSH PRIVILEGES")
        return "; ".join(commands)

    def create_user(self, username: Optional[str] = None, password: Optional[str] = None) -> None:
        username = username or self.config.mysql_app_user
        password = self.config.mysql_app_password if password is None else password
        self.mysql_root_cmd(self._grant_ips_command(lambda ip: f"CREATE USER '{username}'@'{ip}' IDENTIFIED BY '{password}'"))
        for ip in self.config.mysql_grant_ips:
            self.output(f"Created user '{username}'@'{ip}' (only on this node -- not binlogged)")

    def drop_user(self, username: Optional[str] = None) -> None:
        username = username or self.config.mysql_app_user
        self.mysql_root_cmd(self._grant_ips_command(lambda ip: f"DROP USER '{username}'@'{ip}'"))
        for ip in self.config.mysql_grant_ips:
            self.output(f"Dropped user '{username}'@'{ip}' (only on this node -- not binlogged)")

    def grant_privileges(self, username: Optional[str] = None, database: Optional[str] = None, *privileges: str) -> None:
        self._grant_or_revoke("GRANT", username, database, privileges)

    def revoke_privileges(self, username: Optional[str] = None, database: Optional[str] = None, *privileges: str) -> None:
        self._grant_or_revoke("REVOKE", username, database, privileges)

    def _grant_or_revoke(self, statement: str, username, database, privileges) -> None:
        revoking = statement == "REVOKE"
        preposition = "FROM" if revoking else "TO"
        username = username or self.config.mysql_app_user
        database = database or self.config.mysql_schema
        privs = ",".join(privileges or self.config.mysql_grant_privs)

        self.mysql_root_cmd(
            self._grant_ips_command(lambda ip: f"{statement} {privs} ON {database}.* {preposition} '{username}'@'{ip}'")
        )
        verb = "Revoking" if revoking else "Granting"
        target_db = "globally" if database == "*" else f"on {database}.*"
        for ip in self.config.mysql_grant_ips:
            self.output(
                f"{verb} privileges {preposition.lower()} '{username}'@'{ip}' {target_db}: "
                f"{privs.lower()} (only on this node -- not binlogged)"
            )

    def revoke_all_access(self) -> None:
        """Make the node read-only and drop the app user; nothing is binlogged."""
        self.enable_read_only()
        self.drop_user(self.config.mysql_app_user)

    def enable_read_only(self) -> bool:
        if self.read_only():
            self.output("Node already has read_only mode enabled")
            return True
        self.output("Enabling read_only mode")
        self.mysql_root_cmd("SET GLOBAL read_only = 1")
        return self.read_only()

    def disable_read_only(self) -> bool:
        if not self.read_only():
            self.output("Confirmed that read_only mode is already disabled")
            return True
        self.output("Disabling read_only mode")
        self.mysql_root_cmd("SET GLOBAL read_only = 0")
        return not self.read_only()
