"""
Immutable view of a backup target for the duration of one run.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from .commands import safe_name


@dataclass(frozen=True)
class TargetSpec:
    """Connection parameters and selection flags for one server."""

    host: str
    username: str
    port: int = 22
    name: Optional[str] = None
    server_id: Optional[int] = None
    password: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = None
    local_backup_path: Optional[str] = None
    backup_paths: Tuple[str, ...] = ()

    backup_www: bool = False
    backup_logs: bool = False
    backup_nginx: bool = False
    backup_db: bool = False

    db_host: Optional[str] = None
    db_port: Optional[int] = None
    db_user: Optional[str] = None
    db_password: Optional[str] = field(default=None, repr=False)
    db_selected: Tuple[str, ...] = ()

    @property
    def safe_name(self) -> str:
        return safe_name(self.name, self.username, self.host)

    @property
    def auth_method(self) -> str:
        """'password' when a password is set (it wins), else 'key'."""
        return 'password' if self.password else 'key'

    @classmethod
    def from_server(cls, server, secret_box) -> 'TargetSpec':
        """
        Build a TargetSpec from a Server row, decrypting stored credentials.

        Args:
            server: Server model instance
            secret_box: SecretBox used to decrypt passwords
        """
        return cls(
            server_id=server.id,
            name=server.name,
            host=server.host,
            port=server.port or 22,
            username=server.username,
            password=secret_box.decrypt_optional(server.password_encrypted),
            private_key_path=server.ssh_key_path or None,
            local_backup_path=(server.local_backup_path or '').strip() or None,
            backup_paths=tuple(server.backup_path_list),
            backup_www=bool(server.backup_www),
            backup_logs=bool(server.backup_logs),
            backup_nginx=bool(server.backup_nginx),
            backup_db=bool(server.backup_db),
            db_host=server.db_host,
            db_port=server.db_port,
            db_user=server.db_user or None,
            db_password=secret_box.decrypt_optional(server.db_password_encrypted),
            db_selected=tuple(server.db_selected_list),
        )
