"""
Transfer of a run's artifacts from the remote working directory to local disk.

rsync is the primary path. If it fails for any reason the transfer falls back,
exactly once, to a sequential SFTP download of the regular files in the
directory.
"""

import os
import stat
from typing import Callable

from .channel import ChannelError, run_local
from .commands import rsync_command


class TransferFailed(Exception):
    """Raised when both rsync and the SFTP fallback fail."""
    pass


class TransferStrategy:
    """
    Pulls a flat remote directory into a local directory.
    """

    def __init__(self, target, channel, log: Callable[[str], None], run_local=run_local):
        """
        Initialize transfer strategy.

        Args:
            target: TargetSpec (credentials are reused for rsync's ssh)
            channel: RemoteChannel providing the SFTP session for the fallback
            log: Run log sink
            run_local: Local command runner
        """
        self.target = target
        self.channel = channel
        self.log = log
        self.run_local = run_local

    def transfer(self, remote_dir: str, local_dir: str):
        """
        Mirror remote_dir into local_dir.

        Raises:
            TransferFailed: If rsync and SFTP both fail
        """
        try:
            self._rsync(remote_dir, local_dir)
            return
        except (ChannelError, ValueError) as e:
            self.log(f"Rsync failed, falling back to SFTP: {e}")

        try:
            self._sftp(remote_dir, local_dir)
        except Exception as e:
            raise TransferFailed(f"SFTP fallback failed: {e}") from e

    def _rsync(self, remote_dir: str, local_dir: str):
        argv, env = rsync_command(
            self.target.username,
            self.target.host,
            self.target.port,
            remote_dir,
            local_dir,
            password=self.target.password,
            private_key_path=self.target.private_key_path,
        )
        self.log(f"Running rsync from {self.target.host}:{remote_dir}")
        self.run_local(argv, env=env, on_output=self.log)
        self.log("Rsync transfer completed successfully")

    def _sftp(self, remote_dir: str, local_dir: str):
        sftp = self.channel.open_sftp()
        try:
            entries = [
                item for item in sftp.listdir_attr(remote_dir)
                if not stat.S_ISDIR(item.st_mode or 0)
            ]
            self.log(f"Found {len(entries)} files to transfer via SFTP")

            for item in entries:
                remote_path = f"{remote_dir.rstrip('/')}/{item.filename}"
                local_path = os.path.join(local_dir, item.filename)
                self.log(f"SFTP downloading: {item.filename}")
                try:
                    sftp.get(remote_path, local_path)
                except Exception as e:
                    self.log(f"SFTP failed to download {item.filename}: {e}")
                    raise
                self.log(f"SFTP downloaded: {item.filename}")

            self.log("SFTP transfer completed successfully")
        finally:
            sftp.close()
