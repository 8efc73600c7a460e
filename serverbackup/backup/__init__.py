"""
Backup module for the server backup manager.

This module handles the core backup functionality including:
- Remote command execution (SSH exec and SFTP) and local commands
- Transfer of artifacts (rsync with SFTP fallback)
- Execution orchestration and per-server run locks
- Detached launching of runs
"""

from .channel import RemoteChannel, run_local
from .executor import BackupExecutor, execute_backup
from .launcher import RunLauncher
from .target import TargetSpec
from .transfer import TransferStrategy

__all__ = [
    'RemoteChannel',
    'run_local',
    'BackupExecutor',
    'execute_backup',
    'RunLauncher',
    'TargetSpec',
    'TransferStrategy',
]
