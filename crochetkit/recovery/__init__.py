"""recovery — safety backups and the recovery fallback chain."""

from crochetkit.recovery.backup import BackupManager, BackupRecord
from crochetkit.recovery.recovery import RecoveryOutcome, RecoverySystem, Strategy

__all__ = ["BackupManager", "BackupRecord", "RecoveryOutcome", "RecoverySystem", "Strategy"]
