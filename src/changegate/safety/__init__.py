"""Safety layer - validators, database guardian and backups.

This module contains the content validators and the guards that stand
between generated changes and the codebase or database.
"""

from .backup import BackupConfig, BackupManager, BackupProvider, BackupRecord, BackupRequest
from .database_guardian import DatabaseGuardian, Environment, OperationContext, RiskAssessment
from .hallucination import HallucinationDetector
from .lookup import LookupPolicy, bounded_lookup
from .rulebook import RuleBook, default_rulebook
from .security import SecurityValidator, shannon_entropy

__all__ = [
    "BackupConfig",
    "BackupManager",
    "BackupProvider",
    "BackupRecord",
    "BackupRequest",
    "DatabaseGuardian",
    "Environment",
    "HallucinationDetector",
    "LookupPolicy",
    "OperationContext",
    "RiskAssessment",
    "RuleBook",
    "SecurityValidator",
    "bounded_lookup",
    "default_rulebook",
    "shannon_entropy",
]
