__version__ = "1.0.0"

from .errors import (BreachGuardError, ConfigError, RuleValidationError, DetectorTimeout,
                     BackupError, BackupVerificationError, BackupNotFoundError,
                     FixApplicationError, RollbackError, InvalidTransition, LockTimeout,
                     StrategyNotFound)
from .models import (Severity, Finding, TaintedVariable, RiskCategory, SafetyAssessment,
                     Backup, BackupStatus, FixRecord, FixStatus, FixResult, ValidationResult,
                     RollbackResult, Instructions)
from .config import Settings, load_settings
from .rule_engine import RuleEngine, RuleSet, PatternRule
from .taint_tracker import TaintTracker
from .context_classifier import ContextClassifier, OutputContext
from .detectors import DETECTORS, Detector
from .registry import DetectorRegistry, FindingAggregator, ScanReport, SourceFile
from .safety_assessor import SafetyAssessor, SiteContext, FixPlan
from .database import DatabaseAdapter, SQLiteAdapter
from .backup_manager import BackupManager, BackupResult
from .locks import LockManager
from .guidance import ManualGuidance
from .strategies import STRATEGIES, FixStrategy, build_strategies, strategy_for
from .fix_engine import FixEngine, FixOutcome, FixReport, BatchReport
