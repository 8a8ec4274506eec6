"""
Data model shared by the detection pipeline and the remediation subsystem.

Findings are frozen: a detector produces them once and nothing downstream
changes them.  Corrections go through ``Finding.with_changes`` which returns
a new instance.  Backups and fix records are mutable because they move
through a lifecycle; the allowed moves are enforced here.
"""

from __future__ import annotations

import hashlib
import time
import uuid
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidTransition


class Severity(Enum):
    CRITICAL = 4
    HIGH = 3
    MEDIUM = 2
    LOW = 1
    INFO = 0

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value!r}") from None

    def downgrade(self) -> "Severity":
        """One level lower; INFO stays INFO."""
        return Severity(max(self.value - 1, Severity.INFO.value))

    @staticmethod
    def highest(*severities: "Severity") -> "Severity":
        return max(severities, key=lambda s: s.value)


class SourceKind(Enum):
    """Untrusted-input categories a tainted variable can originate from."""
    GET = "get"
    POST = "post"
    REQUEST = "request"
    COOKIE = "cookie"
    SERVER = "server"
    FILES = "files"
    INPUT_STREAM = "input_stream"
    DATABASE = "database"


# ---------------------------------------------------------------------------
# Detection side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Finding:
    """A single detected, potential vulnerability instance."""

    type: str
    subtype: str
    severity: Severity
    confidence: float
    line: int
    matched_text: str
    file_path: str
    surrounding_context: str = ""
    cwe_id: str = ""
    owasp_category: str = ""
    recommendation: str = ""
    description: str = ""
    has_validation: bool = False
    tainted_source: Optional[str] = None
    tainted_line: Optional[int] = None
    detector: str = ""
    rule_id: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def finding_id(self) -> str:
        key = "|".join([self.file_path, str(self.line), self.type, self.subtype,
                        self.rule_id, self.matched_text])
        return hashlib.sha256(key.encode("utf-8", errors="replace")).hexdigest()[:16]

    def sort_key(self) -> Tuple[str, int, str, str, str]:
        return (self.file_path, self.line, self.type, self.subtype, self.rule_id)

    def with_changes(self, **changes: Any) -> "Finding":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.finding_id,
            "type": self.type,
            "subtype": self.subtype,
            "severity": self.severity.label,
            "confidence": round(self.confidence, 4),
            "line": self.line,
            "matched_text": self.matched_text,
            "surrounding_context": self.surrounding_context,
            "file_path": self.file_path,
            "cwe_id": self.cwe_id,
            "owasp_category": self.owasp_category,
            "recommendation": self.recommendation,
            "description": self.description,
            "has_validation": self.has_validation,
            "tainted_source": self.tainted_source,
            "tainted_line": self.tainted_line,
            "detector": self.detector,
            "rule_id": self.rule_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            type=str(data.get("type", "")),
            subtype=str(data.get("subtype", "")),
            severity=Severity.parse(data.get("severity", "medium")),
            confidence=float(data.get("confidence", 0.5)),
            line=int(data.get("line", 0)),
            matched_text=str(data.get("matched_text", "")),
            file_path=str(data.get("file_path", "")),
            surrounding_context=str(data.get("surrounding_context", "")),
            cwe_id=str(data.get("cwe_id", "")),
            owasp_category=str(data.get("owasp_category", "")),
            recommendation=str(data.get("recommendation", "")),
            description=str(data.get("description", "")),
            has_validation=bool(data.get("has_validation", False)),
            tainted_source=data.get("tainted_source"),
            tainted_line=data.get("tainted_line"),
            detector=str(data.get("detector", "")),
            rule_id=str(data.get("rule_id", "")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class TaintedVariable:
    """A variable assigned from untrusted input, scoped to one file pass."""

    name: str
    source_kind: str
    declaration_line: int
    expression: str = ""
    propagated_from: Optional[str] = None
    sanitized_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Remediation side
# ---------------------------------------------------------------------------

class RiskCategory(Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RiskFactor:
    name: str
    score: float
    detail: str = ""


@dataclass(frozen=True)
class CategoryRisk:
    """Risk for one assessment category: the max of its sub-factors."""
    score: float = 0.0
    factors: Tuple[RiskFactor, ...] = ()


@dataclass(frozen=True)
class Recommendation:
    priority: str
    action: str
    description: str


@dataclass(frozen=True)
class Prerequisite:
    type: str
    description: str
    required: bool


@dataclass(frozen=True)
class SafetyAssessment:
    risk_level: float
    risk_category: RiskCategory
    safety_score: float
    risk_factors: Mapping[str, CategoryRisk]
    recommendations: Tuple[Recommendation, ...] = ()
    prerequisites: Tuple[Prerequisite, ...] = ()
    estimated_downtime_seconds: int = 0
    rollback_confidence: float = 1.0
    manual_review_required: bool = False
    error: Optional[str] = None
    assessed_at: float = field(default_factory=time.time, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_level": round(self.risk_level, 4),
            "risk_category": self.risk_category.value,
            "safety_score": round(self.safety_score, 2),
            "risk_factors": {
                name: {"score": cat.score,
                       "factors": [asdict(f) for f in cat.factors]}
                for name, cat in self.risk_factors.items()
            },
            "recommendations": [asdict(r) for r in self.recommendations],
            "prerequisites": [asdict(p) for p in self.prerequisites],
            "estimated_downtime_seconds": self.estimated_downtime_seconds,
            "rollback_confidence": round(self.rollback_confidence, 4),
            "manual_review_required": self.manual_review_required,
            "error": self.error,
        }


class BackupStatus(Enum):
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"
    RESTORED = "restored"


_BACKUP_TRANSITIONS = {
    BackupStatus.CREATING: {BackupStatus.COMPLETED, BackupStatus.FAILED},
    BackupStatus.COMPLETED: {BackupStatus.RESTORED},
    BackupStatus.FAILED: set(),
    BackupStatus.RESTORED: set(),
}


@dataclass
class BackedUpFile:
    path: str
    relative_path: str
    checksum: Optional[str]
    size: int = 0
    mode: Optional[int] = None

    @property
    def existed(self) -> bool:
        return self.checksum is not None


@dataclass
class BackedUpTable:
    name: str
    checksum: str
    rows: int = 0


@dataclass
class Backup:
    id: str
    status: BackupStatus = BackupStatus.CREATING
    created_at: float = field(default_factory=time.time)
    expiry: float = 0.0
    files: List[BackedUpFile] = field(default_factory=list)
    database_tables: List[BackedUpTable] = field(default_factory=list)
    configuration_snapshot: Dict[str, Any] = field(default_factory=dict)
    size: int = 0
    checksum: str = ""
    compressed: bool = False
    verified: bool = False
    finding_id: str = ""
    error: Optional[str] = None

    def transition(self, status: BackupStatus) -> None:
        if status not in _BACKUP_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Backup {self.id}: {self.status.value} -> {status.value} not allowed")
        self.status = status

    @property
    def usable(self) -> bool:
        return self.status is BackupStatus.COMPLETED and self.verified

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Backup":
        return cls(
            id=str(data["id"]),
            status=BackupStatus(data.get("status", "failed")),
            created_at=float(data.get("created_at", 0.0)),
            expiry=float(data.get("expiry", 0.0)),
            files=[BackedUpFile(**f) for f in data.get("files", [])],
            database_tables=[BackedUpTable(**t) for t in data.get("database_tables", [])],
            configuration_snapshot=dict(data.get("configuration_snapshot", {})),
            size=int(data.get("size", 0)),
            checksum=str(data.get("checksum", "")),
            compressed=bool(data.get("compressed", False)),
            verified=bool(data.get("verified", False)),
            finding_id=str(data.get("finding_id", "")),
            error=data.get("error"),
        )


class FixStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_FIX_TRANSITIONS = {
    FixStatus.PENDING: {FixStatus.IN_PROGRESS},
    FixStatus.IN_PROGRESS: {FixStatus.COMPLETED, FixStatus.FAILED},
    FixStatus.COMPLETED: {FixStatus.ROLLED_BACK},
    FixStatus.FAILED: {FixStatus.ROLLED_BACK},
    FixStatus.ROLLED_BACK: set(),
}


@dataclass
class FixRecord:
    """One applied or attempted fix.  Status moves are checked."""

    fix_id: str
    strategy_type: str
    finding_id: str = ""
    status: FixStatus = FixStatus.PENDING
    backup_id: Optional[str] = None
    actions_taken: List[str] = field(default_factory=list)
    changes_made: List[Dict[str, Any]] = field(default_factory=list)
    rollback_data: Dict[str, Any] = field(default_factory=dict)
    validation_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    history: List[Tuple[str, str, float]] = field(default_factory=list)

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:12]

    def can_transition(self, status: FixStatus) -> bool:
        return status in _FIX_TRANSITIONS[self.status]

    def transition(self, status: FixStatus, backup: Optional[Backup] = None) -> None:
        if not self.can_transition(status):
            raise InvalidTransition(
                f"Fix {self.fix_id}: {self.status.value} -> {status.value} not allowed")
        if status is FixStatus.IN_PROGRESS:
            if backup is None or not backup.usable:
                raise InvalidTransition(
                    f"Fix {self.fix_id}: a completed, verified backup is required to start")
            if self.backup_id is not None and backup.id != self.backup_id:
                raise InvalidTransition(
                    f"Fix {self.fix_id}: backup {backup.id} belongs to another attempt")
            self.backup_id = backup.id
        now = time.time()
        self.history.append((self.status.value, status.value, now))
        self.status = status
        self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class FixResult:
    fix_id: str
    success: bool = False
    dry_run: bool = False
    actions_taken: List[str] = field(default_factory=list)
    changes_made: List[Dict[str, Any]] = field(default_factory=list)
    rollback_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    rollback: Optional["RollbackResult"] = None


@dataclass
class ValidationResult:
    is_valid: bool
    confidence: float = 0.0
    checks: Dict[str, Any] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)


@dataclass
class RollbackResult:
    success: bool
    actions_taken: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class InstructionStep:
    title: str
    detail: str
    code_example: Optional[str] = None


@dataclass
class Instructions:
    """Structured manual-fix guidance; rendering is left to the caller."""

    title: str
    summary: Dict[str, Any]
    steps: List[InstructionStep]
    prerequisites: List[str] = field(default_factory=list)
    verification_steps: List[str] = field(default_factory=list)
    rollback_steps: List[str] = field(default_factory=list)
    difficulty: str = "intermediate"
    estimated_minutes: int = 30
    urgency: str = ""
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
