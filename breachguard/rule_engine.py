"""
Pattern library: the single source of truth for detection rules.

Loads sources, sinks, sanitizers, output contexts, word lists and per-detector
pattern files from YAML and publishes them as an immutable ``RuleSet``.
Detectors are handed a RuleSet at construction; ``RuleEngine.reload`` and
the pattern editing methods build a new snapshot and never touch one that is
already in use.
"""

import copy
import hashlib
import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Pattern, Tuple

import yaml

from .errors import RuleValidationError
from .models import Severity

logger = logging.getLogger(__name__)

DEFAULT_RULES_DIR = str(Path(__file__).parent / "rules")

REQUIRED_PATTERN_FIELDS = ("id", "name", "pattern", "severity", "confidence", "description")
SEVERITY_LABELS = ("critical", "high", "medium", "low", "info")

_RULE_FLAGS = re.IGNORECASE | re.MULTILINE
_CONTEXT_FLAGS = re.IGNORECASE | re.DOTALL


@dataclass(frozen=True)
class SourceDef:
    name: str
    kind: str
    pattern: str
    taint_level: str = "HIGH"
    category: str = "superglobals"
    compiled: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", re.compile(self.pattern, re.IGNORECASE))


@dataclass(frozen=True)
class SinkDef:
    name: str
    vuln_type: str
    construct: bool = False


@dataclass(frozen=True)
class SanitizerDef:
    name: str
    protects_against: Tuple[str, ...]
    strength: str = "strong"  # strong, weak

    @property
    def is_cast(self) -> bool:
        return self.name.startswith("(")


@dataclass(frozen=True)
class ContextDef:
    name: str
    severity: Severity
    escaping: Tuple[str, ...]
    markers: Tuple[str, ...] = ()
    compiled_markers: Tuple[Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled_markers",
                           tuple(re.compile(m, _CONTEXT_FLAGS) for m in self.markers))


@dataclass(frozen=True)
class PatternRule:
    id: str
    name: str
    pattern: str
    severity: Severity
    confidence: float
    description: str
    detector: str
    cwe: str = ""
    owasp: str = ""
    recommendation: str = ""
    custom: bool = False
    compiled: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", re.compile(self.pattern, _RULE_FLAGS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pattern": self.pattern,
            "severity": self.severity.label,
            "confidence": self.confidence,
            "description": self.description,
            "cwe": self.cwe,
            "owasp": self.owasp,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of every rule a scan needs."""

    version: str
    revision: int
    patterns: Mapping[str, Tuple[PatternRule, ...]]
    sources: Tuple[SourceDef, ...]
    sinks: Tuple[SinkDef, ...]
    sanitizers: Tuple[SanitizerDef, ...]
    contexts: Tuple[ContextDef, ...]
    lists: Mapping[str, Tuple[str, ...]]
    expressions: Mapping[str, str]
    source_regex: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "patterns", MappingProxyType(dict(self.patterns)))
        object.__setattr__(self, "lists", MappingProxyType(dict(self.lists)))
        object.__setattr__(self, "expressions", MappingProxyType(dict(self.expressions)))
        combined = "|".join(f"(?:{s.pattern})" for s in self.sources) or r"(?!x)x"
        object.__setattr__(self, "source_regex", re.compile(combined, re.IGNORECASE))

    # ==================== Query Methods ====================

    def patterns_for(self, detector: str) -> Tuple[PatternRule, ...]:
        return self.patterns.get(detector, ())

    def detectors(self) -> List[str]:
        return sorted(self.patterns)

    def sanitizers_for(self, vuln_type: str) -> Tuple[SanitizerDef, ...]:
        return tuple(s for s in self.sanitizers if vuln_type in s.protects_against)

    def sanitizer_names(self, vuln_type: Optional[str] = None) -> Tuple[str, ...]:
        if vuln_type is None:
            return tuple(s.name for s in self.sanitizers)
        return tuple(s.name for s in self.sanitizers_for(vuln_type))

    def sinks_for(self, vuln_type: str) -> Tuple[SinkDef, ...]:
        return tuple(s for s in self.sinks if s.vuln_type == vuln_type)

    def context(self, name: str) -> Optional[ContextDef]:
        for ctx in self.contexts:
            if ctx.name == name:
                return ctx
        return None

    def word_list(self, name: str) -> Tuple[str, ...]:
        return self.lists.get(name, ())

    def expression(self, name: str) -> Pattern:
        return re.compile(self.expressions[name], re.IGNORECASE)

    def source_kind_for(self, text: str) -> Optional[str]:
        """Kind of the first untrusted source referenced in *text*, if any."""
        best = None
        for src in self.sources:
            m = src.compiled.search(text)
            if m and (best is None or m.start() < best[0]):
                best = (m.start(), src.kind)
        return best[1] if best else None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_pattern(entry: Any) -> List[str]:
    """Return a list of problems with a pattern entry (empty when valid)."""
    if not isinstance(entry, dict):
        return ["pattern entry must be a mapping"]
    errors = []
    for name in REQUIRED_PATTERN_FIELDS:
        if entry.get(name) in (None, ""):
            errors.append(f"missing required field '{name}'")
    severity = entry.get("severity")
    if severity is not None and str(severity).lower() not in SEVERITY_LABELS:
        errors.append(f"invalid severity '{severity}'")
    confidence = entry.get("confidence")
    if confidence is not None:
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            errors.append("confidence must be a number")
        elif not 0.0 <= float(confidence) <= 1.0:
            errors.append("confidence must be between 0 and 1")
    pattern = entry.get("pattern")
    if pattern:
        try:
            re.compile(pattern, _RULE_FLAGS)
        except re.error as exc:
            errors.append(f"pattern does not compile: {exc}")
    ident = entry.get("id")
    if ident and not re.match(r"^[a-z0-9_]+$", str(ident)):
        errors.append(f"id '{ident}' must be lowercase letters, digits and underscores")
    return errors


def _pattern_from_entry(entry: Dict[str, Any], detector: str, defaults: Dict[str, Any],
                        custom: bool = False) -> PatternRule:
    return PatternRule(
        id=str(entry["id"]),
        name=str(entry["name"]),
        pattern=str(entry["pattern"]),
        severity=Severity.parse(entry["severity"]),
        confidence=float(entry["confidence"]),
        description=str(entry["description"]),
        detector=detector,
        cwe=str(entry.get("cwe") or defaults.get("cwe", "")),
        owasp=str(entry.get("owasp") or defaults.get("owasp", "")),
        recommendation=str(entry.get("recommendation", "")),
        custom=custom,
    )


# ---------------------------------------------------------------------------
# RuleEngine
# ---------------------------------------------------------------------------

class RuleEngine:
    """Loads YAML rules and publishes immutable RuleSet snapshots."""

    def __init__(self, rules_dir: Optional[str] = None):
        self.rules_dir = rules_dir or DEFAULT_RULES_DIR
        self._lock = threading.RLock()
        self._raw: Dict[str, Any] = {}
        self._mtimes: Dict[str, float] = {}
        self._custom: Dict[str, List[Dict[str, Any]]] = {}
        self._removed: Dict[str, set] = {}
        self._order: Dict[str, List[str]] = {}
        self._revision = 0
        self._raw, self._mtimes = self._load_all()
        self._ruleset = self._build()

    @property
    def ruleset(self) -> RuleSet:
        return self._ruleset

    @property
    def version(self) -> str:
        return self._ruleset.version

    # -- loading ---------------------------------------------------------------

    def _rule_files(self) -> List[str]:
        files = []
        for name in ("sources.yml", "sinks.yml", "sanitizers.yml", "contexts.yml", "lists.yml"):
            if os.path.exists(os.path.join(self.rules_dir, name)):
                files.append(name)
        det_dir = os.path.join(self.rules_dir, "detectors")
        if os.path.isdir(det_dir):
            for fname in sorted(os.listdir(det_dir)):
                if fname.endswith((".yml", ".yaml")):
                    files.append(os.path.join("detectors", fname))
        return files

    def _load_yaml(self, filename: str) -> Any:
        """Load a YAML file from the rules directory."""
        filepath = os.path.join(self.rules_dir, filename)
        with open(filepath, "r", encoding="utf-8") as f:
            try:
                return yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise RuleValidationError([f"invalid YAML: {exc}"], filename) from exc

    def _snapshot_mtimes(self) -> Dict[str, float]:
        mtimes = {}
        for rel in self._rule_files():
            mtimes[rel] = os.path.getmtime(os.path.join(self.rules_dir, rel))
        return mtimes

    def _load_all(self) -> Tuple[Dict[str, Any], Dict[str, float]]:
        if not os.path.isdir(self.rules_dir):
            raise RuleValidationError([f"rules directory not found: {self.rules_dir}"])
        mtimes = self._snapshot_mtimes()
        raw = {rel: self._load_yaml(rel) for rel in mtimes}
        return raw, mtimes

    # -- building --------------------------------------------------------------

    def _build(self) -> RuleSet:
        errors: List[str] = []
        raw = self._raw
        versions = []

        sources = []
        data = raw.get("sources.yml", {})
        versions.append(str(data.get("version", "0")))
        for category, entries in data.items():
            if not isinstance(entries, list):
                continue
            for src in entries:
                try:
                    sources.append(SourceDef(
                        name=src["name"], kind=src["kind"], pattern=src["pattern"],
                        taint_level=src.get("taint_level", "HIGH"), category=category))
                except (KeyError, TypeError, re.error) as exc:
                    errors.append(f"sources.yml/{category}: {exc}")

        sinks = []
        data = raw.get("sinks.yml", {})
        for vuln_type, entries in data.items():
            if not isinstance(entries, list):
                continue
            for sink in entries:
                if not isinstance(sink, dict) or not sink.get("name"):
                    errors.append(f"sinks.yml/{vuln_type}: sink needs a name")
                    continue
                sinks.append(SinkDef(name=sink["name"], vuln_type=vuln_type,
                                     construct=bool(sink.get("construct", False))))

        sanitizers = []
        data = raw.get("sanitizers.yml", {})
        versions.append(str(data.get("version", "0")))
        for category, entries in data.items():
            if not isinstance(entries, list):
                continue
            for san in entries:
                if not isinstance(san, dict) or not san.get("name"):
                    errors.append(f"sanitizers.yml/{category}: sanitizer needs a name")
                    continue
                sanitizers.append(SanitizerDef(
                    name=san["name"],
                    protects_against=tuple(san.get("protects_against", [])),
                    strength=san.get("strength", "strong")))

        contexts = []
        data = raw.get("contexts.yml", {})
        for ctx in data.get("contexts", []) or []:
            try:
                contexts.append(ContextDef(
                    name=ctx["name"], severity=Severity.parse(ctx["severity"]),
                    escaping=tuple(ctx.get("escaping", [])),
                    markers=tuple(ctx.get("markers", []) or [])))
            except (KeyError, TypeError, ValueError, re.error) as exc:
                errors.append(f"contexts.yml: {exc}")

        data = raw.get("lists.yml", {})
        lists = {name: tuple(str(v) for v in values)
                 for name, values in (data.get("lists") or {}).items()}
        expressions = dict(data.get("expressions") or {})
        for name, expr in expressions.items():
            try:
                re.compile(expr)
            except re.error as exc:
                errors.append(f"lists.yml/expressions/{name}: {exc}")

        patterns: Dict[str, Tuple[PatternRule, ...]] = {}
        for rel, data in raw.items():
            if not rel.startswith("detectors"):
                continue
            detector = data.get("detector") or Path(rel).stem
            versions.append(str(data.get("version", "0")))
            defaults = {"cwe": data.get("cwe", ""), "owasp": data.get("owasp", "")}
            custom = self._custom.get(detector, [])
            custom_ids = {e["id"] for e in custom}
            removed = self._removed.get(detector, set())
            rules = []
            seen = set()
            for entry in data.get("patterns") or []:
                problems = validate_pattern(entry)
                if problems:
                    ident = entry.get("id", "?") if isinstance(entry, dict) else "?"
                    errors.extend(f"{rel}: {ident}: {p}" for p in problems)
                    continue
                if entry["id"] in seen:
                    errors.append(f"{rel}: duplicate pattern id '{entry['id']}'")
                    continue
                seen.add(entry["id"])
                # custom entries shadow built-ins with the same id
                if entry["id"] in custom_ids or entry["id"] in removed:
                    continue
                rules.append(_pattern_from_entry(entry, detector, defaults))
            for entry in custom:
                if entry["id"] not in removed:
                    rules.append(_pattern_from_entry(entry, detector, defaults, custom=True))
            order = self._order.get(detector)
            if order:
                rank = {pid: i for i, pid in enumerate(order)}
                rules.sort(key=lambda r: rank.get(r.id, len(rank)))
            patterns[detector] = tuple(rules)

        for detector, custom in self._custom.items():
            if detector not in patterns:
                errors.append(f"custom patterns for unknown detector '{detector}'")

        if errors:
            raise RuleValidationError(errors)

        digest = hashlib.sha256(json.dumps(
            [raw, self._custom, {k: sorted(v) for k, v in self._removed.items()}, self._order],
            sort_keys=True, default=str).encode("utf-8")).hexdigest()
        declared = max(versions, key=_version_key) if versions else "0"
        return RuleSet(
            version=f"{declared}+{digest[:12]}",
            revision=self._revision,
            patterns=patterns,
            sources=tuple(sources),
            sinks=tuple(sinks),
            sanitizers=tuple(sanitizers),
            contexts=tuple(contexts),
            lists=lists,
            expressions=expressions,
        )

    def _rebuild(self) -> RuleSet:
        self._revision += 1
        self._ruleset = self._build()
        return self._ruleset

    # -- hot reload ------------------------------------------------------------

    def reload(self, force: bool = False) -> bool:
        """Reload rule files if any changed on disk.

        Returns True when a new snapshot was published.  A broken rule file
        leaves the current snapshot in place.
        """
        with self._lock:
            try:
                mtimes = self._snapshot_mtimes()
            except OSError as exc:
                logger.error("Cannot stat rule files in %s: %s", self.rules_dir, exc)
                return False
            if not force and mtimes == self._mtimes:
                return False
            previous = (self._raw, self._mtimes, self._revision)
            try:
                self._raw, self._mtimes = self._load_all()
                self._rebuild()
            except (RuleValidationError, OSError) as exc:
                self._raw, self._mtimes, self._revision = previous
                logger.error("Rule reload failed, keeping version %s: %s",
                             self._ruleset.version, exc)
                return False
            logger.info("Loaded rule set %s (revision %d)", self._ruleset.version, self._revision)
            return True

    # ==================== Pattern Management ====================

    def validate_pattern(self, entry: Any) -> List[str]:
        return validate_pattern(entry)

    def get_pattern(self, detector: str, pattern_id: str) -> Optional[PatternRule]:
        for rule in self._ruleset.patterns_for(detector):
            if rule.id == pattern_id:
                return rule
        return None

    def add_pattern(self, detector: str, entry: Dict[str, Any]) -> RuleSet:
        """Add a custom pattern (or shadow a built-in one) and publish a new snapshot."""
        problems = validate_pattern(entry)
        if problems:
            raise RuleValidationError(problems, f"{detector}/{entry.get('id', '?')}")
        with self._lock:
            if detector not in self._ruleset.patterns:
                raise RuleValidationError([f"unknown detector '{detector}'"])
            saved = (copy.deepcopy(self._custom), copy.deepcopy(self._removed))
            custom = [e for e in self._custom.get(detector, []) if e["id"] != entry["id"]]
            custom.append(dict(entry))
            self._custom[detector] = custom
            self._removed.get(detector, set()).discard(entry["id"])
            try:
                ruleset = self._rebuild()
            except RuleValidationError:
                self._custom, self._removed = saved
                raise
            logger.info("Added pattern %s/%s", detector, entry["id"])
            return ruleset

    def remove_pattern(self, detector: str, pattern_id: str) -> bool:
        with self._lock:
            if self.get_pattern(detector, pattern_id) is None:
                return False
            self._custom[detector] = [e for e in self._custom.get(detector, [])
                                      if e["id"] != pattern_id]
            if any(e.get("id") == pattern_id for e in self._builtin_entries(detector)):
                self._removed.setdefault(detector, set()).add(pattern_id)
            self._rebuild()
            logger.info("Removed pattern %s/%s", detector, pattern_id)
            return True

    def test_pattern(self, detector: str, pattern_id: str, sample: str) -> List[Dict[str, Any]]:
        rule = self.get_pattern(detector, pattern_id)
        if rule is None:
            raise KeyError(f"{detector}/{pattern_id}")
        matches = []
        for m in rule.compiled.finditer(sample):
            matches.append({
                "line": sample.count("\n", 0, m.start()) + 1,
                "start": m.start(),
                "end": m.end(),
                "match": m.group(0),
            })
        return matches

    def optimize_patterns(self) -> RuleSet:
        """Order each detector's patterns by descending confidence."""
        with self._lock:
            for detector, rules in self._ruleset.patterns.items():
                ranked = sorted(rules, key=lambda r: -r.confidence)
                self._order[detector] = [r.id for r in ranked]
            return self._rebuild()

    def export_patterns(self, path: str) -> int:
        data = {
            "version": self._ruleset.version,
            "detectors": {
                name: [r.to_dict() for r in rules]
                for name, rules in self._ruleset.patterns.items()
            },
        }
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
        return sum(len(v) for v in data["detectors"].values())

    def import_patterns(self, path: str, merge: bool = True) -> int:
        """Import patterns written by ``export_patterns``.

        Imported entries become custom patterns.  With ``merge=False`` every
        pattern of an imported detector that is absent from the file is
        disabled.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        detectors = data.get("detectors") or {}
        errors = []
        for name, entries in detectors.items():
            for entry in entries or []:
                errors.extend(f"{name}/{entry.get('id', '?')}: {p}" for p in validate_pattern(entry))
        if errors:
            raise RuleValidationError(errors, path)

        with self._lock:
            saved = (copy.deepcopy(self._custom), copy.deepcopy(self._removed))
            imported = 0
            for name, entries in detectors.items():
                if name not in self._ruleset.patterns:
                    logger.warning("Skipping patterns for unknown detector %s", name)
                    continue
                incoming = {e["id"] for e in entries or []}
                if not merge:
                    current = {r.id for r in self._ruleset.patterns_for(name)}
                    self._removed[name] = current - incoming
                    self._custom[name] = []
                by_id = {e["id"]: e for e in self._custom.get(name, [])}
                for entry in entries or []:
                    by_id[entry["id"]] = dict(entry)
                    self._removed.get(name, set()).discard(entry["id"])
                    imported += 1
                self._custom[name] = list(by_id.values())
            try:
                self._rebuild()
            except RuleValidationError:
                self._custom, self._removed = saved
                raise
            logger.info("Imported %d pattern(s) from %s", imported, path)
            return imported

    def statistics(self) -> Dict[str, Any]:
        rs = self._ruleset
        by_severity: Dict[str, int] = {label: 0 for label in SEVERITY_LABELS}
        for rules in rs.patterns.values():
            for r in rules:
                by_severity[r.severity.label] += 1
        return {
            "version": rs.version,
            "revision": rs.revision,
            "total_patterns": sum(len(v) for v in rs.patterns.values()),
            "detectors": {name: len(rules) for name, rules in rs.patterns.items()},
            "by_severity": by_severity,
            "custom_patterns": sum(len(v) for v in self._custom.values()),
            "sources": len(rs.sources),
            "sinks": len(rs.sinks),
            "sanitizers": len(rs.sanitizers),
            "contexts": [c.name for c in rs.contexts],
        }

    # -- helpers ---------------------------------------------------------------

    def _builtin_entries(self, detector: str) -> List[Dict[str, Any]]:
        for rel, data in self._raw.items():
            if rel.startswith("detectors") and (data.get("detector") or Path(rel).stem) == detector:
                return [e for e in data.get("patterns") or [] if isinstance(e, dict)]
        return []


def _version_key(version: str) -> Tuple:
    parts = []
    for piece in re.split(r"[.\-+]", version):
        parts.append((0, int(piece), "") if piece.isdigit() else (1, 0, piece))
    return tuple(parts)
