"""
Detector registry, file-level scanning and finding aggregation.

The registry owns no file discovery: callers hand it ``SourceFile`` values
(path, content, metadata) from whatever enumerator they use.  Detectors for
one file run concurrently, files run on a worker pool, and every
(detector, file) unit is bounded by the configured timeout.  A unit that
times out or raises contributes no findings; the failure is logged and
recorded on the report, and the scan carries on.
"""

import concurrent.futures
import logging
import threading
import time
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .config import DetectionSettings
from .detectors import DETECTORS, Detector
from .errors import DetectorTimeout
from .models import Finding, Severity
from .rule_engine import RuleSet

logger = logging.getLogger(__name__)

# Extra wait past the cooperative deadline before a unit is abandoned.
GRACE_SECONDS = 0.5


@dataclass(frozen=True)
class SourceFile:
    path: str
    content: Union[str, bytes]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.content)

    def text(self) -> str:
        """Content as text; bytes must be valid UTF-8 (UnicodeDecodeError otherwise)."""
        if isinstance(self.content, bytes):
            return self.content.decode("utf-8")
        return self.content


@dataclass(frozen=True)
class UnitFailure:
    detector: str
    path: str
    reason: str  # timeout, error
    detail: str = ""


@dataclass
class FileScan:
    path: str
    findings: List[Finding] = field(default_factory=list)
    failures: List[UnitFailure] = field(default_factory=list)
    skipped: Optional[str] = None


class FindingAggregator:
    """Collects findings from any thread and hands them back ordered by path then line.

    No deduplication across files.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._findings: List[Finding] = []

    def add(self, findings: Iterable[Finding]) -> None:
        with self._lock:
            self._findings.extend(findings)

    def __len__(self):
        return len(self._findings)

    def results(self) -> List[Finding]:
        with self._lock:
            return sorted(self._findings, key=lambda f: f.sort_key())

    @staticmethod
    def merge(groups: Iterable[Iterable[Finding]]) -> List[Finding]:
        merged = [f for group in groups for f in group]
        return sorted(merged, key=lambda f: f.sort_key())


@dataclass
class ScanReport:
    findings: List[Finding]
    files_scanned: int = 0
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    failures: List[UnitFailure] = field(default_factory=list)
    rules_version: str = ""
    elapsed: float = 0.0

    @property
    def timed_out(self) -> List[UnitFailure]:
        return [f for f in self.failures if f.reason == "timeout"]

    def by_file(self) -> Dict[str, List[Finding]]:
        grouped: Dict[str, List[Finding]] = defaultdict(list)
        for f in self.findings:
            grouped[f.file_path].append(f)
        return dict(grouped)

    def counts(self) -> Dict[str, int]:
        counter = Counter(f.severity.label for f in self.findings)
        return {s.label: counter.get(s.label, 0) for s in Severity}

    def by_type(self) -> Dict[str, int]:
        return dict(Counter(f.type for f in self.findings))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules_version": self.rules_version,
            "files_scanned": self.files_scanned,
            "total_findings": len(self.findings),
            "severity_counts": self.counts(),
            "type_counts": self.by_type(),
            "elapsed": round(self.elapsed, 3),
            "skipped": [{"path": p, "reason": r} for p, r in self.skipped],
            "failures": [{"detector": f.detector, "path": f.path, "reason": f.reason,
                          "detail": f.detail} for f in self.failures],
            "findings": [f.to_dict() for f in self.findings],
        }


class DetectorRegistry:
    def __init__(self, detectors: Optional[Iterable[Detector]] = None,
                 settings: Optional[DetectionSettings] = None):
        self.settings = settings or DetectionSettings()
        self._detectors: Dict[str, Detector] = {}
        for detector in detectors or ():
            self.register(detector)

    @classmethod
    def default(cls, ruleset: RuleSet, settings: Optional[DetectionSettings] = None) -> "DetectorRegistry":
        settings = settings or DetectionSettings()
        return cls([detector_cls(ruleset, settings) for detector_cls in DETECTORS.values()], settings)

    def register(self, detector: Detector) -> None:
        if not detector.name:
            raise ValueError(f"{type(detector).__name__} has no name")
        self._detectors[detector.name] = detector

    def unregister(self, name: str) -> bool:
        return self._detectors.pop(name, None) is not None

    def get(self, name: str) -> Optional[Detector]:
        return self._detectors.get(name)

    @property
    def names(self) -> List[str]:
        return sorted(self._detectors)

    def detectors_for(self, path: str) -> List[Detector]:
        return [d for _, d in sorted(self._detectors.items()) if d.supports(path)]

    # ==================== Scanning ====================

    def scan_file(self, source: SourceFile) -> FileScan:
        """Run every applicable detector on one file concurrently."""
        result = FileScan(path=source.path)
        if source.size > self.settings.max_file_bytes:
            logger.warning("Skipping %s: %d bytes exceeds limit of %d",
                           source.path, source.size, self.settings.max_file_bytes)
            result.skipped = "too_large"
            return result
        detectors = self.detectors_for(source.path)
        if not detectors:
            result.skipped = "unsupported"
            return result

        try:
            content = source.text()
        except UnicodeDecodeError as e:
            logger.warning("Skipping %s: not valid UTF-8 (%s)", source.path, e)
            result.skipped = "undecodable"
            return result
        timeout = self.settings.timeout_seconds
        deadline = time.monotonic() + timeout
        groups = []
        executor = ThreadPoolExecutor(max_workers=len(detectors),
                                      thread_name_prefix="detector")
        try:
            futures = {
                executor.submit(d.detect, content, source.path, source.metadata, deadline): d
                for d in detectors
            }
            for future, detector in futures.items():
                remaining = max(deadline - time.monotonic(), 0.0) + GRACE_SECONDS
                try:
                    groups.append(future.result(timeout=remaining))
                except (DetectorTimeout, concurrent.futures.TimeoutError):
                    logger.warning("Detector %s timed out after %.1fs on %s",
                                   detector.name, timeout, source.path)
                    result.failures.append(UnitFailure(detector.name, source.path, "timeout",
                                                       f"exceeded {timeout:.1f}s"))
                except Exception as e:
                    logger.warning("Detector %s failed on %s: %s", detector.name, source.path, e)
                    result.failures.append(UnitFailure(detector.name, source.path, "error", str(e)))
        finally:
            # A runaway unit keeps its thread until its next deadline check.
            executor.shutdown(wait=False)
        result.findings = FindingAggregator.merge(groups)
        return result

    def scan(self, files: Iterable[Union[SourceFile, Tuple]], rules_version: str = "",
             on_file: Optional[Callable[[FileScan], None]] = None) -> ScanReport:
        """Scan many files on a worker pool and aggregate the results."""
        start = time.time()
        sources = [f if isinstance(f, SourceFile) else SourceFile(*f) for f in files]
        aggregator = FindingAggregator()
        report = ScanReport(findings=[], rules_version=rules_version)

        with ThreadPoolExecutor(max_workers=max(self.settings.workers, 1),
                                thread_name_prefix="scan") as executor:
            futures = {executor.submit(self.scan_file, s): s for s in sources}
            for future in as_completed(futures):
                source = futures[future]
                try:
                    scanned = future.result()
                except Exception as e:
                    logger.warning("Scan of %s failed: %s", source.path, e)
                    report.skipped.append((source.path, "error"))
                    continue
                if scanned.skipped:
                    report.skipped.append((scanned.path, scanned.skipped))
                else:
                    report.files_scanned += 1
                aggregator.add(scanned.findings)
                report.failures.extend(scanned.failures)
                if on_file is not None:
                    on_file(scanned)

        report.findings = aggregator.results()
        report.skipped.sort()
        report.failures.sort(key=lambda f: (f.path, f.detector))
        report.elapsed = time.time() - start
        logger.info("Scanned %d file(s): %d finding(s), %d failed unit(s)",
                    report.files_scanned, len(report.findings), len(report.failures))
        return report
