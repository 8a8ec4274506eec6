"""Built-in detectors, keyed by the vulnerability type they report."""

from .auth_bypass import AuthBypassDetector
from .base import Detector, ScanContext
from .csrf import CSRFDetector
from .file_inclusion import FileInclusionDetector
from .sql_injection import SQLInjectionDetector
from .xss import XSSDetector

DETECTORS = {
    cls.vuln_type: cls
    for cls in (SQLInjectionDetector, XSSDetector, CSRFDetector,
                FileInclusionDetector, AuthBypassDetector)
}

__all__ = [
    "DETECTORS",
    "Detector",
    "ScanContext",
    "SQLInjectionDetector",
    "XSSDetector",
    "CSRFDetector",
    "FileInclusionDetector",
    "AuthBypassDetector",
]
