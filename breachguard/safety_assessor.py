"""
Safety assessment for automated fixes.

Risk is scored in five categories, each the max of its sub-factors:

    file_modification    0.25   which files the fix touches and how
    database_changes     0.25   which tables change and how
    system_impact        0.20   restarts, auth, permissions, server config
    environment_factors  0.15   production, traffic, commerce, business hours
    fix_complexity       0.15   multi-step, third-party, irreversible, ...

The weighted average maps onto safe / moderate / high / critical.  Every
assessment is computed fresh from its inputs; nothing is cached.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple

from .config import SafetySettings
from .models import (CategoryRisk, Finding, Prerequisite, Recommendation, RiskCategory,
                     RiskFactor, SafetyAssessment)

logger = logging.getLogger(__name__)

CATEGORY_WEIGHTS = {
    "file_modification": 0.25,
    "database_changes": 0.25,
    "system_impact": 0.20,
    "environment_factors": 0.15,
    "fix_complexity": 0.15,
}

# Blast radius: platform core > configuration > active theme > active
# plugins > inactive plugins > uploads.
FILE_RISK = {
    "core_files": 0.9,
    "configuration": 0.8,
    "active_theme": 0.7,
    "active_plugins": 0.6,
    "inactive_plugins": 0.3,
    "uploads": 0.2,
    "other": 0.3,
}

ACTION_RISK = {
    "file_replace": 0.6,
    "file_patch": 0.4,
    "file_delete": 0.8,
    "permission_change": 0.5,
    "configuration_update": 0.7,
}
DEFAULT_ACTION_RISK = 0.5

CHANGE_TYPE_RISK = {
    "structure_change": 0.9,
    "data_update": 0.4,
    "data_delete": 0.7,
    "data_insert": 0.2,
}
DEFAULT_CHANGE_RISK = 0.5

TABLE_RISK = {
    "user_data": 0.8,
    "options_table": 0.6,
    "meta_tables": 0.4,
    "custom_tables": 0.5,
}

SYSTEM_IMPACT_RISK = {
    "requires_restart": 0.7,
    "affects_authentication": 0.9,
    "changes_permissions": 0.8,
    "modifies_htaccess": 0.7,
    "updates_wp_config": 0.8,
}
DEFAULT_SYSTEM_RISK = 0.3

ENVIRONMENT_RISK = {
    "production_site": 0.3,
    "high_traffic": 0.4,
    "ecommerce_site": 0.5,
    "membership_site": 0.4,
    "business_hours": 0.2,
}

COMPLEXITY_RISK = {
    "multi_step_fix": 0.4,
    "third_party_dependencies": 0.6,
    "custom_code_changes": 0.8,
    "requires_manual_verification": 0.3,
    "irreversible_changes": 0.9,
}
DEFAULT_COMPLEXITY_RISK = 0.3


def _norm(path: str) -> str:
    return os.path.normpath(path).replace("\\", "/")


@dataclass(frozen=True)
class SiteContext:
    """Environment flags and site layout supplied by the caller."""

    site_root: str = ""
    core_dirs: Tuple[str, ...] = ("wp-admin", "wp-includes")
    config_files: Tuple[str, ...] = ("wp-config.php", ".htaccess")
    theme_dir: str = ""
    plugins_dir: str = "wp-content/plugins"
    active_plugins: Tuple[str, ...] = ()
    uploads_dir: str = "wp-content/uploads"
    production: bool = False
    high_traffic: bool = False
    ecommerce: bool = False
    membership: bool = False
    now: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SiteContext":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for key in ("core_dirs", "config_files", "active_plugins"):
            if key in known:
                known[key] = tuple(known[key])
        if isinstance(known.get("now"), str):
            known["now"] = datetime.fromisoformat(known["now"])
        unknown = set(data) - set(known)
        if unknown:
            logger.debug("Ignoring unknown site context keys: %s", ", ".join(sorted(unknown)))
        return cls(**known)

    def resolve(self, path: str) -> str:
        if not path:
            return ""
        if os.path.isabs(path) or not self.site_root:
            return _norm(path)
        return _norm(os.path.join(self.site_root, path))

    def relative(self, path: str) -> str:
        full = self.resolve(path)
        if self.site_root:
            root = _norm(self.site_root)
            if full == root:
                return ""
            if full.startswith(root + "/"):
                return full[len(root) + 1:]
        return full

    def is_core_file(self, path: str) -> bool:
        rel = self.relative(path)
        return any(rel == d or rel.startswith(d.rstrip("/") + "/") for d in self.core_dirs)

    def current_time(self) -> datetime:
        return self.now or datetime.now()


@dataclass(frozen=True)
class PlannedAction:
    type: str
    target: str = ""
    description: str = ""


@dataclass(frozen=True)
class DatabaseChange:
    type: str
    table: str = ""
    description: str = ""


@dataclass(frozen=True)
class FixPlan:
    """What a strategy intends to do for one finding."""

    strategy: str
    actions: Tuple[PlannedAction, ...] = ()
    affected_files: Tuple[str, ...] = ()
    database_changes: Tuple[DatabaseChange, ...] = ()
    system_impacts: Tuple[str, ...] = ()
    complexity_factors: Tuple[str, ...] = ()
    estimated_time: Optional[int] = None
    mutating: bool = True

    def lock_keys(self, site: Optional[SiteContext] = None) -> List[str]:
        """Advisory lock keys for every target, normalized and sorted."""
        keys = set()
        for path in self.affected_files:
            keys.add("file:" + (site.resolve(path) if site else _norm(path)))
        for action in self.actions:
            if action.target:
                keys.add("file:" + (site.resolve(action.target) if site else _norm(action.target)))
        for change in self.database_changes:
            if change.table:
                keys.add("table:" + change.table.lower())
        return sorted(keys)


class SafetyAssessor:
    def __init__(self, settings: Optional[SafetySettings] = None):
        self.settings = settings or SafetySettings()

    def assess(self, finding: Finding, plan: FixPlan,
               site: Optional[SiteContext] = None) -> SafetyAssessment:
        site = site or SiteContext()
        try:
            categories = {
                "file_modification": self.file_modification_risk(plan, site),
                "database_changes": self.database_risk(plan),
                "system_impact": self.system_impact_risk(plan),
                "environment_factors": self.environment_risk(site),
                "fix_complexity": self.complexity_risk(plan),
            }
            risk = self.overall_risk(categories)
            category = self.categorize(risk)
            rollback_confidence = self.rollback_confidence(plan)
            return SafetyAssessment(
                risk_level=risk,
                risk_category=category,
                safety_score=max(0.0, 100.0 - risk * 100.0),
                risk_factors=MappingProxyType(categories),
                recommendations=tuple(self.recommendations(category, categories)),
                prerequisites=tuple(self.prerequisites(category, categories, site)),
                estimated_downtime_seconds=self.estimate_downtime(plan, category, categories),
                rollback_confidence=rollback_confidence,
                manual_review_required=self.requires_manual_review(category, rollback_confidence, risk),
            )
        except Exception as e:
            logger.error("Safety assessment failed for %s: %s", finding.finding_id, e)
            return SafetyAssessment(
                risk_level=1.0,
                risk_category=RiskCategory.CRITICAL,
                safety_score=0.0,
                risk_factors=MappingProxyType({}),
                recommendations=(Recommendation(
                    "critical", "manual_review_required",
                    "The fix could not be assessed and must be reviewed manually."),),
                prerequisites=(Prerequisite("backup", "Complete site backup must be created "
                                                      "and verified", True),),
                manual_review_required=True,
                rollback_confidence=0.0,
                error=str(e),
            )

    # -- categories ------------------------------------------------------------

    def classify_file(self, path: str, site: SiteContext) -> str:
        full = site.resolve(path)
        rel = site.relative(path)
        if site.is_core_file(path):
            return "core_files"
        if os.path.basename(full) in site.config_files:
            return "configuration"
        if site.theme_dir:
            theme = site.resolve(site.theme_dir)
            if full == theme or full.startswith(theme + "/"):
                return "active_theme"
        plugins = site.resolve(site.plugins_dir)
        if full.startswith(plugins + "/"):
            plugin_dir = full[len(plugins) + 1:].split("/", 1)[0]
            active = any(p == plugin_dir or p.startswith(plugin_dir + "/") for p in site.active_plugins)
            return "active_plugins" if active else "inactive_plugins"
        uploads = site.resolve(site.uploads_dir)
        if full.startswith(uploads + "/") or rel.startswith(site.uploads_dir.rstrip("/") + "/"):
            return "uploads"
        return "other"

    def file_modification_risk(self, plan: FixPlan, site: SiteContext) -> CategoryRisk:
        factors = []
        for path in plan.affected_files:
            kind = self.classify_file(path, site)
            factors.append(RiskFactor(kind, FILE_RISK[kind], path))
        for action in plan.actions:
            factors.append(RiskFactor(action.type, ACTION_RISK.get(action.type, DEFAULT_ACTION_RISK),
                                      action.description or action.target))
        return _category(factors)

    def database_risk(self, plan: FixPlan) -> CategoryRisk:
        factors = []
        for change in plan.database_changes:
            score = CHANGE_TYPE_RISK.get(change.type, DEFAULT_CHANGE_RISK)
            table = change.table.lower()
            if "users" in table or "usermeta" in table:
                score = max(score, TABLE_RISK["user_data"])
            elif "options" in table:
                score = max(score, TABLE_RISK["options_table"])
            elif "meta" in table:
                score = max(score, TABLE_RISK["meta_tables"])
            factors.append(RiskFactor(change.type, score, change.table))
        return _category(factors)

    def system_impact_risk(self, plan: FixPlan) -> CategoryRisk:
        return _category([RiskFactor(i, SYSTEM_IMPACT_RISK.get(i, DEFAULT_SYSTEM_RISK))
                          for i in plan.system_impacts])

    def environment_risk(self, site: SiteContext) -> CategoryRisk:
        flags = (
            ("production_site", site.production),
            ("high_traffic", site.high_traffic),
            ("ecommerce_site", site.ecommerce),
            ("membership_site", site.membership),
            ("business_hours", self.settings.consider_business_hours
             and self.is_business_hours(site.current_time())),
        )
        return _category([RiskFactor(name, ENVIRONMENT_RISK[name]) for name, on in flags if on])

    def complexity_risk(self, plan: FixPlan) -> CategoryRisk:
        return _category([RiskFactor(f, COMPLEXITY_RISK.get(f, DEFAULT_COMPLEXITY_RISK))
                          for f in plan.complexity_factors])

    def is_business_hours(self, when: datetime) -> bool:
        s = self.settings
        return when.weekday() in s.business_days and \
            s.business_start_hour <= when.hour < s.business_end_hour

    # -- aggregation -----------------------------------------------------------

    @staticmethod
    def overall_risk(categories: Dict[str, CategoryRisk]) -> float:
        weighted = 0.0
        total = 0.0
        for name, risk in categories.items():
            weight = CATEGORY_WEIGHTS.get(name)
            if weight is None:
                continue
            weighted += risk.score * weight
            total += weight
        return weighted / total if total else 0.0

    def categorize(self, risk: float) -> RiskCategory:
        s = self.settings
        if risk <= s.safe_threshold:
            return RiskCategory.SAFE
        if risk <= s.moderate_threshold:
            return RiskCategory.MODERATE
        if risk <= s.high_threshold:
            return RiskCategory.HIGH
        return RiskCategory.CRITICAL

    def recommendations(self, category: RiskCategory,
                        categories: Dict[str, CategoryRisk]) -> List[Recommendation]:
        recs = {
            RiskCategory.SAFE: [
                Recommendation("low", "proceed_with_automated_fix",
                               "This fix has low risk and can be applied automatically."),
            ],
            RiskCategory.MODERATE: [
                Recommendation("medium", "create_backup_before_fix",
                               "Create a comprehensive backup before applying this fix."),
                Recommendation("medium", "monitor_after_fix",
                               "Monitor the site closely for 24 hours after applying the fix."),
            ],
            RiskCategory.HIGH: [
                Recommendation("high", "test_in_staging",
                               "Test this fix in a staging environment before production."),
                Recommendation("high", "schedule_maintenance_window",
                               "Apply this fix during a maintenance window or low-traffic period."),
            ],
            RiskCategory.CRITICAL: [
                Recommendation("critical", "manual_review_required",
                               "This fix requires manual review and should not be automated."),
                Recommendation("critical", "expert_consultation",
                               "Consult a security specialist before proceeding."),
            ],
        }[category]

        risky = {name: risk for name, risk in categories.items() if risk.score > 0.7}
        if "file_modification" in risky and any(
                f.name == "core_files" for f in risky["file_modification"].factors):
            recs.append(Recommendation("high", "verify_core_integrity",
                                       "Verify platform core file integrity after the fix."))
        if "database_changes" in risky:
            recs.append(Recommendation("high", "database_backup_verification",
                                       "Verify database backup integrity before proceeding."))
        if "system_impact" in risky:
            recs.append(Recommendation("medium", "prepare_rollback_plan",
                                       "Prepare a detailed rollback plan in case of issues."))
        return recs

    def prerequisites(self, category: RiskCategory, categories: Dict[str, CategoryRisk],
                      site: SiteContext) -> List[Prerequisite]:
        prereqs = [Prerequisite("backup", "Complete site backup must be created and verified",
                                category is not RiskCategory.SAFE)]
        if categories["database_changes"].score > 0.6:
            prereqs.append(Prerequisite("database_backup",
                                        "Dedicated database backup with verification", True))
        if categories["system_impact"].score > 0.6:
            prereqs.append(Prerequisite("maintenance_mode",
                                        "Enable maintenance mode during fix application", True))
        if site.production and any(c.score > 0.6 for c in categories.values()):
            prereqs.append(Prerequisite("staging_test", "Test fix in staging environment first", True))
        return prereqs

    def estimate_downtime(self, plan: FixPlan, category: RiskCategory,
                          categories: Dict[str, CategoryRisk]) -> int:
        base = plan.estimated_time if plan.estimated_time is not None \
            else self.settings.default_estimated_time
        multiplier = 1.0
        if categories["fix_complexity"].score > 0.5:
            multiplier *= 1.5
        if category in (RiskCategory.HIGH, RiskCategory.CRITICAL):
            multiplier *= 2.0
        return int(base * multiplier)

    @staticmethod
    def rollback_confidence(plan: FixPlan) -> float:
        confidence = 1.0
        for factor in plan.complexity_factors:
            if factor == "irreversible_changes":
                confidence *= 0.2
        for change in plan.database_changes:
            if change.type == "structure_change":
                confidence *= 0.7
        return max(0.0, confidence)

    @staticmethod
    def requires_manual_review(category: RiskCategory, rollback_confidence: float,
                               risk: float) -> bool:
        return category is RiskCategory.CRITICAL or rollback_confidence < 0.5 or risk > 0.8


def _category(factors: List[RiskFactor]) -> CategoryRisk:
    score = max((f.score for f in factors), default=0.0)
    return CategoryRisk(score=score, factors=tuple(factors))
