from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from passportcheck.core.models import CATEGORY_WEIGHTS, Category


@dataclass(frozen=True)
class RuleResult:
    """
    Result of a single rule inside a check (e.g. "face height" inside
    face-quality). `issue` names the failure kind for failed rules.
    """
    rule_id: str
    passed: bool
    message: str
    suggestion: Optional[str] = None
    issue: Optional[str] = None
    metrics: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class ComplianceCheck:
    """
    Result of one category check.
    """
    category: Category
    valid: bool
    score: float
    message: str
    rules: Tuple[RuleResult, ...] = ()
    suggestion: Optional[str] = None

    @classmethod
    def from_rules(cls, category: Category, rules: Iterable[RuleResult], summary: str) -> "ComplianceCheck":
        rules = tuple(rules)
        if not rules:
            raise ValueError(f"{category.value} check has no rules")
        passed = sum(1 for r in rules if r.passed)
        failed = [r for r in rules if not r.passed]
        valid = not failed
        score = round(100.0 * passed / len(rules), 1)
        if valid:
            message = summary
            suggestion = None
        else:
            message = " ".join(r.message for r in failed)
            hints = [r.suggestion for r in failed if r.suggestion]
            suggestion = " ".join(dict.fromkeys(hints)) or message
        return cls(category=category, valid=valid, score=score, message=message, rules=rules, suggestion=suggestion)

    @property
    def issues(self) -> Tuple[str, ...]:
        return tuple(r.issue for r in self.rules if not r.passed and r.issue)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "valid": self.valid,
            "score": self.score,
            "message": self.message,
        }


@dataclass(frozen=True)
class ComplianceReport:
    """
    Category checks in fixed order plus the aggregate.

    `compliant` is the AND of all four categories; `score` is the weighted
    share of passing categories and is informational only. A partial report
    (fail-fast) lacks some categories and is never compliant.
    """
    checks: Tuple[ComplianceCheck, ...]
    score: float
    compliant: bool
    suggestions: Tuple[str, ...] = field(default=())

    @classmethod
    def assemble(cls, checks: Iterable[ComplianceCheck]) -> "ComplianceReport":
        by_category: Dict[Category, ComplianceCheck] = {}
        for check in checks:
            if check.category in by_category:
                raise ValueError(f"Duplicate {check.category.value} check")
            by_category[check.category] = check

        ordered = tuple(by_category[c] for c in Category if c in by_category)
        total = sum(CATEGORY_WEIGHTS.values())
        earned = sum(CATEGORY_WEIGHTS[c.category] for c in ordered if c.valid)
        score = round(100.0 * earned / total, 1)
        complete = len(ordered) == len(Category)
        compliant = complete and all(c.valid for c in ordered)
        suggestions = tuple(c.suggestion or c.message for c in ordered if not c.valid)
        return cls(checks=ordered, score=score, compliant=compliant, suggestions=suggestions)

    @property
    def passed(self) -> bool:
        return self.compliant

    def check(self, category: Category) -> Optional[ComplianceCheck]:
        for c in self.checks:
            if c.category == category:
                return c
        return None

    @property
    def issues(self) -> Tuple[str, ...]:
        out: List[str] = []
        for c in self.checks:
            out.extend(c.issues)
        return tuple(dict.fromkeys(out))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": {"compliant": self.compliant, "score": self.score},
            "checks": [c.to_dict() for c in self.checks],
            "suggestions": list(self.suggestions),
        }

    def to_json(self, **kwargs: Any) -> str:
        kwargs.setdefault("ensure_ascii", False)
        return json.dumps(self.to_dict(), **kwargs)


def format_report_text(report: ComplianceReport) -> str:
    lines: List[str] = []
    lines.append("Passport Photo Compliance Report")
    lines.append("-" * 32)
    lines.append(f"Overall: {'PASS' if report.compliant else 'FAIL'} (score {report.score:.0f}/100)")
    lines.append("")
    for c in report.checks:
        mark = "✅" if c.valid else "❌"
        lines.append(f"{mark} {c.category.value}: {c.message}")
    if report.suggestions:
        lines.append("")
        lines.append("Suggestions:")
        for s in report.suggestions:
            lines.append(f"  - {s}")
    return "\n".join(lines)
