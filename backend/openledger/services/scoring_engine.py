"""
Compliance Scoring Engine

Turns audit findings into a 0-100 score per control and per framework.

Algorithm:
  Control score   = max(0, 100 - SUM(penalty(finding.severity)))
                    penalty: critical 50, high 30, medium 15, low 5
  Framework total = SUM(control_score × weight) / SUM(weight)   (0 when SUM(weight) == 0)

Weights are applied exactly as declared in the KB; they are not normalized.
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal

from openledger.kb.schemas import Framework

SEVERITY_PENALTIES = {
    "critical": Decimal("50"),
    "high": Decimal("30"),
    "medium": Decimal("15"),
    "low": Decimal("5"),
}

MAX_SCORE = Decimal("100")

# Default thresholds when a framework does not declare its own
DEFAULT_THRESHOLDS = {
    "pass": 80.0,
    "warn": 60.0,
}


@dataclass
class ControlScore:
    control_id: str
    score: float
    weight: float


@dataclass
class FrameworkScore:
    framework_id: str
    total: float
    status: str
    breakdown: list[ControlScore] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ScoringEngine:
    """Calculates control and framework scores from findings."""

    @staticmethod
    def score_control(severities: list[str]) -> Decimal:
        score = MAX_SCORE
        for severity in severities:
            score -= SEVERITY_PENALTIES.get(severity, Decimal("0"))
        return max(score, Decimal("0"))

    @staticmethod
    def classify(total: float, thresholds: dict[str, float] | None = None) -> str:
        limits = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        if total >= limits["pass"]:
            return "pass"
        elif total >= limits["warn"]:
            return "warn"
        else:
            return "fail"

    def score_framework(self, framework: Framework, severities_by_control: dict[str, list[str]]) -> FrameworkScore:
        """Weighted average of control scores using each control's declared weight."""
        weighted_sum = Decimal("0")
        total_weight = Decimal("0")
        breakdown: list[ControlScore] = []

        for control in framework.controls:
            control_score = self.score_control(severities_by_control.get(control.id, []))
            weight = Decimal(str(control.weight))
            weighted_sum += control_score * weight
            total_weight += weight
            breakdown.append(ControlScore(
                control_id=control.id,
                score=float(control_score.quantize(Decimal("0.01"))),
                weight=float(weight),
            ))

        if total_weight > 0:
            total = (weighted_sum / total_weight).quantize(Decimal("0.01"))
        else:
            total = Decimal("0")

        return FrameworkScore(
            framework_id=framework.id,
            total=float(total),
            status=self.classify(float(total), framework.scoring.thresholds),
            breakdown=breakdown,
        )

    @staticmethod
    def overall(scores: list[FrameworkScore]) -> float:
        """Mean of framework totals; 0 when nothing was scored."""
        if not scores:
            return 0.0
        total = sum(Decimal(str(s.total)) for s in scores) / len(scores)
        return float(total.quantize(Decimal("0.01")))
