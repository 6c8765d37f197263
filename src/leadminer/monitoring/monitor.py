"""
Classification quality monitor.

Consumes batches of classification results, keeps a bounded rolling history
of snapshots and raises alerts when the mix of results suggests the
classifier is drifting: too many commercial pages, too few nonprofits, poor
registry verification or a high review rate.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

import structlog

from leadminer.config.config import MonitorConfig
from leadminer.observability import increment
from leadminer.protocols import (
    Alert,
    AlertSeverity,
    AlertType,
    BusinessCategory,
    ClassificationResult,
    MonitoringSnapshot,
    VerificationResult,
    VerificationStats,
    utcnow,
)

logger = structlog.get_logger(__name__)

HIGH_EXCLUSION_COUNT = 2


class ClassificationMonitor:
    """Rolling snapshot history and alerting over classifier output."""

    def __init__(self, config: Optional[MonitorConfig] = None, clock: Callable[[], datetime] = utcnow):
        self.config = config or MonitorConfig()
        self._clock = clock
        self._history: Deque[MonitoringSnapshot] = deque(maxlen=self.config.max_snapshots)
        self._alerts: Deque[Alert] = deque(maxlen=self.config.max_alerts)

    @property
    def history(self) -> List[MonitoringSnapshot]:
        return list(self._history)

    @property
    def alerts(self) -> List[Alert]:
        return list(self._alerts)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def find_false_positives(self, results: Sequence[ClassificationResult]) -> List[str]:
        """Relevant results whose own evidence argues against relevance."""
        suspects: List[str] = []
        for r in results:
            if not r.is_relevant:
                continue
            if len(r.signals.exclusions) > HIGH_EXCLUSION_COUNT:
                suspects.append(f"{r.candidate_id}: High B2B indicators but classified as relevant")
            if r.business_category is BusinessCategory.NONPROFIT and not r.signals.nonprofit:
                suspects.append(f"{r.candidate_id}: Classified as nonprofit but no nonprofit indicators found")
            if r.business_category.is_commercial:
                suspects.append(f"{r.candidate_id}: B2B/Vendor business model but marked relevant")
            if r.confidence_score < self.config.low_confidence_floor:
                suspects.append(
                    f"{r.candidate_id}: Low confidence ({r.confidence_score:.2f}) but marked relevant"
                )
        return suspects

    def analyze(
        self,
        results: Sequence[ClassificationResult],
        verifications: Optional[Sequence[VerificationResult]] = None,
    ) -> MonitoringSnapshot:
        """Roll up one batch, record it, and raise any alerts it triggers."""
        relevant = [r for r in results if r.is_relevant]
        counts = Counter(r.business_category.value for r in results)
        category_counts = {c.value: counts.get(c.value, 0) for c in BusinessCategory}

        verification_stats = None
        if verifications:
            verified = sum(1 for v in verifications if v.verified)
            verification_stats = VerificationStats(verified=verified, failed=len(verifications) - verified)

        snapshot = MonitoringSnapshot(
            total_classified=len(results),
            relevant_count=len(relevant),
            category_counts=category_counts,
            average_confidence=(sum(r.confidence_score for r in relevant) / len(relevant)) if relevant else 0.0,
            review_count=sum(1 for r in results if r.needs_review),
            potential_false_positives=tuple(self.find_false_positives(results)),
            excluded_b2b_count=sum(1 for r in results if r.business_category.is_commercial and not r.is_relevant),
            verification_stats=verification_stats,
            timestamp=self._clock(),
        )
        self._history.append(snapshot)
        new_alerts = self._generate_alerts(snapshot)

        logger.info(
            "Classification batch analyzed",
            total=snapshot.total_classified,
            relevant=snapshot.relevant_count,
            categories=snapshot.category_counts,
            excluded_b2b=snapshot.excluded_b2b_count,
            review=snapshot.review_count,
            false_positives=len(snapshot.potential_false_positives),
            alerts=len(new_alerts),
        )
        return snapshot

    async def analyze_async(
        self,
        results: Sequence[ClassificationResult],
        verifications: Optional[Sequence[VerificationResult]] = None,
    ) -> MonitoringSnapshot:
        """Coroutine form of ``analyze`` for fire-and-forget fan-out."""
        await asyncio.sleep(0)
        return self.analyze(results, verifications)

    def _generate_alerts(self, snapshot: MonitoringSnapshot) -> List[Alert]:
        alerts: List[Alert] = []
        if snapshot.total_classified == 0:
            return alerts
        now = self._clock()

        if snapshot.b2b_rate > self.config.max_b2b_rate:
            alerts.append(
                Alert(
                    type=AlertType.HIGH_B2B_DETECTION,
                    severity=AlertSeverity.MEDIUM,
                    message=(
                        f"High B2B detection rate: {snapshot.b2b_rate * 100:.1f}% of results "
                        "classified as B2B services"
                    ),
                    data={"rate": snapshot.b2b_rate, "breakdown": dict(snapshot.category_counts)},
                    timestamp=now,
                )
            )

        if snapshot.nonprofit_rate < self.config.min_nonprofit_rate:
            alerts.append(
                Alert(
                    type=AlertType.LOW_NONPROFIT_RATE,
                    severity=AlertSeverity.HIGH,
                    message=(
                        f"Low nonprofit detection rate: {snapshot.nonprofit_rate * 100:.1f}% of results "
                        "classified as nonprofits"
                    ),
                    data={"rate": snapshot.nonprofit_rate, "breakdown": dict(snapshot.category_counts)},
                    timestamp=now,
                )
            )

        stats = snapshot.verification_stats
        if stats is not None and stats.verification_rate < self.config.min_verification_rate:
            alerts.append(
                Alert(
                    type=AlertType.VERIFICATION_FAILURE,
                    severity=AlertSeverity.HIGH,
                    message=f"Low verification rate: {stats.verification_rate * 100:.1f}% of nonprofits verified",
                    data={
                        "verified": stats.verified,
                        "failed": stats.failed,
                        "verification_rate": stats.verification_rate,
                    },
                    timestamp=now,
                )
            )

        if snapshot.review_rate > self.config.max_review_rate:
            alerts.append(
                Alert(
                    type=AlertType.FALSE_POSITIVE_PATTERN,
                    severity=AlertSeverity.MEDIUM,
                    message=f"High review flag rate: {snapshot.review_rate * 100:.1f}% of results need human review",
                    data={"rate": snapshot.review_rate, "count": snapshot.review_count},
                    timestamp=now,
                )
            )

        if snapshot.potential_false_positives:
            alerts.append(
                Alert(
                    type=AlertType.FALSE_POSITIVE_PATTERN,
                    severity=AlertSeverity.MEDIUM,
                    message=f"{len(snapshot.potential_false_positives)} potential false positives detected",
                    data={"false_positives": list(snapshot.potential_false_positives)},
                    timestamp=now,
                )
            )

        for alert in alerts:
            self._alerts.append(alert)
            increment("monitor_alerts_total", labels={"type": alert.type.value, "severity": alert.severity.value})
            logger.warning("Monitor alert", type=alert.type.value, severity=alert.severity.value, message=alert.message)
        return alerts

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def recent_alerts(self, hours: float = 24) -> List[Alert]:
        cutoff = self._clock() - timedelta(hours=hours)
        return [a for a in self._alerts if a.timestamp > cutoff]

    def trends(self, window_days: float = 7) -> Optional[Dict[str, Any]]:
        """Moving averages over snapshots in the window, or None without data."""
        cutoff = self._clock() - timedelta(days=window_days)
        recent = [s for s in self._history if s.timestamp > cutoff and s.total_classified > 0]
        if not recent:
            return None
        n = len(recent)
        return {
            "average_nonprofit_rate": sum(s.nonprofit_rate for s in recent) / n,
            "average_b2b_rate": sum(s.b2b_rate for s in recent) / n,
            "average_review_rate": sum(s.review_rate for s in recent) / n,
            "average_confidence": sum(s.average_confidence for s in recent) / n,
            "total_excluded_b2b": sum(s.excluded_b2b_count for s in recent),
            "data_points": n,
        }

    def dashboard(self) -> Dict[str, Any]:
        recent = list(self._history)[-10:]
        return {
            "recent_classifications": [s.to_dict() for s in recent],
            "recent_alerts": [a.to_dict() for a in self.recent_alerts(24)],
            "trends": self.trends(7),
            "summary": {
                "total_alerts": len(self._alerts),
                "high_severity_alerts": sum(1 for a in self._alerts if a.severity is AlertSeverity.HIGH),
                "last_classification_time": recent[-1].timestamp.isoformat() if recent else None,
            },
        }

    def cleanup(self, days_to_keep: Optional[float] = None) -> int:
        """Drop snapshots and alerts older than the retention window. Returns items removed."""
        days = days_to_keep if days_to_keep is not None else self.config.history_days
        cutoff = self._clock() - timedelta(days=days)
        before = len(self._history) + len(self._alerts)
        self._history = deque((s for s in self._history if s.timestamp > cutoff), maxlen=self.config.max_snapshots)
        self._alerts = deque((a for a in self._alerts if a.timestamp > cutoff), maxlen=self.config.max_alerts)
        removed = before - len(self._history) - len(self._alerts)
        logger.info("Monitoring data cleaned up", days_kept=days, removed=removed)
        return removed

    def export_report(self, format: str = "json") -> str:
        if format == "json":
            return json.dumps(self.dashboard(), indent=2, default=str)
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(["Type", "Severity", "Message", "Timestamp"])
            for alert in self.recent_alerts(24):
                writer.writerow([alert.type.value, alert.severity.value, alert.message, alert.timestamp.isoformat()])
            return buffer.getvalue().rstrip("\n")
        raise ValueError(f"Unsupported report format: {format}")
