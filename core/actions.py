"""
Smart Actions Engine
====================

Turns a run's status table into a ranked list of recommended next steps.

Pipeline:
    1. Rule sets per successful kind emit candidate actions
    2. Deduplicate by (type, title), keeping the highest priority
    3. Sort by priority, descending (stable)
    4. Group crowded action types into one combined action
    5. Add the cross-cutting "clinical note" action when two or more
       pipelines succeeded

Priority:
    base[type] * severity_multiplier * (0.5 + 0.5 * confidence) * urgency
    rounded half-up and clamped to 1..10

Derivation is deterministic: the same table always yields the same actions,
in the same order, with the same ids. ``SmartActionsEngine.get_actions``
caches results per run so repeated reads of an unchanged table are free.
"""

import hashlib
import logging
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from config import Settings, get_settings
from models import (
    ActionContext,
    ActionType,
    BillingCode,
    BillingInsights,
    GoalProgress,
    InsightSeverity,
    PipelineKind,
    PipelineStatus,
    ProgressInsights,
    RunStatusTable,
    SafetyAlert,
    SafetyInsights,
    SmartAction,
)


logger = logging.getLogger(__name__)


URGENT_SEVERITIES = (InsightSeverity.HIGH, InsightSeverity.CRITICAL)
CRISIS_CATEGORIES = ("suicide_risk", "self_harm")
SAFETY_FOLLOW_UP_RISK_SCORE = 70
LOW_EFFECTIVENESS_RATING = 5
LOW_ENGAGEMENT_SCORE = 5
NOTE_ACTION_TITLE = "Generate Comprehensive Clinical Note"
MIN_SUCCESSES_FOR_NOTE = 2


class ActionMetrics(BaseModel):
    """Statistics of the most recent derivation."""
    generation_time_ms: float = 0.0
    total_actions: int = 0
    actions_by_type: Dict[str, int] = Field(default_factory=dict)
    average_priority: float = 0.0
    high_priority_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def action_id(action_type: ActionType, title: str, anchor: str = "") -> str:
    digest = hashlib.sha256(f"{action_type.value}|{title}|{anchor}".encode("utf-8")).hexdigest()
    return f"action-{digest[:12]}"


def _coerce(result: Any, model: type) -> Any:
    if isinstance(result, model):
        return result
    return model.model_validate(result)


class SmartActionsEngine:
    """
    Derives, ranks and caches smart actions.

    Args:
        settings: Thresholds, priorities and cache size
        action_dispatcher: Optional callable invoked when an action executes.
                           Without one, executing an action only logs it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        action_dispatcher: Optional[Callable[[SmartAction], Any]] = None
    ):
        self.settings = settings or get_settings()
        self.action_dispatcher = action_dispatcher
        # run_id -> (cache key, table last_updated, actions)
        self._cache: Dict[str, Tuple[str, datetime, List[SmartAction]]] = {}
        self._metrics = ActionMetrics()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get_actions(self, table: RunStatusTable) -> List[SmartAction]:
        """
        Cached ``derive_actions``: recomputed only when the table changed.

        When the cache is full, the run whose table was last updated
        earliest (the least recently finished run) is evicted first.
        Reads do not refresh an entry.
        """
        key = self.cache_key(table)
        cached = self._cache.get(table.run_id)
        if cached is not None and cached[0] == key:
            self._metrics.cache_hits += 1
            return list(cached[2])

        self._metrics.cache_misses += 1
        actions = self.derive_actions(table)
        self._cache[table.run_id] = (key, table.last_updated, actions)
        while len(self._cache) > self.settings.action_cache_max_runs:
            evicted = min(self._cache, key=lambda run_id: self._cache[run_id][1])
            del self._cache[evicted]
            logger.debug(f"Evicted cached actions for run {evicted}")
        return list(actions)

    def derive_actions(self, table: RunStatusTable) -> List[SmartAction]:
        """Derive the ranked action list for a status table. No caching."""
        started = time.perf_counter()
        candidates: List[SmartAction] = []

        for kind, generate in (
            (PipelineKind.SAFETY, self._safety_actions),
            (PipelineKind.BILLING, self._billing_actions),
            (PipelineKind.PROGRESS, self._progress_actions),
        ):
            state = table.pipelines.get(kind)
            if state is None or state.status != PipelineStatus.SUCCESS or state.result is None:
                continue
            generated = generate(state.result)
            logger.debug(
                f"[{table.run_id}] {kind.value} rules produced {len(generated)} action(s): "
                f"{[a.priority for a in generated]}"
            )
            candidates.extend(generated)

        actions = self._group(self._prioritize(candidates))

        note = self._note_action(table)
        if note is not None:
            actions = sorted([*actions, note], key=lambda a: a.priority, reverse=True)

        for action in actions:
            action.bind(self._dispatch)

        self._update_metrics(actions, (time.perf_counter() - started) * 1000)
        logger.info(
            f"[{table.run_id}] Derived {len(actions)} action(s), "
            f"{self._metrics.high_priority_count} urgent"
        )
        return actions

    def cache_key(self, table: RunStatusTable) -> str:
        parts = [table.run_id]
        for kind, state in table.pipelines.items():
            parts.append(f"{kind.value}:{state.status.value}:{int(state.has_data)}")
        parts.append(table.last_updated.isoformat())
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    def invalidate(self, run_id: str) -> None:
        self._cache.pop(run_id, None)

    def clear_cache(self) -> None:
        logger.info(f"Clearing action cache ({len(self._cache)} run(s))")
        self._cache.clear()

    def get_metrics(self) -> ActionMetrics:
        return self._metrics.model_copy()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def calculate_priority(
        self,
        action_type: ActionType,
        severity: InsightSeverity,
        confidence: float,
        urgent: bool = False
    ) -> int:
        base = self.settings.action_type_priorities.get(action_type.value, 1)
        multiplier = self.settings.severity_multipliers.get(InsightSeverity(severity), 1.0)
        confidence_factor = 0.5 + 0.5 * confidence
        urgency = 1.5 if urgent else 1.0
        priority = round_half_up(base * multiplier * confidence_factor * urgency)
        return min(10, max(1, priority))

    def _action(
        self,
        action_type: ActionType,
        title: str,
        description: str,
        priority: int,
        requires_confirmation: bool,
        estimated_time_minutes: int,
        insight_id: Optional[str] = None,
        related_data: Optional[Dict[str, Any]] = None
    ) -> SmartAction:
        return SmartAction(
            id=action_id(action_type, title, insight_id or ""),
            type=action_type,
            title=title,
            description=description,
            priority=priority,
            requires_confirmation=requires_confirmation,
            estimated_time_minutes=estimated_time_minutes,
            context=ActionContext(insight_id=insight_id, related_data=related_data or {}),
        )

    # -------------------------------------------------------------------------
    # Rule sets
    # -------------------------------------------------------------------------

    def _safety_actions(self, result: Any) -> List[SmartAction]:
        insights: SafetyInsights = _coerce(result, SafetyInsights)
        actions: List[SmartAction] = []

        for alert in insights.alerts:
            if alert.severity not in URGENT_SEVERITIES:
                continue
            if alert.escalation_required:
                actions.append(self._escalation_action(alert))
            if alert.urgent_response:
                actions.append(self._crisis_contact_action(alert))
            if alert.category in CRISIS_CATEGORIES:
                actions.append(self._action(
                    ActionType.SAFETY,
                    "Initiate Crisis Intervention Protocol",
                    "Follow established crisis intervention procedures",
                    self.calculate_priority(ActionType.SAFETY, alert.severity, 0.95, urgent=True),
                    requires_confirmation=True,
                    estimated_time_minutes=10,
                    insight_id=alert.id,
                    related_data={"protocol": "crisis_intervention", "category": alert.category},
                ))
            elif alert.category == "medication_concern":
                actions.append(self._action(
                    ActionType.SAFETY,
                    "Review Medication Concerns",
                    f"Medication safety issue detected: {alert.description[:100]}",
                    self.calculate_priority(ActionType.SAFETY, alert.severity, 0.85),
                    requires_confirmation=True,
                    estimated_time_minutes=5,
                    insight_id=alert.id,
                    related_data={"category": alert.category},
                ))
            elif alert.category == "substance_abuse":
                actions.append(self._action(
                    ActionType.SAFETY,
                    "Address Substance Use Concerns",
                    "Review substance use patterns and consider intervention",
                    self.calculate_priority(ActionType.SAFETY, alert.severity, 0.8),
                    requires_confirmation=True,
                    estimated_time_minutes=8,
                    insight_id=alert.id,
                    related_data={"category": alert.category},
                ))

        risk = insights.risk_assessment
        if risk.risk_score >= SAFETY_FOLLOW_UP_RISK_SCORE:
            actions.append(self._action(
                ActionType.SAFETY,
                "Schedule Safety Follow-up",
                f"High risk score ({risk.risk_score:g}/100) requires follow-up",
                self.calculate_priority(ActionType.SAFETY, risk.overall_risk, 0.75),
                requires_confirmation=True,
                estimated_time_minutes=3,
                related_data={"risk_score": risk.risk_score, "risk_factors": risk.risk_factors},
            ))

        return actions[:self.settings.max_actions_per_type]

    def _escalation_action(self, alert: SafetyAlert) -> SmartAction:
        return self._action(
            ActionType.SAFETY,
            "Escalate Safety Alert",
            f"Immediate escalation required: {alert.title or alert.description}",
            self.calculate_priority(ActionType.SAFETY, alert.severity, 1.0, urgent=True),
            requires_confirmation=True,
            estimated_time_minutes=2,
            insight_id=alert.id,
            related_data={"alert_category": alert.category, "risk_score": alert.risk_score},
        )

    def _crisis_contact_action(self, alert: SafetyAlert) -> SmartAction:
        hotline = alert.contact_information.get("crisis_hotline")
        return self._action(
            ActionType.SAFETY,
            "Contact Crisis Team",
            f"Urgent: {hotline or 'Contact emergency services'}",
            self.calculate_priority(ActionType.SAFETY, InsightSeverity.CRITICAL, 1.0, urgent=True),
            requires_confirmation=False,
            estimated_time_minutes=1,
            insight_id=alert.id,
            related_data={"contact_info": dict(alert.contact_information)},
        )

    def _billing_actions(self, result: Any) -> List[SmartAction]:
        insights: BillingInsights = _coerce(result, BillingInsights)
        high = self.settings.high_confidence_threshold
        medium = self.settings.medium_confidence_threshold
        codes = insights.all_codes
        actions: List[SmartAction] = []

        high_codes = [c for c in codes if c.confidence >= high]
        if high_codes:
            average = sum(c.confidence for c in high_codes) / len(high_codes)
            actions.append(self._action(
                ActionType.BILLING,
                "Approve High-Confidence Billing Codes",
                f"{len(high_codes)} codes ready for approval "
                f"(avg. {round_half_up(average * 100)}% confidence)",
                self.calculate_priority(ActionType.BILLING, InsightSeverity.HIGH, average),
                requires_confirmation=True,
                estimated_time_minutes=2,
                related_data=self._code_summary(high_codes),
            ))

        review_codes = [c for c in codes if medium <= c.confidence < high]
        if review_codes:
            actions.append(self._action(
                ActionType.BILLING,
                "Review Medium-Confidence Codes",
                f"{len(review_codes)} codes need review before approval",
                self.calculate_priority(ActionType.BILLING, InsightSeverity.MEDIUM, 0.7),
                requires_confirmation=False,
                estimated_time_minutes=5,
                related_data=self._code_summary(review_codes),
            ))

        optimization = insights.billing_optimization
        if optimization.compliance_issues:
            actions.append(self._action(
                ActionType.BILLING,
                "Address Billing Compliance Issues",
                f"{len(optimization.compliance_issues)} compliance issues detected",
                self.calculate_priority(ActionType.BILLING, InsightSeverity.HIGH, 0.9),
                requires_confirmation=True,
                estimated_time_minutes=10,
                related_data={"issues": list(optimization.compliance_issues)},
            ))

        if optimization.revenue_opportunities:
            actions.append(self._action(
                ActionType.BILLING,
                "Review Revenue Opportunities",
                f"{len(optimization.revenue_opportunities)} potential optimizations identified",
                self.calculate_priority(ActionType.BILLING, InsightSeverity.MEDIUM, 0.6),
                requires_confirmation=False,
                estimated_time_minutes=5,
                related_data={"opportunities": list(optimization.revenue_opportunities)},
            ))

        return actions[:self.settings.max_actions_per_type]

    @staticmethod
    def _code_summary(codes: List[BillingCode]) -> Dict[str, Any]:
        return {
            "codes": [{"code": c.code, "confidence": c.confidence} for c in codes],
            "total_codes": len(codes),
        }

    def _progress_actions(self, result: Any) -> List[SmartAction]:
        insights: ProgressInsights = _coerce(result, ProgressInsights)
        actions: List[SmartAction] = []

        for goal in insights.goal_progress:
            if goal.current_status == "achieved":
                actions.append(self._goal_achieved_action(goal))
            elif goal.barriers:
                actions.append(self._action(
                    ActionType.PROGRESS,
                    "Address Treatment Barriers",
                    f"{len(goal.barriers)} barriers identified for: {goal.goal_description}",
                    self.calculate_priority(ActionType.PROGRESS, InsightSeverity.HIGH, 0.7),
                    requires_confirmation=True,
                    estimated_time_minutes=8,
                    insight_id=goal.goal_id,
                    related_data={"goal_id": goal.goal_id, "barriers": list(goal.barriers)},
                ))

        effectiveness = insights.overall_treatment_effectiveness
        if effectiveness.rating < LOW_EFFECTIVENESS_RATING:
            actions.append(self._action(
                ActionType.PROGRESS,
                "Adjust Treatment Plan",
                f"Low effectiveness rating ({effectiveness.rating:g}/10) suggests plan adjustment",
                self.calculate_priority(ActionType.PROGRESS, InsightSeverity.HIGH, 0.85),
                requires_confirmation=True,
                estimated_time_minutes=15,
                related_data={
                    "current_rating": effectiveness.rating,
                    "trends": effectiveness.trends,
                    "recommendations": list(insights.recommendations.treatment_adjustments),
                },
            ))

        interventions = insights.recommendations.interventions
        if interventions:
            actions.append(self._action(
                ActionType.PROGRESS,
                "Add New Interventions",
                f"{len(interventions)} new interventions recommended",
                self.calculate_priority(ActionType.PROGRESS, InsightSeverity.MEDIUM, 0.7),
                requires_confirmation=True,
                estimated_time_minutes=10,
                related_data={"interventions": list(interventions)},
            ))

        quality = insights.session_quality
        if quality.engagement < LOW_ENGAGEMENT_SCORE or quality.therapeutic_rapport < LOW_ENGAGEMENT_SCORE:
            actions.append(self._action(
                ActionType.PROGRESS,
                "Improve Session Engagement",
                f"Low engagement ({quality.engagement:g}/10) or rapport ({quality.therapeutic_rapport:g}/10)",
                self.calculate_priority(ActionType.PROGRESS, InsightSeverity.MEDIUM, 0.6),
                requires_confirmation=False,
                estimated_time_minutes=5,
                related_data={"engagement": quality.engagement, "rapport": quality.therapeutic_rapport},
            ))

        return actions[:self.settings.max_actions_per_type]

    def _goal_achieved_action(self, goal: GoalProgress) -> SmartAction:
        return self._action(
            ActionType.PROGRESS,
            "Document Goal Achievement",
            f"Goal achieved: {goal.goal_description}",
            self.calculate_priority(ActionType.PROGRESS, InsightSeverity.MEDIUM, 0.8),
            requires_confirmation=False,
            estimated_time_minutes=3,
            insight_id=goal.goal_id,
            related_data={"goal_id": goal.goal_id, "evidence": list(goal.evidence)},
        )

    def _note_action(self, table: RunStatusTable) -> Optional[SmartAction]:
        succeeded = table.kinds_with_status(PipelineStatus.SUCCESS)
        if len(succeeded) < MIN_SUCCESSES_FOR_NOTE:
            return None

        priority = self.settings.action_type_priorities.get(ActionType.NOTE.value, 3)

        safety = table.pipelines.get(PipelineKind.SAFETY)
        if safety is not None and safety.status == PipelineStatus.SUCCESS and safety.result is not None:
            if _coerce(safety.result, SafetyInsights).risk_assessment.overall_risk in URGENT_SEVERITIES:
                priority += 2

        billing = table.pipelines.get(PipelineKind.BILLING)
        if billing is not None and billing.status == PipelineStatus.SUCCESS and billing.result is not None:
            cpt_codes = _coerce(billing.result, BillingInsights).cpt_codes
            if any(c.confidence >= self.settings.high_confidence_threshold for c in cpt_codes):
                priority += 1

        return self._action(
            ActionType.NOTE,
            NOTE_ACTION_TITLE,
            "Create a complete clinical note incorporating all AI insights",
            min(10, max(1, priority)),
            requires_confirmation=False,
            estimated_time_minutes=5,
            related_data={"insight_types": [kind.value for kind in succeeded]},
        )

    # -------------------------------------------------------------------------
    # Ranking
    # -------------------------------------------------------------------------

    @staticmethod
    def _prioritize(actions: List[SmartAction]) -> List[SmartAction]:
        """Dedupe by (type, title) keeping the highest priority; sort descending."""
        ranked = sorted(actions, key=lambda a: a.priority, reverse=True)
        unique: Dict[Tuple[ActionType, str], SmartAction] = {}
        for action in ranked:
            unique.setdefault((action.type, action.title), action)
        return list(unique.values())

    def _group(self, actions: List[SmartAction]) -> List[SmartAction]:
        threshold = self.settings.action_grouping_threshold
        for type_name in self.settings.action_grouping_types:
            action_type = ActionType(type_name)
            members = [a for a in actions if a.type == action_type]
            if len(members) <= threshold:
                continue
            grouped = SmartAction(
                id=action_id(action_type, "group", "|".join(a.id for a in members)),
                type=action_type,
                title=f"Review All {action_type.value.title()} Items",
                description=f"{len(members)} {action_type.value} actions grouped for efficiency",
                priority=max(a.priority for a in members),
                requires_confirmation=True,
                estimated_time_minutes=sum(a.estimated_time_minutes for a in members),
                context=ActionContext(related_data={
                    "grouped_actions": [a.id for a in members],
                    "grouped_titles": [a.title for a in members],
                }),
            )
            actions = [a for a in actions if a.type != action_type] + [grouped]
        return sorted(actions, key=lambda a: a.priority, reverse=True)

    # -------------------------------------------------------------------------
    # Execution & metrics
    # -------------------------------------------------------------------------

    def _dispatch(self, action: SmartAction) -> Any:
        logger.info(f"Executing action '{action.title}' ({action.id})")
        if self.action_dispatcher is None:
            return None
        return self.action_dispatcher(action)

    def _update_metrics(self, actions: List[SmartAction], elapsed_ms: float) -> None:
        by_type: Dict[str, int] = {}
        for action in actions:
            by_type[action.type.value] = by_type.get(action.type.value, 0) + 1
        self._metrics.generation_time_ms = elapsed_ms
        self._metrics.total_actions = len(actions)
        self._metrics.actions_by_type = by_type
        self._metrics.average_priority = (
            sum(a.priority for a in actions) / len(actions) if actions else 0.0
        )
        self._metrics.high_priority_count = sum(
            1 for a in actions if a.priority >= self.settings.action_urgency_threshold
        )


def derive_actions(table: RunStatusTable, settings: Optional[Settings] = None) -> List[SmartAction]:
    """Uncached derivation with a throwaway engine."""
    return SmartActionsEngine(settings=settings).derive_actions(table)
