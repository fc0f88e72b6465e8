from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta
import logging

from agentchat.models.errors import (
    ConcurrencyConflict, NotFound, PersistenceError
)
from agentchat.models.schemas import (
    Agent, FeedbackAnalysis, FeedbackCreate, FeedbackOutcome, FeedbackRecord,
    FeedbackType, ImprovementNotification, PromptImprovementLog, utc_now
)
from agentchat.rules.loader import RoutingRules, get_rules
from agentchat.services import store as tables
from agentchat.services.store import Store, data_store, load_owned, to_row
from config.settings import settings

logger = logging.getLogger(__name__)

NEGATIVE_FEEDBACK_TYPES = {FeedbackType.CORRECTION, FeedbackType.IMPROVEMENT}
IMPROVEMENT_ATTEMPTS = 3


class FeedbackImprovementEngine:
    """Agent responsible for learning from feedback and refining prompts"""

    def __init__(self, store: Optional[Store] = None,
                 rules: Optional[RoutingRules] = None):
        self.name = "Feedback Improvement Engine"
        self.store = store or data_store
        self._rules = rules

    @property
    def rules(self) -> RoutingRules:
        if self._rules is None:
            self._rules = get_rules()
        return self._rules

    async def record_feedback(self, actor_id: str, agent_id: str,
                              feedback: FeedbackCreate,
                              now: Optional[datetime] = None
                              ) -> FeedbackRecord:
        outcome = await self.process_feedback(actor_id, agent_id, feedback,
                                              now)
        return outcome.feedback

    async def process_feedback(self, actor_id: str, agent_id: str,
                               feedback: FeedbackCreate,
                               now: Optional[datetime] = None
                               ) -> FeedbackOutcome:
        """
        Store feedback, run the threshold watcher, then try to improve
        the agent's prompt.
        """
        now = now or utc_now()
        await load_owned(self.store, tables.AGENTS, agent_id, actor_id, Agent)

        record = FeedbackRecord(
            agent_id=agent_id,
            user_id=actor_id,
            created_at=now,
            **feedback.model_dump()
        )
        await self.store.insert(tables.AGENT_FEEDBACK, to_row(record))
        logger.info("Recorded %s feedback for agent %s",
                    record.feedback_type.value, agent_id)

        notification = await self.check_threshold(agent_id, now)
        improvement = await self.analyze_for_improvement(agent_id)
        return FeedbackOutcome(feedback=record, improvement=improvement,
                               notification=notification)

    def analyze_feedback(self, records: List[FeedbackRecord]
                         ) -> FeedbackAnalysis:
        """
        Aggregate a feedback window into improvement signals
        """
        total = len(records)
        if total == 0:
            return FeedbackAnalysis(should_improve=False,
                                    negative_feedback_ratio=0.0,
                                    average_confidence=0.0,
                                    total_feedback=0)

        negative = sum(1 for record in records
                       if record.feedback_type in NEGATIVE_FEEDBACK_TYPES)
        ratio = negative / total
        average_confidence = sum(record.confidence_score
                                 for record in records) / total
        common_issues = self.identify_common_issues(records)

        should_improve = (
            ratio > settings.NEGATIVE_RATIO_THRESHOLD or
            average_confidence < settings.CONFIDENCE_THRESHOLD or
            len(common_issues) > 0
        )
        return FeedbackAnalysis(
            should_improve=should_improve,
            negative_feedback_ratio=ratio,
            average_confidence=average_confidence,
            common_issues=common_issues,
            total_feedback=total
        )

    def identify_common_issues(self, records: List[FeedbackRecord]
                               ) -> List[str]:
        texts = [record.user_feedback.lower() for record in records]
        issues = []
        for issue in self.rules.feedback_issues:
            mentions = sum(1 for text in texts if issue.matches(text))
            if mentions >= settings.COMMON_ISSUE_MIN_MENTIONS:
                issues.append(issue.issue)
        return issues

    async def analyze_for_improvement(self, agent_id: str
                                      ) -> Optional[PromptImprovementLog]:
        """
        Improve the agent's prompt from its most recent feedback.

        The new prompt is always the old prompt plus appended sections.
        Returns None when there is too little feedback, no signal, or
        nothing new to append.

        A concurrent change to the agent is retried against the fresh
        prompt; the log is written only after the new prompt is stored.
        """
        rows = await self.store.query(tables.AGENT_FEEDBACK,
                                      {"agent_id": agent_id},
                                      order_by="created_at", descending=True,
                                      limit=settings.FEEDBACK_ANALYSIS_WINDOW)
        records = [FeedbackRecord.model_validate(row) for row in rows]
        if len(records) < settings.FEEDBACK_MIN_SAMPLES:
            return None

        analysis = self.analyze_feedback(records)
        if not analysis.should_improve:
            return None

        for attempt in range(1, IMPROVEMENT_ATTEMPTS + 1):
            row = await self.store.get(tables.AGENTS, agent_id)
            if row is None:
                raise NotFound(f"Agent {agent_id} not found")
            agent = Agent.model_validate(row)

            # Feedback arrives newest first; corrections read oldest first
            new_prompt, reasons = self.improve_prompt(
                agent.system_prompt, list(reversed(records)), analysis)
            if new_prompt == agent.system_prompt:
                return None

            metrics = dict(agent.performance_metrics)
            metrics.update({
                "negative_feedback_ratio": round(
                    analysis.negative_feedback_ratio, 3),
                "average_confidence": round(analysis.average_confidence, 3),
                "feedback_analyzed": analysis.total_feedback,
                "improvements": metrics.get("improvements", 0) + 1
            })
            try:
                await self.store.update(
                    tables.AGENTS, {"id": agent_id},
                    {"system_prompt": new_prompt,
                     "performance_metrics": metrics,
                     "updated_at": utc_now()},
                    expected_version=agent.version)
            except ConcurrencyConflict:
                logger.info("Agent %s changed during prompt improvement "
                            "(attempt %d), re-reading", agent_id, attempt)
                continue

            # Logged only once the new prompt is live
            log = PromptImprovementLog(
                agent_id=agent_id,
                old_prompt=agent.system_prompt,
                new_prompt=new_prompt,
                improvement_reason=", ".join(reasons),
                feedback_ids=[record.id for record in records],
                performance_before=agent.performance_metrics
            )
            await self.store.insert(tables.PROMPT_IMPROVEMENT_LOGS,
                                    to_row(log))
            logger.info("Improved prompt of agent %s: %s", agent_id,
                        log.improvement_reason)
            return log

        logger.warning("Gave up improving prompt of agent %s after %d "
                       "conflicting updates", agent_id, IMPROVEMENT_ATTEMPTS)
        return None

    def improve_prompt(self, prompt: str, records: List[FeedbackRecord],
                       analysis: FeedbackAnalysis):
        """
        Append a section per common issue and the user corrections.

        Sections and corrections already in the prompt are skipped, so
        repeated analysis of the same feedback changes nothing.
        """
        improved = prompt
        reasons = []

        for issue in self.rules.feedback_issues:
            if issue.issue not in analysis.common_issues:
                continue
            if issue.prompt_section in improved:
                continue
            improved += f"\n\n{issue.prompt_section}"
            reasons.append(issue.reason)

        corrections = []
        for record in records:
            if record.feedback_type != FeedbackType.CORRECTION:
                continue
            text = record.user_feedback.strip()
            if text and text not in improved and text not in corrections:
                corrections.append(text)

        if corrections:
            improved += f"\n\n{self.rules.correction_section_header}\n"
            for index, text in enumerate(corrections, start=1):
                improved += f"{index}. {text}\n"
            reasons.append(self.rules.correction_reason)

        return improved, reasons

    async def check_threshold(self, agent_id: str,
                              now: Optional[datetime] = None
                              ) -> Optional[ImprovementNotification]:
        """
        Raise a notification when recent feedback turns mostly negative
        """
        now = now or utc_now()
        since = now - timedelta(days=settings.NOTIFICATION_WINDOW_DAYS)
        rows = await self.store.query(tables.AGENT_FEEDBACK,
                                      {"agent_id": agent_id})
        recent = [record for record in
                  (FeedbackRecord.model_validate(row) for row in rows)
                  if record.created_at > since]
        if len(recent) < settings.NOTIFICATION_MIN_FEEDBACK:
            return None

        negative = sum(1 for record in recent
                       if record.feedback_type in NEGATIVE_FEEDBACK_TYPES)
        ratio = negative / len(recent)
        if ratio <= settings.NEGATIVE_RATIO_THRESHOLD:
            return None

        notification = ImprovementNotification(
            agent_id=agent_id,
            trigger_reason="automatic_threshold_reached",
            feedback_count=len(recent),
            negative_ratio=round(ratio, 2),
            created_at=now
        )
        try:
            await self.store.insert(tables.IMPROVEMENT_NOTIFICATIONS,
                                    to_row(notification))
        except PersistenceError as e:
            logger.warning("Could not store improvement notification for "
                           "agent %s: %s", agent_id, e)
            return None
        return notification

    async def feedback_history(self, actor_id: str, agent_id: str
                               ) -> List[FeedbackRecord]:
        await load_owned(self.store, tables.AGENTS, agent_id, actor_id, Agent)
        rows = await self.store.query(tables.AGENT_FEEDBACK,
                                      {"agent_id": agent_id},
                                      order_by="created_at", descending=True)
        return [FeedbackRecord.model_validate(row) for row in rows]

    async def improvement_logs(self, actor_id: str, agent_id: str
                               ) -> List[PromptImprovementLog]:
        await load_owned(self.store, tables.AGENTS, agent_id, actor_id, Agent)
        rows = await self.store.query(tables.PROMPT_IMPROVEMENT_LOGS,
                                      {"agent_id": agent_id},
                                      order_by="created_at", descending=True)
        return [PromptImprovementLog.model_validate(row) for row in rows]

    async def feedback_summary(self, actor_id: str, agent_id: str
                               ) -> Dict[str, Any]:
        """
        Feedback totals, current signals and improvement counts
        """
        records = await self.feedback_history(actor_id, agent_id)
        logs = await self.improvement_logs(actor_id, agent_id)
        notifications = await self.store.query(
            tables.IMPROVEMENT_NOTIFICATIONS,
            {"agent_id": agent_id, "processed": False})

        by_type: Dict[str, int] = {}
        for record in records:
            key = record.feedback_type.value
            by_type[key] = by_type.get(key, 0) + 1

        window = records[:settings.FEEDBACK_ANALYSIS_WINDOW]
        analysis = self.analyze_feedback(window)
        return {
            "agent_id": agent_id,
            "total_feedback": len(records),
            "by_type": by_type,
            "recent_analysis": analysis.model_dump(),
            "improvements": len(logs),
            "pending_notifications": len(notifications)
        }


# Global learning agent instance
learning_agent = FeedbackImprovementEngine()
