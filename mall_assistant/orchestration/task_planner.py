"""
Task Planner - decomposes a classified intent into a task DAG.

Each intent maps to a fixed template of atomic actions with static
dependency edges. Plans are validated (cycles, dangling dependencies,
missing merchant ids) before dispatch, and get_execution_order() layers
the DAG into batches that could run concurrently.
"""
import logging
import re
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from mall_assistant.core.exceptions import PlanStructureError, UsageError
from mall_assistant.core.models import (
    AggregationOperation,
    ConversationContext,
    UserIntent,
)

logger = logging.getLogger(__name__)


# ============================================================================
# PYDANTIC MODELS FOR PLAN STRUCTURE
# ============================================================================

class PlanStrategy(str, Enum):
    RULE_ENGINE = "rule_engine"
    GENERATIVE_FALLBACK = "generative_fallback"
    HYBRID = "hybrid"


class Task(BaseModel):
    """
    A single atomic action in an execution plan.

    params must carry merchant_id unless the action is entity-independent.
    """
    id: str = Field(..., description="Task identifier unique within the plan (t1, t2, ...)")
    action: str = Field(..., description="Action name, e.g. 'analyze_health', 'aggregate'")
    params: Dict[str, Any] = Field(default_factory=dict, description="Parameters for the action")
    depends_on: List[str] = Field(default_factory=list, description="Ids of tasks that must complete first")
    priority: int = Field(1, description="Lower runs earlier within a batch")


class ExecutionPlan(BaseModel):
    """Plan for one user turn. Built fresh per turn, never persisted."""
    plan_id: str = Field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:8]}", description="Unique plan identifier")
    intent: UserIntent
    tasks: List[Task] = Field(default_factory=list, description="Tasks in plan order")
    strategy: PlanStrategy
    parallelizable: bool = False
    confidence: float = Field(1.0, ge=0, le=1)


class PlanEntities(BaseModel):
    """Resolved entities and request slots the planner parameterizes tasks with."""
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    merchants: List[Any] = Field(default_factory=list)
    filters: Optional[Dict[str, Any]] = None
    time_range: Optional[Dict[str, Any]] = None
    comparison_target: Optional[str] = None
    operation: Optional[AggregationOperation] = None
    field: Optional[str] = None
    group_by: Optional[str] = None


class PlanIssueKind(str, Enum):
    CYCLE = "cycle"
    DANGLING_DEPENDENCY = "dangling_dependency"
    MISSING_MERCHANT_ID = "missing_merchant_id"


class PlanIssue(BaseModel):
    kind: PlanIssueKind
    task_id: Optional[str] = None
    message: str


class PlanValidationResult(BaseModel):
    valid: bool
    issues: List[PlanIssue] = Field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [issue.message for issue in self.issues]

    def has(self, kind: PlanIssueKind) -> bool:
        return any(issue.kind == kind for issue in self.issues)

    def raise_for_usage_errors(self) -> None:
        """
        Raise UsageError if any task is missing its merchant id.

        Cycles and dangling edges are planner defects, not caller mistakes,
        and are left for the caller to handle via `issues`.
        """
        missing = [i for i in self.issues if i.kind == PlanIssueKind.MISSING_MERCHANT_ID]
        if missing:
            raise UsageError("; ".join(i.message for i in missing))


# ============================================================================
# PLANNING TABLES
# ============================================================================

ENTITY_INDEPENDENT_ACTIONS = {"aggregate", "generate_solution"}

ANALYTICAL_INTENTS = {
    UserIntent.DATA_QUERY,
    UserIntent.AGGREGATION_QUERY,
    UserIntent.RISK_STATISTICS,
    UserIntent.HEALTH_OVERVIEW,
    UserIntent.COMPARISON_QUERY,
    UserIntent.COMPOSITE_QUERY,
}

AGGREGATION_INTENTS = {
    UserIntent.AGGREGATION_QUERY,
    UserIntent.RISK_STATISTICS,
    UserIntent.HEALTH_OVERVIEW,
}

# Actions the previous turn's intent typically leads to
FOLLOW_UP_ACTIONS: Dict[UserIntent, List[str]] = {
    UserIntent.HEALTH_QUERY: ["detect_risks", "diagnose"],
    UserIntent.RISK_DIAGNOSIS: ["match_cases", "generate_solution"],
    UserIntent.SOLUTION_RECOMMEND: ["analyze_health", "diagnose"],
    UserIntent.DATA_QUERY: ["analyze_health"],
    UserIntent.AGGREGATION_QUERY: ["analyze_health", "detect_risks"],
    UserIntent.RISK_STATISTICS: ["detect_risks", "diagnose"],
    UserIntent.HEALTH_OVERVIEW: ["analyze_health"],
    UserIntent.COMPOSITE_QUERY: ["analyze_health", "detect_risks", "diagnose"],
}

PROBLEM_INDICATORS = re.compile(r"问题|风险|下降|低|差|不好")
RECENT_MESSAGE_WINDOW = 3

# Confidence scoring
TASK_COUNT_ALLOWANCE = 3
TASK_COUNT_PENALTY = 0.1
DEPENDENCY_ALLOWANCE = 3
DEPENDENCY_PENALTY = 0.05
FOLLOW_UP_BOOST = 0.1
MIN_PLAN_CONFIDENCE = 0.3
MAX_PLAN_CONFIDENCE = 1.0


# ============================================================================
# PLANNER
# ============================================================================

class TaskPlanner:
    """Template-based planner with structural validation and Kahn batching."""

    def plan(
        self,
        intent: UserIntent,
        entities: Optional[PlanEntities] = None,
        context: Optional[ConversationContext] = None
    ) -> ExecutionPlan:
        """
        Build an execution plan for one classified request.

        Args:
            intent: Classified user intent
            entities: Resolved merchant and request slots
            context: Conversation context (speculative follow-up, confidence boost)

        Returns:
            ExecutionPlan (not yet validated; call validate_plan())

        Example:
            >>> plan = TaskPlanner().plan(UserIntent.SOLUTION_RECOMMEND, PlanEntities(merchant_id="M001"))
            >>> [t.action for t in plan.tasks]
            ['detect_risks', 'diagnose', 'match_cases', 'generate_solution']
        """
        entities = entities or PlanEntities()
        context = context or ConversationContext()
        tasks = self._build_tasks(intent, entities, context)

        plan = ExecutionPlan(
            intent=intent,
            tasks=tasks,
            strategy=self._decide_strategy(intent, tasks),
            parallelizable=self._check_parallelizable(tasks),
            confidence=self._calculate_confidence(tasks, context),
        )
        logger.info(
            f"📋 Plan {plan.plan_id}: intent={intent.value}, "
            f"tasks={[t.action for t in tasks]}, strategy={plan.strategy.value}, "
            f"confidence={plan.confidence:.2f}"
        )
        return plan

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def _build_tasks(
        self,
        intent: UserIntent,
        entities: PlanEntities,
        context: ConversationContext
    ) -> List[Task]:
        merchant = {"merchant_id": entities.merchant_id}

        if intent == UserIntent.HEALTH_QUERY:
            tasks = [Task(id="t1", action="analyze_health", params=merchant, priority=1)]
            if self._should_prepare_diagnosis(context):
                tasks.append(Task(id="t2", action="detect_risks", params=merchant, depends_on=["t1"], priority=2))
            return tasks

        if intent == UserIntent.RISK_DIAGNOSIS:
            return [
                Task(id="t1", action="detect_risks", params=merchant, priority=1),
                Task(id="t2", action="diagnose", params=merchant, priority=1),
                Task(id="t3", action="match_cases", params=merchant, depends_on=["t2"], priority=2),
            ]

        if intent == UserIntent.SOLUTION_RECOMMEND:
            return [
                Task(id="t1", action="detect_risks", params=merchant, priority=1),
                Task(id="t2", action="diagnose", params=merchant, priority=1),
                Task(id="t3", action="match_cases", params=merchant, depends_on=["t2"], priority=2),
                Task(id="t4", action="generate_solution", params=merchant, depends_on=["t2", "t3"], priority=3),
            ]

        if intent == UserIntent.DATA_QUERY:
            return [Task(id="t1", action="analyze_health", params=merchant, priority=1)]

        if intent in AGGREGATION_INTENTS:
            return [Task(id="t1", action="aggregate", params=self._aggregate_params(intent, entities), priority=1)]

        if intent == UserIntent.COMPARISON_QUERY:
            params = {
                "merchant_id": entities.merchant_id,
                "merchant_name": entities.merchant_name,
                "merchants": list(entities.merchants),
                "comparison_target": entities.comparison_target,
                "time_range": entities.time_range,
            }
            return [Task(id="t1", action="compare", params=params, priority=1)]

        if intent == UserIntent.COMPOSITE_QUERY:
            return [
                Task(id="t1", action="analyze_health", params=merchant, priority=1),
                Task(id="t2", action="detect_risks", params=merchant, priority=1),
                Task(id="t3", action="diagnose", params=merchant, depends_on=["t1", "t2"], priority=2),
            ]

        # trend_analysis, archive_query, general_chat, unknown
        return []

    @staticmethod
    def _aggregate_params(intent: UserIntent, entities: PlanEntities) -> Dict[str, Any]:
        operation = entities.operation or AggregationOperation.COUNT
        field = entities.field
        group_by = entities.group_by

        if intent == UserIntent.RISK_STATISTICS and entities.operation in (None, AggregationOperation.COUNT):
            operation = AggregationOperation.COUNT
            group_by = group_by or "riskLevel"
        elif intent == UserIntent.HEALTH_OVERVIEW and entities.operation in (None, AggregationOperation.COUNT):
            operation = AggregationOperation.AVG
            field = field or "totalScore"

        return {
            "operation": operation.value,
            "field": field,
            "group_by": group_by,
            "filters": entities.filters,
            "time_range": entities.time_range,
            "comparison_target": entities.comparison_target,
        }

    @staticmethod
    def _should_prepare_diagnosis(context: ConversationContext) -> bool:
        if context.last_intent == UserIntent.RISK_DIAGNOSIS:
            return True
        recent = context.recent_messages[-RECENT_MESSAGE_WINDOW:]
        return any(PROBLEM_INDICATORS.search(m.content) for m in recent)

    # ------------------------------------------------------------------
    # Plan attributes
    # ------------------------------------------------------------------

    @staticmethod
    def _decide_strategy(intent: UserIntent, tasks: List[Task]) -> PlanStrategy:
        if not tasks or intent in (UserIntent.GENERAL_CHAT, UserIntent.UNKNOWN):
            return PlanStrategy.GENERATIVE_FALLBACK
        if intent in ANALYTICAL_INTENTS:
            return PlanStrategy.HYBRID
        return PlanStrategy.RULE_ENGINE

    @staticmethod
    def _check_parallelizable(tasks: List[Task]) -> bool:
        if len(tasks) <= 1:
            return False
        independent = sum(1 for t in tasks if not t.depends_on)
        return independent == len(tasks) or independent >= 2

    @staticmethod
    def _calculate_confidence(tasks: List[Task], context: ConversationContext) -> float:
        confidence = 1.0

        if len(tasks) > TASK_COUNT_ALLOWANCE:
            confidence -= TASK_COUNT_PENALTY * (len(tasks) - TASK_COUNT_ALLOWANCE)

        edges = sum(len(t.depends_on) for t in tasks)
        if edges > DEPENDENCY_ALLOWANCE:
            confidence -= DEPENDENCY_PENALTY * (edges - DEPENDENCY_ALLOWANCE)

        if context.last_intent is not None:
            expected = FOLLOW_UP_ACTIONS.get(context.last_intent, [])
            if any(t.action in expected for t in tasks):
                confidence += FOLLOW_UP_BOOST

        return round(max(MIN_PLAN_CONFIDENCE, min(MAX_PLAN_CONFIDENCE, confidence)), 6)

    # ------------------------------------------------------------------
    # Validation and ordering
    # ------------------------------------------------------------------

    def validate_plan(self, plan: ExecutionPlan) -> PlanValidationResult:
        """
        Check a plan's structure before any executor consumes it.

        Reports (never raises):
        - CYCLE: dependency cycle, including self-dependencies
        - DANGLING_DEPENDENCY: depends_on names a task not in the plan
        - MISSING_MERCHANT_ID: task without merchant_id whose action is
          not entity-independent

        Returns:
            PlanValidationResult with one issue per problem found
        """
        issues: List[PlanIssue] = []

        cycle_task = self._find_cycle(plan.tasks)
        if cycle_task is not None:
            issues.append(PlanIssue(
                kind=PlanIssueKind.CYCLE,
                task_id=cycle_task,
                message=f"Dependency cycle detected at task {cycle_task}",
            ))

        task_ids = {t.id for t in plan.tasks}
        for task in plan.tasks:
            for dep in task.depends_on:
                if dep not in task_ids:
                    issues.append(PlanIssue(
                        kind=PlanIssueKind.DANGLING_DEPENDENCY,
                        task_id=task.id,
                        message=f"Task {task.id} depends on missing task {dep}",
                    ))

        for task in plan.tasks:
            if task.action in ENTITY_INDEPENDENT_ACTIONS:
                continue
            if task.action == "compare" and len(task.params.get("merchants") or []) >= 2:
                continue
            if not task.params.get("merchant_id"):
                issues.append(PlanIssue(
                    kind=PlanIssueKind.MISSING_MERCHANT_ID,
                    task_id=task.id,
                    message=f"Task {task.id} ({task.action}) is missing required merchant_id",
                ))

        if issues:
            logger.warning(f"⚠️ Plan {plan.plan_id} failed validation: {[i.kind.value for i in issues]}")
        return PlanValidationResult(valid=not issues, issues=issues)

    @staticmethod
    def _find_cycle(tasks: List[Task]) -> Optional[str]:
        """DFS with a recursion stack; returns a task id on a cycle, or None."""
        graph = {t.id: list(t.depends_on) for t in tasks}
        visited = set()
        on_stack = set()

        def visit(task_id: str) -> Optional[str]:
            visited.add(task_id)
            on_stack.add(task_id)
            for dep in graph.get(task_id, []):
                if dep in on_stack:
                    return dep
                if dep not in visited:
                    found = visit(dep)
                    if found is not None:
                        return found
            on_stack.discard(task_id)
            return None

        for task_id in graph:
            if task_id not in visited:
                found = visit(task_id)
                if found is not None:
                    return found
        return None

    @staticmethod
    def get_execution_order(tasks: List[Task]) -> List[List[str]]:
        """
        Layer tasks into batches with Kahn's algorithm.

        Batch members keep plan order. Dependencies on ids outside the task
        list are ignored here (validate_plan reports them).

        Raises:
            PlanStructureError: If tasks remain but none has zero in-degree

        Example:
            >>> TaskPlanner.get_execution_order([
            ...     Task(id="A", action="x"), Task(id="B", action="x", depends_on=["A"]),
            ...     Task(id="C", action="x", depends_on=["A"]), Task(id="D", action="x", depends_on=["B", "C"]),
            ... ])
            [['A'], ['B', 'C'], ['D']]
        """
        ids = [t.id for t in tasks]
        known = set(ids)
        in_degree = {t.id: sum(1 for d in t.depends_on if d in known) for t in tasks}
        dependents: Dict[str, List[str]] = {task_id: [] for task_id in ids}
        for task in tasks:
            for dep in task.depends_on:
                if dep in known:
                    dependents[dep].append(task.id)

        batches: List[List[str]] = []
        remaining = list(ids)
        while remaining:
            batch = [task_id for task_id in remaining if in_degree[task_id] == 0]
            if not batch:
                raise PlanStructureError(f"Cannot order tasks {remaining}: dependency cycle")
            batches.append(batch)
            remaining = [task_id for task_id in remaining if task_id not in batch]
            for task_id in batch:
                for dependent in dependents[task_id]:
                    in_degree[dependent] -= 1
        return batches
