"""
Query pipeline: one conversational turn as a LangGraph StateGraph.

Flow:
1. check_boundary        - refuse writes, batch jobs, sensitive data, forecasts
2. detect_context_switch - drop the carried merchant on "换一家" style input
3. classify_intent       - intent + slots
4. recognize_entities    - merchant candidates (skipped for set-level requests)
5. disambiguate_entity   - resolved merchant / no match / clarification
6. plan_tasks            - task DAG for the intent
7. validate_plan         - structural checks + Kahn batches
8. execute_tasks         - executors and merchant skills
9. END

A refused request ends the turn before classification. Clarification always
ends the turn. No match ends the turn only for
merchant-bound intents; set-level requests carry on without a merchant.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from langgraph.graph import END, StateGraph
from pydantic import BaseModel, Field

from mall_assistant.agents.boundary_checker import BoundaryCheck, BoundaryChecker
from mall_assistant.agents.context_switch_detector import detect_switch, drop_prior_merchant
from mall_assistant.agents.entity_disambiguation_agent import (
    DisambiguationResult,
    DisambiguationStatus,
    EntityDisambiguationService,
)
from mall_assistant.agents.entity_recognition_agent import EntityCandidate, EntityRecognitionService
from mall_assistant.agents.intent_classifier import IntentClassifier, IntentResult, QuerySlots, extract_slots
from mall_assistant.core.exceptions import AssistantError, MerchantNotFoundError, UsageError
from mall_assistant.core.models import (
    AggregationConfig,
    AnalyticalPlan,
    ConversationContext,
    Merchant,
    QueryFilters,
    QueryType,
    ResolvedEntities,
    TimeRange,
    UserIntent,
)
from mall_assistant.core.pipeline_state import QueryState
from mall_assistant.orchestration.aggregation_executor import AggregationExecutor
from mall_assistant.orchestration.comparison_executor import ComparisonExecutor
from mall_assistant.orchestration.merchant_skills import SKILL_HANDLERS
from mall_assistant.orchestration.task_planner import (
    AGGREGATION_INTENTS,
    ExecutionPlan,
    PlanEntities,
    PlanStrategy,
    PlanValidationResult,
    TaskPlanner,
)
from mall_assistant.repositories.merchant_repository import MerchantRepository, get_merchant_repository
from mall_assistant.security.pii_redactor import PIIRedactionFilter, redact_pii

logger = logging.getLogger(__name__)
logger.addFilter(PIIRedactionFilter())


# Intents that cannot be answered without a resolved merchant
MERCHANT_BOUND_INTENTS = {
    UserIntent.HEALTH_QUERY,
    UserIntent.RISK_DIAGNOSIS,
    UserIntent.SOLUTION_RECOMMEND,
    UserIntent.DATA_QUERY,
    UserIntent.ARCHIVE_QUERY,
    UserIntent.COMPARISON_QUERY,
    UserIntent.COMPOSITE_QUERY,
}


class TurnStatus:
    COMPLETED = "completed"
    OUT_OF_SCOPE = "out_of_scope"
    NEEDS_CLARIFICATION = "needs_clarification"
    NO_MATCH = "no_match"
    FALLBACK = "fallback"
    ERROR = "error"


class QueryOutcome(BaseModel):
    """Everything one turn produced, for the response composer and the API."""
    status: str
    text: str
    intent: Optional[IntentResult] = None
    slots: Optional[QuerySlots] = None
    candidates: List[EntityCandidate] = Field(default_factory=list)
    disambiguation: Optional[DisambiguationResult] = None
    plan: Optional[ExecutionPlan] = None
    validation: Optional[PlanValidationResult] = None
    batches: List[List[str]] = Field(default_factory=list)
    results: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None
    boundary: Optional[BoundaryCheck] = None
    context_switched: bool = False

    @property
    def merchant_id(self) -> Optional[str]:
        if self.disambiguation is not None and self.disambiguation.is_resolved:
            return self.disambiguation.merchant_id
        return None

    @property
    def merchant_name(self) -> Optional[str]:
        if self.disambiguation is not None and self.disambiguation.is_resolved:
            return self.disambiguation.merchant_name
        return None


def is_set_level(intent: UserIntent, slots: QuerySlots) -> bool:
    """Aggregations and head-to-head comparisons do not resolve a single merchant."""
    if intent in AGGREGATION_INTENTS:
        return True
    return intent == UserIntent.COMPARISON_QUERY and len(slots.merchants) >= 2


def build_analytical_plan(query_type: QueryType, params: Dict[str, Any]) -> AnalyticalPlan:
    """Turn aggregate/compare task params into an executor request."""
    filters = params.get("filters")
    time_range = params.get("time_range")
    entities = ResolvedEntities(
        merchant_id=params.get("merchant_id"),
        merchant_name=params.get("merchant_name"),
        merchants=params.get("merchants") or [],
        filters=QueryFilters.model_validate(filters) if filters else None,
        time_range=TimeRange.model_validate(time_range) if time_range else None,
        comparison_target=params.get("comparison_target"),
    )
    aggregation = None
    if query_type == QueryType.AGGREGATION:
        aggregation = AggregationConfig(
            operation=params.get("operation") or "count",
            field=params.get("field"),
            group_by=params.get("group_by"),
        )
    return AnalyticalPlan(query_type=query_type, entities=entities, aggregation=aggregation)


class QueryPipeline:
    """
    Runs recognition -> disambiguation -> planning -> execution for a turn.

    All stages see the same immutable snapshot; nothing outside the returned
    outcome is mutated (the simulated history provider aside), so a caller
    can drop a turn at any point.
    """

    def __init__(
        self,
        repository: Optional[MerchantRepository] = None,
        classifier: Optional[IntentClassifier] = None,
        disambiguator: Optional[EntityDisambiguationService] = None,
        planner: Optional[TaskPlanner] = None,
        aggregation_executor: Optional[AggregationExecutor] = None,
        comparison_executor: Optional[ComparisonExecutor] = None,
        boundary_checker: Optional[BoundaryChecker] = None
    ):
        self.repository = repository or get_merchant_repository()
        self.classifier = classifier or IntentClassifier()
        self.disambiguator = disambiguator or EntityDisambiguationService()
        self.planner = planner or TaskPlanner()
        self.aggregation_executor = aggregation_executor or AggregationExecutor()
        self.comparison_executor = comparison_executor or ComparisonExecutor()
        self.boundary_checker = boundary_checker or BoundaryChecker()
        self.graph = self._build_graph()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        text: str,
        context: Optional[ConversationContext] = None,
        snapshot: Optional[Sequence[Merchant]] = None,
        resolution: Optional[DisambiguationResult] = None
    ) -> QueryOutcome:
        """
        Process one user turn.

        Args:
            text: Raw user utterance
            context: Conversation context (prior merchant, last intent)
            snapshot: Dataset snapshot; taken from the repository if omitted
            resolution: Already-resolved merchant (reply to a clarification)

        Returns:
            QueryOutcome

        Raises:
            UsageError: If the text is empty
        """
        if not text or not text.strip():
            raise UsageError("Empty user input")

        initial: QueryState = {
            "text": text,
            "snapshot": tuple(snapshot) if snapshot is not None else self.repository.snapshot(),
            "context": context or ConversationContext(),
            "resolution_override": resolution,
            "candidates": [],
            "disambiguation": None,
            "batches": [],
            "results": {},
            "message": None,
            "context_switched": False,
        }

        logger.info("=" * 60)
        logger.info(f"QUERY PIPELINE: '{redact_pii(text)}'")
        logger.info("=" * 60)

        final = self.graph.invoke(initial)
        outcome = QueryOutcome(
            status=final.get("status", TurnStatus.ERROR),
            text=text,
            intent=final.get("intent"),
            slots=final.get("slots"),
            candidates=final.get("candidates") or [],
            disambiguation=final.get("disambiguation"),
            plan=final.get("plan"),
            validation=final.get("validation"),
            batches=final.get("batches") or [],
            results=final.get("results") or {},
            message=final.get("message"),
            boundary=final.get("boundary"),
            context_switched=final.get("context_switched", False),
        )
        logger.info(f"🏁 Turn finished: status={outcome.status}")
        return outcome

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def check_boundary_node(self, state: QueryState) -> dict:
        if state.get("resolution_override") is not None:
            # The utterance was screened when the clarification was asked
            return {}
        check = self.boundary_checker.check(state["text"])
        if check.allowed:
            return {}
        return {"boundary": check, "status": TurnStatus.OUT_OF_SCOPE, "message": check.message}

    def detect_context_switch_node(self, state: QueryState) -> dict:
        switch = detect_switch(state["text"], state["context"])
        if not switch.should_switch:
            return {}
        return {"context": drop_prior_merchant(state["context"]), "context_switched": True}

    def classify_intent_node(self, state: QueryState) -> dict:
        intent = self.classifier.classify(state["text"])
        slots = extract_slots(state["text"], state["snapshot"])
        logger.info(f"🎯 Intent: {intent.intent.value} ({intent.confidence:.2f})")
        return {"intent": intent, "slots": slots}

    def recognize_entities_node(self, state: QueryState) -> dict:
        if state.get("resolution_override") is not None:
            return {"candidates": []}
        if is_set_level(state["intent"].intent, state["slots"]):
            logger.info("📊 Set-level request, skipping merchant recognition")
            return {"candidates": []}
        recognizer = EntityRecognitionService(state["snapshot"])
        return {"candidates": recognizer.recognize(state["text"], state["context"])}

    def disambiguate_entity_node(self, state: QueryState) -> dict:
        override = state.get("resolution_override")
        if override is not None:
            return {"disambiguation": override}

        intent = state["intent"].intent
        if is_set_level(intent, state["slots"]):
            return {"disambiguation": None}

        result = self.disambiguator.disambiguate(state["candidates"], state["text"], state["context"])
        check = self.disambiguator.validate_result(result)
        if not check.valid:
            logger.error(f"❌ Invalid disambiguation result: {check.warning}")
            return {"disambiguation": result, "status": TurnStatus.ERROR, "message": check.warning}

        update: Dict[str, Any] = {"disambiguation": result}
        if result.status == DisambiguationStatus.NEEDS_CLARIFICATION:
            update.update(status=TurnStatus.NEEDS_CLARIFICATION, message=result.clarification_prompt)
        elif result.status == DisambiguationStatus.NO_MATCH and intent in MERCHANT_BOUND_INTENTS:
            update.update(status=TurnStatus.NO_MATCH, message=result.reason)
        elif check.warning:
            update["message"] = check.warning
        return update

    def plan_tasks_node(self, state: QueryState) -> dict:
        slots: QuerySlots = state["slots"]
        resolved = state.get("disambiguation")
        aggregation = slots.aggregation or AggregationConfig()

        entities = PlanEntities(
            merchant_id=resolved.merchant_id if resolved is not None and resolved.is_resolved else None,
            merchant_name=resolved.merchant_name if resolved is not None and resolved.is_resolved else None,
            merchants=list(slots.merchants),
            filters=slots.filters.model_dump(exclude_none=True) if slots.filters else None,
            time_range=slots.time_range.model_dump(exclude_none=True) if slots.time_range else None,
            comparison_target=slots.comparison_target,
            operation=aggregation.operation if aggregation.operation.value != "count" else None,
            field=aggregation.field,
            group_by=aggregation.group_by,
        )
        plan = self.planner.plan(state["intent"].intent, entities, state["context"])
        return {"plan": plan}

    def validate_plan_node(self, state: QueryState) -> dict:
        plan: ExecutionPlan = state["plan"]
        validation = self.planner.validate_plan(plan)

        if not validation.valid:
            return {
                "validation": validation,
                "status": TurnStatus.FALLBACK,
                "message": "; ".join(validation.errors),
            }
        if plan.strategy == PlanStrategy.GENERATIVE_FALLBACK:
            return {
                "validation": validation,
                "status": TurnStatus.FALLBACK,
                "message": f"No analytical tasks for intent {plan.intent.value}",
            }
        return {"validation": validation, "batches": self.planner.get_execution_order(plan.tasks)}

    def execute_tasks_node(self, state: QueryState) -> dict:
        plan: ExecutionPlan = state["plan"]
        tasks = {task.id: task for task in plan.tasks}
        snapshot = state["snapshot"]
        results: Dict[str, Any] = {}

        try:
            for batch in state["batches"]:
                for task_id in sorted(batch, key=lambda tid: tasks[tid].priority):
                    task = tasks[task_id]
                    results[task_id] = self._run_task(task.action, task.params, snapshot)
        except (UsageError, MerchantNotFoundError) as e:
            logger.warning(f"⚠️ Task execution failed: {e}")
            return {"results": results, "status": TurnStatus.ERROR, "message": str(e)}

        logger.info(f"✅ Executed {len(results)} task(s)")
        return {"results": results, "status": TurnStatus.COMPLETED}

    def _run_task(self, action: str, params: Dict[str, Any], snapshot: Sequence[Merchant]) -> Any:
        if action == "aggregate":
            plan = build_analytical_plan(QueryType.AGGREGATION, params)
            return self.aggregation_executor.execute(plan, snapshot)
        if action == "compare":
            plan = build_analytical_plan(QueryType.COMPARISON, params)
            return self.comparison_executor.execute(plan, snapshot)

        handler = SKILL_HANDLERS.get(action)
        if handler is None:
            raise AssistantError(f"No handler registered for action '{action}'")
        return handler(params, snapshot)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @staticmethod
    def _route_after_boundary(state: QueryState) -> str:
        return "end" if state.get("status") else "continue"

    @staticmethod
    def _route_after_disambiguation(state: QueryState) -> str:
        return "end" if state.get("status") else "plan"

    @staticmethod
    def _route_after_validation(state: QueryState) -> str:
        return "end" if state.get("status") else "execute"

    def _build_graph(self):
        """
        Build the per-turn graph.

        Terminal outcomes set `status`; routing ends the turn as soon as a
        status is present.
        """
        workflow = StateGraph(QueryState)

        workflow.add_node("check_boundary", self.check_boundary_node)
        workflow.add_node("detect_context_switch", self.detect_context_switch_node)
        workflow.add_node("classify_intent", self.classify_intent_node)
        workflow.add_node("recognize_entities", self.recognize_entities_node)
        workflow.add_node("disambiguate_entity", self.disambiguate_entity_node)
        workflow.add_node("plan_tasks", self.plan_tasks_node)
        workflow.add_node("validate_plan", self.validate_plan_node)
        workflow.add_node("execute_tasks", self.execute_tasks_node)

        workflow.set_entry_point("check_boundary")
        workflow.add_conditional_edges(
            "check_boundary",
            self._route_after_boundary,
            {"continue": "detect_context_switch", "end": END},
        )
        workflow.add_edge("detect_context_switch", "classify_intent")
        workflow.add_edge("classify_intent", "recognize_entities")
        workflow.add_edge("recognize_entities", "disambiguate_entity")
        workflow.add_conditional_edges(
            "disambiguate_entity",
            self._route_after_disambiguation,
            {"plan": "plan_tasks", "end": END},
        )
        workflow.add_edge("plan_tasks", "validate_plan")
        workflow.add_conditional_edges(
            "validate_plan",
            self._route_after_validation,
            {"execute": "execute_tasks", "end": END},
        )
        workflow.add_edge("execute_tasks", END)

        return workflow.compile()
