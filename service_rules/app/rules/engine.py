"""
Execution engine for the Rules Service.

One ``execute`` call loads the enabled rules of a rule-set, runs them to a
fixed point over a working set built from the input facts, and returns an
immutable ``ExecutionReport``. Nothing but the compiled-rule cache is shared
between executions.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from shared.config import BaseConfig
from shared.errors import FatalExecutionError, RuleEngineException, ValidationError
from shared.logging import get_logger, set_execution_context
from shared.metrics import MetricsCollector

from ..adapters.rule_store import RuleStore
from ..adapters.webhook_client import WebhookClient, WebhookDispatcher
from ..cache.compiled_cache import CompiledRuleCache
from ..schema.registry import SchemaRegistry
from .actions import ActionContext, ActionExecutor, ActionFailure
from .compiler import RuleCompiler, model_hash
from .evaluator import evaluate
from .facts import WorkingSet
from .models import (
    CompiledRule, EntityId, ExecutionReport, ExecutionRequest, FiredRule,
    Rule, RuleSet, Schema, WebhookResult
)


class DeadlineExceeded(Exception):
    """The execution ran past its request timeout."""


@dataclass
class ExecutionPlan:
    """Everything one execution needs, resolved up front."""
    project: RuleSet
    input_schema: Schema
    registry: SchemaRegistry
    facts: List[Dict[str, Any]]
    rules: List[CompiledRule]
    faults: List[FiredRule] = field(default_factory=list)


@dataclass
class ExecutionTrace:
    """Mutable state accumulated while matching; read when reporting."""
    working_set: WorkingSet
    rules: List[CompiledRule]
    fire_counts: List[int]
    errors: Dict[int, str] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    total_firings: int = 0
    iterations: int = 0

    def fired_rules(self) -> List[FiredRule]:
        return [
            FiredRule(
                rule_id=rule.rule_id,
                rule_name=rule.rule_name,
                fire_count=self.fire_counts[position],
                error=self.errors.get(position)
            )
            for position, rule in enumerate(self.rules)
            if self.fire_counts[position] > 0 or position in self.errors
        ]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionEngine:
    """Runs compiled rules of a rule-set against incoming facts."""

    def __init__(self,
                 store: RuleStore,
                 compiler: Optional[RuleCompiler] = None,
                 cache: Optional[CompiledRuleCache] = None,
                 config: Optional[BaseConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 webhook_client: Optional[WebhookClient] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.config = config or BaseConfig()
        self.compiler = compiler or RuleCompiler()
        self.cache = cache or CompiledRuleCache(self.config.compiled_cache_size, metrics)
        self.metrics = metrics
        self.webhook_client = webhook_client or WebhookClient(self.config.webhook_timeout_seconds, metrics=metrics)
        self.clock = clock
        self.logger = get_logger("rules.engine")
        self._background: Set[asyncio.Task] = set()

    async def execute(self, project_id: EntityId, request: ExecutionRequest) -> ExecutionReport:
        """Execute a rule-set against the request's facts."""
        started = time.monotonic()
        deadline = started + self.config.execution_timeout_seconds
        execution_id = set_execution_context(project_id)
        dispatcher = WebhookDispatcher(self.webhook_client, self.config.webhook_max_concurrency)

        self.logger.info(
            "Execution started",
            project_id=project_id,
            execution_id=execution_id,
            dry_run=request.dry_run
        )

        trace: Optional[ExecutionTrace] = None
        plan: Optional[ExecutionPlan] = None
        success, error_message = True, None
        try:
            plan = await asyncio.wait_for(
                self.prepare(project_id, request),
                timeout=self.config.execution_timeout_seconds
            )
            trace = ExecutionTrace(
                working_set=WorkingSet.from_facts(plan.facts, plan.input_schema.name),
                rules=plan.rules,
                fire_counts=[0] * len(plan.rules)
            )
            executor = ActionExecutor(plan.registry, dispatcher)
            await self._run(trace, executor, deadline)

        except FatalExecutionError as e:
            success, error_message = False, e.message
            trace = None
            self.logger.warning("Execution failed", project_id=project_id, error=e.message)
        except (DeadlineExceeded, asyncio.TimeoutError):
            success = False
            error_message = f"Execution timed out after {self.config.execution_timeout_seconds}s"
            self.logger.warning("Execution timed out", project_id=project_id, partial=trace is not None)

        webhook_results = await dispatcher.join(timeout=max(0.0, deadline - time.monotonic()))
        report = self._report(trace, plan, success, error_message, webhook_results, request.dry_run, started)

        facts_in = request.facts if isinstance(request.facts, list) else []
        self._finish(report, facts_in, project_id, request.dry_run, trace.total_firings if trace else 0, started)
        return report

    async def execute_json(self, project_id: EntityId, body: Union[bytes, str]) -> ExecutionReport:
        """Execute from a raw JSON request body.

        A body that is not valid JSON or does not match ``ExecutionRequest``
        yields a failed report instead of an error response.
        """
        try:
            request = ExecutionRequest.model_validate_json(body)
        except PydanticValidationError as e:
            started = time.monotonic()
            set_execution_context(project_id)
            error = e.errors()[0]
            location = ".".join(str(part) for part in error.get("loc", ()))
            message = f"Malformed input: {error['msg']}" + (f" at '{location}'" if location else "")
            self.logger.warning("Execution failed", project_id=project_id, error=message)
            report = self._report(None, None, False, message, [], False, started)
            self._finish(report, [], project_id, False, 0, started)
            return report
        return await self.execute(project_id, request)

    def _finish(self, report: ExecutionReport, facts_in: List[Dict[str, Any]], project_id: EntityId,
                dry_run: bool, firings: int, started: float) -> None:
        self._record_history(report, facts_in, project_id, dry_run)
        if self.metrics is not None:
            self.metrics.record_execution(report.success, dry_run, time.monotonic() - started, firings)

        self.logger.info(
            "Execution completed",
            project_id=project_id,
            success=report.success,
            fired_rules=len(report.fired_rules),
            webhooks=len(report.webhook_results),
            execution_time_ms=report.execution_time_ms
        )

    # Loading

    async def prepare(self, project_id: EntityId, request: ExecutionRequest) -> ExecutionPlan:
        """Resolve the rule-set, its schemas, the input facts and the compiled rules."""
        try:
            project = await self.store.get_project(project_id)
        except RuleEngineException as e:
            raise FatalExecutionError(f"Rule-set {project_id} cannot be loaded: {e.message}")

        schema_id = request.schema_id
        if schema_id is None:
            if not project.input_schema_ids:
                raise FatalExecutionError(f"Rule-set {project_id} declares no input schema")
            schema_id = project.input_schema_ids[0]
        elif project.input_schema_ids and str(schema_id) not in {str(s) for s in project.input_schema_ids}:
            raise FatalExecutionError(f"Schema {schema_id} is not an input schema of rule-set {project_id}")

        schemas: Dict[str, Schema] = {}
        input_schema = await self._load_schema(schemas, schema_id)
        output_schemas = [await self._load_schema(schemas, sid) for sid in project.output_schema_ids]
        registry = SchemaRegistry(schemas.values())

        facts = self._validate_facts(registry, input_schema, request.facts)

        try:
            rules = await self.store.get_rules_for_project(project_id)
        except RuleEngineException as e:
            raise FatalExecutionError(f"Rules of rule-set {project_id} cannot be loaded: {e.message}")

        compiled, faults = await self._compile_rules(project, rules, schemas, output_schemas)
        for schema in schemas.values():
            registry.register(schema)

        now = self.clock()
        active = [rule for rule in compiled if rule.effective_window.contains(now)]
        # sorted() is stable, so equal priorities keep rule-set order
        active = sorted(active, key=lambda rule: -rule.priority)

        self.logger.debug(
            "Execution plan ready",
            project_id=project_id,
            rules=len(active),
            skipped=len(compiled) - len(active),
            faults=len(faults),
            facts=len(facts)
        )
        return ExecutionPlan(project, input_schema, registry, facts, active, faults)

    async def _load_schema(self, schemas: Dict[str, Schema], schema_id: EntityId) -> Schema:
        if str(schema_id) in schemas:
            return schemas[str(schema_id)]
        try:
            schema = await self.store.get_schema(schema_id)
        except RuleEngineException as e:
            raise FatalExecutionError(f"Schema {schema_id} cannot be resolved: {e.message}")
        schemas[str(schema_id)] = schema
        return schema

    @staticmethod
    def _validate_facts(registry: SchemaRegistry, schema: Schema, facts: Any) -> List[Dict[str, Any]]:
        if not isinstance(facts, list):
            raise FatalExecutionError("Malformed input: facts must be a JSON array of objects")
        for index, fact in enumerate(facts):
            try:
                registry.validate_fact(schema, fact)
            except ValidationError as e:
                raise FatalExecutionError(f"Malformed input fact #{index}: {e.message}")
        return facts

    async def _compile_rules(self, project: RuleSet, rules: List[Rule], schemas: Dict[str, Schema],
                             output_schemas: List[Schema]) -> Tuple[List[CompiledRule], List[FiredRule]]:
        compiled: List[CompiledRule] = []
        faults: List[FiredRule] = []

        for rule in rules:
            if not rule.enabled:
                continue
            try:
                rule_schema = await self._rule_schema(schemas, rule.schema_id)
                digest = model_hash(rule, rule_schema, output_schemas)
                compiled.append(self.cache.get_or_compile(
                    project.id,
                    rule.id,
                    digest,
                    lambda: self.compiler.compile(rule, rule_schema, output_schemas, project.allowed_output_types)
                ))
            except RuleEngineException as e:
                self.logger.warning(
                    "Rule skipped: compilation failed",
                    rule_id=rule.id,
                    rule_name=rule.name,
                    code=e.code,
                    error=e.message
                )
                faults.append(FiredRule(rule_id=rule.id, rule_name=rule.name, fire_count=0, error=e.message))
        return compiled, faults

    async def _rule_schema(self, schemas: Dict[str, Schema], schema_id: EntityId) -> Schema:
        if str(schema_id) not in schemas:
            schemas[str(schema_id)] = await self.store.get_schema(schema_id)
        return schemas[str(schema_id)]

    # Matching

    async def _run(self, trace: ExecutionTrace, executor: ActionExecutor, deadline: float) -> None:
        """Match and fire until no rule fires in a full pass."""
        seen: Dict[Tuple[int, int], int] = {}
        locked: Set[Tuple[int, int]] = set()
        closed_groups: Set[str] = set()

        for iteration in range(1, self.config.max_iterations + 1):
            trace.iterations = iteration
            fired = False

            for position, rule in enumerate(trace.rules):
                if time.monotonic() > deadline:
                    raise DeadlineExceeded()
                for slot in trace.working_set.live_slots():
                    if rule.activation_group and rule.activation_group in closed_groups:
                        break
                    if not slot.live or slot.fact_type != rule.fact_type:
                        continue
                    key = (position, slot.index)
                    if key in locked or seen.get(key) == slot.version:
                        continue

                    seen[key] = slot.version
                    try:
                        matched = evaluate(rule.predicate, slot.data, rule.field_types, rule.fact_type)
                    except Exception as e:
                        trace.errors.setdefault(position, f"Evaluation failed: {e}")
                        self.logger.warning(
                            "Rule evaluation failed",
                            rule_id=rule.rule_id,
                            rule_name=rule.rule_name,
                            fact_index=slot.index,
                            error=str(e)
                        )
                        continue
                    if not matched:
                        continue

                    trace.total_firings += 1
                    if trace.total_firings > self.config.max_rule_firings:
                        raise FatalExecutionError(
                            f"Rule firing limit of {self.config.max_rule_firings} exceeded; "
                            "rules are likely re-triggering each other"
                        )

                    context = ActionContext(slot, trace.working_set, rule.rule_id, rule.rule_name)
                    try:
                        outcome = executor.apply(rule.effects, context)
                    except ActionFailure as e:
                        trace.logs.extend(e.outcome.logs)
                        trace.errors.setdefault(position, e.message)
                        seen[key] = slot.version
                        # Effects applied before the failure are matched in the next pass
                        if e.outcome.mutated_facts or e.outcome.new_facts or e.outcome.retracted:
                            fired = True
                        self.logger.warning(
                            "Rule firing failed",
                            rule_id=rule.rule_id,
                            rule_name=rule.rule_name,
                            fact_index=slot.index,
                            error=e.message
                        )
                        continue

                    trace.fire_counts[position] += 1
                    trace.logs.extend(outcome.logs)
                    # Refraction: the rule's own modifications do not re-trigger it
                    seen[key] = slot.version
                    if rule.lock_on_active:
                        locked.add(key)
                    if rule.activation_group:
                        closed_groups.add(rule.activation_group)
                    fired = True

                    self.logger.debug(
                        "Rule fired",
                        rule_id=rule.rule_id,
                        rule_name=rule.rule_name,
                        fact_index=slot.index,
                        iteration=iteration
                    )

                    await asyncio.sleep(0)
                    if time.monotonic() > deadline:
                        raise DeadlineExceeded()

            if not fired:
                return

        raise FatalExecutionError(
            f"Iteration limit of {self.config.max_iterations} reached before rules settled"
        )

    # Reporting

    def _report(self, trace: Optional[ExecutionTrace], plan: Optional[ExecutionPlan], success: bool,
                error_message: Optional[str], webhook_results: List[WebhookResult],
                dry_run: bool, started: float) -> ExecutionReport:
        fired_rules: List[FiredRule] = []
        result_facts: List[Dict[str, Any]] = []
        logs: List[str] = []
        if trace is not None:
            fired_rules = trace.fired_rules()
            result_facts = trace.working_set.snapshot()
            logs = list(trace.logs)
            if plan is not None:
                fired_rules.extend(plan.faults)

        return ExecutionReport(
            success=success,
            result_facts=result_facts,
            fired_rules=fired_rules,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            error_message=error_message,
            webhook_results=webhook_results,
            logs=logs,
            dry_run=dry_run
        )

    def _record_history(self, report: ExecutionReport, input_facts: List[Dict[str, Any]],
                        project_id: EntityId, dry_run: bool) -> None:
        task = asyncio.get_running_loop().create_task(
            self._persist_history(report, input_facts, project_id, dry_run)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_history(self, report: ExecutionReport, input_facts: List[Dict[str, Any]],
                               project_id: EntityId, dry_run: bool) -> None:
        try:
            await self.store.record_execution_history(report, input_facts, project_id, dry_run)
        except Exception as e:
            self.logger.warning("Execution history not recorded", project_id=project_id, error=str(e))

    async def drain(self) -> None:
        """Wait for pending history writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
