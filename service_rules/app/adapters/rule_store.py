"""
Rule, schema and rule-set storage collaborators for the Rules Service.

``RuleStore`` is the interface the engine and authoring operations consume.
``HttpRuleStore`` talks to the platform's REST storage service;
``InMemoryRuleStore`` backs local runs and tests.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ExternalServiceError, NotFoundError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from ..rules.models import EntityId, ExecutionReport, Rule, RuleSet, Schema


READ_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)


def build_history_payload(report: ExecutionReport, input_facts: List[Dict[str, Any]],
                          project_id: EntityId, dry_run: bool) -> Dict[str, Any]:
    """Execution history record for audit and dashboards."""
    return {
        "projectId": project_id,
        "inputFacts": input_facts,
        "outputFacts": report.result_facts,
        "firedRules": [r.model_dump(mode="json", by_alias=True) for r in report.fired_rules],
        "webhookResults": [w.model_dump(mode="json", by_alias=True) for w in report.webhook_results],
        "success": report.success,
        "dryRun": dry_run,
        "executionTimeMs": report.execution_time_ms,
        "errorMessage": report.error_message,
        "executedAt": datetime.now(timezone.utc).isoformat(),
    }


class RuleStore(ABC):
    """Storage collaborator consumed by the engine and authoring operations."""

    @abstractmethod
    async def get_schema(self, schema_id: EntityId) -> Schema:
        ...

    @abstractmethod
    async def get_project(self, project_id: EntityId) -> RuleSet:
        ...

    @abstractmethod
    async def get_rules_for_project(self, project_id: EntityId) -> List[Rule]:
        """Every rule of a rule-set, enabled or not."""

    @abstractmethod
    async def get_rule(self, rule_id: EntityId) -> Rule:
        ...

    @abstractmethod
    async def save_rule(self, rule: Rule) -> Rule:
        ...

    @abstractmethod
    async def record_execution_history(self, report: ExecutionReport, input_facts: List[Dict[str, Any]],
                                       project_id: EntityId, dry_run: bool = False) -> None:
        ...

    async def health_check(self) -> str:
        return "ok"


class HttpRuleStore(RuleStore):
    """REST/JSON client for the platform's rule storage service."""

    def __init__(self, base_url: str, timeout: float = 5.0, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.api_key = api_key
        self.transport = transport
        self.logger = get_logger("rules.rule_store")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            failure_types=(httpx.TransportError, ExternalServiceError),
            name="rule_store"
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _request(self, method: str, path: str, entity: str, entity_id: Any = None,
                       json_body: Any = None) -> Any:
        """Send one request through the circuit breaker and decode the JSON reply."""

        async def _send():
            url = f"{self.base_url}{path}"
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, json=json_body, headers=self._headers())

            if response.status_code == 404:
                raise NotFoundError(entity, entity_id if entity_id is not None else path)

            if response.status_code >= 400:
                self.logger.error(
                    "Rule store request failed",
                    method=method,
                    url=url,
                    status_code=response.status_code,
                    response=response.text[:500]
                )
                raise ExternalServiceError(
                    service="rule_store",
                    message=f"Unexpected status {response.status_code}",
                    details={"status_code": response.status_code, "path": path}
                )

            if not response.content:
                return None
            return response.json()

        try:
            return await self.circuit_breaker.call(_send)
        except CircuitBreakerOpenException as e:
            raise ExternalServiceError(service="rule_store", message=str(e))

    @retry_on_exception((httpx.TransportError,), config=READ_RETRY, reraise=True)
    async def _get(self, path: str, entity: str, entity_id: Any) -> Any:
        return await self._request("GET", path, entity, entity_id)

    async def _read(self, path: str, entity: str, entity_id: Any) -> Any:
        try:
            return await self._get(path, entity, entity_id)
        except httpx.TransportError as e:
            self.logger.error("Rule store unreachable", path=path, error=str(e))
            raise ExternalServiceError(service="rule_store", message=str(e), details={"path": path})

    async def get_schema(self, schema_id: EntityId) -> Schema:
        data = await self._read(f"/schemas/{schema_id}", "Schema", schema_id)
        return Schema.model_validate(data)

    async def get_project(self, project_id: EntityId) -> RuleSet:
        data = await self._read(f"/projects/{project_id}", "Project", project_id)
        return RuleSet.model_validate(data)

    async def get_rules_for_project(self, project_id: EntityId) -> List[Rule]:
        data = await self._read(f"/projects/{project_id}/rules", "Project", project_id)
        return [Rule.model_validate(item) for item in data or []]

    async def get_rule(self, rule_id: EntityId) -> Rule:
        data = await self._read(f"/rules/{rule_id}", "Rule", rule_id)
        return Rule.model_validate(data)

    async def save_rule(self, rule: Rule) -> Rule:
        body = rule.model_dump(mode="json", by_alias=True)
        method, path = ("PUT", f"/rules/{rule.id}") if rule.id is not None else ("POST", "/rules")
        try:
            data = await self._request(method, path, "Rule", rule.id, json_body=body)
        except httpx.TransportError as e:
            raise ExternalServiceError(service="rule_store", message=str(e), details={"path": path})
        return Rule.model_validate(data) if data else rule

    async def record_execution_history(self, report: ExecutionReport, input_facts: List[Dict[str, Any]],
                                       project_id: EntityId, dry_run: bool = False) -> None:
        payload = build_history_payload(report, input_facts, project_id, dry_run)
        try:
            await self._request("POST", f"/projects/{project_id}/executions", "Project", project_id,
                                json_body=payload)
        except httpx.TransportError as e:
            raise ExternalServiceError(service="rule_store", message=str(e))

    async def health_check(self) -> str:
        if self.circuit_breaker.state.value == "open":
            return "degraded"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/health", headers=self._headers())
            return "ok" if response.status_code == 200 else "error"
        except httpx.RequestError as e:
            self.logger.warning("Rule store health check failed", error=str(e))
            return "error"


class InMemoryRuleStore(RuleStore):
    """Dictionary-backed store; entities are keyed by the string form of their id."""

    def __init__(self, schemas: Optional[List[Schema]] = None, projects: Optional[List[RuleSet]] = None,
                 rules: Optional[List[Rule]] = None):
        self.schemas: Dict[str, Schema] = {}
        self.projects: Dict[str, RuleSet] = {}
        self.rules: Dict[str, Rule] = {}
        self.history: List[Dict[str, Any]] = []
        self._next_rule_id = 1
        self.logger = get_logger("rules.rule_store")

        for schema in schemas or []:
            self.add_schema(schema)
        for project in projects or []:
            self.add_project(project)
        for rule in rules or []:
            self.rules[str(rule.id)] = rule.model_copy(deep=True)

    def add_schema(self, schema: Schema) -> None:
        self.schemas[str(schema.id)] = schema

    def add_project(self, project: RuleSet) -> None:
        self.projects[str(project.id)] = project

    async def get_schema(self, schema_id: EntityId) -> Schema:
        schema = self.schemas.get(str(schema_id))
        if schema is None:
            raise NotFoundError("Schema", schema_id)
        return schema

    async def get_project(self, project_id: EntityId) -> RuleSet:
        project = self.projects.get(str(project_id))
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def get_rules_for_project(self, project_id: EntityId) -> List[Rule]:
        if str(project_id) not in self.projects:
            raise NotFoundError("Project", project_id)
        return [
            rule.model_copy(deep=True) for rule in self.rules.values()
            if str(rule.project_id) == str(project_id)
        ]

    async def get_rule(self, rule_id: EntityId) -> Rule:
        rule = self.rules.get(str(rule_id))
        if rule is None:
            raise NotFoundError("Rule", rule_id)
        return rule.model_copy(deep=True)

    async def save_rule(self, rule: Rule) -> Rule:
        stored = rule.model_copy(deep=True)
        if stored.id is None:
            while str(self._next_rule_id) in self.rules:
                self._next_rule_id += 1
            stored.id = self._next_rule_id
        self.rules[str(stored.id)] = stored
        return stored.model_copy(deep=True)

    async def record_execution_history(self, report: ExecutionReport, input_facts: List[Dict[str, Any]],
                                       project_id: EntityId, dry_run: bool = False) -> None:
        self.history.append(build_history_payload(report, copy.deepcopy(input_facts), project_id, dry_run))
