"""
Rules service for the Rule Engine Platform.
"""

from typing import Dict, Any, Optional

from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config

from .adapters.rule_store import HttpRuleStore, RuleStore
from .adapters.webhook_client import WebhookClient
from .authoring import RuleAuthoringService
from .cache.compiled_cache import CompiledRuleCache
from .rules.compiler import RuleCompiler
from .rules.engine import ExecutionEngine
from .rules.models import ExecutionReport, Rule


SERVICE_NAME = "rules"
DEFAULT_PORT = 8020


class RulesService(BaseService):
    """Rules service implementation."""

    def __init__(self, store: Optional[RuleStore] = None, config: Optional[ServiceConfig] = None,
                 webhook_client: Optional[WebhookClient] = None):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config or get_config(SERVICE_NAME, DEFAULT_PORT))

        self.store = store or HttpRuleStore(
            self.config.rule_store_url,
            timeout=self.config.rule_store_timeout_seconds,
            api_key=self.config.rule_store_api_key
        )
        self.compiler = RuleCompiler()
        self.cache = CompiledRuleCache(self.config.compiled_cache_size, self.metrics)
        self.engine = ExecutionEngine(
            self.store,
            compiler=self.compiler,
            cache=self.cache,
            config=self.config,
            metrics=self.metrics,
            webhook_client=webhook_client or WebhookClient(self.config.webhook_timeout_seconds, metrics=self.metrics)
        )
        self.authoring = RuleAuthoringService(self.store, self.compiler, self.cache)

        self._setup_rules_routes()

    def _setup_rules_routes(self):
        """Set up rule execution and authoring routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Rule Engine Platform - Rules Service",
                "version": "1.0.0",
                "capabilities": ["execution", "dry_run", "compilation", "match_payload"]
            }

        @self.app.post("/projects/{project_id}/execute", response_model=ExecutionReport)
        async def execute(project_id: str, request: Request):
            """Execute a rule-set against a list of facts; malformed bodies yield a failed report."""
            return await self.engine.execute_json(project_id, await request.body())

        @self.app.get("/rules/{rule_id}/match-payload")
        async def match_payload(rule_id: str) -> Dict[str, Any]:
            """Generate a fact that satisfies the rule's conditions."""
            return await self.authoring.get_match_payload(rule_id)

        @self.app.post("/rules/validate")
        async def validate_rule(rule: Rule):
            """Validate and compile a rule without saving it."""
            compiled = await self.authoring.validate(rule)
            return {
                "valid": True,
                "modelHash": compiled.model_hash,
                "artifact": compiled.artifact
            }

        @self.app.post("/rules", response_model=Rule)
        async def save_rule(rule: Rule):
            """Validate, compile and persist a rule."""
            return await self.authoring.save(rule)

        @self.app.post("/rules/{rule_id}/regenerate", response_model=Rule)
        async def regenerate_rule(rule_id: str):
            """Recompile a stored rule against its current schemas."""
            return await self.authoring.regenerate(rule_id)

        @self.app.get("/rules/{rule_id}/artifact")
        async def rule_artifact(rule_id: str):
            """Rendered compiled artifact of a rule."""
            return await self.authoring.get_artifact(rule_id)

        @self.app.delete("/projects/{project_id}/cache")
        async def invalidate_cache(project_id: str):
            """Drop the compiled rules cached for a rule-set."""
            removed = self.authoring.invalidate(project_id)
            return {"projectId": project_id, "invalidated": removed}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check rule store reachability."""
        return {"rule_store": await self.store.health_check()}


def create_app():
    """Create rules service application."""
    service = RulesService()
    return service.app


if __name__ == "__main__":
    service = RulesService()
    service.run()
