"""
Rule authoring operations: validate, save, regenerate and inspect rules.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.errors import CompilationError, NotFoundError, ValidationError
from shared.logging import get_logger

from .adapters.rule_store import RuleStore
from .cache.compiled_cache import CompiledRuleCache
from .rules.compiler import RuleCompiler, model_hash
from .rules.models import CompiledRule, EntityId, Rule, RuleSet, Schema
from .rules.payload import MatchPayloadGenerator


@dataclass
class RuleContext:
    """The rule-set and schemas a rule compiles against."""
    project: RuleSet
    input_schema: Schema
    output_schemas: List[Schema]


class RuleAuthoringService:
    """Authoring-side operations backed by the rule store."""

    def __init__(self, store: RuleStore, compiler: Optional[RuleCompiler] = None,
                 cache: Optional[CompiledRuleCache] = None,
                 payload_generator: Optional[MatchPayloadGenerator] = None):
        self.store = store
        self.compiler = compiler or RuleCompiler()
        self.cache = cache or CompiledRuleCache()
        self.payload_generator = payload_generator or MatchPayloadGenerator()
        self.logger = get_logger("rules.authoring")

    async def context_for(self, rule: Rule) -> RuleContext:
        if rule.project_id is None:
            raise ValidationError("Rule must belong to a rule-set", details={"field": "projectId"})
        try:
            project = await self.store.get_project(rule.project_id)
        except NotFoundError as e:
            raise ValidationError(e.message, details={"field": "projectId"})

        if project.input_schema_ids and str(rule.schema_id) not in {str(s) for s in project.input_schema_ids}:
            raise ValidationError(
                f"Schema {rule.schema_id} is not an input schema of rule-set {project.id}",
                details={"field": "schemaId", "inputSchemaIds": project.input_schema_ids}
            )

        try:
            input_schema = await self.store.get_schema(rule.schema_id)
            output_schemas = [await self.store.get_schema(sid) for sid in project.output_schema_ids]
        except NotFoundError as e:
            raise ValidationError(e.message, details={"field": "schemaId"})
        return RuleContext(project, input_schema, output_schemas)

    def _compile(self, rule: Rule, context: RuleContext) -> CompiledRule:
        return self.compiler.compile(
            rule,
            context.input_schema,
            context.output_schemas,
            context.project.allowed_output_types
        )

    async def validate(self, rule: Rule) -> CompiledRule:
        """Compile without persisting; raises ValidationError or CompilationError."""
        return self._compile(rule, await self.context_for(rule))

    async def save(self, rule: Rule) -> Rule:
        """Validate, compile and persist a rule.

        Validation errors reject the save. A compilation error still saves
        the authoring model but keeps the previously stored artifact.
        """
        context = await self.context_for(rule)
        to_save = rule.model_copy(deep=True)
        try:
            compiled = self._compile(rule, context)
            to_save.compiled_artifact = compiled.artifact
            to_save.compiled_hash = compiled.model_hash
        except CompilationError as e:
            previous = await self._previous(rule.id)
            to_save.compiled_artifact = previous.compiled_artifact if previous else None
            to_save.compiled_hash = previous.compiled_hash if previous else None
            self.logger.warning(
                "Rule saved without a new compiled artifact",
                rule_id=rule.id,
                rule_name=rule.name,
                error=e.message
            )

        saved = await self.store.save_rule(to_save)
        self.cache.invalidate(project_id=saved.project_id, rule_id=saved.id)
        self.logger.info("Rule saved", rule_id=saved.id, rule_name=saved.name, project_id=saved.project_id)
        return saved

    async def _previous(self, rule_id: Optional[EntityId]) -> Optional[Rule]:
        if rule_id is None:
            return None
        try:
            return await self.store.get_rule(rule_id)
        except NotFoundError:
            return None

    async def regenerate(self, rule_id: EntityId) -> Rule:
        """Recompile a stored rule against its current schemas and persist the artifact."""
        rule = await self.store.get_rule(rule_id)
        compiled = self._compile(rule, await self.context_for(rule))

        rule.compiled_artifact = compiled.artifact
        rule.compiled_hash = compiled.model_hash
        saved = await self.store.save_rule(rule)
        self.cache.invalidate(project_id=saved.project_id, rule_id=saved.id)

        self.logger.info("Compiled artifact regenerated", rule_id=rule_id, model_hash=compiled.model_hash)
        return saved

    async def get_artifact(self, rule_id: EntityId) -> Dict[str, Any]:
        """The rendered compiled form of a rule and whether the stored copy is current."""
        rule = await self.store.get_rule(rule_id)
        context = await self.context_for(rule)
        compiled = self._cached_compile(rule, context)
        return {
            "ruleId": rule.id,
            "ruleName": rule.name,
            "modelHash": compiled.model_hash,
            "artifact": compiled.artifact,
            "storedHash": rule.compiled_hash,
            "upToDate": rule.compiled_hash == compiled.model_hash,
        }

    async def get_match_payload(self, rule_id: EntityId) -> Dict[str, Any]:
        """A minimal fact that satisfies the rule's conditions."""
        rule = await self.store.get_rule(rule_id)
        context = await self.context_for(rule)
        compiled = self._cached_compile(rule, context)
        return self.payload_generator.generate(compiled, context.input_schema)

    def _cached_compile(self, rule: Rule, context: RuleContext) -> CompiledRule:
        digest = model_hash(rule, context.input_schema, context.output_schemas)
        return self.cache.get_or_compile(
            context.project.id,
            rule.id,
            digest,
            lambda: self._compile(rule, context)
        )

    def invalidate(self, project_id: Optional[EntityId] = None) -> int:
        return self.cache.invalidate(project_id=project_id)
