"""
Rules Service package for the Rule Engine Platform.

This package compiles schema-driven condition/action rules and executes
them against fact sequences. It provides:

- app.main: API surface for execution, authoring and health.
- app.rules: Rule model, compiler, evaluator, action executor and engine.
- app.schema: Schema type registry used to type-check rules and facts.
- app.cache: In-process cache of compiled rules per rule-set.
- app.adapters: Rule store and webhook HTTP clients.

Guidelines:
- Executions share nothing but the compiled-rule cache.
- Keep condition evaluation pure; side effects belong to actions.
- Keep executions observable (metrics + logs) and bounded (caps + timeouts).
"""
