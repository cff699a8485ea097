"""
Rules engine package.

Defines the rule model and everything needed to turn authored rules into
executions: value coercion, fact paths and the working set, condition
evaluation, action execution, compilation and the execution engine.

Modules of interest:
- models: Wire models (pydantic) and compiled-rule dataclasses.
- evaluator: Pure evaluation of nested condition groups.
- actions: MODIFY/INSERT/RETRACT/LOG/WEBHOOK effects.
- compiler: Validation against schemas and the rendered artifact.
- engine: Fixed-point matching loop and execution reports.
- payload: Sample facts that satisfy a rule.
"""
