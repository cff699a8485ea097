"""
Adapters package for the Rules Service.

Contains HTTP client wrappers for external collaborators:

- Rule store: schemas, rule-sets, rules and execution history
- Webhook client: outbound calls made by WEBHOOK actions

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .rule_store import RuleStore, HttpRuleStore, InMemoryRuleStore
from .webhook_client import WebhookClient, WebhookDispatcher, WebhookRequest

__all__ = [
    "RuleStore",
    "HttpRuleStore",
    "InMemoryRuleStore",
    "WebhookClient",
    "WebhookDispatcher",
    "WebhookRequest",
]
