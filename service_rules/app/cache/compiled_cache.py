"""
In-process cache of compiled rules, keyed by rule-set and model hash.
"""

import threading
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple, TYPE_CHECKING

from shared.logging import get_logger

from ..rules.models import CompiledRule, EntityId

if TYPE_CHECKING:
    from shared.metrics import MetricsCollector


CacheKey = Tuple[str, str]


class CompiledRuleCache:
    """LRU over rule-sets; each rule-set maps (rule id, model hash) to a compiled rule.

    A rule-set's entries are replaced as a whole when a rule is added, so a
    reader always sees either the old or the new mapping, never a partial one.
    """

    def __init__(self, max_rule_sets: int = 256, metrics: Optional["MetricsCollector"] = None):
        self.max_rule_sets = max(1, max_rule_sets)
        self.metrics = metrics
        self.logger = get_logger("rules.compiled_cache")
        self._lock = threading.Lock()
        self._rule_sets: "OrderedDict[str, Dict[CacheKey, CompiledRule]]" = OrderedDict()

    def get(self, project_id: EntityId, rule_id: EntityId, model_hash: str) -> Optional[CompiledRule]:
        key = (str(rule_id), model_hash)
        with self._lock:
            entries = self._rule_sets.get(str(project_id))
            if entries is not None:
                self._rule_sets.move_to_end(str(project_id))
            compiled = entries.get(key) if entries else None
        self._record("hit" if compiled is not None else "miss")
        return compiled

    def put(self, project_id: EntityId, compiled: CompiledRule) -> None:
        project_key = str(project_id)
        rule_key = str(compiled.rule_id)
        with self._lock:
            current = self._rule_sets.get(project_key, {})
            # Older hashes of the same rule are dropped
            entries = {k: v for k, v in current.items() if k[0] != rule_key}
            entries[(rule_key, compiled.model_hash)] = compiled
            self._rule_sets[project_key] = entries
            self._rule_sets.move_to_end(project_key)
            while len(self._rule_sets) > self.max_rule_sets:
                evicted, _ = self._rule_sets.popitem(last=False)
                self.logger.debug("Compiled rule-set evicted", project_id=evicted)

    def get_or_compile(self, project_id: EntityId, rule_id: EntityId, model_hash: str,
                       compile_fn: Callable[[], CompiledRule]) -> CompiledRule:
        """Return the cached compiled rule or compile and store it.

        Errors raised by ``compile_fn`` propagate and nothing is cached.
        """
        compiled = self.get(project_id, rule_id, model_hash)
        if compiled is not None:
            return compiled
        compiled = compile_fn()
        self.put(project_id, compiled)
        return compiled

    def invalidate(self, project_id: Optional[EntityId] = None, rule_id: Optional[EntityId] = None) -> int:
        """Drop cached entries; returns how many compiled rules were removed."""
        removed = 0
        with self._lock:
            if project_id is None and rule_id is None:
                removed = sum(len(entries) for entries in self._rule_sets.values())
                self._rule_sets.clear()
            else:
                projects = [str(project_id)] if project_id is not None else list(self._rule_sets)
                for project_key in projects:
                    entries = self._rule_sets.get(project_key)
                    if entries is None:
                        continue
                    if rule_id is None:
                        removed += len(entries)
                        del self._rule_sets[project_key]
                        continue
                    kept = {k: v for k, v in entries.items() if k[0] != str(rule_id)}
                    removed += len(entries) - len(kept)
                    self._rule_sets[project_key] = kept

        if removed:
            self._record("invalidation")
            self.logger.info(
                "Compiled rules invalidated",
                project_id=project_id,
                rule_id=rule_id,
                removed=removed
            )
        return removed

    def size(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._rule_sets.values())

    def _record(self, event: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("compiled_cache_events_total", event=event)
