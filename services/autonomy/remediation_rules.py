# services/autonomy/remediation_rules.py

from __future__ import annotations

from typing import List, Optional, Sequence

from services.autonomy.config import RemediationRuleSpec
from services.autonomy.types import ActionSource, RemediationAction, Severity


class RemediationRuleTable:
    """
    Static signal → action table, consulted before the advisor.

    Deterministic, in-memory, no network. First matching rule in
    configuration order wins.
    """

    def __init__(self, rules: Sequence[RemediationRuleSpec]):
        self.rules: List[RemediationRuleSpec] = list(rules)

    def match(self, signal_name: str, severity: Severity) -> Optional[RemediationRuleSpec]:
        for rule in self.rules:
            if rule.signal != signal_name:
                continue
            if severity.rank >= rule.min_severity.rank:
                return rule
        return None

    @staticmethod
    def action_for(rule: RemediationRuleSpec) -> RemediationAction:
        return RemediationAction(
            kind=rule.action_kind,
            params=dict(rule.params),
            source=ActionSource.RULE,
            confidence=1.0,
            reason=f"rule:{rule.id}",
        )
