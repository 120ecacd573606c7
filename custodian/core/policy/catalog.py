from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from custodian.core.errors import PolicyNotFoundError
from custodian.core.policy.models import FALLBACK_POLICY_NAME, RetentionPolicy, default_policies


class PolicyCatalog:
    """
    Read-only map of policy name -> RetentionPolicy.

    Names are matched case-insensitively. Policies are frozen models, so
    handing them out does not expose mutable state.
    """

    def __init__(self, policies: Optional[Iterable[RetentionPolicy]] = None, *, fallback_name: str = FALLBACK_POLICY_NAME):
        pols = list(policies) if policies is not None else default_policies()
        self._by_name: Dict[str, RetentionPolicy] = {}
        for p in pols:
            if p.name in self._by_name:
                raise ValueError(f"duplicate policy {p.name!r}")
            self._by_name[p.name] = p
        fb = str(fallback_name or "").strip().upper()
        if fb not in self._by_name:
            raise ValueError(f"fallback policy {fallback_name!r} is not in the catalog")
        self._fallback_name = fb

    @classmethod
    def from_config(cls, retention_cfg) -> "PolicyCatalog":
        return cls(retention_cfg.policies, fallback_name=retention_cfg.fallback_policy)

    def get_policy(self, name: str) -> RetentionPolicy:
        key = str(name or "").strip().upper()
        pol = self._by_name.get(key)
        if pol is None:
            raise PolicyNotFoundError(policy_name=str(name or ""))
        return pol

    def fallback(self) -> RetentionPolicy:
        return self._by_name[self._fallback_name]

    def names(self) -> List[str]:
        return sorted(self._by_name.keys())

    def policies(self) -> List[RetentionPolicy]:
        return [self._by_name[n] for n in self.names()]

    def __contains__(self, name: object) -> bool:
        return str(name or "").strip().upper() in self._by_name
