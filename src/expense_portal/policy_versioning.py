"""Version tracking for site policy updates.

Each accepted policy update is stamped with a semantic version and a
deterministic hash of its configuration so that an expense's policy decision
can be traced back to the exact rule set it was evaluated against.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from hashlib import sha256
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - import cycles avoided at runtime
    from .models import ExpenseRequest, Policy, Site
    from .policy import PolicyEngine, PolicyResult


def _stable_hash(config: dict[str, Any]) -> str:
    """Return a deterministic hash for a policy configuration."""

    normalized = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str).encode(
        "utf-8"
    )
    return sha256(normalized).hexdigest()


def _parse_version(version: str | None) -> tuple[int, int, int]:
    if not version:
        return (1, 0, 0)

    parts = str(version).split(".")
    try:
        major = int(parts[0])
        minor = int(parts[1]) if len(parts) > 1 else 0
        patch = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        return (1, 0, 0)

    return (major, minor, patch)


def policy_config(policy: Policy) -> dict[str, Any]:
    """Return a JSON-ready, order-independent view of a policy."""

    data = policy.model_dump(mode="json")
    data["weekend_disallow"] = sorted(data["weekend_disallow"])
    return data


@dataclass(frozen=True)
class PolicyVersion:
    """Semantic policy version paired with a configuration hash."""

    major: int
    minor: int
    patch: int
    config_hash: str

    @classmethod
    def from_config(cls, version: str | None, rule_config: dict[str, Any]) -> PolicyVersion:
        major, minor, patch = _parse_version(version)
        return cls(
            major=major,
            minor=minor,
            patch=patch,
            config_hash=_stable_hash(rule_config),
        )

    @classmethod
    def for_policy(cls, policy: Policy, version: str | None = None) -> PolicyVersion:
        return cls.from_config(version, policy_config(policy))

    @property
    def label(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def next_for(self, previous_config: dict[str, Any], config: dict[str, Any]) -> PolicyVersion:
        """Return the version that follows this one for an updated config.

        Tightening a limit or adding a restriction is a minor change; any
        other edit (loosening, tolerance tweaks) is a patch. An unchanged
        config keeps the current version.
        """

        config_hash = _stable_hash(config)
        if config_hash == self.config_hash:
            return self
        if _is_tightening(previous_config, config):
            return PolicyVersion(self.major, self.minor + 1, 0, config_hash)
        return PolicyVersion(self.major, self.minor, self.patch + 1, config_hash)

    def change_type(self, previous: PolicyVersion) -> str:
        if self.config_hash == previous.config_hash:
            return "no-op"
        if self.major != previous.major:
            return "breaking"
        if self.minor != previous.minor:
            return "feature"
        if self.patch != previous.patch:
            return "patch"
        return "config-drift"


def _is_tightening(previous: dict[str, Any], current: dict[str, Any]) -> bool:
    if set(current.get("weekend_disallow", [])) - set(previous.get("weekend_disallow", [])):
        return True
    if int(current.get("duplicate_window_days", 0)) > int(
        previous.get("duplicate_window_days", 0)
    ):
        return True
    for key in ("per_category_limits", "require_director_above"):
        old_map = previous.get(key, {}) or {}
        for category, amount in (current.get(key, {}) or {}).items():
            if category not in old_map or float(amount) < float(old_map[category]):
                return True
    old_cash, new_cash = previous.get("cash_max"), current.get("cash_max")
    if new_cash is not None and (old_cash is None or float(new_cash) < float(old_cash)):
        return True
    return False


@dataclass
class PolicyChangeSimulationResult:
    request: ExpenseRequest
    current_results: list[PolicyResult]
    proposed_results: list[PolicyResult]

    @property
    def changed(self) -> bool:
        current = [(result.rule_id, result.passed) for result in self.current_results]
        proposed = [(result.rule_id, result.passed) for result in self.proposed_results]
        return current != proposed


def simulate_policy_change(
    engine: PolicyEngine,
    site: Site,
    proposed: Policy,
    historical_requests: Iterable[tuple[ExpenseRequest, str]],
) -> list[PolicyChangeSimulationResult]:
    """Replay past submissions against a proposed policy before adopting it.

    ``historical_requests`` yields ``(request, submitter_id)`` pairs.
    """

    proposed_site = site.model_copy(update={"policy": proposed})
    simulations: list[PolicyChangeSimulationResult] = []
    for request, submitter_id in historical_requests:
        simulations.append(
            PolicyChangeSimulationResult(
                request=request,
                current_results=engine.evaluate(request, site, submitter_id=submitter_id),
                proposed_results=engine.evaluate(
                    request, proposed_site, submitter_id=submitter_id
                ),
            )
        )
    return simulations
