"""Per-site policy configuration: YAML defaults and validated updates."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import ValidationFailure
from .models import Policy, Site
from .policy_versioning import PolicyVersion, policy_config
from .repository import SiteRepository

logger = logging.getLogger(__name__)

# Wire names used by the portal UI for policy fields.
_WIRE_ALIASES = {
    "duplicateWindowDays": "duplicate_window_days",
    "duplicateAmountTolerance": "duplicate_amount_tolerance",
    "perCategoryLimits": "per_category_limits",
    "cashMax": "cash_max",
    "requireDirectorAbove": "require_director_above",
    "weekendDisallow": "weekend_disallow",
}
_MAP_FIELDS = ("per_category_limits", "require_director_above")


def default_policy_path() -> Path | None:
    for parent in Path(__file__).resolve().parents:
        candidate = parent / "config" / "policy.yaml"
        if candidate.exists():
            return candidate
    return None


def normalize_policy_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Map wire field names to model names and decode JSON-encoded maps.

    Category maps may arrive as JSON text from the settings form; text that is
    not a JSON object is rejected with ``VALIDATION_ERROR``.
    """

    if not isinstance(payload, dict):
        raise ValidationFailure("Policy payload must be a JSON object")
    normalized: dict[str, Any] = {}
    for key, value in payload.items():
        normalized[_WIRE_ALIASES.get(key, key)] = value
    for name in _MAP_FIELDS:
        value = normalized.get(name)
        if isinstance(value, str):
            try:
                value = json.loads(value) if value.strip() else {}
            except json.JSONDecodeError as exc:
                raise ValidationFailure(f"{name} is not valid JSON: {exc.msg}") from exc
            normalized[name] = value
        if name in normalized and not isinstance(normalized[name], dict | None):
            raise ValidationFailure(f"{name} must be a JSON object of category to amount")
    return normalized


def build_policy(payload: dict[str, Any], base: Policy | None = None) -> Policy:
    """Validate ``payload`` into a :class:`Policy`, merged over ``base``."""

    data = policy_config(base) if base is not None else {}
    data.update(normalize_policy_payload(payload))
    try:
        return Policy.model_validate(data)
    except ValidationError as exc:
        message = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationFailure(f"Invalid policy: {message}") from exc


@dataclass
class PolicyStore:
    """Read and update site policies, tracking a version per site."""

    sites: SiteRepository
    defaults: Policy = field(default_factory=Policy)
    site_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    versions: dict[str, list[PolicyVersion]] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, content: str, sites: SiteRepository) -> PolicyStore:
        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("Policy configuration must be a mapping")
        defaults = build_policy(data.get("defaults") or {})
        overrides = {
            str(code).upper(): dict(policy or {})
            for code, policy in (data.get("sites") or {}).items()
        }
        return cls(sites=sites, defaults=defaults, site_overrides=overrides)

    @classmethod
    def from_file(cls, sites: SiteRepository, path: str | Path | None = None) -> PolicyStore:
        target_path = Path(path) if path is not None else default_policy_path()
        if target_path is None:
            raise FileNotFoundError("No policy.yaml configuration file found")
        return cls.from_yaml(target_path.read_text(encoding="utf-8"), sites)

    @classmethod
    def from_environment(
        cls, sites: SiteRepository, env_var: str = "EXPENSE_POLICY_CONFIG"
    ) -> PolicyStore:
        content = os.getenv(env_var)
        if not content:
            raise ValueError(f"Environment variable '{env_var}' is not set or empty")
        return cls.from_yaml(content, sites)

    def policy_for_new_site(self, code: str) -> Policy:
        """Return the default policy with any configured override for ``code``."""

        override = self.site_overrides.get(code.upper())
        if not override:
            return self.defaults
        return build_policy(override, base=self.defaults)

    def register_site(self, site: Site, *, apply_defaults: bool = True) -> Site:
        """Add a site, seeding its policy from configuration."""

        if apply_defaults:
            site = site.model_copy(update={"policy": self.policy_for_new_site(site.code)})
        stored = self.sites.add(site)
        self.versions[stored.id] = [PolicyVersion.for_policy(stored.policy)]
        return stored

    def get_policy(self, site_id: str) -> Policy:
        return self.sites.get(site_id).policy

    def current_version(self, site_id: str) -> PolicyVersion:
        history = self.versions.get(site_id)
        if not history:
            history = [PolicyVersion.for_policy(self.get_policy(site_id))]
            self.versions[site_id] = history
        return history[-1]

    def update_policy(
        self, site_id: str, payload: dict[str, Any], *, replace: bool = False
    ) -> tuple[Policy, PolicyVersion]:
        """Validate and apply a policy update.

        Unless ``replace`` is set, fields missing from ``payload`` keep their
        current values.
        """

        holder: dict[str, Any] = {}

        def _apply(site: Site) -> Site:
            previous_version = self.current_version(site_id)
            policy = build_policy(payload, base=None if replace else site.policy)
            version = previous_version.next_for(
                policy_config(site.policy), policy_config(policy)
            )
            if version is not previous_version:
                self.versions.setdefault(site_id, []).append(version)
            holder.update(policy=policy, version=version, previous_version=previous_version)
            return site.model_copy(update={"policy": policy})

        # Versions are derived and appended under the site lock.
        self.sites.update(site_id, _apply)
        policy, version = holder["policy"], holder["version"]
        logger.info(
            "Policy for site %s now at %s (%s)",
            site_id,
            version.label,
            version.change_type(holder["previous_version"]),
            extra={"site_id": site_id, "policy_version": version.label},
        )
        return policy, version
