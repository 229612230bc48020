"""Site budget tracking: utilization, projections and approved-spend counters."""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Literal

from .models import Site, SiteStatistics
from .repository import SiteRepository

logger = logging.getLogger(__name__)

BudgetPeriod = Literal["monthly", "yearly"]

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


class BudgetAlertLevel(str, Enum):
    """Advisory classification of a utilization percentage."""

    HEALTHY = "healthy"
    MODERATE = "moderate"
    WARNING = "warning"
    CRITICAL = "critical"


ALERT_THRESHOLDS: tuple[tuple[Decimal, BudgetAlertLevel], ...] = (
    (Decimal("90"), BudgetAlertLevel.CRITICAL),
    (Decimal("80"), BudgetAlertLevel.WARNING),
    (Decimal("50"), BudgetAlertLevel.MODERATE),
)


def _percent(used: Decimal, allocated: Decimal) -> Decimal:
    if allocated <= 0:
        return Decimal("0.00")
    return (used / allocated * _HUNDRED).quantize(_CENT, rounding=ROUND_HALF_UP)


def _month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def classify(utilization: Decimal) -> BudgetAlertLevel:
    """Return the alert level for a utilization percentage."""

    for threshold, level in ALERT_THRESHOLDS:
        if utilization >= threshold:
            return level
    return BudgetAlertLevel.HEALTHY


def rolled_statistics(statistics: SiteStatistics, as_of: date) -> SiteStatistics:
    """Return counters reset for any period boundary crossed by ``as_of``."""

    updates: dict[str, object] = {}
    if statistics.period_year is not None and statistics.period_year != as_of.year:
        updates["yearly_spend"] = Decimal("0")
    if statistics.period_month is not None and statistics.period_month != _month_key(as_of):
        updates["monthly_spend"] = Decimal("0")
    updates["period_year"] = as_of.year
    updates["period_month"] = _month_key(as_of)
    return statistics.model_copy(update=updates)


@dataclass(frozen=True)
class BudgetSummary:
    """Budget position of a site as of a date."""

    site_id: str
    site_code: str
    monthly_budget: Decimal
    monthly_spend: Decimal
    remaining: Decimal
    utilization: Decimal
    projected_utilization: Decimal
    alert_level: BudgetAlertLevel
    over_alert_threshold: bool


class BudgetTracker:
    """Compute utilization and record approved spend against site budgets."""

    def __init__(self, sites: SiteRepository) -> None:
        self.sites = sites

    @staticmethod
    def utilization(site: Site, period: BudgetPeriod = "monthly") -> Decimal:
        """Used budget divided by allocated budget, as a percentage."""

        if period == "yearly":
            return _percent(site.statistics.yearly_spend, site.budget.yearly)
        return _percent(site.statistics.monthly_spend, site.budget.monthly)

    @staticmethod
    def remaining_budget(site: Site) -> Decimal:
        return max(Decimal("0"), site.budget.monthly - site.statistics.monthly_spend)

    @staticmethod
    def projected_utilization(
        site: Site, as_of: date, period: BudgetPeriod = "monthly"
    ) -> Decimal:
        """Extrapolate period-to-date spend linearly to the end of the period."""

        statistics = rolled_statistics(site.statistics, as_of)
        if period == "yearly":
            elapsed = as_of.timetuple().tm_yday
            total_days = 366 if calendar.isleap(as_of.year) else 365
            spend, allocated = statistics.yearly_spend, site.budget.yearly
        else:
            elapsed = as_of.day
            total_days = calendar.monthrange(as_of.year, as_of.month)[1]
            spend, allocated = statistics.monthly_spend, site.budget.monthly
        projected_spend = spend / Decimal(elapsed) * Decimal(total_days)
        return _percent(projected_spend, allocated)

    def summary(self, site_id: str, as_of: date) -> BudgetSummary:
        site = self.sites.get(site_id)
        site = site.model_copy(update={"statistics": rolled_statistics(site.statistics, as_of)})
        utilization = self.utilization(site)
        return BudgetSummary(
            site_id=site.id,
            site_code=site.code,
            monthly_budget=site.budget.monthly,
            monthly_spend=site.statistics.monthly_spend,
            remaining=self.remaining_budget(site),
            utilization=utilization,
            projected_utilization=self.projected_utilization(site, as_of),
            alert_level=classify(utilization),
            over_alert_threshold=utilization >= site.budget.alert_threshold,
        )

    def sites_with_alerts(
        self, sites: Iterable[Site] | None = None, as_of: date | None = None
    ) -> list[Site]:
        """Active sites whose utilization reached their configured alert threshold.

        With ``as_of`` the counters are first rolled into that period, so spend
        from a finished month no longer raises an alert.
        """

        candidates = self.sites.list() if sites is None else sites
        alerted = []
        for site in candidates:
            if not site.is_active:
                continue
            if as_of is not None:
                site = site.model_copy(
                    update={"statistics": rolled_statistics(site.statistics, as_of)}
                )
            if self.utilization(site) >= site.budget.alert_threshold:
                alerted.append(site)
        return alerted

    def record_approved(
        self, site_id: str, expense_id: str, amount: Decimal, as_of: date
    ) -> bool:
        """Add a fully approved expense to the site's spend, once.

        Returns False when the expense was already counted. The increment runs
        under the site's lock so concurrent approvals of different expenses
        cannot lose updates.
        """

        counted = {"value": False}

        def _increment(site: Site) -> Site:
            statistics = site.statistics
            if expense_id in statistics.counted_expense_ids:
                return site
            statistics = rolled_statistics(statistics, as_of)
            statistics = statistics.model_copy(
                update={
                    "monthly_spend": statistics.monthly_spend + amount,
                    "yearly_spend": statistics.yearly_spend + amount,
                    "total_expenses": statistics.total_expenses + 1,
                    "counted_expense_ids": statistics.counted_expense_ids | {expense_id},
                }
            )
            counted["value"] = True
            return site.model_copy(update={"statistics": statistics})

        site = self.sites.update(site_id, _increment)
        if counted["value"]:
            utilization = self.utilization(site)
            logger.info(
                "Recorded approved spend %s for site %s (utilization %s%%)",
                amount,
                site.code,
                utilization,
                extra={"site_id": site_id, "expense_id": expense_id},
            )
            if utilization >= site.budget.alert_threshold:
                logger.warning(
                    "Site %s budget utilization at %s%% (%s)",
                    site.code,
                    utilization,
                    classify(utilization).value,
                    extra={"site_id": site_id},
                )
        else:
            logger.info(
                "Expense %s already counted for site %s",
                expense_id,
                site.code,
                extra={"site_id": site_id, "expense_id": expense_id},
            )
        return counted["value"]

    def reset_period(self, site_id: str, as_of: date) -> Site:
        """Roll the site's counters over to the period containing ``as_of``."""

        return self.sites.update(
            site_id,
            lambda site: site.model_copy(
                update={"statistics": rolled_statistics(site.statistics, as_of)}
            ),
        )
