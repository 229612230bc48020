from datetime import date
from decimal import Decimal

import pytest

from expense_portal import (
    Budget,
    BudgetAlertLevel,
    BudgetTracker,
    NotFound,
    SiteRepository,
    SiteStatistics,
    classify,
)
from expense_portal.budget import rolled_statistics


@pytest.fixture()
def sites(site_factory) -> SiteRepository:
    repository = SiteRepository()
    repository.add(
        site_factory(
            id="site-1",
            budget=Budget(monthly=Decimal("10000"), yearly=Decimal("120000")),
        )
    )
    return repository


def test_utilization_rounds_to_two_places(site_factory) -> None:
    site = site_factory(
        budget=Budget(monthly=Decimal("3000"), yearly=Decimal("36000")),
        statistics=SiteStatistics(monthly_spend=Decimal("1000"), yearly_spend=Decimal("1000")),
    )

    assert BudgetTracker.utilization(site) == Decimal("33.33")
    assert BudgetTracker.utilization(site, "yearly") == Decimal("2.78")


def test_utilization_with_zero_allocation_is_zero(site_factory) -> None:
    site = site_factory(
        budget=Budget(monthly=Decimal("0"), yearly=Decimal("0")),
        statistics=SiteStatistics(monthly_spend=Decimal("500")),
    )

    assert BudgetTracker.utilization(site) == Decimal("0")


def test_projected_utilization_extrapolates_month(site_factory) -> None:
    site = site_factory(
        budget=Budget(monthly=Decimal("30000"), yearly=Decimal("360000")),
        statistics=SiteStatistics(
            monthly_spend=Decimal("10000"), period_month="2024-06", period_year=2024
        ),
    )

    # 10 of 30 June days elapsed: 10000 -> 30000 projected.
    assert BudgetTracker.projected_utilization(site, date(2024, 6, 10)) == Decimal("100.00")


def test_projected_utilization_ignores_previous_month_spend(site_factory) -> None:
    site = site_factory(
        statistics=SiteStatistics(
            monthly_spend=Decimal("90000"), period_month="2024-05", period_year=2024
        ),
    )

    assert BudgetTracker.projected_utilization(site, date(2024, 6, 3)) == Decimal("0.00")


@pytest.mark.parametrize(
    ("utilization", "level"),
    [
        (Decimal("95"), BudgetAlertLevel.CRITICAL),
        (Decimal("90"), BudgetAlertLevel.CRITICAL),
        (Decimal("85"), BudgetAlertLevel.WARNING),
        (Decimal("50"), BudgetAlertLevel.MODERATE),
        (Decimal("49.99"), BudgetAlertLevel.HEALTHY),
    ],
)
def test_classify(utilization: Decimal, level: BudgetAlertLevel) -> None:
    assert classify(utilization) == level


def test_record_approved_is_idempotent(sites: SiteRepository) -> None:
    tracker = BudgetTracker(sites)

    assert tracker.record_approved("site-1", "exp-1", Decimal("900"), date(2024, 6, 12))
    assert not tracker.record_approved("site-1", "exp-1", Decimal("900"), date(2024, 6, 12))

    statistics = sites.get("site-1").statistics
    assert statistics.monthly_spend == Decimal("900")
    assert statistics.yearly_spend == Decimal("900")
    assert statistics.total_expenses == 1
    assert statistics.period_month == "2024-06"


def test_record_approved_rolls_over_periods(sites: SiteRepository) -> None:
    tracker = BudgetTracker(sites)
    tracker.record_approved("site-1", "exp-1", Decimal("1000"), date(2024, 6, 30))
    tracker.record_approved("site-1", "exp-2", Decimal("200"), date(2024, 7, 1))

    statistics = sites.get("site-1").statistics
    assert statistics.monthly_spend == Decimal("200")
    assert statistics.yearly_spend == Decimal("1200")

    tracker.record_approved("site-1", "exp-3", Decimal("50"), date(2025, 1, 2))
    statistics = sites.get("site-1").statistics
    assert statistics.monthly_spend == Decimal("50")
    assert statistics.yearly_spend == Decimal("50")
    assert statistics.total_expenses == 3


def test_record_approved_unknown_site(sites: SiteRepository) -> None:
    with pytest.raises(NotFound):
        BudgetTracker(sites).record_approved("missing", "exp-1", Decimal("1"), date(2024, 6, 1))


def test_summary_and_alerts(sites: SiteRepository, site_factory) -> None:
    sites.add(site_factory(id="site-2", code="QUIET", name="Quiet"))
    tracker = BudgetTracker(sites)
    tracker.record_approved("site-1", "exp-1", Decimal("8500"), date(2024, 6, 15))

    summary = tracker.summary("site-1", date(2024, 6, 15))

    assert summary.utilization == Decimal("85.00")
    assert summary.remaining == Decimal("1500")
    assert summary.alert_level == BudgetAlertLevel.WARNING
    assert summary.over_alert_threshold
    assert summary.projected_utilization == Decimal("170.00")
    assert [site.id for site in tracker.sites_with_alerts()] == ["site-1"]


def test_alert_threshold_is_per_site(site_factory) -> None:
    repository = SiteRepository()
    repository.add(
        site_factory(
            id="strict",
            budget=Budget(
                monthly=Decimal("1000"), yearly=Decimal("12000"), alert_threshold=Decimal("40")
            ),
            statistics=SiteStatistics(monthly_spend=Decimal("450")),
        )
    )

    assert [site.id for site in BudgetTracker(repository).sites_with_alerts()] == ["strict"]


def test_rolled_statistics_stamps_period() -> None:
    rolled = rolled_statistics(SiteStatistics(monthly_spend=Decimal("10")), date(2024, 2, 29))

    assert rolled.period_month == "2024-02"
    assert rolled.period_year == 2024
    assert rolled.monthly_spend == Decimal("10")


def test_remaining_budget_never_negative(site_factory) -> None:
    within = site_factory(
        budget=Budget(monthly=Decimal("1000"), yearly=Decimal("12000")),
        statistics=SiteStatistics(monthly_spend=Decimal("400")),
    )
    over = site_factory(
        budget=Budget(monthly=Decimal("1000"), yearly=Decimal("12000")),
        statistics=SiteStatistics(monthly_spend=Decimal("1400")),
    )

    assert BudgetTracker.remaining_budget(within) == Decimal("600")
    assert BudgetTracker.remaining_budget(over) == Decimal("0")


def test_yearly_projection_uses_day_of_year(site_factory) -> None:
    site = site_factory(
        budget=Budget(monthly=Decimal("1000"), yearly=Decimal("36600")),
        statistics=SiteStatistics(
            yearly_spend=Decimal("1830"), period_month="2024-02", period_year=2024
        ),
    )

    # Day 61 of a leap year: 1830 / 61 * 366 = 10980 of 36600.
    assert BudgetTracker.projected_utilization(site, date(2024, 3, 1), "yearly") == Decimal(
        "30.00"
    )


def test_reset_period_rolls_counters(sites: SiteRepository) -> None:
    tracker = BudgetTracker(sites)
    tracker.record_approved("site-1", "exp-1", Decimal("700"), date(2024, 6, 20))

    site = tracker.reset_period("site-1", date(2024, 7, 1))

    assert site.statistics.monthly_spend == Decimal("0")
    assert site.statistics.yearly_spend == Decimal("700")
    assert site.statistics.period_month == "2024-07"


def test_alerts_ignore_spend_from_a_finished_month(sites: SiteRepository) -> None:
    tracker = BudgetTracker(sites)
    tracker.record_approved("site-1", "exp-1", Decimal("9500"), date(2024, 5, 20))

    assert [site.id for site in tracker.sites_with_alerts(as_of=date(2024, 5, 31))] == ["site-1"]
    assert tracker.sites_with_alerts(as_of=date(2024, 7, 2)) == []
    assert not tracker.summary("site-1", date(2024, 7, 2)).over_alert_threshold
