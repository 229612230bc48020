from decimal import Decimal

from expense_portal import ExpenseCategory, Policy, PolicyEngine, PolicyVersion
from expense_portal.policy_versioning import policy_config, simulate_policy_change


def test_policy_version_hash_and_label() -> None:
    version = PolicyVersion.from_config("1.2.3", {"cash_max": "2000"})

    assert version.label == "1.2.3"
    assert (
        version.config_hash
        == PolicyVersion.from_config("1.2.3", {"cash_max": "2000"}).config_hash
    )


def test_unparseable_version_defaults() -> None:
    assert PolicyVersion.from_config("v-next", {}).label == "1.0.0"
    assert PolicyVersion.from_config(None, {}).label == "1.0.0"
    assert PolicyVersion.from_config("2", {}).label == "2.0.0"


def test_hash_ignores_weekday_order() -> None:
    first = Policy(weekend_disallow=["saturday", "sunday"])
    second = Policy(weekend_disallow=["Sunday", "Saturday"])

    assert PolicyVersion.for_policy(first).config_hash == PolicyVersion.for_policy(
        second
    ).config_hash


def test_change_types() -> None:
    base = PolicyVersion.for_policy(Policy())
    tightened = base.next_for(
        policy_config(Policy()), policy_config(Policy(weekend_disallow=["sunday"]))
    )
    loosened = tightened.next_for(
        policy_config(Policy(weekend_disallow=["sunday"])), policy_config(Policy())
    )

    assert tightened.label == "1.1.0"
    assert tightened.change_type(base) == "feature"
    assert loosened.label == "1.1.1"
    assert loosened.change_type(tightened) == "patch"
    assert base.next_for(policy_config(Policy()), policy_config(Policy())) is base
    assert base.change_type(base) == "no-op"


def test_simulation_replays_requests(site_factory, request_factory) -> None:
    site = site_factory()
    engine = PolicyEngine()
    proposed = Policy(per_category_limits={"FOOD": 500})
    requests = [
        (request_factory(site.id, amount=Decimal("400")), "s1"),
        (request_factory(site.id, amount=Decimal("900")), "s1"),
        (
            request_factory(
                site.id, category=ExpenseCategory.TRAVEL, amount=Decimal("100")
            ),
            "s2",
        ),
    ]

    simulations = simulate_policy_change(engine, site, proposed, requests)

    assert [simulation.changed for simulation in simulations] == [False, True, False]
    failing = [
        result.rule_id for result in simulations[1].proposed_results if not result.passed
    ]
    assert failing == ["category_limit"]
    assert site.policy.per_category_limits[ExpenseCategory.FOOD] == Decimal("1500")
