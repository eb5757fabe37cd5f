from datetime import datetime, timezone

import pytest

from cleanmatch.services.database import parse_iso
from cleanmatch.services.errors import InvalidStateError, StoreConflictError, StoreNotFoundError
from cleanmatch.services.subscription_store import add_months


def test_add_months_clamps_to_month_end():
    value = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert add_months(value, 1) == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)
    assert add_months(value, 13) == datetime(2027, 2, 28, 9, 30, tzinfo=timezone.utc)


def test_seeded_plans_are_listed_in_order(services):
    plans = services.subscriptions.list_plans()
    assert [plan.id for plan in plans] == [
        "plan_basic_1m",
        "plan_basic_3m",
        "plan_basic_6m",
        "plan_basic_12m",
        "plan_pro_1m",
        "plan_premium_1m",
    ]
    limits = {plan.tier: plan.daily_offer_limit for plan in plans}
    assert limits == {"BASIC": 3, "PRO": 10, "PREMIUM": 50}


def test_approval_grants_single_basic_trial(services, make_provider):
    provider = make_provider("prov_trial")
    history = services.subscriptions.history(provider.id)
    assert len(history) == 1
    trial = history[0]
    assert trial.is_trial is True
    assert trial.tier == "BASIC"
    assert trial.status == "ACTIVE"
    assert parse_iso(trial.current_period_end) == add_months(services.clock(), 3)

    again = services.subscriptions.create_free_trial(provider.id)
    assert again.id == trial.id
    assert len(services.subscriptions.history(provider.id)) == 1


def test_pro_requires_active_basic(services, make_provider):
    pending = make_provider("prov_pending", approve=False)
    with pytest.raises(StoreConflictError):
        services.subscriptions.purchase(pending.id, "plan_pro_1m")

    approved = make_provider("prov_pro")
    pro = services.subscriptions.purchase(approved.id, "plan_pro_1m")
    assert pro.status == "ACTIVE"
    effective = services.subscriptions.effective_tier(approved.id)
    assert effective.id == pro.id
    assert effective.daily_offer_limit == 10


def test_unknown_plan_is_not_found(services, make_provider):
    provider = make_provider("prov_unknown_plan")
    with pytest.raises(StoreNotFoundError):
        services.subscriptions.purchase(provider.id, "plan_gold")


def test_same_tier_purchase_is_queued_and_promoted_on_read(services, make_provider):
    provider = make_provider("prov_queue")
    trial = services.subscriptions.history(provider.id)[0]

    renewal = services.subscriptions.purchase(provider.id, "plan_basic_1m")
    assert renewal.status == "QUEUED"
    assert renewal.current_period_start == trial.current_period_end

    assert services.subscriptions.effective_tier(provider.id).id == trial.id

    services.clock.set(add_months(services.clock(), 3))
    services.clock.advance(days=1)

    effective = services.subscriptions.effective_tier(provider.id)
    assert effective.id == renewal.id
    assert effective.status == "ACTIVE"
    assert services.subscriptions.get(trial.id).status == "EXPIRED"


def test_cancelled_subscription_is_kept_but_not_effective(services, make_provider):
    provider = make_provider("prov_cancel")
    trial = services.subscriptions.history(provider.id)[0]

    cancelled = services.subscriptions.cancel(trial.id)
    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_at is not None
    assert services.subscriptions.effective_tier(provider.id) is None
    assert [row.id for row in services.subscriptions.history(provider.id)] == [trial.id]

    with pytest.raises(InvalidStateError):
        services.subscriptions.cancel(trial.id)


def test_pause_and_resume(services, make_provider):
    provider = make_provider("prov_pause")
    trial = services.subscriptions.history(provider.id)[0]

    assert services.subscriptions.pause(trial.id).status == "PAUSED"
    assert services.subscriptions.effective_tier(provider.id) is None
    with pytest.raises(InvalidStateError):
        services.subscriptions.pause(trial.id)

    assert services.subscriptions.resume(trial.id).status == "ACTIVE"
    assert services.subscriptions.effective_tier(provider.id).id == trial.id
    with pytest.raises(InvalidStateError):
        services.subscriptions.resume(trial.id)


def test_extend_pushes_end_and_reactivates_expired(services, make_provider):
    provider = make_provider("prov_extend")
    trial = services.subscriptions.history(provider.id)[0]

    extended = services.subscriptions.extend(trial.id, 2)
    assert parse_iso(extended.current_period_end) == add_months(parse_iso(trial.current_period_end), 2)

    services.clock.set(parse_iso(extended.current_period_end))
    services.clock.advance(days=1)
    services.subscriptions.promote_and_expire()
    assert services.subscriptions.get(trial.id).status == "EXPIRED"

    revived = services.subscriptions.extend(trial.id, 1)
    assert revived.status == "ACTIVE"
    assert parse_iso(revived.current_period_end) == add_months(services.clock(), 1)
    assert services.subscriptions.effective_tier(provider.id).id == trial.id


def test_highest_priority_weight_wins(services, make_provider):
    provider = make_provider("prov_stack")
    services.subscriptions.purchase(provider.id, "plan_pro_1m")
    premium = services.subscriptions.purchase(provider.id, "plan_premium_1m")

    effective = services.subscriptions.effective_tier(provider.id)
    assert effective.id == premium.id
    assert effective.tier == "PREMIUM"


def test_change_tier_replaces_every_live_row(services, make_provider):
    provider = make_provider("prov_change")
    services.subscriptions.purchase(provider.id, "plan_pro_1m")
    services.subscriptions.purchase(provider.id, "plan_basic_1m")

    fresh = services.subscriptions.change_tier(provider.id, "plan_premium_1m")

    live = [row for row in services.subscriptions.history(provider.id) if row.status in {"ACTIVE", "PAUSED", "QUEUED"}]
    assert [row.id for row in live] == [fresh.id]
    assert services.subscriptions.effective_tier(provider.id).tier == "PREMIUM"


def test_extending_active_row_pushes_queued_renewal_back(services, make_provider):
    provider = make_provider("prov_extend_queue")
    trial = services.subscriptions.history(provider.id)[0]
    renewal = services.subscriptions.purchase(provider.id, "plan_basic_1m")

    extended = services.subscriptions.extend(trial.id, 1)
    moved = services.subscriptions.get(renewal.id)
    assert moved.status == "QUEUED"
    assert moved.current_period_start == extended.current_period_end
    assert parse_iso(moved.current_period_end) == add_months(parse_iso(extended.current_period_end), 1)

    services.clock.set(parse_iso(trial.current_period_end))
    services.clock.advance(days=1)
    assert services.subscriptions.effective_tier(provider.id).id == trial.id
    active = [row for row in services.subscriptions.history(provider.id) if row.status == "ACTIVE"]
    assert [row.id for row in active] == [trial.id]

    services.clock.set(parse_iso(extended.current_period_end))
    services.clock.advance(days=1)
    assert services.subscriptions.effective_tier(provider.id).id == renewal.id


def test_cancelling_active_row_starts_queued_renewal_now(services, make_provider):
    provider = make_provider("prov_cancel_queue")
    trial = services.subscriptions.history(provider.id)[0]
    renewal = services.subscriptions.purchase(provider.id, "plan_basic_1m")

    services.clock.advance(days=10)
    services.subscriptions.cancel(trial.id)

    started = services.subscriptions.get(renewal.id)
    assert started.status == "ACTIVE"
    assert parse_iso(started.current_period_start) == services.clock()
    assert parse_iso(started.current_period_end) == add_months(services.clock(), 1)
    assert services.subscriptions.effective_tier(provider.id).id == renewal.id
    assert services.quota.can_submit(provider.id).limit == 3


def test_queued_renewals_stay_chained_after_cancel(services, make_provider):
    provider = make_provider("prov_chain")
    trial = services.subscriptions.history(provider.id)[0]
    first = services.subscriptions.purchase(provider.id, "plan_basic_1m")
    second = services.subscriptions.purchase(provider.id, "plan_basic_3m")
    assert second.current_period_start == first.current_period_end

    services.subscriptions.cancel(first.id)
    moved = services.subscriptions.get(second.id)
    assert moved.status == "QUEUED"
    assert moved.current_period_start == trial.current_period_end


def test_pausing_active_row_keeps_queue_in_place(services, make_provider):
    provider = make_provider("prov_pause_queue")
    trial = services.subscriptions.history(provider.id)[0]
    renewal = services.subscriptions.purchase(provider.id, "plan_basic_1m")

    services.subscriptions.pause(trial.id)
    held = services.subscriptions.get(renewal.id)
    assert held.status == "QUEUED"
    assert held.current_period_start == trial.current_period_end
