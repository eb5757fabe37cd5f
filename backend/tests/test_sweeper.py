import sqlite3
import threading
from datetime import timedelta

import pytest

from cleanmatch.models import OfferSubmit
from cleanmatch.services.database import to_iso
from cleanmatch.services.subscription_store import add_months


def _offer(provider_user_id: str) -> OfferSubmit:
    return OfferSubmit(provider_user_id=provider_user_id, price=99000)


def test_expire_offers_refunds_in_full_and_is_idempotent(services, make_provider, make_request):
    services.settings.set("offer_point_cost", 50)
    provider = make_provider("prov_stale")
    services.points.charge(provider.id, 100)
    request = make_request("cust_stale")
    offer = services.requests.submit_offer(request.id, _offer("prov_stale"))
    assert services.points.balance(provider.id).balance == 50

    services.clock.advance(days=2)
    assert services.sweeper.expire_offers().processed == 0

    services.clock.advance(days=1, minutes=1)
    result = services.sweeper.expire_offers()
    assert (result.processed, result.failed) == (1, 0)
    assert services.requests.get_request(request.id).offers[0].status == "REJECTED"
    assert services.points.balance(provider.id).balance == 100
    assert services.notifications.list_for_user("prov_stale")[0].kind == "offer_expired"

    rerun = services.sweeper.expire_offers()
    assert rerun.processed == 0
    assert services.points.balance(provider.id).balance == 100


def test_expire_requests_bulk_update(services, make_provider, make_request):
    make_provider("prov_closer")
    stale = make_request("cust_expire_a")
    closed = make_request("cust_expire_b")
    offer = services.requests.submit_offer(closed.id, _offer("prov_closer"))
    services.requests.accept_offer(offer.id, "cust_expire_b")

    services.clock.advance(days=7, seconds=1)
    result = services.sweeper.expire_requests()
    assert result.processed == 1
    assert services.requests.get_request(stale.id).request.status == "EXPIRED"
    assert services.requests.get_request(closed.id).request.status == "CLOSED"

    assert services.sweeper.expire_requests().processed == 0


def test_auto_complete_after_report_window(services, make_provider, make_request):
    make_provider("prov_auto")
    request = make_request("cust_auto")
    offer = services.requests.submit_offer(request.id, _offer("prov_auto"))
    engagement = services.requests.accept_offer(offer.id, "cust_auto").engagement

    assert services.sweeper.auto_complete_engagements().processed == 0
    services.requests.report_completion(engagement.id, "prov_auto", ["done.jpg"])

    services.clock.advance(hours=47)
    assert services.sweeper.auto_complete_engagements().processed == 0

    services.clock.advance(hours=1, minutes=1)
    results = services.sweeper.run_daily()
    assert results[0].name == "auto_complete_engagements"
    assert results[0].processed == 1
    completed = services.requests.get_engagement(engagement.id)
    assert (completed.status, completed.completed_by) == ("COMPLETED", "SYSTEM")
    assert services.notifications.list_for_user("cust_auto")[0].kind == "engagement_completed"
    assert services.notifications.list_for_user("prov_auto")[0].kind == "engagement_completed"

    assert services.sweeper.auto_complete_engagements().processed == 0


def test_subscription_sweep_promotes_and_expires(services, make_provider):
    provider = make_provider("prov_sub_sweep")
    trial = services.subscriptions.history(provider.id)[0]
    renewal = services.subscriptions.purchase(provider.id, "plan_basic_1m")

    services.clock.set(add_months(services.clock(), 3))
    services.clock.advance(days=1)

    result = services.sweeper.sweep_subscriptions()
    assert (result.processed, result.failed) == (2, 0)
    assert services.subscriptions.get(trial.id).status == "EXPIRED"
    assert services.subscriptions.get(renewal.id).status == "ACTIVE"
    assert services.notifications.list_for_user("prov_sub_sweep")[0].kind == "subscription_expired"

    assert services.sweeper.sweep_subscriptions().processed == 0


def test_failing_item_is_skipped_and_retried_next_run(services, make_provider, make_request, monkeypatch):
    make_provider("prov_flaky_a")
    make_provider("prov_flaky_b")
    request = make_request("cust_flaky")
    bad = services.requests.submit_offer(request.id, _offer("prov_flaky_a"))
    services.requests.submit_offer(request.id, _offer("prov_flaky_b"))
    services.clock.advance(days=3, minutes=1)

    original = services.requests.expire_offer

    def flaky(offer_id, cutoff_iso, timeout=None):
        if offer_id == bad.id:
            raise sqlite3.OperationalError("database is locked")
        return original(offer_id, cutoff_iso, timeout=timeout)

    monkeypatch.setattr(services.requests, "expire_offer", flaky)
    result = services.sweeper.expire_offers()
    assert (result.processed, result.failed, result.failed_ids) == (1, 1, [bad.id])

    monkeypatch.undo()
    retry = services.sweeper.expire_offers()
    assert (retry.processed, retry.failed) == (1, 0)


def test_run_hourly_reports_each_sweep(services):
    results = services.sweeper.run_hourly()
    assert [result.name for result in results] == ["expire_offers", "expire_requests"]
    assert all(result.processed == 0 and result.failed == 0 for result in results)


def test_item_blocked_on_writer_lock_gives_up_within_budget(services, make_provider, make_request):
    make_provider("prov_locked")
    request = make_request("cust_locked")
    offer = services.requests.submit_offer(request.id, _offer("prov_locked"))
    services.clock.advance(days=3, minutes=1)
    cutoff_iso = to_iso(services.clock() - timedelta(days=3))

    holding = threading.Event()
    release = threading.Event()

    def hold_writer():
        with services.database.transaction():
            holding.set()
            release.wait(timeout=10)

    holder = threading.Thread(target=hold_writer)
    holder.start()
    assert holding.wait(timeout=10)
    try:
        with pytest.raises(sqlite3.OperationalError):
            services.requests.expire_offer(offer.id, cutoff_iso, timeout=0.05)
    finally:
        release.set()
        holder.join(timeout=10)

    assert services.requests.get_request(request.id).offers[0].status == "SUBMITTED"
    retry = services.sweeper.expire_offers()
    assert (retry.processed, retry.failed) == (1, 0)
