import sqlite3
import threading

import pytest

from cleanmatch.models import OfferSubmit
from cleanmatch.services.errors import (
    OfferAlreadyProcessedError,
    OfferExistsError,
    OfferLimitReachedError,
    RequestNotOpenError,
    StoreConflictError,
)


def _offer(provider_user_id: str) -> OfferSubmit:
    return OfferSubmit(provider_user_id=provider_user_id, price=120000)


def _run_concurrently(*calls):
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(idx, call):
        barrier.wait()
        try:
            outcomes[idx] = call()
        except Exception as exc:  # collected for assertions
            outcomes[idx] = exc

    threads = [threading.Thread(target=worker, args=(idx, call)) for idx, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def _offer_count(services, request_id: str) -> int:
    with sqlite3.connect(services.database.db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM offers WHERE request_id = ?", (request_id,)).fetchone()[0]


def test_race_on_the_last_offer_slot(services, make_provider, make_request):
    make_provider("prov_race_a")
    make_provider("prov_race_b")
    request = make_request("cust_race", max_offers=1)

    outcomes = _run_concurrently(
        lambda: services.requests.submit_offer(request.id, _offer("prov_race_a")),
        lambda: services.requests.submit_offer(request.id, _offer("prov_race_b")),
    )

    errors = [item for item in outcomes if isinstance(item, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], OfferLimitReachedError)
    assert _offer_count(services, request.id) == 1


def test_storage_trigger_enforces_limit_when_precheck_is_bypassed(services, make_provider, make_request, monkeypatch):
    make_provider("prov_trigger_a")
    make_provider("prov_trigger_b")
    request = make_request("cust_trigger", max_offers=1)
    services.requests.submit_offer(request.id, _offer("prov_trigger_a"))

    monkeypatch.setattr(services.requests, "_active_offer_count", lambda conn, request_id: 0)
    with pytest.raises(OfferLimitReachedError):
        services.requests.submit_offer(request.id, _offer("prov_trigger_b"))
    assert _offer_count(services, request.id) == 1


def test_unique_index_rejects_duplicate_when_precheck_is_bypassed(services, make_provider, make_request, monkeypatch):
    make_provider("prov_unique")
    request = make_request("cust_unique")
    services.requests.submit_offer(request.id, _offer("prov_unique"))

    monkeypatch.setattr(services.requests, "_existing_offer", lambda conn, request_id, provider_id: False)
    with pytest.raises(OfferExistsError):
        services.requests.submit_offer(request.id, _offer("prov_unique"))


def test_storage_trigger_rejects_offers_on_closed_request(services, make_provider, make_request, monkeypatch):
    make_provider("prov_closed_a")
    make_provider("prov_closed_b")
    request = make_request("cust_closed_trigger")
    offer = services.requests.submit_offer(request.id, _offer("prov_closed_a"))
    services.requests.accept_offer(offer.id, "cust_closed_trigger")

    original = services.requests._load_request

    def stale_view(conn, request_id):
        return original(conn, request_id).model_copy(update={"status": "OPEN"})

    monkeypatch.setattr(services.requests, "_load_request", stale_view)
    with pytest.raises(RequestNotOpenError):
        services.requests.submit_offer(request.id, _offer("prov_closed_b"))


def test_concurrent_accepts_produce_one_engagement(services, make_provider, make_request):
    make_provider("prov_duel_a")
    make_provider("prov_duel_b")
    request = make_request("cust_duel")
    first = services.requests.submit_offer(request.id, _offer("prov_duel_a"))
    second = services.requests.submit_offer(request.id, _offer("prov_duel_b"))

    outcomes = _run_concurrently(
        lambda: services.requests.accept_offer(first.id, "cust_duel"),
        lambda: services.requests.accept_offer(second.id, "cust_duel"),
    )

    errors = [item for item in outcomes if isinstance(item, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], (OfferAlreadyProcessedError, RequestNotOpenError))
    assert isinstance(errors[0], StoreConflictError)
    with sqlite3.connect(services.database.db_path) as conn:
        engagements = conn.execute("SELECT COUNT(*) FROM engagements WHERE request_id = ?", (request.id,)).fetchone()[0]
        accepted = conn.execute(
            "SELECT COUNT(*) FROM offers WHERE request_id = ? AND status = 'ACCEPTED'",
            (request.id,),
        ).fetchone()[0]
    assert engagements == 1
    assert accepted == 1
