import sqlite3

import pytest

from cleanmatch.models import OfferSubmit, ServiceRequestCreate
from cleanmatch.services.errors import (
    DuplicateRequestError,
    InsufficientPointsError,
    InvalidStateError,
    OfferAlreadyProcessedError,
    OfferExistsError,
    OfferLimitReachedError,
    OpenRequestLimitError,
    RequestNotOpenError,
    StoreNotFoundError,
    StorePermissionError,
    StoreValidationError,
)


def _offer(provider_user_id: str, price: int = 150000) -> OfferSubmit:
    return OfferSubmit(provider_user_id=provider_user_id, price=price, message="Available this week")


def _count(services, sql: str, params=()) -> int:
    with sqlite3.connect(services.database.db_path) as conn:
        return conn.execute(sql, params).fetchone()[0]


def test_create_request_uses_default_max_offers(services, make_request):
    request = make_request("cust_defaults", checklist={"floor": True, "window": False})
    assert request.status == "OPEN"
    assert request.max_offers == 5
    assert request.checklist == {"floor": True, "window": False}


def test_unknown_checklist_key_is_rejected(services):
    with pytest.raises(StoreValidationError):
        services.requests.create_request(
            ServiceRequestCreate(
                customer_id="cust_checklist",
                service_type="AIRCON",
                address="서울특별시 마포구",
                description="Two wall units",
                checklist={"veranda": True},
            )
        )


def test_open_request_ceiling(services, make_request):
    for idx in range(3):
        make_request("cust_ceiling", address=f"서울특별시 강남구 {idx}")
    with pytest.raises(OpenRequestLimitError) as excinfo:
        make_request("cust_ceiling", address="서울특별시 강남구 99")
    assert excinfo.value.code == "open_request_limit"


def test_open_request_ceiling_follows_settings(services, make_request):
    services.settings.set("max_open_requests", 1)
    make_request("cust_setting", address="서울특별시 서초구 1")
    with pytest.raises(OpenRequestLimitError):
        make_request("cust_setting", address="서울특별시 서초구 2")


def test_duplicate_window_with_simulated_clock(services, make_request):
    make_request("cust_dup")
    with pytest.raises(DuplicateRequestError):
        make_request("cust_dup")

    make_request("cust_dup", service_type="MOVE_OUT")

    services.clock.advance(days=7, seconds=1)
    again = make_request("cust_dup")
    assert again.status == "OPEN"


def test_submit_offer_failures_are_distinct(services, make_provider, make_request):
    make_provider("prov_pending_offer", approve=False)
    make_provider("prov_a")
    make_provider("prov_b")
    request = make_request("cust_submit", max_offers=1)

    with pytest.raises(StoreNotFoundError):
        services.requests.submit_offer(request.id, _offer("nobody"))
    with pytest.raises(StorePermissionError):
        services.requests.submit_offer(request.id, _offer("prov_pending_offer"))
    with pytest.raises(StoreNotFoundError):
        services.requests.submit_offer("req_missing", _offer("prov_a"))

    services.requests.submit_offer(request.id, _offer("prov_a"))
    with pytest.raises(OfferExistsError):
        services.requests.submit_offer(request.id, _offer("prov_a"))
    with pytest.raises(OfferLimitReachedError):
        services.requests.submit_offer(request.id, _offer("prov_b"))


def test_submit_on_closed_request_is_conflict(services, make_provider, make_request):
    make_provider("prov_first")
    make_provider("prov_late")
    request = make_request("cust_closed")
    offer = services.requests.submit_offer(request.id, _offer("prov_first"))
    services.requests.accept_offer(offer.id, "cust_closed")

    with pytest.raises(RequestNotOpenError):
        services.requests.submit_offer(request.id, _offer("prov_late"))


def test_customer_is_notified_of_new_offer(services, make_provider, make_request):
    make_provider("prov_notifier")
    request = make_request("cust_inbox")
    offer = services.requests.submit_offer(request.id, _offer("prov_notifier"))

    inbox = services.notifications.list_for_user("cust_inbox")
    assert inbox[0].kind == "offer_received"
    assert inbox[0].data["offer_id"] == offer.id


def test_accept_offer_produces_exactly_one_winner(services, make_provider, make_request):
    winner = make_provider("prov_win")
    make_provider("prov_lose_1")
    make_provider("prov_lose_2")
    request = make_request("cust_accept", area_size=84, desired_date="2026-03-20", desired_time="09:00")
    offers = [
        services.requests.submit_offer(request.id, _offer(user_id, price))
        for user_id, price in (("prov_win", 180000), ("prov_lose_1", 200000), ("prov_lose_2", 210000))
    ]

    result = services.requests.accept_offer(offers[0].id, "cust_accept")

    assert result.offer.status == "ACCEPTED"
    assert sorted(result.rejected_offer_ids) == sorted(offer.id for offer in offers[1:])
    details = services.requests.get_request(request.id)
    assert details.request.status == "CLOSED"
    assert sorted(offer.status for offer in details.offers) == ["ACCEPTED", "REJECTED", "REJECTED"]

    engagement = result.engagement
    assert engagement.status == "ACCEPTED"
    assert engagement.provider_id == winner.id
    assert engagement.price == 180000
    assert (engagement.area_size, engagement.desired_date, engagement.desired_time) == (84, "2026-03-20", "09:00")
    assert engagement.room_id is not None
    assert services.providers.get(winner.id).total_matches == 1

    messages = services.rooms.list_messages(engagement.room_id)
    assert "180000" in messages[0]["content"]
    assert services.notifications.list_for_user("prov_win")[0].kind == "offer_accepted"
    assert services.notifications.list_for_user("prov_lose_1")[0].kind == "offer_rejected"

    with pytest.raises(OfferAlreadyProcessedError):
        services.requests.accept_offer(offers[1].id, "cust_accept")
    assert _count(services, "SELECT COUNT(*) FROM engagements WHERE request_id = ?", (request.id,)) == 1


def test_only_owner_can_accept(services, make_provider, make_request):
    make_provider("prov_owner_check")
    request = make_request("cust_owner")
    offer = services.requests.submit_offer(request.id, _offer("prov_owner_check"))

    with pytest.raises(StorePermissionError):
        services.requests.accept_offer(offer.id, "cust_intruder")
    with pytest.raises(StoreNotFoundError):
        services.requests.accept_offer("ofr_missing", "cust_owner")


def test_failed_acceptance_leaves_no_orphan_engagement(services, make_provider, make_request, monkeypatch):
    make_provider("prov_orphan")
    request = make_request("cust_orphan")
    offer = services.requests.submit_offer(request.id, _offer("prov_orphan"))

    def boom(conn, provider_id):
        raise RuntimeError("counter update failed")

    monkeypatch.setattr(services.providers, "increment_total_matches", boom)
    with pytest.raises(RuntimeError):
        services.requests.accept_offer(offer.id, "cust_orphan")

    assert _count(services, "SELECT COUNT(*) FROM engagements") == 0
    details = services.requests.get_request(request.id)
    assert details.request.status == "OPEN"
    assert details.offers[0].status == "SUBMITTED"


def test_room_failure_keeps_engagement_and_can_be_retried(services, make_provider, make_request, monkeypatch):
    make_provider("prov_room")
    request = make_request("cust_room")
    offer = services.requests.submit_offer(request.id, _offer("prov_room"))

    def unavailable(engagement_id, customer_id, provider_user_id):
        raise ConnectionError("chat backend down")

    monkeypatch.setattr(services.rooms, "open_room", unavailable)
    result = services.requests.accept_offer(offer.id, "cust_room")
    assert result.room_id is None
    assert services.requests.get_engagement(result.engagement.id).room_id is None

    monkeypatch.undo()
    repaired = services.requests.ensure_room(result.engagement.id)
    assert repaired.room_id is not None
    assert services.requests.ensure_room(result.engagement.id).room_id == repaired.room_id


def test_reject_single_offer(services, make_provider, make_request):
    make_provider("prov_reject")
    request = make_request("cust_reject")
    offer = services.requests.submit_offer(request.id, _offer("prov_reject"))

    rejected = services.requests.reject_offer(offer.id, "cust_reject")
    assert rejected.status == "REJECTED"
    assert rejected.responded_at is not None
    assert services.requests.get_request(request.id).request.status == "OPEN"
    with pytest.raises(OfferAlreadyProcessedError):
        services.requests.reject_offer(offer.id, "cust_reject")


def test_point_debit_and_partial_refund_on_auto_rejection(services, make_provider, make_request):
    services.settings.set("offer_point_cost", 50)
    winner = make_provider("prov_points_win")
    loser = make_provider("prov_points_lose")
    for provider in (winner, loser):
        services.points.charge(provider.id, 100)
    request = make_request("cust_points")

    winning = services.requests.submit_offer(request.id, _offer("prov_points_win"))
    losing = services.requests.submit_offer(request.id, _offer("prov_points_lose"))
    assert winning.points_used == 50
    assert services.points.balance(loser.id).balance == 50

    services.requests.accept_offer(winning.id, "cust_points")

    assert services.points.balance(winner.id).balance == 50
    assert services.points.balance(loser.id).balance == 75
    refunds = [row for row in services.points.history(loser.id) if row["kind"] == "REFUND"]
    assert [(row["amount"], row["related_id"]) for row in refunds] == [(25, losing.id)]


def test_insufficient_points_blocks_offer(services, make_provider, make_request):
    services.settings.set("offer_point_cost", 50)
    provider = make_provider("prov_broke")
    request = make_request("cust_broke")

    with pytest.raises(InsufficientPointsError):
        services.requests.submit_offer(request.id, _offer("prov_broke"))
    assert _count(services, "SELECT COUNT(*) FROM offers") == 0
    assert services.quota.can_submit(provider.id).used == 0


def test_engagement_completion_flow(services, make_provider, make_request):
    make_provider("prov_done")
    request = make_request("cust_done")
    offer = services.requests.submit_offer(request.id, _offer("prov_done"))
    engagement = services.requests.accept_offer(offer.id, "cust_done").engagement

    with pytest.raises(StorePermissionError):
        services.requests.report_completion(engagement.id, "cust_done", ["after.jpg"])
    with pytest.raises(StoreValidationError):
        services.requests.report_completion(engagement.id, "prov_done", [])

    reported = services.requests.report_completion(engagement.id, "prov_done", ["after.jpg"])
    assert reported.completion_reported_at is not None
    assert reported.completion_images == ["after.jpg"]

    with pytest.raises(StorePermissionError):
        services.requests.confirm_completion(engagement.id, "prov_done")
    completed = services.requests.confirm_completion(engagement.id, "cust_done")
    assert (completed.status, completed.completed_by) == ("COMPLETED", "CUSTOMER")

    with pytest.raises(InvalidStateError):
        services.requests.cancel_engagement(engagement.id, "cust_done", "changed my mind")
    with pytest.raises(InvalidStateError):
        services.requests.report_completion(engagement.id, "prov_done", ["again.jpg"])


def test_engagement_cancellation(services, make_provider, make_request):
    make_provider("prov_cancel_eng")
    request = make_request("cust_cancel_eng")
    offer = services.requests.submit_offer(request.id, _offer("prov_cancel_eng"))
    engagement = services.requests.accept_offer(offer.id, "cust_cancel_eng").engagement

    with pytest.raises(StorePermissionError):
        services.requests.cancel_engagement(engagement.id, "stranger", "no reason")

    cancelled = services.requests.cancel_engagement(engagement.id, "prov_cancel_eng", "Vehicle broke down")
    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_by == "PROVIDER"
    assert cancelled.cancellation_reason == "Vehicle broke down"
    assert services.notifications.list_for_user("cust_cancel_eng")[0].kind == "engagement_cancelled"


def test_read_paths(services, make_provider, make_request):
    make_provider("prov_reader")
    mine = make_request("cust_reader")
    make_request("cust_other")
    services.requests.submit_offer(mine.id, _offer("prov_reader"))

    assert [row.id for row in services.requests.list_requests(customer_id="cust_reader")] == [mine.id]
    assert len(services.requests.list_requests()) == 2
    offers = services.requests.list_provider_offers("prov_reader")
    assert [offer.request_id for offer in offers] == [mine.id]
    assert services.requests.list_engagements("prov_reader") == []
