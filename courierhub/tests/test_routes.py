"""HTTP surface under /api/v1: auth, status codes, and the end-to-end flow."""

import pytest

PICKUP = {"latitude": 40.7580, "longitude": -73.9855}
DESTINATION = {"latitude": 40.7128, "longitude": -74.0060}
NEAR_PICKUP = {"latitude": 40.7590, "longitude": -73.9845}


def _listing_body(**overrides):
    body = {
        "item_description": "Bagels from the corner shop",
        "item_price": 50,
        "max_fee": 10,
        "pickup": PICKUP,
        "destination": DESTINATION,
    }
    body.update(overrides)
    return body


async def test_health(client):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/v1/users/me"),
        ("get", "/api/v1/wallet/balance"),
        ("post", "/api/v1/listings"),
        ("get", "/api/v1/listings/nearby"),
        ("post", "/api/v1/bids/some-bid/withdraw"),
    ],
)
async def test_routes_require_auth(client, method, path):
    response = await getattr(client, method)(path)
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


async def test_bad_token_rejected(client, auth_header):
    response = await client.get("/api/v1/users/me", headers=auth_header("not-a-jwt"))
    assert response.status_code == 401


async def test_me_creates_user_on_first_call(client, auth_header):
    from courierhub.core.auth import create_access_token

    token = create_access_token("tg-12345")
    response = await client.get("/api/v1/users/me", headers=auth_header(token))
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "tg-12345"
    assert body["wallet_balance"] == 0
    assert body["rating"] == 5.0
    assert body["conversation_state"] == "idle"


async def test_topup_and_history(client, make_user, auth_header):
    _, token = await make_user()
    response = await client.post("/api/v1/wallet/topup", headers=auth_header(token), json={"amount": 100})
    assert response.status_code == 200
    assert response.json()["balance"] == 100.0

    response = await client.post("/api/v1/wallet/topup", headers=auth_header(token), json={"amount": 20000})
    assert response.status_code == 422

    history = await client.get("/api/v1/wallet/history", headers=auth_header(token))
    assert history.json()["total"] == 1
    assert history.json()["entries"][0]["entry_type"] == "topup"


async def test_create_listing_insufficient_funds_is_402(client, make_user, auth_header):
    _, token = await make_user(balance=10)
    response = await client.post("/api/v1/listings", headers=auth_header(token), json=_listing_body())
    assert response.status_code == 402
    assert "top up" in response.json()["detail"]
    assert response.json()["code"] == "insufficient_funds"


async def test_create_listing_missing_location_is_422(client, make_user, auth_header):
    _, token = await make_user(balance=100)
    response = await client.post(
        "/api/v1/listings", headers=auth_header(token), json=_listing_body(pickup=None)
    )
    assert response.status_code == 422
    assert "pickup" in response.json()["detail"]
    assert response.json()["code"] == "invalid_input"


async def test_end_to_end_delivery(client, make_user, auth_header):
    buyer, buyer_token = await make_user(balance=100)
    t_a, token_a = await make_user()
    t_b, token_b = await make_user()

    created = await client.post("/api/v1/listings", headers=auth_header(buyer_token), json=_listing_body())
    assert created.status_code == 201
    listing_id = created.json()["id"]
    assert created.json()["reserved_amount"] == 30.0

    low = await client.post(
        f"/api/v1/listings/{listing_id}/bids", headers=auth_header(token_a), json={"proposed_fee": 9}
    )
    assert low.status_code == 422
    assert "at least $10.00" in low.json()["detail"]
    assert low.json()["code"] == "fee_too_low"

    own = await client.post(
        f"/api/v1/listings/{listing_id}/bids", headers=auth_header(buyer_token), json={"proposed_fee": 12}
    )
    assert own.status_code == 409
    assert own.json() == {"code": "self_bid_not_allowed", "detail": own.json()["detail"]}

    bid_a = (
        await client.post(
            f"/api/v1/listings/{listing_id}/bids", headers=auth_header(token_a), json={"proposed_fee": 15}
        )
    ).json()
    bid_b = (
        await client.post(
            f"/api/v1/listings/{listing_id}/bids", headers=auth_header(token_b), json={"proposed_fee": 11}
        )
    ).json()

    buyer_view = await client.get(f"/api/v1/listings/{listing_id}/bids", headers=auth_header(buyer_token))
    assert len(buyer_view.json()["results"]) == 2
    traveler_view = await client.get(f"/api/v1/listings/{listing_id}/bids", headers=auth_header(token_a))
    assert [b["id"] for b in traveler_view.json()["results"]] == [bid_a["id"]]

    forbidden = await client.post(
        f"/api/v1/listings/{listing_id}/bids/{bid_a['id']}/accept", headers=auth_header(token_a)
    )
    assert forbidden.status_code == 403

    accepted = await client.post(
        f"/api/v1/listings/{listing_id}/bids/{bid_a['id']}/accept", headers=auth_header(buyer_token)
    )
    assert accepted.status_code == 200
    otps = accepted.json()

    second = await client.post(
        f"/api/v1/listings/{listing_id}/bids/{bid_b['id']}/accept", headers=auth_header(buyer_token)
    )
    assert second.status_code == 409
    assert "already matched" in second.json()["detail"]
    assert second.json()["code"] == "invalid_state"

    wrong = await client.post(
        f"/api/v1/listings/{listing_id}/otp",
        headers=auth_header(buyer_token),
        json={"role": "buyer", "code": otps["otp_buyer"] if otps["otp_buyer"] != otps["otp_traveler"] else "x"},
    )
    assert wrong.status_code == 400
    assert wrong.json()["code"] == "invalid_otp"

    first = await client.post(
        f"/api/v1/listings/{listing_id}/otp",
        headers=auth_header(buyer_token),
        json={"role": "buyer", "code": otps["otp_traveler"]},
    )
    assert first.json() == {"listing_id": listing_id, "confirmed": True, "settled": False}

    done = await client.post(
        f"/api/v1/listings/{listing_id}/otp",
        headers=auth_header(token_a),
        json={"role": "traveler", "code": otps["otp_buyer"]},
    )
    assert done.json()["settled"] is True

    buyer_balance = await client.get("/api/v1/wallet/balance", headers=auth_header(buyer_token))
    assert buyer_balance.json()["balance"] == 37.5
    assert buyer_balance.json()["held_in_escrow"] == 0
    traveler_balance = await client.get("/api/v1/wallet/balance", headers=auth_header(token_a))
    assert traveler_balance.json()["balance"] == 61.75

    rated = await client.post(
        f"/api/v1/listings/{listing_id}/rating", headers=auth_header(buyer_token), json={"rating": 4}
    )
    assert rated.status_code == 201
    profile = await client.get(f"/api/v1/users/{t_a.id}")
    assert profile.json()["rating"] == 4.0

    mine = await client.get("/api/v1/listings/mine", headers=auth_header(token_a))
    assert [item["status"] for item in mine.json()["results"]] == ["completed"]


async def test_cancel_via_api(client, make_user, auth_header):
    _, buyer_token = await make_user(balance=100)
    _, other_token = await make_user()
    listing_id = (
        await client.post("/api/v1/listings", headers=auth_header(buyer_token), json=_listing_body())
    ).json()["id"]

    assert (await client.post(f"/api/v1/listings/{listing_id}/cancel", headers=auth_header(other_token))).status_code == 403
    response = await client.post(f"/api/v1/listings/{listing_id}/cancel", headers=auth_header(buyer_token))
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert (await client.post(f"/api/v1/listings/{listing_id}/cancel", headers=auth_header(buyer_token))).status_code == 409

    balance = await client.get("/api/v1/wallet/balance", headers=auth_header(buyer_token))
    assert balance.json()["balance"] == 100.0


async def test_direct_accept_and_withdraw_via_api(client, make_user, auth_header):
    _, buyer_token = await make_user(balance=100)
    _, t1 = await make_user()
    _, t2 = await make_user()
    listing_id = (
        await client.post("/api/v1/listings", headers=auth_header(buyer_token), json=_listing_body())
    ).json()["id"]

    bid = (
        await client.post(f"/api/v1/listings/{listing_id}/bids", headers=auth_header(t1), json={"proposed_fee": 12})
    ).json()
    withdrawn = await client.post(f"/api/v1/bids/{bid['id']}/withdraw", headers=auth_header(t1))
    assert withdrawn.json()["status"] == "declined"

    matched = await client.post(f"/api/v1/listings/{listing_id}/accept", headers=auth_header(t2))
    assert matched.status_code == 200
    assert matched.json()["accepted_fee"] == 10.0

    late = await client.post(f"/api/v1/listings/{listing_id}/accept", headers=auth_header(t1))
    assert late.status_code == 409


async def test_availability_and_nearby(client, make_user, auth_header):
    _, buyer_token = await make_user(balance=100)
    _, traveler_token = await make_user()
    await client.post("/api/v1/listings", headers=auth_header(buyer_token), json=_listing_body())

    no_location = await client.get("/api/v1/listings/nearby", headers=auth_header(traveler_token))
    assert no_location.status_code == 422

    response = await client.put(
        "/api/v1/users/me/availability",
        headers=auth_header(traveler_token),
        json={"is_available": True, "location": NEAR_PICKUP, "radius_km": 2},
    )
    assert response.status_code == 200
    assert response.json()["is_available"] is True

    nearby = await client.get("/api/v1/listings/nearby", headers=auth_header(traveler_token))
    results = nearby.json()["results"]
    assert len(results) == 1
    assert results[0]["distance_km"] < 1


async def test_available_travelers_map(client, make_user, auth_header):
    traveler, traveler_token = await make_user(balance=25, username="courier")
    _, idle_token = await make_user()

    assert (await client.get("/api/v1/users/available")).status_code == 401
    empty = await client.get("/api/v1/users/available", headers=auth_header(idle_token))
    assert empty.json() == {"results": []}

    await client.put(
        "/api/v1/users/me/availability",
        headers=auth_header(traveler_token),
        json={"is_available": True, "location": NEAR_PICKUP, "radius_km": 3},
    )
    # Available but never shared a location: not on the map
    await client.put(
        "/api/v1/users/me/availability", headers=auth_header(idle_token), json={"is_available": True}
    )

    response = await client.get("/api/v1/users/available", headers=auth_header(idle_token))
    assert response.status_code == 200
    results = response.json()["results"]
    assert [u["id"] for u in results] == [traveler.id]
    assert results[0]["username"] == "courier"
    assert results[0]["location"] == NEAR_PICKUP
    assert results[0]["radius_km"] == 3
    assert "wallet_balance" not in results[0]


async def test_live_location_via_api(client, make_user, auth_header):
    _, buyer_token = await make_user(balance=100)
    _, traveler_token = await make_user()

    not_live = await client.post(
        "/api/v1/users/me/location", headers=auth_header(traveler_token), json={"location": PICKUP}
    )
    assert not_live.status_code == 409

    await client.put(
        "/api/v1/users/me/availability",
        headers=auth_header(traveler_token),
        json={"is_available": True, "location": DESTINATION, "radius_km": 1, "is_live_location": True},
    )
    await client.post("/api/v1/listings", headers=auth_header(buyer_token), json=_listing_body())

    pushed = await client.post(
        "/api/v1/users/me/location", headers=auth_header(traveler_token), json={"location": NEAR_PICKUP}
    )
    assert pushed.status_code == 200
    events = pushed.json()["pushed"]
    assert len(events) == 1
    assert events[0]["type"] == "new_listing_nearby"
    assert events[0]["transient"] is True

    stopped = await client.delete("/api/v1/users/me/live-location", headers=auth_header(traveler_token))
    assert stopped.json()["is_available"] is False


async def test_unknown_listing_is_404(client, make_user, auth_header):
    _, token = await make_user()
    response = await client.post("/api/v1/listings/nope/cancel", headers=auth_header(token))
    assert response.status_code == 404
