"""API tests for resources, reservations and quotas."""

import pytest

from tests.support import ADMIN, GUILD_ID, USER_A, USER_B, at, iso, user_headers


async def _book(client, user_id, resource_id, start, end, **extra):
    return await client.post(
        "/v1/reservations/create",
        json={"guild_id": GUILD_ID, "resource_id": resource_id, "start": iso(start), "end": iso(end), **extra},
        headers=user_headers(user_id),
    )


@pytest.mark.asyncio
async def test_health_endpoints(test_client):
    response = await test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    ping = await test_client.post("/v1/health/ping")
    assert ping.status_code == 200
    assert ping.json()["status"] == "healthy"
    assert ping.json()["timestamp"] == "2030-01-07T12:00:00"


@pytest.mark.asyncio
async def test_info_and_readiness(test_client):
    info = await test_client.get("/info")
    ready = await test_client.get("/ready")

    assert info.json()["defaults"]["offer_hold_minutes"] == 15
    assert info.json()["store"] == "sqlite"
    assert ready.status_code == 200
    assert ready.json()["checks"]["database"] == "ok"
    assert set(ready.json()["checks"]["workers"]) == {"offer_expiry", "transfer"}


@pytest.mark.asyncio
async def test_metrics_endpoint(test_client):
    response = await test_client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]


@pytest.mark.asyncio
async def test_resource_setup_flow(test_client):
    guild = await test_client.put(f"/v1/guilds/{GUILD_ID}", json={"name": "Makerspace", "offer_hold_minutes": 30})
    assert guild.status_code == 200
    assert guild.json()["offer_hold_minutes"] == 30

    created_class = await test_client.post(
        "/v1/resources/classes/create", json={"guild_id": GUILD_ID, "name": "Cameras"}
    )
    assert created_class.status_code == 201
    class_id = created_class.json()["id"]

    duplicate = await test_client.post(
        "/v1/resources/classes/create", json={"guild_id": GUILD_ID, "name": "Cameras"}
    )
    assert duplicate.status_code == 409

    created = await test_client.post(
        "/v1/resources/create", json={"guild_id": GUILD_ID, "name": "Camera 1", "class_id": class_id}
    )
    assert created.status_code == 201
    resource_id = created.json()["id"]

    fetched = await test_client.get(f"/v1/resources/{resource_id}")
    assert fetched.status_code == 200
    assert fetched.json()["class_id"] == class_id
    assert fetched.json()["status"] == "available"


@pytest.mark.asyncio
async def test_unknown_resource_is_404_problem(test_client, guild):
    response = await test_client.get("/v1/resources/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 404
    assert response.json()["type"] == "https://gearbook.dev/problems/resource-not-found"


@pytest.mark.asyncio
async def test_garbage_id_is_400(test_client):
    response = await test_client.get("/v1/reservations/not-a-uuid")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_missing_user_header_is_400(test_client, resource):
    response = await test_client.post(
        "/v1/reservations/create",
        json={"guild_id": GUILD_ID, "resource_id": str(resource.id), "start": iso(at(24)), "end": iso(at(26))},
    )

    assert response.status_code == 400
    assert "X-User-Id" in response.json()["detail"]


@pytest.mark.asyncio
async def test_create_and_conflict(test_client, resource):
    first = await _book(test_client, USER_A, str(resource.id), at(24), at(26), location="Front desk")
    second = await _book(test_client, USER_B, str(resource.id), at(25), at(27))

    assert first.status_code == 200
    body = first.json()
    assert body["result"]["code"] == "admitted"
    assert body["reservation"]["user_id"] == USER_A
    assert body["reservation"]["status"] == "confirmed"

    assert second.status_code == 200
    assert second.json()["result"]["code"] == "conflict"
    assert second.json()["reservation"] is None


@pytest.mark.asyncio
async def test_reversed_interval_is_400(test_client, resource):
    response = await _book(test_client, USER_A, str(resource.id), at(26), at(24))

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INTERVAL"


@pytest.mark.asyncio
async def test_timezone_offsets_are_normalized(test_client, resource):
    response = await test_client.post(
        "/v1/reservations/create",
        json={
            "guild_id": GUILD_ID,
            "resource_id": str(resource.id),
            "start": "2030-01-08T14:00:00+02:00",
            "end": "2030-01-08T16:00:00+02:00",
        },
        headers=user_headers(USER_A),
    )

    assert response.status_code == 200
    assert response.json()["reservation"]["start_time"].startswith("2030-01-08T12:00:00")


@pytest.mark.asyncio
async def test_validate_endpoint_reports_quota_rejection(test_client, resource, camera_class):
    await test_client.put(f"/v1/quotas/{GUILD_ID}/base", json={})
    await test_client.put(f"/v1/quotas/{GUILD_ID}/classes/{camera_class.id}", json={"max_duration_hours": 2})

    response = await test_client.post(
        "/v1/reservations/validate",
        json={"guild_id": GUILD_ID, "resource_id": str(resource.id), "start": iso(at(24)), "end": iso(at(27))},
        headers=user_headers(USER_A),
    )

    assert response.status_code == 200
    result = response.json()["result"]
    assert result == {"code": "exceeded_max_duration", "proposed": 3.0, "limit": 2}
    assert "2h maximum" in response.json()["message"]


@pytest.mark.asyncio
async def test_quota_override_by_admin(test_client, resource):
    await test_client.put(f"/v1/quotas/{GUILD_ID}/base", json={"max_active_count": 0})

    response = await test_client.post(
        "/v1/reservations/create",
        json={
            "guild_id": GUILD_ID,
            "resource_id": str(resource.id),
            "start": iso(at(24)),
            "end": iso(at(26)),
            "on_behalf_of_user_id": USER_A,
            "override_quota": True,
            "override_reason": "Course instructor",
        },
        headers=user_headers(ADMIN, admin=True),
    )

    body = response.json()
    assert body["quota_overridden"] is True
    assert body["reservation"]["user_id"] == USER_A
    assert body["result"]["code"] == "exceeded_active_count"

    audits = await test_client.get(f"/v1/quotas/{GUILD_ID}/overrides")
    assert audits.status_code == 200
    assert audits.json()[0]["acted_by_user_id"] == ADMIN
    assert audits.json()[0]["reason"] == "Course instructor"


@pytest.mark.asyncio
async def test_booking_for_others_needs_admin(test_client, resource):
    on_behalf = await _book(test_client, USER_B, str(resource.id), at(24), at(26), on_behalf_of_user_id=USER_A)
    override = await _book(test_client, USER_B, str(resource.id), at(24), at(26), override_quota=True)

    assert on_behalf.status_code == 403
    assert on_behalf.json()["code"] == "NOT_PERMITTED"
    assert on_behalf.json()["actor_user_id"] == USER_B
    assert override.status_code == 403

    listed = await test_client.get(f"/v1/reservations/resource/{resource.id}")
    assert listed.json() == []


@pytest.mark.asyncio
async def test_only_the_holder_cancels_or_returns(test_client, resource):
    booked = await _book(test_client, USER_A, str(resource.id), at(24), at(26))
    reservation_id = booked.json()["reservation"]["id"]

    stranger = await test_client.post(
        "/v1/reservations/cancel", json={"reservation_id": reservation_id}, headers=user_headers(USER_B)
    )
    returned = await test_client.post(
        "/v1/reservations/return", json={"reservation_id": reservation_id}, headers=user_headers(USER_B)
    )
    admin = await test_client.post(
        "/v1/reservations/cancel",
        json={"reservation_id": reservation_id},
        headers=user_headers(USER_B, admin=True),
    )

    assert stranger.status_code == 403
    assert stranger.json()["type"].endswith("/forbidden")
    assert returned.status_code == 403
    assert admin.status_code == 200
    assert admin.json()["reservation"]["status"] == "cancelled"


@pytest.mark.asyncio
async def test_effective_quota(test_client, resource, camera_class):
    await test_client.put(f"/v1/quotas/{GUILD_ID}/base", json={"max_active_count": 2, "max_hours_7d": 10})
    await test_client.put(f"/v1/quotas/{GUILD_ID}/roles/77", json={"max_active_count": 5})
    await test_client.put(
        f"/v1/quotas/{GUILD_ID}/classes/{camera_class.id}", json={"min_lead_time_minutes": 30}
    )
    await _book(test_client, USER_A, str(resource.id), at(24), at(26))

    response = await test_client.get(
        "/v1/quotas/effective",
        params={"guild_id": GUILD_ID, "resource_id": str(resource.id)},
        headers=user_headers(USER_A, role_ids=(77,)),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["configured"] is True
    assert body["limits"]["max_active_count"] == 5
    # The role layer leaves hours empty, which lifts the base limit
    assert body["limits"]["max_hours_7d"] is None
    assert body["limits"]["min_lead_time_minutes"] == 30
    assert body["usage"]["active_count"] == 1

    roles = await test_client.get(f"/v1/quotas/{GUILD_ID}/roles")
    assert [r["role_id"] for r in roles.json()] == [77]


@pytest.mark.asyncio
async def test_removing_base_turns_quota_off(test_client, resource):
    await test_client.put(f"/v1/quotas/{GUILD_ID}/base", json={"max_active_count": 0})
    rejected = await _book(test_client, USER_A, str(resource.id), at(24), at(26))

    deleted = await test_client.delete(f"/v1/quotas/{GUILD_ID}/base")
    admitted = await _book(test_client, USER_A, str(resource.id), at(24), at(26))
    missing = await test_client.delete(f"/v1/quotas/{GUILD_ID}/base")

    assert rejected.json()["result"]["code"] == "exceeded_active_count"
    assert deleted.status_code == 200
    assert admitted.json()["result"]["code"] == "admitted"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_negative_limit_is_rejected(test_client, guild):
    response = await test_client.put(f"/v1/quotas/{GUILD_ID}/base", json={"max_active_count": -1})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cancel_offers_window_to_waitlist(test_client, resource):
    booked = await _book(test_client, USER_A, str(resource.id), at(24), at(26))
    reservation_id = booked.json()["reservation"]["id"]
    await test_client.post(
        "/v1/waitlist/join",
        json={
            "guild_id": GUILD_ID,
            "resource_id": str(resource.id),
            "desired_start": iso(at(24)),
            "desired_end": iso(at(26)),
        },
        headers=user_headers(USER_B),
    )

    cancelled = await test_client.post(
        "/v1/reservations/cancel", json={"reservation_id": reservation_id}, headers=user_headers(USER_A)
    )

    assert cancelled.status_code == 200
    body = cancelled.json()
    assert body["reservation"]["status"] == "cancelled"
    assert body["freed_window"]["start"].startswith("2030-01-08T12:00:00")
    assert body["offer_id"] is not None

    offers = await test_client.get("/v1/waitlist/offers", params={"guild_id": GUILD_ID}, headers=user_headers(USER_B))
    assert [o["id"] for o in offers.json()] == [body["offer_id"]]


@pytest.mark.asyncio
async def test_return_and_correction(test_client, resource, clock):
    booked = await _book(test_client, USER_A, str(resource.id), at(1), at(5))
    reservation_id = booked.json()["reservation"]["id"]
    clock.set(at(2))

    returned = await test_client.post(
        "/v1/reservations/return",
        json={"reservation_id": reservation_id, "return_location": "Shelf B"},
        headers=user_headers(USER_A),
    )
    twice = await test_client.post(
        "/v1/reservations/return", json={"reservation_id": reservation_id}, headers=user_headers(USER_A)
    )

    assert returned.status_code == 200
    assert returned.json()["reservation"]["return_location"] == "Shelf B"
    assert returned.json()["freed_window"] is not None
    assert twice.status_code == 409
    assert twice.json()["code"] == "ALREADY_RETURNED"

    clock.advance(minutes=61)
    late = await test_client.post(
        "/v1/reservations/correct-return", json={"reservation_id": reservation_id}, headers=user_headers(USER_A)
    )
    assert late.status_code == 409
    assert late.json()["code"] == "RETURN_CORRECTION_CLOSED"
