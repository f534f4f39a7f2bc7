"""
HTTP tests through the FastAPI app with the session dependency pointed at a
temporary SQLite database.
"""

from datetime import date, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.api.deps import get_settings, limiter
from app.core.authorization import Role
from app.core.security import create_access_token, get_password_hash
from app.db.models import User
from app.db.session import get_session
from app.main import app

API = "/api/v1"
START = date.today() + timedelta(days=60)

PASSWORD_HASH = get_password_hash("Secret123")


async def add_user(db, username, role=Role.USER):
    async with db.get_session() as session:
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=PASSWORD_HASH,
            role=role,
        )
        session.add(user)
        await session.commit()
        return user


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def travelers(count):
    return [{"first_name": f"Guest{i}", "last_name": "Silva"} for i in range(count)]


@pytest_asyncio.fixture
async def client(db, settings):
    async def session_override():
        async with db.get_session() as session:
            yield session

    app.dependency_overrides[get_session] = session_override
    app.dependency_overrides[get_settings] = lambda: settings
    limiter_was_enabled = limiter.enabled
    limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.enabled = limiter_was_enabled


@pytest_asyncio.fixture
async def people(db):
    return {
        "admin": await add_user(db, "admin", Role.ADMIN),
        "alice": await add_user(db, "alice"),
        "bob": await add_user(db, "bob"),
    }


async def create_tour(client, admin, total_spots=2):
    response = await client.post(f"{API}/tours", headers=bearer(admin), json={
        "name": "Lisbon Tram and Tiles",
        "base_price": 100,
        "max_group_size": 8,
        "windows": [{"start_date": START.isoformat(), "total_spots": total_spots}],
    })
    assert response.status_code == 201, response.text
    return response.json()


async def book(client, user, tour_id, count, start=START):
    return await client.post(f"{API}/bookings", headers=bearer(user), json={
        "tour_id": tour_id,
        "start_date": start.isoformat(),
        "travelers": travelers(count),
    })


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "API active"


@pytest.mark.asyncio
async def test_register_login_and_me(client):
    response = await client.post(f"{API}/auth/register", json={
        "username": "Traveler_01",
        "email": "Traveler@Example.com",
        "password": "Secret123",
    })
    assert response.status_code == 201, response.text
    assert response.json()["username"] == "traveler_01"
    assert response.json()["role"] == "user"

    response = await client.post(f"{API}/auth/login", data={"username": "traveler_01", "password": "Secret123"})
    assert response.status_code == 200
    token = response.json()["access_token"]

    response = await client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["email"] == "traveler@example.com"

    response = await client.post(f"{API}/auth/login", data={"username": "traveler_01", "password": "Wrong123"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_cannot_be_self_registered(client):
    response = await client.post(f"{API}/auth/register", json={
        "username": "sneaky",
        "email": "sneaky@example.com",
        "password": "Secret123",
        "role": "admin",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_booking_requires_authentication(client):
    response = await client.get(f"{API}/bookings/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_booking_capacity_and_cancellation(client, people):
    tour = await create_tour(client, people["admin"])
    assert tour["windows"][0]["available_spots"] == 2

    response = await book(client, people["alice"], tour["id"], 2)
    assert response.status_code == 201, response.text
    booking = response.json()
    assert booking["price"]["total_price"] == 220.0
    assert booking["status"] == "pending"

    response = await book(client, people["bob"], tour["id"], 1)
    assert response.status_code == 400
    assert response.json()["code"] == "insufficient_capacity"

    response = await client.get(
        f"{API}/tours/{tour['id']}/availability",
        params={"date": START.isoformat(), "travelers": 1},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "insufficient_capacity"

    response = await client.get(f"{API}/bookings/{booking['id']}", headers=bearer(people["bob"]))
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    response = await client.post(f"{API}/bookings/{booking['id']}/payments", headers=bearer(people["admin"]), json={
        "transaction_id": "pi_220",
        "amount": 220.0,
    })
    assert response.json()["payment"]["status"] == "paid"

    response = await client.patch(
        f"{API}/bookings/{booking['id']}/cancel",
        headers=bearer(people["alice"]),
        json={"reason": "Flight cancelled"},
    )
    assert response.status_code == 200, response.text
    assert response.json()["refund_amount"] == 220.0
    assert response.json()["booking"]["cancellation"]["reason"] == "Flight cancelled"

    response = await client.get(f"{API}/tours/{tour['id']}")
    assert response.json()["windows"][0]["available_spots"] == 2

    response = await client.patch(f"{API}/bookings/{booking['id']}/cancel", headers=bearer(people["alice"]))
    assert response.status_code == 400
    assert response.json()["code"] == "already_cancelled"


@pytest.mark.asyncio
async def test_unknown_date_and_booking(client, people):
    tour = await create_tour(client, people["admin"])

    response = await book(client, people["alice"], tour["id"], 1, start=START + timedelta(days=1))
    assert response.status_code == 400
    assert response.json()["code"] == "not_available"

    response = await client.get(
        f"{API}/tours/{tour['id']}/availability",
        params={"date": (START + timedelta(days=1)).isoformat()},
    )
    assert response.status_code == 400

    response = await client.get(f"{API}/tours/{tour['id']}/availability", params={"date": START.isoformat()})
    assert response.status_code == 200
    assert response.json()["available_spots"] == 2

    response = await client.get(
        f"{API}/bookings/00000000-0000-0000-0000-000000000000",
        headers=bearer(people["alice"]),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_confirmation_flow(client, people):
    tour = await create_tour(client, people["admin"])
    booking = (await book(client, people["alice"], tour["id"], 1)).json()
    admin = bearer(people["admin"])

    response = await client.patch(f"{API}/bookings/{booking['id']}/confirm", headers=bearer(people["alice"]))
    assert response.status_code == 403

    response = await client.patch(f"{API}/bookings/{booking['id']}/confirm", headers=admin)
    assert response.status_code == 402
    assert response.json()["code"] == "payment_required"

    response = await client.post(f"{API}/bookings/{booking['id']}/payments", headers=admin, json={
        "transaction_id": "pi_123",
        "amount": 110.0,
        "gateway": "stripe",
    })
    assert response.status_code == 200, response.text
    assert response.json()["payment"]["status"] == "paid"

    response = await client.patch(f"{API}/bookings/{booking['id']}/confirm", headers=admin)
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"

    response = await client.patch(
        f"{API}/bookings/{booking['id']}",
        headers=bearer(people["alice"]),
        json={"start_date": (START + timedelta(days=7)).isoformat()},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_transition"


@pytest.mark.asyncio
async def test_listing_and_stats(client, people):
    tour = await create_tour(client, people["admin"], total_spots=5)
    await book(client, people["alice"], tour["id"], 1)
    await book(client, people["bob"], tour["id"], 2)

    response = await client.get(f"{API}/bookings/me", headers=bearer(people["alice"]))
    assert response.status_code == 200
    assert len(response.json()) == 1

    response = await client.get(f"{API}/bookings", headers=bearer(people["alice"]))
    assert response.status_code == 403

    response = await client.get(f"{API}/bookings", headers=bearer(people["admin"]), params={"status": "pending"})
    assert len(response.json()) == 2

    response = await client.get(f"{API}/bookings/stats/overview", headers=bearer(people["alice"]))
    assert response.status_code == 403

    response = await client.get(f"{API}/bookings/stats/overview", headers=bearer(people["admin"]))
    assert response.status_code == 200
    stats = response.json()
    assert stats["overall"]["totalBookings"] == 2
    assert stats["overall"]["totalRevenue"] == 330.0
    assert sum(row["count"] for row in stats["statusStats"]) == 2


@pytest.mark.asyncio
async def test_review_flow(client, people):
    tour = await create_tour(client, people["admin"])
    booking = (await book(client, people["alice"], tour["id"], 1)).json()
    admin = bearer(people["admin"])
    review = {"booking_id": booking["id"], "rating": 4, "title": "Lovely", "comment": "Great tiles."}

    response = await client.post(f"{API}/reviews/tour/{tour['id']}", headers=bearer(people["alice"]), json=review)
    assert response.status_code == 400
    assert response.json()["code"] == "review_not_allowed"

    await client.post(f"{API}/bookings/{booking['id']}/payments", headers=admin,
                      json={"transaction_id": "pi_9", "amount": 110.0})
    await client.patch(f"{API}/bookings/{booking['id']}/confirm", headers=admin)
    response = await client.patch(f"{API}/bookings/{booking['id']}", headers=admin, json={"status": "completed"})
    assert response.json()["status"] == "completed"

    response = await client.post(f"{API}/reviews/tour/{tour['id']}", headers=bearer(people["alice"]), json=review)
    assert response.status_code == 201, response.text
    review_id = response.json()["id"]

    response = await client.post(f"{API}/reviews/tour/{tour['id']}", headers=bearer(people["alice"]), json=review)
    assert response.status_code == 409
    assert response.json()["code"] == "duplicate_review"

    response = await client.get(f"{API}/reviews/tour/{tour['id']}")
    assert [r["id"] for r in response.json()] == [review_id]

    response = await client.get(f"{API}/reviews/tour/{tour['id']}/stats")
    assert response.json()["averageRating"] == 4.0

    response = await client.post(f"{API}/reviews/{review_id}/report", headers=bearer(people["bob"]))
    assert response.status_code == 200
    assert response.json()["reported_count"] == 1

    response = await client.delete(f"{API}/reviews/{review_id}", headers=bearer(people["bob"]))
    assert response.status_code == 403

    response = await client.delete(f"{API}/reviews/{review_id}", headers=bearer(people["alice"]))
    assert response.status_code == 204
