"""Tests for registration, user lookups and premium upgrades."""

from datetime import datetime, timezone

from bson import ObjectId


class TestRegistration:
    """POST /users"""

    def test_register_creates_user_with_defaults(self, client, db):
        response = client.post("/users", json={"email": "new@example.com", "name": "New", "photoURL": "p.png"})
        assert response.status_code == 200
        data = response.json()
        assert data["acknowledged"] is True
        user = db["users"].find_one({"_id": ObjectId(data["insertedId"])})
        assert user["email"] == "new@example.com"
        assert user["role"] == "user"
        assert user["accessLevel"] == "free"
        assert user["photoURL"] == "p.png"
        assert "createdAt" in user

    def test_register_ignores_client_supplied_role(self, client, db):
        client.post("/users", json={"email": "sneaky@example.com", "role": "admin", "accessLevel": "premium"})
        user = db["users"].find_one({"email": "sneaky@example.com"})
        assert user["role"] == "user"
        assert user["accessLevel"] == "free"

    def test_register_twice_is_a_no_op(self, client, db):
        first = client.post("/users", json={"email": "dup@example.com", "name": "First"})
        second = client.post("/users", json={"email": "dup@example.com", "name": "Second"})
        assert first.json()["insertedId"]
        assert second.status_code == 200
        assert second.json() == {"message": "user already exists", "insertedId": None}
        assert db["users"].count_documents({"email": "dup@example.com"}) == 1
        assert db["users"].find_one({"email": "dup@example.com"})["name"] == "First"

    def test_register_stores_email_as_sent(self, client, db):
        client.post("/users", json={"email": "Bob@Gmail.COM"})
        assert db["users"].find_one({"email": "Bob@Gmail.COM"}) is not None
        assert client.get("/users/email/Bob@Gmail.COM").status_code == 200

    def test_register_does_not_store_unsent_fields(self, client, db):
        client.post("/users", json={"email": "bare@example.com"})
        user = db["users"].find_one({"email": "bare@example.com"})
        assert "name" not in user

    def test_register_rejects_malformed_email(self, client, db):
        response = client.post("/users", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert db["users"].count_documents({}) == 0

    def test_register_requires_email(self, client, db):
        response = client.post("/users", json={"name": "No Email"})
        assert response.status_code == 400
        assert db["users"].count_documents({}) == 0


class TestUserLookup:
    """GET /users/email/{email} and GET /users"""

    def test_get_user_by_email(self, client):
        client.post("/users", json={"email": "me@example.com", "name": "Me"})
        response = client.get("/users/email/me@example.com")
        assert response.status_code == 200
        assert response.json()["name"] == "Me"
        assert isinstance(response.json()["_id"], str)

    def test_get_unknown_user_is_404(self, client):
        assert client.get("/users/email/ghost@example.com").status_code == 404

    def test_admin_lists_users_newest_first(self, client, db, admin_headers):
        db["users"].insert_many([
            {"email": "a@example.com", "role": "user", "createdAt": datetime(2031, 1, 1, tzinfo=timezone.utc)},
            {"email": "b@example.com", "role": "user", "createdAt": datetime(2032, 1, 1, tzinfo=timezone.utc)},
        ])
        response = client.get("/users", headers=admin_headers)
        assert response.status_code == 200
        emails = [u["email"] for u in response.json()]
        assert emails == ["b@example.com", "a@example.com", "admin@example.com"]

    def test_admin_filters_users_by_email(self, client, admin_headers):
        client.post("/users", json={"email": "a@example.com"})
        response = client.get("/users", params={"email": "a@example.com"}, headers=admin_headers)
        assert [u["email"] for u in response.json()] == ["a@example.com"]


class TestPremium:
    """PATCH /users/make-premium/{email}"""

    def test_upgrade_sets_access_level_only(self, client):
        client.post("/users", json={"email": "pay@example.com", "name": "Payer"})
        response = client.patch("/users/make-premium/pay@example.com")
        assert response.status_code == 200
        assert response.json()["modifiedCount"] == 1

        user = client.get("/users/email/pay@example.com").json()
        assert user["accessLevel"] == "premium"
        assert user["name"] == "Payer"
        assert user["role"] == "user"

    def test_upgrade_with_mixed_case_domain(self, client):
        client.post("/users", json={"email": "Bob@Gmail.COM"})
        assert client.patch("/users/make-premium/Bob@Gmail.COM").status_code == 200
        assert client.get("/users/email/Bob@Gmail.COM").json()["accessLevel"] == "premium"

    def test_upgrade_unknown_user_is_404(self, client):
        assert client.patch("/users/make-premium/ghost@example.com").status_code == 404
