from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from btcc_fantasy import config, server

from conftest import FakeCollection, race_doc

SEASON = 2025
ELEVATION_KEY = "let-me-in"


def _user(id, username, pin, role="user", budget=100):
    return {
        "id": id,
        "season": SEASON,
        "username": username,
        "username_cf": username.casefold(),
        "pin": server.hash_pin(pin),
        "role": role,
        "budget": budget,
        "points": 0,
    }


def _driver(id, name, value, *categories):
    return {
        "id": id,
        "season": SEASON,
        "name": name,
        "name_cf": name.casefold(),
        "value": value,
        "previous_value": 0,
        "points": 0,
        "categories": list(categories),
    }


@pytest.fixture()
def db(monkeypatch):
    now = datetime.now(timezone.utc)
    collections = {
        "users": FakeCollection([
            _user("admin1", "Admin", "0000", role="admin", budget=0),
            _user("u1", "Sam", "1234"),
            _user("u2", "Kim", "5678", budget=50),
        ]),
        "drivers": FakeCollection([
            _driver("d1", "Ash Sutton", 20, "M"),
            _driver("d2", "Tom Ingram", 15, "M"),
            _driver("d3", "Jake Hill", 10, "JS"),
            _driver("d4", "Colin Turkington", 12, "JS"),
            _driver("d5", "Dan Rowbottom", 8, "I"),
            _driver("d6", "Josh Cook", 9, "I"),
            _driver("d7", "Gordon Shedden", 25, "M", "I"),
        ]),
        "races": FakeCollection([
            race_doc("open", now + timedelta(days=3), round_number=2),
            race_doc("soon", now + timedelta(hours=5), round_number=3),
            race_doc("past", now - timedelta(days=1), round_number=1),
            race_doc("locked", now + timedelta(days=10), locked=True, round_number=4),
        ]),
        "rosters": FakeCollection(),
        "seasons": FakeCollection(),
    }
    monkeypatch.setattr(server, "users_collection", collections["users"])
    monkeypatch.setattr(server, "drivers_collection", collections["drivers"])
    monkeypatch.setattr(server, "races_collection", collections["races"])
    monkeypatch.setattr(server, "rosters_collection", collections["rosters"])
    monkeypatch.setattr(server, "seasons_collection", collections["seasons"])
    monkeypatch.setattr(config, "ELEVATION_SECRET", ELEVATION_KEY)
    return collections


@pytest.fixture()
def client(db):
    # no context manager: startup would try to reach MongoDB
    return TestClient(server.app)


def login(client, username, pin):
    res = client.post("/api/auth/login", json={"username": username, "pin": pin, "season": SEASON})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['token']}"}


@pytest.fixture()
def user_headers(client):
    return login(client, "sam", "1234")


@pytest.fixture()
def admin_headers(client):
    return login(client, "admin", "0000")


@pytest.fixture()
def elevated_headers(client, admin_headers):
    res = client.post("/api/user/elevate", json={"elevation_key": ELEVATION_KEY}, headers=admin_headers)
    assert res.status_code == 200, res.text
    return {**admin_headers, config.ELEVATION_HEADER: f"Bearer {res.json()['token']}"}


TEAM = ["d1", "d2", "d3", "d4", "d5", "d6"]


def test_health(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


class TestAuth:
    def test_login_is_case_insensitive(self, client):
        res = client.post("/api/auth/login", json={"username": "  SAM ", "pin": "1234", "season": SEASON})
        body = res.json()
        assert res.status_code == 200
        assert body["user"] == {"id": "u1", "username": "Sam", "role": "user", "budget": 100, "points": 0, "season": SEASON}
        assert "pin" not in body["user"]

    def test_wrong_pin(self, client):
        res = client.post("/api/auth/login", json={"username": "sam", "pin": "9999", "season": SEASON})
        assert res.status_code == 401
        assert res.json() == {"success": False, "code": "UNAUTHORIZED", "message": "Invalid username or PIN"}

    def test_missing_field_is_validation_error(self, client):
        res = client.post("/api/auth/login", json={"username": "sam"})
        assert res.status_code == 400
        assert res.json()["code"] == "VALIDATION_ERROR"

    def test_verify(self, client, user_headers):
        res = client.get("/api/auth/verify", headers=user_headers)
        assert res.json()["user"]["id"] == "u1"

    def test_garbage_token(self, client):
        res = client.get("/api/auth/verify", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401
        assert res.json()["code"] == "UNAUTHORIZED"


class TestElevation:
    def test_requires_admin(self, client, user_headers):
        res = client.post("/api/user/elevate", json={"elevation_key": ELEVATION_KEY}, headers=user_headers)
        assert res.status_code == 403

    def test_wrong_key(self, client, admin_headers):
        res = client.post("/api/user/elevate", json={"elevation_key": "guess"}, headers=admin_headers)
        assert res.status_code == 403
        assert res.json()["message"] == "Invalid elevation key"

    def test_grant(self, client, admin_headers):
        res = client.post("/api/user/elevate", json={"elevation_key": ELEVATION_KEY}, headers=admin_headers)
        body = res.json()
        assert body["expires_in"] == f"{config.ELEVATION_MINUTES} minutes"
        assert body["token"]

    def test_unconfigured_secret(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(config, "ELEVATION_SECRET", "")
        res = client.post("/api/user/elevate", json={"elevation_key": "anything"}, headers=admin_headers)
        assert res.status_code == 503

    def test_elevated_token_is_not_a_session_token(self, client, elevated_headers):
        token = elevated_headers[config.ELEVATION_HEADER]
        res = client.get("/api/auth/verify", headers={"Authorization": token})
        assert res.status_code == 401


class TestDrivers:
    NEW = {"name": "Daniel Lloyd", "value": 5, "categories": ["JS"]}

    def test_list_filter_and_sort(self, client, user_headers):
        res = client.get(f"/api/driver/{SEASON}", params={"category": "I", "sort": "value", "order": "desc"}, headers=user_headers)
        assert [d["id"] for d in res.json()["drivers"]] == ["d7", "d6", "d5"]

    def test_write_needs_elevation(self, client, admin_headers):
        res = client.post(f"/api/driver/{SEASON}", json=self.NEW, headers=admin_headers)
        assert res.status_code == 401
        assert res.json()["code"] == "ELEVATION_REQUIRED"

    def test_session_token_cannot_stand_in_for_elevation(self, client, admin_headers):
        headers = {**admin_headers, config.ELEVATION_HEADER: admin_headers["Authorization"]}
        res = client.post(f"/api/driver/{SEASON}", json=self.NEW, headers=headers)
        assert res.status_code == 403
        assert res.json()["code"] == "ELEVATION_REQUIRED"

    def test_create_update_delete(self, client, elevated_headers, db):
        res = client.post(f"/api/driver/{SEASON}", json=self.NEW, headers=elevated_headers)
        assert res.status_code == 201
        driver = res.json()["driver"]
        assert "name_cf" not in driver

        res = client.put(f"/api/driver/{SEASON}/{driver['id']}", json={"value": 7}, headers=elevated_headers)
        assert res.json()["driver"]["value"] == 7
        assert res.json()["driver"]["previous_value"] == 5

        res = client.delete(f"/api/driver/{SEASON}/{driver['id']}", headers=elevated_headers)
        assert res.status_code == 200
        assert len(db["drivers"].docs) == 7

    def test_duplicate_name(self, client, elevated_headers):
        res = client.post(f"/api/driver/{SEASON}", json={"name": "ash sutton", "categories": ["M"]}, headers=elevated_headers)
        assert res.status_code == 409

    def test_unknown_category(self, client, elevated_headers):
        res = client.post(f"/api/driver/{SEASON}", json={"name": "New", "categories": ["X"]}, headers=elevated_headers)
        assert res.status_code == 400

    def test_missing_driver(self, client, user_headers):
        res = client.get(f"/api/driver/{SEASON}/nope", headers=user_headers)
        assert res.status_code == 404
        assert res.json()["code"] == "DRIVER_NOT_FOUND"


class TestUsers:
    def test_create_and_duplicate(self, client, elevated_headers):
        body = {"username": "Alex", "pin": "4321", "budget": 80}
        res = client.post(f"/api/user/{SEASON}", json=body, headers=elevated_headers)
        assert res.status_code == 201
        assert res.json()["user"]["budget"] == 80

        res = client.post(f"/api/user/{SEASON}", json={**body, "username": "ALEX"}, headers=elevated_headers)
        assert res.status_code == 409

    def test_list_requires_admin(self, client, user_headers, admin_headers):
        assert client.get(f"/api/user/{SEASON}", headers=user_headers).status_code == 403
        res = client.get(f"/api/user/{SEASON}", params={"role": "user"}, headers=admin_headers)
        assert [u["username"] for u in res.json()["users"]] == ["Kim", "Sam"]

    def test_reset_pin(self, client, elevated_headers):
        res = client.post(f"/api/user/{SEASON}/u1/reset-pin", json={"new_pin": "2468"}, headers=elevated_headers)
        assert res.status_code == 200
        login(client, "sam", "2468")

    def test_delete_cascades_rosters(self, client, elevated_headers, db):
        db["rosters"].docs.append({"id": "ro1", "season": SEASON, "user": "u2", "race": "open", "drivers": TEAM})
        res = client.delete(f"/api/user/{SEASON}/u2", headers=elevated_headers)
        assert res.status_code == 200
        assert db["rosters"].docs == []

    def test_cannot_delete_self(self, client, elevated_headers):
        res = client.delete(f"/api/user/{SEASON}/admin1", headers=elevated_headers)
        assert res.status_code == 400


class TestRaces:
    def test_list_sorted_by_deadline(self, client, user_headers):
        res = client.get(f"/api/race/{SEASON}", params={"sort": "submission_deadline"}, headers=user_headers)
        assert [r["id"] for r in res.json()["races"]] == ["past", "soon", "open", "locked"]

    @pytest.mark.parametrize(
        "race_id,status,can_submit",
        [("open", "open", True), ("soon", "urgent", True), ("past", "expired", False), ("locked", "locked", False)],
    )
    def test_eligibility(self, client, user_headers, race_id, status, can_submit):
        res = client.get(f"/api/race/{SEASON}/{race_id}/eligibility", headers=user_headers)
        body = res.json()
        assert body["status"] == status
        assert body["can_submit"] is can_submit

    def test_lock_toggle(self, client, elevated_headers, db):
        res = client.put(f"/api/race/{SEASON}/open/lock", json={"is_locked": True}, headers=elevated_headers)
        assert res.json()["race"]["is_locked"] is True
        assert next(r for r in db["races"].docs if r["id"] == "open")["is_locked"] is True

    def test_unknown_race(self, client, user_headers):
        res = client.get(f"/api/race/{SEASON}/nope", headers=user_headers)
        assert res.json()["code"] == "RACE_NOT_FOUND"


class TestRosters:
    def submit(self, client, headers, race="open", drivers=TEAM, user="u1"):
        return client.post(f"/api/roster/{SEASON}", json={"user": user, "race": race, "drivers": drivers}, headers=headers)

    def test_create_then_conflict(self, client, user_headers):
        res = self.submit(client, user_headers)
        assert res.status_code == 201
        assert res.json()["roster"]["budget_used"] == 74

        res = self.submit(client, user_headers)
        assert res.status_code == 409
        assert res.json()["code"] == "ROSTER_EXISTS"

    @pytest.mark.parametrize(
        "race,code",
        [("past", "DEADLINE_PASSED"), ("locked", "RACE_LOCKED"), ("nope", "RACE_NOT_FOUND")],
    )
    def test_closed_races(self, client, user_headers, race, code):
        assert self.submit(client, user_headers, race=race).json()["code"] == code

    def test_budget(self, client):
        headers = login(client, "kim", "5678")
        res = self.submit(client, headers, user="u2")
        assert res.status_code == 400
        assert res.json()["code"] == "BUDGET_EXCEEDED"
        assert res.json()["message"] == "Budget exceeded by £24.00"

    def test_composition(self, client, user_headers):
        res = self.submit(client, user_headers, drivers=["d1", "d2", "d3"])
        assert res.json()["code"] == "COMPOSITION_INVALID"

    def test_unknown_driver(self, client, user_headers):
        res = self.submit(client, user_headers, drivers=TEAM[:5] + ["ghost"])
        assert res.json()["code"] == "DRIVER_NOT_FOUND"

    def test_cannot_submit_for_someone_else(self, client, user_headers):
        assert self.submit(client, user_headers, user="u2").status_code == 403

    def test_update_and_query(self, client, user_headers):
        roster = self.submit(client, user_headers).json()["roster"]
        team = ["d7", "d2", "d3", "d4", "d5", "d6"]
        res = client.put(f"/api/roster/{SEASON}/{roster['id']}", json={"drivers": team}, headers=user_headers)
        assert res.status_code == 200
        assert res.json()["roster"]["budget_used"] == 79

        res = client.get(f"/api/roster/{SEASON}", params={"user": "u1", "race": "open"}, headers=user_headers)
        assert [r["drivers"] for r in res.json()["rosters"]] == [team]

        res = client.get(f"/api/roster/{SEASON}/user/u1", headers=user_headers)
        assert res.json()["count"] == 1

    def test_other_user_cannot_update(self, client, user_headers):
        roster = self.submit(client, user_headers).json()["roster"]
        headers = login(client, "kim", "5678")
        res = client.put(f"/api/roster/{SEASON}/{roster['id']}", json={"drivers": TEAM}, headers=headers)
        assert res.status_code == 403

    def test_delete(self, client, user_headers, db):
        roster = self.submit(client, user_headers).json()["roster"]
        res = client.delete(f"/api/roster/{SEASON}/{roster['id']}", headers=user_headers)
        assert res.status_code == 200
        assert db["rosters"].docs == []

    def test_user_rosters_are_private(self, client, user_headers, admin_headers, db):
        self.submit(client, user_headers)
        db["rosters"].docs[0]["points_earned"] = 12

        kim = login(client, "kim", "5678")
        assert client.get(f"/api/roster/{SEASON}/user/u1", headers=kim).status_code == 403

        res = client.get(f"/api/roster/{SEASON}/user/u1", headers=admin_headers)
        assert res.status_code == 200
        assert res.json()["summary"] == {
            "total_rosters": 1, "total_points": 12, "total_budget_used": 74, "avg_points": 12,
        }

    def test_stats(self, client, user_headers, db):
        self.submit(client, user_headers)
        self.submit(client, login(client, "admin", "0000"), user="u1", race="soon")
        db["rosters"].docs[0]["points_earned"] = 30
        db["rosters"].docs[1]["points_earned"] = 10

        stats = client.get(f"/api/roster/{SEASON}/stats", headers=user_headers).json()["stats"]
        assert stats["total"] == 2
        assert stats["avg_budget_used"] == 74
        assert stats["avg_points"] == 20
        assert [p["points_earned"] for p in stats["top_performers"]] == [30, 10]
        assert stats["top_performers"][0]["username"] == "Sam"
        assert [(b["name"], b["count"]) for b in stats["by_race"]] == [("Round 2", 1), ("Round 3", 1)]


class TestRosterValidation:
    def check(self, client, headers, drivers, race=None, user="u1"):
        return client.post(
            f"/api/roster/{SEASON}/validate", json={"user": user, "drivers": drivers, "race": race}, headers=headers
        )

    def test_valid_team_is_not_stored(self, client, user_headers, db):
        res = self.check(client, user_headers, TEAM, race="open")
        assert res.status_code == 200
        validation = res.json()["validation"]
        assert validation["is_valid"]
        assert validation["errors"] == []
        assert validation["calculated_budget"] == 74
        assert validation["budget"] == {"available": 100, "used": 74, "remaining": 26}
        assert validation["categories"]["missing"] == []
        assert db["rosters"].docs == []

    def test_problems_are_collected(self, client, user_headers):
        res = self.check(client, user_headers, ["d1", "ghost"], race="past")
        assert res.status_code == 200
        validation = res.json()["validation"]
        assert not validation["is_valid"]
        assert "Drivers not found: ghost" in validation["errors"]
        assert any("deadline" in e.lower() for e in validation["errors"])
        assert any("required size" in e for e in validation["errors"])
        assert validation["categories"] == {"present": ["M"], "missing": ["JS", "I"]}

    def test_over_budget(self, client):
        res = self.check(client, login(client, "kim", "5678"), TEAM, user="u2")
        validation = res.json()["validation"]
        assert not validation["is_valid"]
        assert validation["budget"]["remaining"] == -24
        assert any("exceeds budget" in e for e in validation["errors"])

    def test_unknown_race_is_reported(self, client, user_headers):
        validation = self.check(client, user_headers, TEAM, race="nope").json()["validation"]
        assert validation["errors"] == ["Race not found for this season"]

    def test_only_own_roster(self, client, user_headers, admin_headers):
        assert self.check(client, user_headers, TEAM, user="u2").status_code == 403
        assert self.check(client, admin_headers, TEAM, user="u2").status_code == 200


class TestStats:
    def test_user_stats_need_admin(self, client, user_headers, admin_headers):
        assert client.get(f"/api/user/{SEASON}/stats", headers=user_headers).status_code == 403
        stats = client.get(f"/api/user/{SEASON}/stats", headers=admin_headers).json()["stats"]
        assert stats["total"] == 3
        assert stats["admins"] == 1
        assert stats["regular"] == 2
        assert stats["total_budget"] == 250

    def test_driver_stats(self, client, user_headers):
        res = client.get(f"/api/driver/{SEASON}/stats", headers=user_headers)
        assert res.status_code == 200
        stats = res.json()["stats"]
        assert stats["total"] == 7
        assert stats["total_value"] == 99
        assert stats["categories"]["M"] == {"count": 3, "total_value": 60, "total_points": 0}
        assert stats["categories"]["JS"]["count"] == 2
        assert stats["categories"]["I"]["total_value"] == 42


class TestSeasons:
    def test_login_seasons(self, client, db):
        db["users"].docs.append({**_user("old1", "Pat", "4321"), "season": 2019})
        body = client.get("/api/auth/seasons").json()
        current = server.utcnow().year
        assert body["current"]["season"] == current
        assert {"season": 2019, "user_count": 1} in body["historical"]
        assert all(h["season"] != current for h in body["historical"])

    def test_list_and_stats(self, client, user_headers, db):
        db["seasons"].docs.append({"season": 2030})
        body = client.get("/api/season", headers=user_headers).json()
        assert body["seasons"] == [SEASON, 2030]

        stats = client.get(f"/api/season/{SEASON}/stats", headers=user_headers).json()["stats"]
        assert stats["drivers"] == {"count": 7, "total_value": 99}
        assert stats["users"] == {"count": 3, "total_budget": 250}
        assert stats["races"]["count"] == 4

    def test_initialize_needs_elevation(self, client, admin_headers):
        res = client.post("/api/season/2099/initialize", headers=admin_headers)
        assert res.status_code == 401
        assert res.json()["code"] == "ELEVATION_REQUIRED"

    def test_initialize_empty_then_conflict(self, client, elevated_headers, db):
        res = client.post("/api/season/2099/initialize", headers=elevated_headers)
        assert res.status_code == 201
        assert res.json()["copied"] == {"drivers": 0, "users": 0}
        assert db["seasons"].docs[0]["season"] == 2099

        res = client.post("/api/season/2099/initialize", headers=elevated_headers)
        assert res.status_code == 409

    def test_initialize_with_copy(self, client, elevated_headers, db):
        db["drivers"].docs[0]["points"] = 40
        res = client.post("/api/season/2099/initialize", json={"copy_from": SEASON}, headers=elevated_headers)
        assert res.status_code == 201
        assert res.json()["copied"] == {"drivers": 7, "users": 3}

        copied = [d for d in db["drivers"].docs if d["season"] == 2099]
        ash = next(d for d in copied if d["name"] == "Ash Sutton")
        assert ash["points"] == 0
        assert ash["previous_value"] == 20
        assert ash["id"] != "d1"
        assert db["races"].docs and all(r["season"] == SEASON for r in db["races"].docs)

        res = client.post("/api/auth/login", json={"username": "sam", "pin": "1234", "season": 2099})
        assert res.status_code == 200

    def test_initialize_into_populated_season(self, client, elevated_headers):
        res = client.post(f"/api/season/{SEASON}/initialize", headers=elevated_headers)
        assert res.status_code == 409

    def test_copy_from_empty_season(self, client, elevated_headers):
        res = client.post("/api/season/2099/initialize", json={"copy_from": 2018}, headers=elevated_headers)
        assert res.status_code == 404

    def test_delete(self, client, elevated_headers, db):
        client.post("/api/season/2099/initialize", json={"copy_from": SEASON}, headers=elevated_headers)

        res = client.request("DELETE", "/api/season/2099", json={"confirm_delete": "yes"}, headers=elevated_headers)
        assert res.status_code == 400

        res = client.request(
            "DELETE", "/api/season/2099", json={"confirm_delete": "DELETE_ALL_DATA"}, headers=elevated_headers
        )
        assert res.status_code == 200
        assert res.json()["deleted"] == {"rosters": 0, "races": 0, "drivers": 7, "users": 3}
        assert all(u["season"] == SEASON for u in db["users"].docs)
        assert db["seasons"].docs == []

    def test_delete_refuses_current_and_own_season(self, client, elevated_headers):
        body = {"confirm_delete": "DELETE_ALL_DATA"}
        current = server.utcnow().year
        res = client.request("DELETE", f"/api/season/{current}", json=body, headers=elevated_headers)
        assert res.status_code == 403

        res = client.request("DELETE", f"/api/season/{SEASON}", json=body, headers=elevated_headers)
        assert res.status_code == 403
        assert res.json()["message"] in ("Cannot delete the season you are signed in to", "Cannot delete the current season")
