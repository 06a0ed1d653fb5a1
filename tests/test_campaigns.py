"""Tests for the campaign store (pledgr.campaigns)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import STRONG_PASSWORD, bearer
from pledgr import auth, campaigns
from pledgr.errors import AuthorizationError, NotFoundError, ValidationError
from pledgr.models import User


@pytest.fixture
def owner(db, settings):
    user, _ = auth.register(db, settings, "Ada", "ada@example.com", STRONG_PASSWORD)
    return user


def _make(db, owner_id, category="music", title="Jazz Album"):
    return campaigns.create_campaign(db, owner_id, "Ada Trio", title, category, "First record", Decimal("5000"))


class TestCreateCampaign:
    @pytest.mark.unit
    def test_promotes_owner_to_creator(self, db, owner):
        assert owner.is_creator is False
        c = _make(db, owner.id)
        assert c.id is not None
        assert c.goal == Decimal("5000")
        db.expire_all()
        assert db.get(User, owner.id).is_creator is True

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "kwargs",
        [
            dict(name="", title="t", category="music", description="d"),
            dict(name="n", title="  ", category="music", description="d"),
            dict(name="n", title="t", category="music", description=""),
            dict(name="n", title="t", category="sculpture", description="d"),
            dict(name="n", title="t", category="music", description="d", goal=-1),
        ],
    )
    def test_rejects_bad_input(self, db, owner, kwargs):
        with pytest.raises(ValidationError):
            campaigns.create_campaign(db, owner.id, **kwargs)
        db.expire_all()
        assert db.get(User, owner.id).is_creator is False

    @pytest.mark.unit
    def test_unknown_owner(self, db):
        with pytest.raises(NotFoundError):
            campaigns.create_campaign(db, 404, "n", "t", "music", "d")


class TestQueries:
    @pytest.mark.unit
    def test_list_filters_by_category(self, db, owner):
        _make(db, owner.id, "music")
        _make(db, owner.id, "film", title="Short Film")

        assert len(campaigns.list_campaigns(db)) == 2
        assert len(campaigns.list_campaigns(db, "all")) == 2
        films = campaigns.list_campaigns(db, "film")
        assert [c.title for c in films] == ["Short Film"]
        assert films[0].creator_name == "Ada"
        assert films[0].pledged == 0
        assert films[0].supporters == 0
        with pytest.raises(ValidationError):
            campaigns.list_campaigns(db, "sculpture")

    @pytest.mark.unit
    def test_get_missing(self, db):
        with pytest.raises(NotFoundError):
            campaigns.get_campaign(db, 12345)

    @pytest.mark.unit
    def test_days_remaining(self, db, owner):
        c = _make(db, owner.id)
        now = datetime.now(timezone.utc)
        c.created_at = now - timedelta(days=10, hours=1)
        assert campaigns.days_remaining(c, now) == 20
        c.created_at = now - timedelta(days=45)
        assert campaigns.days_remaining(c, now) == 0


class TestPledgeLevels:
    @pytest.mark.unit
    def test_add_and_read_back_in_order(self, db, owner):
        c = _make(db, owner.id)
        campaigns.add_pledge_level(db, c.id, owner.id, "Patron", "25.00", "More", ["Vinyl", "Credits"])
        campaigns.add_pledge_level(db, c.id, owner.id, "Supporter", "8", "", ["Download"])

        detail = campaigns.get_campaign(db, c.id)
        assert [lv.name for lv in detail.levels] == ["Supporter", "Patron"]
        assert detail.levels[1].benefits == ["Vinyl", "Credits"]
        assert detail.levels[0].amount == 8.0

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_amount_must_be_positive(self, db, owner, amount):
        c = _make(db, owner.id)
        with pytest.raises(ValidationError):
            campaigns.add_pledge_level(db, c.id, owner.id, "Free", amount)

    @pytest.mark.unit
    def test_only_owner_can_add(self, db, settings, owner):
        other, _ = auth.register(db, settings, "Bob", "bob@example.com", STRONG_PASSWORD)
        c = _make(db, owner.id)
        with pytest.raises(AuthorizationError):
            campaigns.add_pledge_level(db, c.id, other.id, "Supporter", "8")
        with pytest.raises(NotFoundError):
            campaigns.add_pledge_level(db, 999, owner.id, "Supporter", "8")


class TestUpdateCampaign:
    @pytest.mark.unit
    def test_owner_updates(self, db, owner):
        c = _make(db, owner.id)
        campaigns.update_campaign(db, c.id, owner.id, title="Jazz Album II", goal="7500", image=None)
        detail = campaigns.get_campaign(db, c.id)
        assert detail.title == "Jazz Album II"
        assert detail.goal == 7500.0

    @pytest.mark.unit
    def test_non_owner_rejected(self, db, settings, owner):
        other, _ = auth.register(db, settings, "Bob", "bob@example.com", STRONG_PASSWORD)
        c = _make(db, owner.id)
        with pytest.raises(AuthorizationError):
            campaigns.update_campaign(db, c.id, other.id, title="Mine now")


class TestCampaignRoutes:
    @pytest.mark.integration
    def test_create_and_fetch(self, client, creator):
        resp = client.get(f"/campaigns/{creator['campaign_id']}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["title"] == "Jazz Album"
        assert body["goal"] == 5000.0
        assert body["days_remaining"] == 30
        assert body["levels"][0]["name"] == "Supporter"
        assert body["levels"][0]["benefits"] == ["Digital download", "Name in credits"]

        me = client.get("/auth/me", headers=bearer(creator["token"])).json()
        assert me["is_creator"] is True

    @pytest.mark.integration
    def test_list_with_category(self, client, creator):
        assert len(client.get("/campaigns").json()) == 1
        assert len(client.get("/campaigns", params={"category": "music"}).json()) == 1
        assert client.get("/campaigns", params={"category": "film"}).json() == []
        assert client.get("/campaigns", params={"category": "nope"}).status_code == 400

    @pytest.mark.integration
    def test_errors(self, client, creator, register):
        assert client.get("/campaigns/999").status_code == 404
        assert client.post("/campaigns", json={}).status_code == 401

        token, _ = register("Bob", "bob@example.com")
        resp = client.post(f"/campaigns/{creator['campaign_id']}/levels",
                           json={"name": "Sneaky", "amount": 1}, headers=bearer(token))
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"

        resp = client.post("/campaigns", json={"name": "x", "title": "y", "category": "music",
                                               "description": "z", "goal": -3}, headers=bearer(token))
        assert resp.status_code == 400

        resp = client.patch(f"/campaigns/{creator['campaign_id']}", json={"title": "Hijack"},
                            headers=bearer(token))
        assert resp.status_code == 403

    @pytest.mark.integration
    def test_owner_patch(self, client, creator):
        resp = client.patch(f"/campaigns/{creator['campaign_id']}",
                            json={"description": "Now with strings"}, headers=bearer(creator["token"]))
        assert resp.status_code == 200
        assert resp.json()["description"] == "Now with strings"
