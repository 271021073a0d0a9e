import pytest
from fastapi.testclient import TestClient

from claimgraph.service.app import create_app
from claimgraph.settings import settings


@pytest.fixture
def client(store):
    return TestClient(create_app(store))


def _entity(client, label, **headers):
    resp = client.post("/v1/entities", json={"label": label}, headers=headers)
    assert resp.status_code == 201
    return resp.json()


class TestEntities:
    def test_create_and_get(self, client):
        created = _entity(client, "Paris", **{"X-Team-Id": "editors"})
        assert created["permissions"] == ['update("team:editors")', 'delete("team:editors")']

        fetched = client.get(f"/v1/entities/{created['id']}").json()
        assert fetched["label"] == "Paris"

    def test_missing_label_is_422(self, client):
        resp = client.post("/v1/entities", json={"description": "nameless"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    def test_missing_row_is_404(self, client):
        resp = client.get("/v1/entities/ghost")
        assert resp.status_code == 404
        assert resp.json()["error"] == "RowNotFoundError"

    def test_search_and_list(self, client):
        _entity(client, "Paris")
        _entity(client, "Lyon")
        assert client.get("/v1/entities").json()["total"] == 2
        found = client.get("/v1/entities", params={"q": "Ly"}).json()
        assert [e["label"] for e in found["entities"]] == ["Lyon"]

    def test_update_and_delete(self, client):
        entity = _entity(client, "Paris")
        updated = client.patch(f"/v1/entities/{entity['id']}", json={"description": "capital"}).json()
        assert updated["description"] == "capital"

        resp = client.delete(f"/v1/entities/{entity['id']}")
        assert resp.status_code == 200
        assert resp.json()["deleted"]["label"] == "Paris"
        assert client.get(f"/v1/entities/{entity['id']}").status_code == 404


class TestClaims:
    def test_claim_with_rendered_value(self, client):
        paris = _entity(client, "Paris")
        website = _entity(client, "official website")
        claim = client.post(
            "/v1/claims",
            json={"subject": paris["id"], "property": website["id"], "datatype": "url", "value_raw": "https://paris.fr"},
        ).json()

        out = client.get(f"/v1/claims/{claim['id']}").json()
        assert out["subjectEntity"]["label"] == "Paris"
        assert out["rendered"]["type"] == "link"
        assert out["qualifiersList"] == []

        by_subject = client.get(f"/v1/entities/{paris['id']}/claims").json()["claims"]
        assert [c["id"] for c in by_subject] == [claim["id"]]

    def test_bulk_create_reports_errors(self, client):
        paris = _entity(client, "Paris")
        prop = _entity(client, "population")
        rows = [
            {"subject": paris["id"], "property": prop["id"], "datatype": "number", "value_raw": 1},
            {"subject": "ghost", "property": prop["id"], "value_raw": 2},
        ]
        out = client.post("/v1/bulk/claims/create", json={"rows": rows, "continue_on_error": True}).json()
        assert len(out["results"]) == 1
        assert out["errors"] == [
            {"index": 1, "rowId": None, "error": "RowNotFoundError", "message": out["errors"][0]["message"]}
        ]


class TestAudit:
    def test_list_approve_and_rollback(self, client):
        entity = _entity(client, "Paris")
        listing = client.get("/v1/audit", params={"row_id": entity["id"]}).json()
        assert listing["total"] == 1
        entry_id = listing["entries"][0]["id"]

        approved = client.post(f"/v1/audit/{entry_id}/approve", json={"note": "ok"}).json()
        assert approved["status"] == "approved"

        rolled = client.post(f"/v1/audit/{entry_id}/rollback", json={"note": "undo"}).json()
        assert rolled["rollback"]["action"] == "rollback"
        assert client.get(f"/v1/entities/{entity['id']}").status_code == 404

        history = client.get(f"/v1/history/{entity['id']}").json()["entries"]
        assert [e["action"] for e in history] == ["rollback", "create"]


class TestValues:
    def test_datatypes(self, client):
        out = client.get("/v1/datatypes").json()
        assert "polygon" in out["datatypes"]

    def test_render_boolean(self, client):
        out = client.post("/v1/render", json={"value": {"datatype": "boolean", "data": True}}).json()
        assert out["descriptor"] == {"type": "boolean", "value": True}


class TestApiKey:
    def test_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_key", "secret")
        assert client.get("/v1/entities").status_code == 401
        assert client.get("/v1/entities", headers={"X-API-Key": "secret"}).status_code == 200
        assert client.get("/health").status_code == 200

    def test_value_endpoints_need_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_key", "secret")
        body = {"value": {"datatype": "boolean", "data": True}}
        assert client.get("/v1/datatypes").status_code == 401
        assert client.post("/v1/render", json=body).status_code == 401
        assert client.get("/v1/datatypes", headers={"X-API-Key": "secret"}).status_code == 200
        assert client.post("/v1/render", json=body, headers={"X-API-Key": "secret"}).status_code == 200
