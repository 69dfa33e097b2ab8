"""HTTP API exercised through the ASGI app."""
from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from labby.events.publisher import AuditEventPublisher
from labby.main import create_app
from labby.models import ServiceLimit

PREFIX = "/api/v1"
ALICE = {"X-User-Id": "alice"}


@pytest.fixture
def app(settings, repository, registry):
    app = create_app(settings, repository=repository, registry=registry, audit=AuditEventPublisher(None))
    yield app
    app.state.graph.lab_service.shutdown()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def settle_app(app):
    def _settle(lab_id: str) -> None:
        assert app.state.graph.provisioning.wait(lab_id, timeout=5)

    return _settle


class TestLabs:
    @pytest.mark.anyio
    async def test_create_returns_202_and_record(self, client: AsyncClient, settle_app) -> None:
        response = await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "provisioning"
        assert data["owner_id"] == "alice"
        settle_app(data["id"])

    @pytest.mark.anyio
    async def test_get_lab_after_provisioning(self, client: AsyncClient, settle_app) -> None:
        created = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)).json()
        settle_app(created["id"])

        response = await client.get(f"{PREFIX}/labs/{created['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert len(data["credentials"]) == 2

    @pytest.mark.anyio
    async def test_progress_endpoint(self, client: AsyncClient, settle_app) -> None:
        created = (await client.post(f"{PREFIX}/labs", json={"template_id": "partial"}, headers=ALICE)).json()
        settle_app(created["id"])

        response = await client.get(f"{PREFIX}/labs/{created['id']}/progress")

        assert response.status_code == 200
        assert response.json()["lab_status"] == "error"

    @pytest.mark.anyio
    async def test_list_own_labs(self, client: AsyncClient, settle_app) -> None:
        mine = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)).json()
        other = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers={"X-User-Id": "bob"})).json()
        settle_app(mine["id"])
        settle_app(other["id"])

        response = await client.get(f"{PREFIX}/labs", headers=ALICE)

        assert [lab["id"] for lab in response.json()["labs"]] == [mine["id"]]

    @pytest.mark.anyio
    async def test_stop_lab(self, client: AsyncClient, settle_app) -> None:
        created = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)).json()
        settle_app(created["id"])

        response = await client.post(f"{PREFIX}/labs/{created['id']}/stop")

        assert response.status_code == 200
        assert response.json()["performed"] is True
        lab = (await client.get(f"{PREFIX}/labs/{created['id']}")).json()
        assert lab["status"] == "expired"
        assert lab["credentials"] == []

    @pytest.mark.anyio
    async def test_missing_owner_header(self, client: AsyncClient) -> None:
        response = await client.post(f"{PREFIX}/labs", json={"template_id": "basic"})

        assert response.status_code == 422


class TestErrors:
    @pytest.mark.anyio
    async def test_unknown_lab_is_404(self, client: AsyncClient) -> None:
        assert (await client.get(f"{PREFIX}/labs/missing")).status_code == 404
        assert (await client.post(f"{PREFIX}/labs/missing/stop")).status_code == 404

    @pytest.mark.anyio
    async def test_unknown_template_is_404(self, client: AsyncClient) -> None:
        response = await client.post(f"{PREFIX}/labs", json={"template_id": "nope"}, headers=ALICE)

        assert response.status_code == 404

    @pytest.mark.anyio
    async def test_capacity_is_409(self, client: AsyncClient, registry, settle_app) -> None:
        registry.add_limit(ServiceLimit(id="lim-a", service_id="svc-a", max_labs=1))
        first = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)).json()

        response = await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers={"X-User-Id": "bob"})

        assert response.status_code == 409
        assert "svc-a" in response.json()["detail"]
        settle_app(first["id"])

    @pytest.mark.anyio
    async def test_bad_duration_is_422(self, client: AsyncClient) -> None:
        response = await client.post(
            f"{PREFIX}/labs", json={"template_id": "basic", "duration_minutes": 10_000}, headers=ALICE
        )

        assert response.status_code == 422

    @pytest.mark.anyio
    async def test_inactive_service_is_400(self, client: AsyncClient) -> None:
        response = await client.post(f"{PREFIX}/labs", json={"template_id": "retired"}, headers=ALICE)

        assert response.status_code == 400


class TestAdmin:
    @pytest.mark.anyio
    async def test_templates_listing(self, client: AsyncClient) -> None:
        response = await client.get(f"{PREFIX}/templates")

        ids = [template["id"] for template in response.json()["templates"]]
        assert "basic" in ids
        basic = [template for template in response.json()["templates"] if template["id"] == "basic"][0]
        assert basic["expiration_minutes"] == 120

    @pytest.mark.anyio
    async def test_admin_listing_hides_credentials(self, client: AsyncClient, settle_app) -> None:
        created = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)).json()
        settle_app(created["id"])

        labs = (await client.get(f"{PREFIX}/admin/labs")).json()["labs"]

        assert [lab["id"] for lab in labs] == [created["id"]]
        assert "credentials" not in labs[0]

    @pytest.mark.anyio
    async def test_admin_cleanup_deletes(self, client: AsyncClient, settle_app) -> None:
        created = (await client.post(f"{PREFIX}/labs", json={"template_id": "basic"}, headers=ALICE)).json()
        settle_app(created["id"])

        response = await client.post(f"{PREFIX}/admin/labs/{created['id']}/cleanup")

        assert response.json()["deleted"] is True
        assert (await client.get(f"{PREFIX}/labs/{created['id']}")).status_code == 404

    @pytest.mark.anyio
    async def test_usage_and_cleanup_failures(self, client: AsyncClient, registry, settle_app) -> None:
        registry.add_limit(ServiceLimit(id="lim-a", service_id="svc-a", max_labs=4))
        created = (await client.post(f"{PREFIX}/labs", json={"template_id": "sticky"}, headers=ALICE)).json()
        settle_app(created["id"])

        usage = (await client.get(f"{PREFIX}/admin/usage")).json()["services"]
        await client.post(f"{PREFIX}/labs/{created['id']}/stop")
        failures = (await client.get(f"{PREFIX}/admin/cleanup-failures")).json()["failures"]

        assert {"service_id": "svc-a", "active_labs": 1, "limit": 4} in usage
        assert [(item["lab_id"], item["service_id"]) for item in failures] == [(created["id"], "svc-sticky")]
