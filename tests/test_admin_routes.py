"""
Tests for the operator routes.

Authentication through the test client; handlers called directly with
in-memory services.
"""

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from app.api.admin_routes import gate_product, run_sync
from app.api.dependencies import get_scope_migration_service, get_sync_service
from app.models.api import GateProductRequest, SyncRequest
from app.models.domain import AccessState, MappedScope, UnmappedScope
from app.services.scope_migration import ScopeMigrationService
from app.services.sync import SyncService
from tests.payloads import FEB_1, checkout_session, line_item, purchase_record, stored_line


@pytest.fixture
def sync_service(store, directory, provider, catalog):
    return SyncService(store, directory, provider, catalog)


@pytest.fixture
def migration_service(store, product_catalog, directory, notifier):
    return ScopeMigrationService(store, product_catalog, directory, notifier)


class TestAdminAuthentication:
    """X-Admin-Key guards every operator route."""

    @pytest.fixture
    def admin_client(self, app, client, sync_service):
        app.dependency_overrides[get_sync_service] = lambda: sync_service
        return client

    def test_missing_key_is_401(self, admin_client):
        response = admin_client.post("/v1/admin/sync", json={})
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "ApiKey"

    def test_wrong_key_is_401(self, admin_client):
        response = admin_client.post("/v1/admin/sync", json={}, headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401

    def test_valid_key(self, admin_client, admin_headers):
        response = admin_client.post("/v1/admin/sync", json={}, headers=admin_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is True
        assert body["totals"]["scanned"] == 0

    def test_gate_requires_key(self, app, client, migration_service):
        app.dependency_overrides[get_scope_migration_service] = lambda: migration_service
        response = client.post("/v1/admin/products/4/gate", json={"stripe_product_id": "prod_ws"})
        assert response.status_code == 401


class TestRunSync:
    """Tests for POST /v1/admin/sync."""

    @pytest.mark.asyncio
    async def test_report_totals(self, sync_service, provider, directory):
        directory.add("buyer@example.com")
        provider.add_session(checkout_session(session_id="cs_a", lines=[line_item("prod_ebook")]))
        provider.add_session(checkout_session(session_id="cs_b", email=None, lines=[]))

        response = await run_sync(
            request=SyncRequest(dry_run=False, key_indices=[0]), service=sync_service
        )

        assert response.dry_run is False
        assert response.totals.scanned == 2
        assert response.totals.created == 1
        assert response.totals.skipped == 1
        assert [o.status.value for o in response.outcomes] == ["CREATE", "SKIP"]

    def test_defaults_to_dry_run(self):
        assert SyncRequest().dry_run is True

    @pytest.mark.parametrize(
        "body",
        [{"email": "not-an-email"}, {"key_indices": [-1]}, {"created_from": -5}],
    )
    def test_invalid_requests(self, body):
        with pytest.raises(ValidationError):
            SyncRequest(**body)


class TestGateProduct:
    """Tests for POST /v1/admin/products/{product_id}/gate."""

    @pytest.mark.asyncio
    async def test_gate_migrates(self, migration_service, store, directory):
        directory.add("buyer@example.com")
        seeded = store.seed(
            purchase_record(lines=(stored_line("prod_ws"),), product_ids=()),
            states={UnmappedScope("prod_ws"): AccessState(end_timestamp=FEB_1)},
        )

        response = await gate_product(
            product_id=4,
            request=GateProductRequest(stripe_product_id="prod_ws"),
            service=migration_service,
        )

        assert response.purchases_migrated == 1
        assert response.purchase_ids == [seeded.purchase_id]
        assert response.users_notified == 1
        assert MappedScope(4) in store.snapshot(seeded.purchase_id).access_states

    @pytest.mark.asyncio
    async def test_unknown_product_is_404(self, migration_service):
        with pytest.raises(HTTPException) as exc_info:
            await gate_product(
                product_id=99,
                request=GateProductRequest(stripe_product_id="prod_ws"),
                service=migration_service,
            )
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_conflicting_mapping_is_409(self, migration_service):
        with pytest.raises(HTTPException) as exc_info:
            await gate_product(
                product_id=4,
                request=GateProductRequest(stripe_product_id="prod_club"),
                service=migration_service,
            )
        assert exc_info.value.status_code == 409

    def test_stripe_product_id_without_whitespace(self):
        with pytest.raises(ValidationError):
            GateProductRequest(stripe_product_id="prod ws")
