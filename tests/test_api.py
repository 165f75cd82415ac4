"""HTTP tests for the pay structure API."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from pay_structure_engine.api.app import create_app, status_for
from pay_structure_engine.api.dependencies import (
    get_attendance_source,
    get_db_session,
    get_external_calculators,
    get_session_factory,
    get_structure_store,
)
from pay_structure_engine.calculators.types import (
    ComponentCategory,
    ComponentDefinition,
    ExternalCalculation,
    PercentageCalculation,
)
from pay_structure_engine.exceptions import (
    AttendanceUnavailableError,
    CircularInclusionError,
    NotFoundError,
    UnboundVariableError,
)

from .conftest import fixed

AS_OF = date(2024, 3, 31)


class UnreachableSession:
    """Session whose database connection is gone."""

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def scalar(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))


class BrokenStore:
    """Store whose every lookup fails unexpectedly."""

    async def get_current_worker_structure(self, *args, **kwargs):
        raise RuntimeError("connection reset")


@pytest.fixture
def app(store, attendance, session_factory):
    app = create_app()
    app.dependency_overrides[get_structure_store] = lambda: store
    app.dependency_overrides[get_attendance_source] = lambda: attendance
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def headers(organization_id):
    return {"X-Tenant-ID": str(organization_id)}


@pytest.fixture
def worker_id(store, organization_id):
    pension = ComponentDefinition(
        code="PENSION",
        name="Pension",
        category=ComponentCategory.DEDUCTION,
        calculation=PercentageCalculation(percentage_of="gross_earnings", rate=Decimal("0.04")),
        sequence_order=20,
    )
    template = store.add_template(
        "STANDARD", organization_id, components=[fixed("BONUS", "300", sequence_order=10), pension]
    )
    worker_id = uuid4()
    store.assign(worker_id, template, base_salary=Decimal("5000"))
    return worker_id


class TestHealth:
    """Test health endpoints."""

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "healthy"
        assert body["engine_version"]

    async def test_ready(self, client):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ready",
            "database": "healthy",
            "resolution_cache_entries": 0,
        }

    async def test_not_ready_when_store_unreachable(self, app, client):
        app.dependency_overrides[get_db_session] = lambda: UnreachableSession()

        response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
        assert response.json()["database"] == "unreachable"

    async def test_live(self, client):
        assert (await client.get("/live")).json() == {"status": "alive"}


class TestResolvedTemplate:
    """Test GET /templates/{id}/resolved."""

    async def test_resolved(self, client, store, headers, organization_id):
        base = store.add_template("BASE", organization_id, components=[fixed("MEAL", "20", sequence_order=5)])
        parent = store.add_template("PARENT", organization_id, components=[fixed("BONUS", "300")])
        store.include(parent, "BASE", priority=1)

        response = await client.get(
            f"/api/v1/templates/{parent.template_id}/resolved", headers=headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["version"] == "1.0.0"
        assert [c["code"] for c in body["components"]] == ["BONUS", "MEAL"]
        assert body["components"][0]["calculation"] == {"amount": "300"}
        assert body["contributing_template_ids"] == [str(parent.template_id), str(base.template_id)]
        assert len(body["fingerprint"]) == 32

    async def test_unknown_template(self, client, headers):
        response = await client.get(f"/api/v1/templates/{uuid4()}/resolved", headers=headers)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_other_tenant_cannot_resolve(self, client, store, organization_id):
        template = store.add_template("BASE", organization_id, components=[fixed("MEAL", "20")])
        response = await client.get(
            f"/api/v1/templates/{template.template_id}/resolved",
            headers={"X-Tenant-ID": str(uuid4())},
        )
        assert response.status_code == 404

    async def test_cycle_is_unprocessable(self, client, store, headers, organization_id):
        template = store.add_template("LOOP", organization_id, components=[fixed("A", "1")])
        store.include(template, "LOOP", priority=1)

        response = await client.get(
            f"/api/v1/templates/{template.template_id}/resolved", headers=headers
        )
        assert response.status_code == 422
        assert response.json()["code"] == "CIRCULAR_INCLUSION"


class TestCalculate:
    """Test POST /workers/{id}/calculate."""

    async def test_calculate(self, client, headers, worker_id):
        response = await client.post(
            f"/api/v1/workers/{worker_id}/calculate",
            json={"as_of_date": AS_OF.isoformat()},
            headers=headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert [line["component_code"] for line in body["line_items"]] == [
            "BASE_SALARY",
            "BONUS",
            "PENSION",
        ]
        assert Decimal(body["summary"]["total_earnings"]) == Decimal("5300")
        assert Decimal(body["summary"]["total_deductions"]) == Decimal("212")
        assert Decimal(body["summary"]["net_pay"]) == Decimal("5088")
        assert body["as_of_date"] == "2024-03-31"
        assert body["skipped_components"] == []

    async def test_compensation_in_body(self, client, headers, worker_id):
        response = await client.post(
            f"/api/v1/workers/{worker_id}/calculate",
            json={"base_salary": "6000", "as_of_date": AS_OF.isoformat()},
            headers=headers,
        )
        assert Decimal(response.json()["summary"]["net_pay"]) == Decimal("6048")

    async def test_same_request_same_calculation_id(self, client, headers, worker_id):
        payload = {"as_of_date": AS_OF.isoformat()}
        first = await client.post(f"/api/v1/workers/{worker_id}/calculate", json=payload, headers=headers)
        second = await client.post(f"/api/v1/workers/{worker_id}/calculate", json=payload, headers=headers)
        assert first.json()["calculation_id"] == second.json()["calculation_id"]

    async def test_unassigned_worker(self, client, headers):
        response = await client.post(
            f"/api/v1/workers/{uuid4()}/calculate", json={}, headers=headers
        )
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_negative_salary_rejected(self, client, headers, worker_id):
        response = await client.post(
            f"/api/v1/workers/{worker_id}/calculate",
            json={"base_salary": "-1"},
            headers=headers,
        )
        assert response.status_code == 422

    async def test_missing_tenant_header(self, client, worker_id):
        response = await client.post(f"/api/v1/workers/{worker_id}/calculate", json={})
        assert response.status_code == 400
        assert response.json()["detail"] == "X-Tenant-ID header is required"

    async def test_invalid_tenant_header(self, client, worker_id):
        response = await client.post(
            f"/api/v1/workers/{worker_id}/calculate",
            json={},
            headers={"X-Tenant-ID": "not-a-uuid"},
        )
        assert response.status_code == 400

    async def test_component_failure(self, client, store, headers, organization_id):
        tax = ComponentDefinition(
            code="STATE_TAX",
            name="State Tax",
            category=ComponentCategory.TAX,
            calculation=ExternalCalculation(service="state_tax"),
        )
        template = store.add_template("EXT", organization_id, components=[tax])
        worker_id = uuid4()
        store.assign(worker_id, template, base_salary=Decimal("1000"))

        response = await client.post(
            f"/api/v1/workers/{worker_id}/calculate",
            json={"as_of_date": AS_OF.isoformat()},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "COMPONENT_CALCULATION_ERROR"

    async def test_registered_external_calculator(
        self, app, client, store, headers, organization_id
    ):
        class StateTax:
            async def calculate(self, component, calculation, context):
                return Decimal("42")

        app.dependency_overrides[get_external_calculators] = lambda: {"state_tax": StateTax()}
        tax = ComponentDefinition(
            code="STATE_TAX",
            name="State Tax",
            category=ComponentCategory.TAX,
            calculation=ExternalCalculation(service="state_tax"),
        )
        template = store.add_template("EXT", organization_id, components=[tax])
        worker_id = uuid4()
        store.assign(worker_id, template, base_salary=Decimal("1000"))

        response = await client.post(
            f"/api/v1/workers/{worker_id}/calculate",
            json={"as_of_date": AS_OF.isoformat()},
            headers=headers,
        )

        assert response.status_code == 200
        assert Decimal(response.json()["summary"]["total_taxes"]) == Decimal("42")

    async def test_unexpected_error(self, app, headers):
        app.dependency_overrides[get_structure_store] = lambda: BrokenStore()
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                f"/api/v1/workers/{uuid4()}/calculate", json={}, headers=headers
            )

        assert response.status_code == 500
        assert response.json() == {
            "detail": "An unexpected error occurred",
            "code": "INTERNAL_ERROR",
        }


class TestPatternTest:
    """Test POST /patterns/test."""

    async def test_pattern(self, client, attendance, headers):
        qualified, unqualified = uuid4(), uuid4()
        for weeks in range(3):
            attendance.add(qualified, AS_OF - timedelta(weeks=weeks))
        attendance.add(unqualified, AS_OF)

        response = await client.post(
            "/api/v1/patterns/test",
            json={
                "pattern": {
                    "pattern_type": "day_of_week",
                    "day_of_week": "sunday",
                    "consecutive_count": 3,
                },
                "worker_ids": [str(qualified), str(unqualified)],
                "as_of_date": AS_OF.isoformat(),
            },
            headers=headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_tested"] == 2
        assert body["qualified_count"] == 1
        assert body["not_qualified_count"] == 1
        results = {r["worker_id"]: r for r in body["results"]}
        assert results[str(qualified)]["qualified"] is True
        assert results[str(unqualified)]["evidence"]["max_consecutive"] == 1

    async def test_invalid_pattern(self, client, headers):
        response = await client.post(
            "/api/v1/patterns/test",
            json={"pattern": {"pattern_type": "moon_phase"}, "worker_ids": [str(uuid4())]},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_non_finite_threshold(self, client, headers):
        response = await client.post(
            "/api/v1/patterns/test",
            json={
                "pattern": {
                    "pattern_type": "hours_threshold",
                    "hours_threshold": "NaN",
                    "comparison_operator": ">",
                    "consecutive_count": 2,
                },
                "worker_ids": [str(uuid4())],
            },
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_worker_ids_required(self, client, headers):
        response = await client.post(
            "/api/v1/patterns/test",
            json={"pattern": {"pattern_type": "day_of_week", "day_of_week": "sunday"}, "worker_ids": []},
            headers=headers,
        )
        assert response.status_code == 422


class TestFormulaTest:
    """Test POST /formulas/test."""

    async def test_formula(self, client):
        response = await client.post(
            "/api/v1/formulas/test",
            json={"formula": "{base_salary} * 0.1 + {BONUS}", "variables": {"base_salary": "5000", "BONUS": "50"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert Decimal(body["result"]) == Decimal("550")
        assert body["variables"] == ["base_salary", "BONUS"]

    async def test_formula_error_reported(self, client):
        response = await client.post(
            "/api/v1/formulas/test", json={"formula": "{a} / 0", "variables": {"a": "1"}}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["result"] is None
        assert "division by zero" in body["error"]


class TestStatusMapping:
    """Test engine error to HTTP status mapping."""

    def test_status_for(self):
        assert status_for(NotFoundError("x")) == 404
        assert status_for(UnboundVariableError("a")) == 400
        assert status_for(CircularInclusionError([uuid4()])) == 422
        assert status_for(AttendanceUnavailableError(uuid4(), AS_OF, AS_OF, "down")) == 503
