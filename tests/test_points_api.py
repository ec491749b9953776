import pytest
import asyncio
from fastapi.testclient import TestClient
from unittest.mock import Mock, patch

import main
from main import app
from config import TestingSettings
from repositories import (
    UserPointRepository,
    get_point_history_repository,
    get_user_point_repository,
)

client = TestClient(app)


def charge(user_id, amount, **kwargs):
    return client.patch(f"/point/{user_id}/charge", content=str(amount), **kwargs)


def use(user_id, amount, **kwargs):
    return client.patch(f"/point/{user_id}/use", content=str(amount), **kwargs)


class TestPointEndpoints:
    """Test basic point functionality."""

    def test_get_point_for_new_user(self):
        response = client.get("/point/1")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == 1
        assert data["point"] == 0
        assert "updateMillis" in data

    def test_charge_success(self):
        response = charge(1, 10_000)

        assert response.status_code == 200
        assert response.json()["point"] == 10_000
        assert client.get("/point/1").json()["point"] == 10_000

    def test_charge_with_json_body(self):
        response = charge(1, 20_000, headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["point"] == 20_000

    def test_use_success(self):
        charge(1, 10_000)

        response = use(1, 5_000)

        assert response.status_code == 200
        assert response.json()["point"] == 5_000

    def test_histories(self):
        charge(1, 10_000)
        use(1, 5_000)
        charge(1, 5_000)

        response = client.get("/point/1/histories")

        assert response.status_code == 200
        data = response.json()
        assert [h["type"] for h in data] == ["CHARGE", "USE", "FAIL"]
        assert [h["amount"] for h in data] == [10_000, 5_000, 5_000]
        assert all(h["userId"] == 1 for h in data)
        assert set(data[0]) == {"id", "userId", "amount", "type", "updateMillis"}

    def test_histories_for_new_user(self):
        response = client.get("/point/99/histories")

        assert response.status_code == 200
        assert response.json() == []


class TestValidation:
    """Test error responses."""

    def test_charge_below_minimum(self):
        response = charge(1, 5_000)

        assert response.status_code == 400
        assert response.json() == {"code": "400", "message": "Minimum charge is 10000 points"}

    def test_charge_not_in_steps(self):
        response = charge(1, 12_000)

        assert response.status_code == 400
        assert "units of 10000" in response.json()["message"]

    def test_charge_above_maximum(self):
        response = charge(1, 200_000)

        assert response.status_code == 400
        assert response.json()["message"] == "Maximum charge is 100000 points"

    def test_use_insufficient_balance(self):
        response = use(1, 20_000)

        assert response.status_code == 400
        assert response.json() == {"code": "400", "message": "Insufficient point balance"}

    def test_use_negative_amount(self):
        response = use(1, -1)

        assert response.status_code == 400
        assert response.json()["code"] == "400"

    @pytest.mark.parametrize("body", ["ten thousand", "1_0000", "١٠٠٠٠", "10000.0", "", "+-10000"])
    def test_non_integer_amount(self, body):
        response = charge(1, body)

        assert response.status_code == 400
        assert response.json() == {"code": "400", "message": "Amount must be an integer"}
        # Unparsable requests never reach the service
        assert client.get("/point/1/histories").json() == []
        assert client.get("/point/1").json()["point"] == 0

    def test_signed_amount_is_parsed(self):
        assert charge(1, "+10000").json()["point"] == 10_000
        assert use(1, " -1 \n").json() == {"code": "400", "message": "Use amount must be 0 or greater"}

    def test_invalid_user_id(self):
        response = client.get("/point/-1")
        assert response.status_code == 422
        data = response.json()
        assert set(data) == {"code", "message"}
        assert data["code"] == "422"
        assert "id" in data["message"]

        assert client.get("/point/abc").json()["code"] == "422"

    def test_failed_attempts_are_recorded(self):
        charge(1, 9_999)
        use(1, 1)

        data = client.get("/point/1/histories").json()
        assert [(h["type"], h["amount"]) for h in data] == [("FAIL", 9_999), ("FAIL", 1)]
        assert client.get("/point/1").json()["point"] == 0


class TestErrorHandling:
    """Test internal failures and logging."""

    def test_store_failure_returns_500(self):
        broken = Mock(spec=UserPointRepository)
        broken.select_by_id.side_effect = RuntimeError("table offline")
        app.dependency_overrides[get_user_point_repository] = lambda: broken
        try:
            response = charge(1, 10_000)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json() == {"code": "500", "message": "Internal server error"}
        histories = get_point_history_repository().select_all_by_user_id(1)
        assert [h.type.value for h in histories] == ["FAIL"]

    @patch("services.logger")
    def test_logging_on_rejection(self, mock_logger):
        response = charge(1, 1)

        assert response.status_code == 400
        mock_logger.warning.assert_called()


class TestConcurrency:
    """Test concurrent requests through the HTTP surface."""

    @pytest.mark.asyncio
    async def test_concurrent_charges_same_user(self):
        import httpx

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [ac.patch("/point/1/charge", content="10000") for _ in range(10)]

            results = await asyncio.gather(*tasks)

            assert all(r.status_code == 200 for r in results)
            assert sorted(r.json()["point"] for r in results) == [10_000 * k for k in range(1, 11)]

            final = await ac.get("/point/1")
            assert final.json()["point"] == 100_000

            histories = (await ac.get("/point/1/histories")).json()
            assert len(histories) == 10
            assert all(h["type"] == "CHARGE" for h in histories)

    @pytest.mark.asyncio
    async def test_concurrent_uses_insufficient_balance(self):
        import httpx

        charge(2, 20_000)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [ac.patch("/point/2/use", content="5000") for _ in range(6)]

            results = await asyncio.gather(*tasks)

            successful = [r for r in results if r.status_code == 200]
            failed = [r for r in results if r.status_code == 400]
            assert len(successful) == 4
            assert len(failed) == 2
            assert (await ac.get("/point/2")).json()["point"] == 0


class TestRateLimiting:
    def test_mutations_are_rate_limited(self, monkeypatch):
        monkeypatch.setattr(main, "get_settings", lambda: TestingSettings(rate_limit_per_minute=2))

        assert charge(1, 10_000).status_code == 200
        assert charge(1, 10_000).status_code == 200
        response = charge(1, 10_000)
        assert response.status_code == 429
        assert response.json()["code"] == "429"
        assert response.json()["message"].startswith("Rate limit exceeded")
        # Reads are not limited
        assert client.get("/point/1").status_code == 200


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        charge(1, 10_000)
        charge(2, 1)

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["users_count"] == 1
        assert data["histories_count"] == 2

    def test_root_endpoint(self):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
