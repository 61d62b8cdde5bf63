"""Tests for the REST backend adapter using mocked HTTP responses."""

import json

import pytest

# Skip all tests if httpx is not installed
pytest.importorskip("httpx")

import httpx
import respx

from esgsync import BackendError
from esgsync.adapters.rest import AsyncRestBackend

BASE_URL = "https://project.test"


@pytest.fixture
async def backend():
    """Create an AsyncRestBackend with test configuration."""
    client = AsyncRestBackend(api_key="test-api-key", base_url=BASE_URL)
    yield client
    await client.disconnect()


class TestTables:
    """Tests for table reads and writes."""

    @respx.mock
    async def test_select_sends_filters(self, backend: AsyncRestBackend) -> None:
        """Test selecting rows with equality filters."""
        route = respx.get(f"{BASE_URL}/rest/v1/goals").mock(
            return_value=httpx.Response(200, json=[{"id": 1, "company_id": "c1"}])
        )

        rows = await backend.select(
            "goals", {"company_id": "c1"}, order="created_at.desc", limit=5
        )

        assert rows == [{"id": 1, "company_id": "c1"}]
        request = route.calls[0].request
        assert request.headers["apikey"] == "test-api-key"
        assert request.headers["Authorization"] == "Bearer test-api-key"
        assert request.url.params["select"] == "*"
        assert request.url.params["company_id"] == "eq.c1"
        assert request.url.params["order"] == "created_at.desc"
        assert request.url.params["limit"] == "5"

    @respx.mock
    async def test_select_empty_body(self, backend: AsyncRestBackend) -> None:
        """Test that an empty response body reads as no rows."""
        respx.get(f"{BASE_URL}/rest/v1/goals").mock(return_value=httpx.Response(200))
        assert await backend.select("goals") == []

    @respx.mock
    async def test_insert_returns_representation(self, backend: AsyncRestBackend) -> None:
        """Test inserting a row."""
        route = respx.post(f"{BASE_URL}/rest/v1/assets").mock(
            return_value=httpx.Response(201, json=[{"id": 9, "name": "Boiler"}])
        )

        created = await backend.insert("assets", {"name": "Boiler"})

        assert created == [{"id": 9, "name": "Boiler"}]
        request = route.calls[0].request
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == {"name": "Boiler"}

    @respx.mock
    async def test_update_matches_columns(self, backend: AsyncRestBackend) -> None:
        """Test updating rows matched by id."""
        route = respx.patch(f"{BASE_URL}/rest/v1/gri_reports").mock(
            return_value=httpx.Response(200, json=[{"id": "r1", "title": "B"}])
        )

        await backend.update("gri_reports", {"id": "r1"}, {"title": "B"})

        request = route.calls[0].request
        assert request.url.params["id"] == "eq.r1"
        assert json.loads(request.content) == {"title": "B"}

    @respx.mock
    async def test_delete(self, backend: AsyncRestBackend) -> None:
        """Test deleting rows matched by id."""
        route = respx.delete(f"{BASE_URL}/rest/v1/assets").mock(
            return_value=httpx.Response(204)
        )

        await backend.delete("assets", {"id": 9})

        assert route.called
        assert route.calls[0].request.url.params["id"] == "eq.9"

    async def test_unscoped_writes_rejected(self, backend: AsyncRestBackend) -> None:
        """Test that update and delete refuse to touch every row."""
        with pytest.raises(ValueError):
            await backend.update("assets", {}, {"name": "x"})
        with pytest.raises(ValueError):
            await backend.delete("assets", {})

    @respx.mock
    async def test_writer_for(self, backend: AsyncRestBackend) -> None:
        """Test the auto-save writer built for a table."""
        route = respx.patch(f"{BASE_URL}/rest/v1/esg_reports").mock(
            return_value=httpx.Response(200, json=[])
        )

        write = backend.writer_for("esg_reports", id_column="report_id")
        await write("r7", {"summary": "ok"})

        assert route.calls[0].request.url.params["report_id"] == "eq.r7"


class TestFunctions:
    """Tests for serverless function calls."""

    @respx.mock
    async def test_invoke_function(self, backend: AsyncRestBackend) -> None:
        """Test invoking a function with a JSON body."""
        route = respx.post(f"{BASE_URL}/functions/v1/calculate-emissions").mock(
            return_value=httpx.Response(200, json={"total": 42.5})
        )

        result = await backend.invoke_function("calculate-emissions", {"year": 2024})

        assert result == {"total": 42.5}
        assert json.loads(route.calls[0].request.content) == {"year": 2024}


class TestErrors:
    """Tests for non-2xx responses."""

    @respx.mock
    async def test_error_message_from_json(self, backend: AsyncRestBackend) -> None:
        """Test that the backend's error message is surfaced."""
        respx.get(f"{BASE_URL}/rest/v1/goals").mock(
            return_value=httpx.Response(401, json={"message": "JWT expired"})
        )

        with pytest.raises(BackendError) as exc_info:
            await backend.select("goals")

        assert exc_info.value.status_code == 401
        assert str(exc_info.value) == "HTTP 401: JWT expired"

    @respx.mock
    async def test_error_message_from_text(self, backend: AsyncRestBackend) -> None:
        """Test falling back to the raw body when it is not JSON."""
        respx.post(f"{BASE_URL}/functions/v1/parse").mock(
            return_value=httpx.Response(502, text="Bad gateway")
        )

        with pytest.raises(BackendError, match="Bad gateway"):
            await backend.invoke_function("parse")
