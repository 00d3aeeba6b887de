import json

import httpx
import pytest
import respx

from gallery_sync.client.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    ServerError,
)
from gallery_sync.client.gallery_client import GalleryClient
from gallery_sync.config import GalleryConfig, RetryConfig

BASE_URL = "https://gallery.test"


@pytest.fixture
async def gallery():
    client = GalleryClient(
        GalleryConfig(url=BASE_URL, token="test-token", property_id="7", rate_limit=0),
        RetryConfig(max_attempts=3, min_wait=0, max_wait=0),
    )
    yield client
    await client.close()


def test_client_requires_url():
    with pytest.raises(ConfigurationError):
        GalleryClient(GalleryConfig(url=""))


@respx.mock
async def test_fetch_categories(gallery):
    route = respx.post(f"{BASE_URL}/api/plugin/combine/sidebar").mock(
        return_value=httpx.Response(200, json={"success": True, "data": [{"name": "Breast"}]})
    )

    categories = await gallery.fetch_categories("test-token")

    assert categories == [{"name": "Breast"}]
    assert json.loads(route.calls.last.request.content) == {"apiTokens": ["test-token"]}
    assert route.calls.last.request.headers["Authorization"] == "Bearer test-token"


@respx.mock
async def test_fetch_categories_rejects_unsuccessful_payload(gallery):
    respx.post(f"{BASE_URL}/api/plugin/combine/sidebar").mock(
        return_value=httpx.Response(200, json={"success": False})
    )

    with pytest.raises(APIError):
        await gallery.fetch_categories("test-token")


@respx.mock
async def test_fetch_case_ids_normalizes_items(gallery):
    route = respx.post(f"{BASE_URL}/api/plugin/combine/cases").mock(
        return_value=httpx.Response(200, json={"data": [{"id": 5}, 6, "7", {"id": "bad"}, -1]})
    )

    page = await gallery.fetch_case_ids("test-token", 101, 2)

    assert page == {"ids": [5, 6, 7], "has_more": True}
    body = json.loads(route.calls.last.request.content)
    assert body == {
        "apiTokens": ["test-token"],
        "websitePropertyIds": [7],
        "procedureIds": [101],
        "count": 2,
    }


@respx.mock
async def test_empty_page_means_no_more(gallery):
    respx.post(f"{BASE_URL}/api/plugin/combine/cases").mock(
        return_value=httpx.Response(200, json={"data": []})
    )

    assert await gallery.fetch_case_ids("test-token", 101, 9) == {"ids": [], "has_more": False}


@respx.mock
async def test_fetch_case_unwraps_list_payload(gallery):
    respx.post(f"{BASE_URL}/api/plugin/combine/cases/42").mock(
        return_value=httpx.Response(200, json={"data": [{"id": 42, "draft": False}]})
    )

    assert await gallery.fetch_case("test-token", 42, 101) == {"id": 42, "draft": False}


@respx.mock
async def test_fetch_case_without_data_is_not_found(gallery):
    respx.post(f"{BASE_URL}/api/plugin/combine/cases/42").mock(
        return_value=httpx.Response(200, json={"data": None})
    )

    with pytest.raises(NotFoundError):
        await gallery.fetch_case("test-token", 42)


@respx.mock
async def test_server_errors_are_retried(gallery):
    route = respx.post(f"{BASE_URL}/api/plugin/combine/sidebar").mock(
        side_effect=[
            httpx.Response(503),
            httpx.Response(200, json={"success": True, "data": []}),
        ]
    )

    assert await gallery.fetch_categories("test-token") == []
    assert route.call_count == 2


@respx.mock
async def test_retries_are_bounded(gallery):
    route = respx.post(f"{BASE_URL}/api/plugin/combine/sidebar").mock(
        return_value=httpx.Response(500)
    )

    with pytest.raises(ServerError):
        await gallery.fetch_categories("test-token")
    assert route.call_count == 3


@respx.mock
async def test_client_errors_are_not_retried(gallery):
    route = respx.post(f"{BASE_URL}/api/plugin/combine/sidebar").mock(
        return_value=httpx.Response(401, json={"detail": "bad token"})
    )

    with pytest.raises(AuthenticationError):
        await gallery.fetch_categories("test-token")
    assert route.call_count == 1


@respx.mock
async def test_track_view(gallery):
    route = respx.get(f"{BASE_URL}/api/plugin/views").mock(
        return_value=httpx.Response(200, json={})
    )

    await gallery.track_view("test-token", 42)

    assert route.calls.last.request.url.params["caseId"] == "42"
    assert route.calls.last.request.url.params["apiToken"] == "test-token"


@respx.mock
async def test_connection_check(gallery):
    respx.get(f"{BASE_URL}/test").mock(
        side_effect=[httpx.Response(200), httpx.Response(500)]
    )

    assert await gallery.test_connection() is True
    assert await gallery.test_connection() is False


@respx.mock
async def test_download_image(gallery):
    respx.get("https://img.gallery.test/1/before.jpg").mock(
        return_value=httpx.Response(200, content=b"\xff\xd8\xff")
    )

    assert await gallery.download_image("https://img.gallery.test/1/before.jpg") == b"\xff\xd8\xff"


@respx.mock
async def test_image_download_from_other_host_carries_no_token(gallery):
    route = respx.get("https://cdn.other-host.test/1/before.jpg").mock(
        return_value=httpx.Response(200, content=b"\xff\xd8\xff")
    )

    await gallery.download_image("https://cdn.other-host.test/1/before.jpg")

    assert "Authorization" not in route.calls.last.request.headers


@respx.mock
async def test_image_download_from_api_host_is_authenticated(gallery):
    route = respx.get(f"{BASE_URL}/media/1/before.jpg").mock(
        return_value=httpx.Response(200, content=b"\xff\xd8\xff")
    )

    await gallery.download_image(f"{BASE_URL}/media/1/before.jpg")

    assert route.calls.last.request.headers["Authorization"] == "Bearer test-token"
