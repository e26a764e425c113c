import asyncio

import httpx
import pytest
import pytest_asyncio

from portfolio.api.uploads import get_orchestrator, get_upload_jobs
from portfolio.core.config import settings
from portfolio.core.database import get_db
from portfolio.main import app
from portfolio.services.upload_jobs import UploadJobManager
from tests.helpers import make_jpeg


@pytest_asyncio.fixture
async def jobs(session_factory):
    manager = UploadJobManager(session_factory)
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def client(session_factory, orchestrator, jobs):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_upload_jobs] = lambda: jobs
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _jpeg_files(*names):
    return [("files", (name, make_jpeg(), "image/jpeg")) for name in names]


async def _create(client, title, parent_id=None):
    response = await client.post("/collections", json={"title": title, "parent_id": parent_id})
    assert response.status_code == 200
    return response.json()


async def _wait_for(client, job_id):
    for _ in range(200):
        response = await client.get(f"/uploads/{job_id}")
        payload = response.json()
        if payload["status"] != "running":
            return payload
        await asyncio.sleep(0.01)
    raise AssertionError(f"upload job {job_id} did not finish")


async def test_health(client):
    response = await client.get("/health")

    assert response.json() == {"status": "ok"}


async def test_collection_upload_job_links_photos(client, uploader):
    travel = await _create(client, "Travel")
    asia = await _create(client, "Asia", parent_id=travel["id"])
    files = _jpeg_files("a.jpg", "b.jpg") + [("files", ("notes.txt", b"hello", "text/plain"))]

    response = await client.post(f"/collections/{asia['id']}/uploads", files=files)
    assert response.status_code == 200
    job = await _wait_for(client, response.json()["id"])

    assert job["status"] == "completed"
    assert job["result"]["summary"] == "2 of 2 succeeded"
    assert job["result"]["skipped"] == [{"name": "notes.txt", "reason": "not an image"}]
    assert len(job["result"]["photo_ids"]) == 2
    assert job["progress"]["progress_percent"] == 100
    assert {call[1] for call in uploader.calls} == {"portfolio/travel/asia"}

    photos = (await client.get(f"/collections/{asia['id']}/photos")).json()["photos"]
    assert [(photo["title"], photo["position"]) for photo in photos] == [("a", 0), ("b", 1)]

    tree = (await client.get("/collections")).json()
    assert tree[0]["slug"] == "travel"
    assert tree[0]["photo_count"] == 0
    assert tree[0]["total_photo_count"] == 2
    assert tree[0]["children"][0]["photo_count"] == 2


async def test_unfiled_upload_goes_to_static_folder(client, uploader):
    response = await client.post("/uploads", params={"folder": "profile"}, files=_jpeg_files("me.jpg"))
    job = await _wait_for(client, response.json()["id"])

    assert job["status"] == "completed"
    assert job["result"]["photo_ids"] == []
    assert uploader.calls[0][1] == "portfolio/profile"


async def test_upload_request_validation(client, monkeypatch):
    collection = await _create(client, "Weddings")

    unknown = await client.post(
        "/collections/00000000-0000-0000-0000-000000000000/uploads", files=_jpeg_files("a.jpg")
    )
    bad_folder = await client.post("/uploads", params={"folder": "secret"}, files=_jpeg_files("a.jpg"))
    monkeypatch.setattr(settings, "UPLOAD_MAX_FILES", 2)
    too_many = await client.post(
        f"/collections/{collection['id']}/uploads", files=_jpeg_files("a.jpg", "b.jpg", "c.jpg")
    )

    assert unknown.status_code == 404
    assert bad_folder.status_code == 400
    assert too_many.status_code == 400


async def test_misconfigured_store_returns_503(client, monkeypatch):
    app.dependency_overrides.pop(get_orchestrator)
    monkeypatch.setattr(settings, "ASSET_STORE", "dropbox")

    response = await client.post("/uploads", files=_jpeg_files("a.jpg"))

    assert response.status_code == 503


async def test_cancel_upload_job(client, uploader):
    collection = await _create(client, "Weddings")
    names = [f"img{index}.jpg" for index in range(6)]
    uploader.delays = {name: 0.05 for name in names}

    response = await client.post(f"/collections/{collection['id']}/uploads", files=_jpeg_files(*names))
    job_id = response.json()["id"]
    cancel = await client.delete(f"/uploads/{job_id}")
    job = await _wait_for(client, job_id)

    assert cancel.json()["cancel_requested"] is True
    assert job["status"] == "cancelled"
    assert job["result"]["cancelled"] is True
    assert job["result"]["succeeded"] <= 3
    photos = (await client.get(f"/collections/{collection['id']}/photos")).json()["photos"]
    assert len(photos) == job["result"]["succeeded"]


async def test_unknown_job_is_404(client):
    assert (await client.get("/uploads/missing")).status_code == 404
    assert (await client.delete("/uploads/missing")).status_code == 404


async def test_reorder_and_detach_endpoints(client):
    collection = await _create(client, "Weddings")
    response = await client.post(f"/collections/{collection['id']}/uploads", files=_jpeg_files("a.jpg", "b.jpg", "c.jpg"))
    job = await _wait_for(client, response.json()["id"])
    photo_ids = job["result"]["photo_ids"]

    reordered = await client.put(
        f"/collections/{collection['id']}/photos/order", json={"photo_ids": list(reversed(photo_ids))}
    )
    mismatch = await client.put(f"/collections/{collection['id']}/photos/order", json={"photo_ids": photo_ids[:1]})
    detached = await client.delete(f"/collections/{collection['id']}/photos/{photo_ids[1]}")

    assert reordered.status_code == 200
    assert [photo["title"] for photo in reordered.json()["photos"]] == ["c", "b", "a"]
    assert mismatch.status_code == 409
    assert detached.status_code == 200
    photos = (await client.get(f"/collections/{collection['id']}/photos")).json()["photos"]
    assert [photo["title"] for photo in photos] == ["c", "a"]


async def test_tree_move_and_delete_endpoints(client):
    parent = await _create(client, "Parent")
    child = await _create(client, "Child", parent_id=parent["id"])

    cycle = await client.patch(f"/collections/{parent['id']}/parent", json={"parent_id": child["id"]})
    refused = await client.delete(f"/collections/{parent['id']}")
    forced = await client.delete(f"/collections/{parent['id']}", params={"force": "true"})

    assert cycle.status_code == 409
    assert refused.status_code == 409
    assert forced.json() == {"ok": True, "deleted": 2}
    assert (await client.get("/collections")).json() == []


@pytest.mark.parametrize("path", ["/collections/not-a-uuid/photos", "/collections/not-a-uuid/parent"])
async def test_malformed_ids_are_rejected(client, path):
    if path.endswith("parent"):
        response = await client.patch(path, json={"parent_id": None})
    else:
        response = await client.get(path)

    assert response.status_code == 400


async def test_store_failures_are_reported_in_the_job_result(client, uploader):
    uploader.fail_names = {"b.jpg"}

    response = await client.post("/uploads", files=_jpeg_files("a.jpg", "b.jpg"))
    job = await _wait_for(client, response.json()["id"])

    assert response.status_code == 200
    assert job["status"] == "completed"
    assert job["result"]["failed_files"] == ["b.jpg"]
    assert job["result"]["records"][1]["error"] == "simulated transport error"
