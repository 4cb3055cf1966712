import pytest
from fastapi.testclient import TestClient

from reading_api import main as api_module
from reading_intervals.admission import AdmissionController

from factories import FakeCache, FakeStore, RecordingJobQueue

USER = {"X-User-Id": "7"}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def jobs():
    return RecordingJobQueue()


@pytest.fixture
def client(store, cache, jobs):
    admission = AdmissionController(
        storage_uri="async+memory://",
        route_limits={
            "POST /books/reading-interval": {"limit": 20, "duration": 30},
            "POST /books/reading-intervals": {"limit": 20, "duration": 30},
        },
    )
    api_module.app.state.services = api_module.build_services(store, cache, jobs, admission)
    with TestClient(api_module.app) as test_client:
        yield test_client
    del api_module.app.state.services


def test_create_and_update_book(client):
    resp = client.post("/books", json={"title": "dune", "number_of_pages": 412})
    assert resp.status_code == 201
    book = resp.json()
    assert book["title"] == "dune"
    assert book["number_of_read_pages"] == 0

    resp = client.patch(f"/books/{book['id']}", json={"number_of_pages": 500})
    assert resp.status_code == 200
    assert resp.json()["number_of_pages"] == 500


def test_update_missing_book_is_404(client):
    resp = client.patch("/books/999999", json={"title": "x"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "BOOK_NOT_FOUND"


def test_submit_interval(client, store, jobs):
    book = store.add_book(number_of_pages=100)

    resp = client.post(
        "/books/reading-interval",
        json={"book_id": book.id, "start_page": 1, "end_page": 10},
        headers=USER,
    )

    assert resp.status_code == 201
    assert resp.json() == {"status_code": "success", "created": True}
    assert resp.headers["X-Request-ID"]
    assert store.intervals == [(7, book.id, 1, 10)]
    assert jobs.enqueued == [book.id]


def test_duplicate_interval_succeeds_without_creating(client, store):
    book = store.add_book()
    body = {"book_id": book.id, "start_page": 1, "end_page": 10}
    client.post("/books/reading-interval", json=body, headers=USER)

    resp = client.post("/books/reading-interval", json=body, headers=USER)

    assert resp.status_code == 201
    assert resp.json()["created"] is False
    assert len(store.intervals) == 1


def test_submit_requires_user_header(client, store):
    book = store.add_book()
    resp = client.post("/books/reading-interval", json={"book_id": book.id, "start_page": 1, "end_page": 2})
    assert resp.status_code == 422


@pytest.mark.parametrize(
    "body,status,code",
    [
        ({"book_id": 424242, "start_page": 1, "end_page": 2}, 404, "BOOK_NOT_FOUND"),
        ({"start_page": 5, "end_page": 2}, 400, "INVALID_RANGE"),
        ({"start_page": 1, "end_page": 101}, 400, "INVALID_RANGE"),
    ],
)
def test_submit_errors(client, store, body, status, code):
    book = store.add_book(number_of_pages=100)
    payload = {"book_id": book.id, **body}

    resp = client.post("/books/reading-interval", json=payload, headers=USER)

    assert resp.status_code == status
    data = resp.json()
    assert data["error"]["code"] == code
    assert data["request_id"] == resp.headers["X-Request-ID"]


def test_store_outage_is_503(client, store):
    book = store.add_book()
    store.failing.add("insert_interval")
    resp = client.post(
        "/books/reading-interval", json={"book_id": book.id, "start_page": 1, "end_page": 2}, headers=USER
    )
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "TRANSIENT"


def test_batch_submission(client, store):
    book = store.add_book(number_of_pages=50)
    resp = client.post(
        "/books/reading-intervals",
        json={
            "intervals": [
                {"book_id": book.id, "start_page": 1, "end_page": 10},
                {"book_id": book.id, "start_page": 40, "end_page": 60},
            ]
        },
        headers=USER,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert (data["successCount"], data["failedCount"]) == (1, 1)
    assert data["errors"][0]["index"] == 1
    assert data["errors"][0]["error_code"] == "INVALID_RANGE"


def test_rate_limit_rejects_twenty_first_request(client, store):
    book = store.add_book(number_of_pages=100)
    for page in range(1, 21):
        resp = client.post(
            "/books/reading-interval",
            json={"book_id": book.id, "start_page": page, "end_page": page},
            headers=USER,
        )
        assert resp.status_code == 201

    resp = client.post(
        "/books/reading-interval", json={"book_id": book.id, "start_page": 50, "end_page": 60}, headers=USER
    )

    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMITED"
    assert int(resp.headers["Retry-After"]) >= 1
    assert len(store.intervals) == 20


def test_top_books(client, store):
    alpha = store.add_book(title="alpha", number_of_pages=100)
    beta = store.add_book(title="beta", number_of_pages=80)
    store.intervals += [(1, alpha.id, 1, 10), (2, beta.id, 1, 30)]

    resp = client.get("/books/top", params={"limit": 2})

    assert resp.status_code == 200
    assert resp.json() == {
        "books": [
            {"book_id": str(beta.id), "book_name": "beta", "num_of_pages": "80", "num_of_read_pages": "30"},
            {"book_id": str(alpha.id), "book_name": "alpha", "num_of_pages": "100", "num_of_read_pages": "10"},
        ]
    }


@pytest.mark.parametrize("limit", [0, 101])
def test_top_books_rejects_bad_limit(client, limit):
    resp = client.get("/books/top", params={"limit": limit})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_ARGUMENT"


def test_submission_invalidates_cached_ranking(client, store, cache):
    book = store.add_book(title="solo", number_of_pages=100)
    assert client.get("/books/top", params={"limit": 5}).json()["books"][0]["num_of_read_pages"] == "0"
    assert "top_books:5" in cache.data

    client.post("/books/reading-interval", json={"book_id": book.id, "start_page": 1, "end_page": 9}, headers=USER)

    assert cache.data == {}
    assert client.get("/books/top", params={"limit": 5}).json()["books"][0]["num_of_read_pages"] == "9"


def test_read_pages(client, store):
    book = store.add_book(number_of_pages=100)
    store.intervals += [(1, book.id, 1, 10), (2, book.id, 11, 12)]
    resp = client.get(f"/books/{book.id}/read-pages")
    assert resp.json() == {"book_id": book.id, "num_of_read_pages": 12}
    assert client.get("/books/999999/read-pages").status_code == 404


def test_cache_admin_routes(client, cache):
    cache.data["top_books:5"] = []
    stats = client.get("/books/cache/stats").json()["data"]
    assert stats["enabled"] is True
    assert stats["cacheKeyPrefix"] == "top_books"

    resp = client.delete("/books/cache")
    assert resp.status_code == 200
    assert cache.data == {}


def test_health_and_metrics(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_update_book_invalidates_cached_ranking(client, store, cache):
    book = store.add_book(title="zzz", number_of_pages=100)
    store.add_book(title="mmm", number_of_pages=100)
    assert client.get("/books/top", params={"limit": 5}).json()["books"][0]["book_name"] == "mmm"
    assert "top_books:5" in cache.data

    resp = client.patch(f"/books/{book.id}", json={"title": "aaa"})

    assert resp.status_code == 200
    assert cache.data == {}
    assert client.get("/books/top", params={"limit": 5}).json()["books"][0]["book_name"] == "aaa"
