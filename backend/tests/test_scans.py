import base64
import io
import os

from conftest import MANIPULATED_PAYLOAD, FakeResponse
from mediaproof.errors import DetectionError
from mediaproof.extensions import get_ledger
from mediaproof.models import CreditEntry, ScanQueueJob, ScanRecord


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _records(app, owner_id="user_1"):
    with app.app_context():
        return [(r.scan_id, r.state, r.confidence_score) for r in ScanRecord.query.filter_by(owner_id=owner_id)]


# ── auth ────────────────────────────────────────────────────

def test_scans_require_bearer_token(client):
    resp = client.post("/scans", json={"base64": b64(b"img")})
    assert resp.status_code == 401


def test_tampered_token_rejected(client, auth_headers):
    headers = auth_headers()
    headers["Authorization"] += "x"
    resp = client.post("/scans", json={"base64": b64(b"img")}, headers=headers)
    assert resp.status_code == 401


# ── synchronous ─────────────────────────────────────────────

def test_sync_scan_records_verdict_and_debits(client, make_user, auth_headers, balance, provider):
    make_user(credits=2)

    resp = client.post(
        "/scans",
        json={"fileName": "face.png", "mediaKind": "image", "base64": "data:image/png;base64," + b64(b"img")},
        headers=auth_headers(),
    )

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["state"] == "AUTHENTIC"
    assert body["confidenceScore"] == 12
    assert body["scanId"].startswith("scan-")
    assert body["inlineMediaRef"].startswith("sha256:")
    assert body["modelBreakdown"][0]["modelName"] == "face-swap"
    assert provider.calls[0]["data"] == b"img"
    assert balance() == 1


def test_sync_scan_manipulated_is_deepfake(client, make_user, auth_headers, provider):
    make_user(credits=1)
    provider.payload = MANIPULATED_PAYLOAD

    resp = client.post("/scans", json={"base64": b64(b"img"), "scanId": "scan-fake"}, headers=auth_headers())

    assert resp.status_code == 201
    assert resp.get_json()["state"] == "DEEPFAKE"
    assert resp.get_json()["confidenceScore"] == 91


def test_sync_scan_from_url(client, make_user, auth_headers, http_session, provider):
    make_user(credits=1)
    http_session.responses["https://cdn.example.com/v/clip.mp4"] = FakeResponse(200, b"video")

    resp = client.post(
        "/scans",
        json={"url": "https://cdn.example.com/v/clip.mp4", "mediaKind": "video"},
        headers=auth_headers(),
    )

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["fileName"] == "clip.mp4"
    assert body["sourceUrl"] == "https://cdn.example.com/v/clip.mp4"
    assert provider.calls[0]["kind"] == "video"


def test_zero_balance_rejected_before_detection(app, client, make_user, auth_headers, provider):
    make_user(credits=0)

    resp = client.post("/scans", json={"base64": b64(b"img")}, headers=auth_headers())

    assert resp.status_code == 402
    assert provider.calls == []
    assert _records(app) == []


def test_unknown_owner_gets_402(client, auth_headers, provider):
    resp = client.post("/scans", json={"base64": b64(b"img")}, headers=auth_headers("nobody"))
    assert resp.status_code == 402
    assert provider.calls == []


def test_sync_detection_failure_keeps_debit_by_default(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=2)

    def fail(path, kind):
        raise DetectionError("Detection timed out after 120s")

    provider.handler = fail

    resp = client.post("/scans", json={"base64": b64(b"img"), "scanId": "scan-x"}, headers=auth_headers())

    assert resp.status_code == 502
    body = resp.get_json()
    assert "timed out" in body["message"]
    assert body["scan"]["state"] == "ERROR"
    assert body["scan"]["confidenceScore"] is None
    assert _records(app) == [("scan-x", "ERROR", None)]
    # The credit was spent at submission
    assert balance() == 1


def test_sync_detection_failure_refunds_when_configured(make_app, make_user_for, auth_headers_for, provider):
    app = make_app(SCAN_REFUND_ON_FAILURE=True)
    make_user_for(app, "user_1", credits=2)

    def fail(path, kind):
        raise DetectionError("provider down")

    provider.handler = fail

    resp = app.test_client().post("/scans", json={"base64": b64(b"img")}, headers=auth_headers_for(app, "user_1"))

    assert resp.status_code == 502
    with app.app_context():
        kinds = [e.kind for e in CreditEntry.query.order_by(CreditEntry.id)]
        assert kinds == ["scan", "refund"]
        assert get_ledger().balance("user_1") == 2


def test_sync_internal_error_still_ends_in_error(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=1)

    def crash(path, kind):
        raise RuntimeError("unexpected provider payload")

    provider.handler = crash

    resp = client.post("/scans", json={"base64": b64(b"img"), "scanId": "scan-x"}, headers=auth_headers())

    assert resp.status_code == 500
    assert _records(app) == [("scan-x", "ERROR", None)]
    assert balance() == 1


def test_sync_malformed_model_list_still_records_verdict(app, client, make_user, auth_headers, provider):
    make_user(credits=1)
    provider.payload = {"requestId": "j", "status": "AUTHENTIC", "score": 0.1, "models": 5}

    resp = client.post("/scans", json={"base64": b64(b"img"), "scanId": "scan-x"}, headers=auth_headers())

    assert resp.status_code == 201
    assert resp.get_json()["modelBreakdown"] == []
    assert _records(app) == [("scan-x", "AUTHENTIC", 10)]


def test_missing_media_is_400(client, make_user, auth_headers, provider):
    make_user(credits=1)
    resp = client.post("/scans", json={"fileName": "a.png"}, headers=auth_headers())
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "No media provided"
    assert provider.calls == []


def test_bad_base64_is_400(client, make_user, auth_headers):
    make_user(credits=1)
    resp = client.post("/scans", json={"base64": "not base64!!"}, headers=auth_headers())
    assert resp.status_code == 400


def test_unsupported_media_kind_is_400(client, make_user, auth_headers):
    make_user(credits=1)
    resp = client.post("/scans", json={"base64": b64(b"x"), "mediaKind": "text"}, headers=auth_headers())
    assert resp.status_code == 400


def test_duplicate_scan_id_is_409(client, make_user, auth_headers, balance):
    make_user(credits=3)
    first = client.post("/scans", json={"base64": b64(b"a"), "scanId": "mine"}, headers=auth_headers())
    second = client.post("/scans", json={"base64": b64(b"b"), "scanId": "mine"}, headers=auth_headers())

    assert first.status_code == 201
    assert second.status_code == 409
    assert balance() == 2


def test_multipart_upload(client, make_user, auth_headers, provider):
    make_user(credits=1)

    resp = client.post(
        "/scans",
        data={"file": (io.BytesIO(b"RIFF....WAVE"), "voice.wav", "audio/wav")},
        content_type="multipart/form-data",
        headers=auth_headers(),
    )

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["fileName"] == "voice.wav"
    assert body["mediaKind"] == "audio"
    assert provider.calls[0]["data"] == b"RIFF....WAVE"


# ── lookup ──────────────────────────────────────────────────

def test_get_scan_is_owner_scoped(client, make_user, auth_headers):
    make_user("user_1", credits=1)
    make_user("user_2", credits=1)
    client.post("/scans", json={"base64": b64(b"a"), "scanId": "scan-own"}, headers=auth_headers("user_1"))

    mine = client.get("/scans/scan-own", headers=auth_headers("user_1"))
    theirs = client.get("/scans/scan-own", headers=auth_headers("user_2"))
    missing = client.get("/scans/nope", headers=auth_headers("user_1"))

    assert mine.status_code == 200
    assert mine.get_json()["scanId"] == "scan-own"
    assert theirs.status_code == 404
    assert missing.status_code == 404


# ── bulk ────────────────────────────────────────────────────

def test_bulk_items_beyond_balance_are_not_detected(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=2)
    files = [{"fileName": f"f{i}.png", "base64": b64(f"img{i}".encode())} for i in range(3)]

    resp = client.post("/scans", json={"files": files}, headers=auth_headers())

    assert resp.status_code == 201
    body = resp.get_json()
    assert len(body["scans"]) == 2
    assert [r["inputRef"] for r in body["results"]] == ["f0.png", "f1.png", "f2.png"]
    assert body["results"][2]["scan"] is None
    assert "Insufficient credits" in body["results"][2]["error"]
    assert len(provider.calls) == 2
    assert balance() == 0


def test_bulk_failed_items_cost_nothing(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=5)

    def detect(path, kind):
        with open(path, "rb") as fh:
            if fh.read() == b"bad":
                raise DetectionError("provider rejected media")
        return {"id": os.path.basename(path), "status": "MANIPULATED", "score": 0.3}

    provider.handler = detect
    files = [
        {"fileName": "a.png", "base64": b64(b"good")},
        {"fileName": "b.png", "base64": b64(b"bad")},
        {"fileName": "c.png"},
        {"fileName": "d.png", "base64": b64(b"good")},
    ]

    resp = client.post("/scans", json={"files": files}, headers=auth_headers())

    body = resp.get_json()
    results = body["results"]
    assert [r["error"] is None for r in results] == [True, False, False, True]
    assert results[1]["error"] == "provider rejected media"
    assert results[2]["error"] == "No media provided"
    assert results[0]["scan"]["state"] == "SUSPICIOUS"
    assert len(provider.calls) == 3
    assert balance() == 3
    with app.app_context():
        assert ScanRecord.query.count() == 2
        assert all(r.completed_at is not None for r in ScanRecord.query)


def test_bulk_with_zero_balance_is_402(client, make_user, auth_headers, provider):
    make_user(credits=0)
    resp = client.post("/scans", json={"files": [{"base64": b64(b"a")}]}, headers=auth_headers())
    assert resp.status_code == 402
    assert provider.calls == []


def test_bulk_empty_list_is_400(client, make_user, auth_headers):
    make_user(credits=1)
    resp = client.post("/scans", json={"files": []}, headers=auth_headers())
    assert resp.status_code == 400


# ── queued ──────────────────────────────────────────────────

def _queue_scan(client, auth_headers, data=b"img", **extra):
    body = {"fileName": "q.png", "base64": b64(data), "mode": "queued"}
    body.update(extra)
    return client.post("/scans", json=body, headers=auth_headers())


def test_queued_scan_is_accepted_without_debit(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=1)

    resp = _queue_scan(client, auth_headers, scanId="scan-q")

    assert resp.status_code == 202
    assert resp.get_json()["state"] == "QUEUED"
    assert provider.calls == []
    assert balance() == 1
    with app.app_context():
        job = ScanQueueJob.query.one()
        assert job.scan_id == "scan-q"
        assert job.queue_name == "scanQueue"
        assert job.state == "waiting"
        assert os.path.isfile(job.staged_media_path)


def test_queued_scan_completes_on_worker(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=1)
    _queue_scan(client, auth_headers, scanId="scan-q")

    pool = app.extensions["mediaproof.workers"]
    with app.app_context():
        staged = ScanQueueJob.query.one().staged_media_path
        assert pool.drain() == 1

    assert provider.calls[0]["data"] == b"img"
    assert not os.path.exists(staged)
    assert balance() == 0
    resp = client.get("/scans/scan-q", headers=auth_headers())
    assert resp.get_json()["state"] == "AUTHENTIC"
    with app.app_context():
        assert ScanQueueJob.query.one().state == "completed"


def test_queued_detection_failure_releases_credit(app, client, make_user, auth_headers, balance, provider):
    # Unlike the synchronous path, a queued scan only costs a credit once it completes
    make_user(credits=1)

    def timeout(path, kind):
        raise DetectionError("Detection timed out after 120s")

    provider.handler = timeout
    _queue_scan(client, auth_headers, scanId="scan-q")

    with app.app_context():
        staged = ScanQueueJob.query.one().staged_media_path
        assert os.path.isfile(staged)
        app.extensions["mediaproof.workers"].drain()
        job = ScanQueueJob.query.one()
        assert job.state == "failed"
        assert job.attempts == 1

    assert not os.path.exists(staged)
    assert balance() == 1
    body = client.get("/scans/scan-q", headers=auth_headers()).get_json()
    assert body["state"] == "ERROR"
    assert body["error"] == "Detection timed out after 120s"


def test_queued_submissions_capped_by_balance(app, client, make_user, auth_headers, provider):
    make_user(credits=1)

    first = _queue_scan(client, auth_headers, data=b"a", scanId="scan-1")
    second = _queue_scan(client, auth_headers, data=b"b", scanId="scan-2")

    assert first.status_code == 202
    assert second.status_code == 402
    with app.app_context():
        assert [j.scan_id for j in ScanQueueJob.query] == ["scan-1"]
        assert ScanRecord.query.count() == 1


def test_queued_job_without_credit_at_run_time(app, client, make_user, auth_headers, balance, provider):
    make_user(credits=2)
    _queue_scan(client, auth_headers, data=b"a", scanId="scan-1")
    _queue_scan(client, auth_headers, data=b"b", scanId="scan-2")

    # A synchronous scan spends one of the credits before the workers run
    client.post("/scans", json={"base64": b64(b"c"), "scanId": "scan-s"}, headers=auth_headers())

    with app.app_context():
        assert app.extensions["mediaproof.workers"].drain() == 2

    assert len(provider.calls) == 2
    assert balance() == 0
    states = dict((sid, state) for sid, state, _ in _records(app))
    assert states == {"scan-s": "AUTHENTIC", "scan-1": "AUTHENTIC", "scan-2": "ERROR"}


def test_queued_url_scan_is_not_staged(app, client, make_user, auth_headers, http_session):
    make_user(credits=1)
    http_session.responses["https://cdn.example.com/a.png"] = FakeResponse(200, b"png")

    resp = client.post(
        "/scans",
        json={"url": "https://cdn.example.com/a.png", "mode": "queued"},
        headers=auth_headers(),
    )

    assert resp.status_code == 202
    with app.app_context():
        job = ScanQueueJob.query.one()
        assert job.staged_media_path is None
        assert job.source_url == "https://cdn.example.com/a.png"
        app.extensions["mediaproof.workers"].drain()
        assert ScanRecord.query.one().state == "AUTHENTIC"


def test_queued_zero_balance_is_402(app, client, make_user, auth_headers):
    make_user(credits=0)
    resp = _queue_scan(client, auth_headers)
    assert resp.status_code == 402
    with app.app_context():
        assert ScanQueueJob.query.count() == 0
    staging = app.config["SCAN_STAGING_DIR"]
    assert not os.path.isdir(staging) or os.listdir(staging) == []
