import uuid
from datetime import date, timedelta

from app.models.sync_job import CANCELLED, PENDING, RUNNING, SyncJob
from app.services.progress import DETAIL_UNAVAILABLE
from app.services.store import LedgerStore, SyncScope


def _seed_job(api, status: str = RUNNING) -> uuid.UUID:
    with api.session() as session:
        store = LedgerStore(session)
        job = store.create_job("full", ["account", "invoice"], SyncScope(), status=status)
        store.commit()
        return job.id


class TestTriggerSync:
    def test_queues_a_job_and_hands_it_to_a_worker(self, api):
        resp = api.client.post("/api/v1/sync", json={"sync_type": "full"})
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]
        assert resp.json()["status"] == PENDING
        assert api.sync_task.calls == [(job_id,)]

        with api.session() as session:
            job = session.get(SyncJob, uuid.UUID(job_id))
            assert job.status == PENDING
            assert job.kinds == ["account", "bank_account", "bank_transaction", "invoice"]

    def test_refuses_while_another_job_is_active(self, api):
        _seed_job(api, RUNNING)
        resp = api.client.post("/api/v1/sync", json={"sync_type": "incremental"})
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "SYNC_ALREADY_RUNNING"
        assert api.sync_task.calls == []

    def test_targeted_sync_without_kinds_is_invalid(self, api):
        resp = api.client.post("/api/v1/sync", json={"sync_type": "targeted"})
        assert resp.status_code == 422

    def test_scope_too_old_is_rejected(self, api):
        since = (date.today() - timedelta(days=365 * 20)).isoformat()
        resp = api.client.post("/api/v1/sync", json={"sync_type": "full", "since": since})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "SCOPE_TOO_LARGE"


class TestProgress:
    def test_running_job_without_cached_detail_is_degraded(self, api):
        job_id = _seed_job(api, RUNNING)
        resp = api.client.get(f"/api/v1/sync/{job_id}/progress")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "in_progress"
        assert body["detail_available"] is False
        assert body["current_step"] == DETAIL_UNAVAILABLE

    def test_running_job_with_cached_detail(self, api):
        job_id = _seed_job(api, RUNNING)
        api.progress.put(job_id, {
            "job_id": str(job_id),
            "status": RUNNING,
            "steps": {"account": {"status": "done", "count": 4}, "invoice": {"status": "in_progress", "count": 0}},
            "percentage": 50,
            "current_step": "Syncing invoice",
        }, ttl_seconds=3600)

        body = api.client.get(f"/api/v1/sync/{job_id}/progress").json()
        assert body["percentage"] == 50
        assert body["steps"]["account"] == {"status": "done", "count": 4}
        assert body["current_step"] == "Syncing invoice"

    def test_latest_progress(self, api):
        job_id = _seed_job(api, RUNNING)
        body = api.client.get("/api/v1/sync/progress").json()
        assert body["job_id"] == str(job_id)

    def test_latest_progress_without_jobs(self, api):
        resp = api.client.get("/api/v1/sync/progress")
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "SYNC_JOB_NOT_FOUND"

    def test_unknown_job(self, api):
        resp = api.client.get(f"/api/v1/sync/{uuid.uuid4()}/progress")
        assert resp.status_code == 404


class TestJobsAndCancel:
    def test_lists_recent_jobs(self, api):
        first = _seed_job(api, CANCELLED)
        second = _seed_job(api, RUNNING)
        jobs = api.client.get("/api/v1/sync/jobs").json()
        assert {j["id"] for j in jobs} == {str(first), str(second)}

    def test_cancel_pending_job_finishes_it(self, api):
        job_id = _seed_job(api, PENDING)
        resp = api.client.post(f"/api/v1/sync/{job_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == CANCELLED

        again = api.client.post(f"/api/v1/sync/{job_id}/cancel")
        assert again.status_code == 409

    def test_cancel_running_job_requests_cancellation(self, api):
        job_id = _seed_job(api, RUNNING)
        body = api.client.post(f"/api/v1/sync/{job_id}/cancel").json()
        assert body["status"] == RUNNING
        assert body["cancel_requested"] is True


class TestHealth:
    def test_health(self, api):
        assert api.client.get("/health").json() == {"status": "ok"}
