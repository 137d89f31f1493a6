import asyncio
import os
import re

import httpx

BASE_URL = os.getenv("DISBURSER_URL", "http://localhost:8000")

def parse_metric(output: str, metric_name: str, labels: dict = None) -> float:
    """
    Parses a Prometheus metric value from the text output.
    Supports basic label matching.
    """
    for line in output.split('\n'):
        if line.startswith('#') or not line.strip():
            continue

        match = re.match(r'^([a-zA-Z_0-9]+)(\{.*\})?\s+(.+)$', line)
        if not match or match.group(1) != metric_name:
            continue
        if labels is None:
            return float(match.group(3))
        found_labels = match.group(2) or ""
        if all(f'{k}="{v}"' in found_labels for k, v in labels.items()):
            return float(match.group(3))
    return 0.0

async def wait_for_job(client: httpx.AsyncClient, job_id: str, timeout: float = 120.0) -> dict:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        resp = await client.get(f"/api/v1/jobs/{job_id}")
        if resp.status_code == 200 and resp.json()["job"]["status"] in ("completed", "failed"):
            return resp.json()["job"]
        await asyncio.sleep(1)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")

async def verify_scheduler():
    print("--- Verifying scheduler control plane against a live server ---")

    async with httpx.AsyncClient(base_url=BASE_URL, timeout=30) as client:
        # Clean baseline
        await client.post("/api/v1/jobs/stop-all")

        print("=== TEST 1: validation ===")
        resp = await client.post("/api/v1/scheduler/start", json={"interval_hours": 13})
        assert resp.status_code == 400, resp.text
        resp = await client.post("/api/v1/scheduler/start", json={"batch_size": 1})
        assert resp.status_code == 400, resp.text

        print("=== TEST 2: start / status / stop ===")
        resp = await client.post("/api/v1/scheduler/start", json={"interval_hours": 4, "batch_size": 10})
        assert resp.status_code == 200, resp.text
        started = resp.json()
        print(f"Cron: {started['cron_expression']}, next run: {started['next_run']}")
        assert len(started["upcoming_schedules"]) == 5

        status = (await client.get("/api/v1/scheduler/status")).json()
        assert status["enabled"] and status["armed"], status

        metrics = (await client.get("/metrics")).text
        assert parse_metric(metrics, "scheduler_enabled") == 1.0

        resp = await client.post("/api/v1/scheduler/stop")
        assert resp.status_code == 200
        resp = await client.post("/api/v1/scheduler/stop")
        assert resp.status_code == 200, "stop must be idempotent"

        print("=== TEST 3: manual job + single flight ===")
        resp = await client.post("/api/v1/jobs/manual", json={"batch_size": 10})
        assert resp.status_code == 202, resp.text
        job_id = resp.json()["job"]["job_id"]

        resp = await client.post("/api/v1/jobs/manual")
        assert resp.status_code == 409, "second manual job must be refused"

        job = await wait_for_job(client, job_id)
        print(f"Job {job_id} finished: {job['status']} ({job['successful_requests']} ok, {job['failed_requests']} failed)")
        stats = job["server_stats"] or {}
        if stats:
            assert stats["failed"] - stats["retried"] >= 0

        history = (await client.get("/api/v1/jobs/history", params={"limit": 5})).json()["jobs"]
        assert any(j["job_id"] == job_id for j in history)

        system = (await client.get("/api/v1/system/status")).json()
        print(f"System: {system['system']}")

    print("Verification Passed: scheduler control plane works!")

if __name__ == "__main__":
    asyncio.run(verify_scheduler())
