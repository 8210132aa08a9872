"""Server wiring tests — startup, restore and health through a real TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from branchoff.config import BranchoffConfig
from branchoff.server import create_app


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.delenv("GITHUB_WEBHOOK_SECRET", raising=False)
    return BranchoffConfig(
        data_dir=str(tmp_path / "data"),
        ports={"start": 4200, "end": 4210},
        queue={"step_timeout": 30},
    )


class TestServerLifecycle:
    def test_health(self, config):
        with TestClient(create_app(config)) as client:
            body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["deployments"] == 0
        assert body["ports_in_use"] == 0

    def test_startup_creates_data_dir(self, config, tmp_path):
        with TestClient(create_app(config)):
            pass
        assert (tmp_path / "data" / "ecosystem.db").exists()
        assert (tmp_path / "data" / "workspaces").is_dir()

    def test_routers_are_mounted(self, config):
        with TestClient(create_app(config), follow_redirects=False) as client:
            assert client.get("/test").json() == {"ok": True}
            assert client.get("/ecosystem").json() == {}
            assert client.get("/deploy").status_code == 303

            response = client.post(
                "/github/postreceive",
                json={"zen": "Approachable is better than simple."},
                headers={"X-GitHub-Event": "ping", "X-GitHub-Delivery": "d-1"},
            )
            assert response.status_code == 200

    def test_restore_runs_at_startup(self, config):
        with TestClient(create_app(config)) as client:
            for _ in range(50):
                steps = client.get("/activity").json()["steps"]
                if steps:
                    break
                time.sleep(0.02)
            labels = [s["label"] for s in steps]

        assert labels[-1] == "restore#load"
