"""
Tests for the deployment API endpoints.

The service and task dispatcher are mocked; these tests cover request
validation, status codes and the mapping of domain exceptions to HTTP.

Run with: pytest backend/tests/test_api.py -v
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.core.database import get_db
from app.core.exceptions import (
    CommandTimeoutError,
    DeploymentInProgressError,
    DeploymentNotFoundError,
    InvalidStatusTransitionError,
)
from app.main import app
from app.models.deployment import Deployment
from app.schemas.deployment import HealthStatus
from app.services.deployment.lifecycle import ContainerHealth

ENDPOINTS = "app.api.v1.endpoints.deployments"
BASE = "/api/v1/deployments"


def make_deployment(status="pending", **overrides):
    fields = dict(
        id=uuid4(),
        project_id="proj-1",
        project_name="My App",
        provider="builtin",
        subdomain="my-app-abc123",
        status=status,
        cpu_limit=1000,
        memory_limit=512,
        logs="",
        meta_data={},
        created_at=datetime.utcnow(),
    )
    fields.update(overrides)
    return Deployment(**fields)


@pytest.fixture
def client():
    async def override_get_db():
        yield AsyncMock()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_service():
    with patch(f"{ENDPOINTS}.deployment_service") as service:
        yield service


@pytest.fixture
def mock_dispatcher():
    with patch(f"{ENDPOINTS}.task_dispatcher") as dispatcher:
        yield dispatcher


@pytest.fixture
def current_status():
    with patch(f"{ENDPOINTS}.DeploymentRepository") as mock_repo_cls:
        def set_status(status):
            mock_repo_cls.return_value.get_by_id_or_raise = AsyncMock(return_value=make_deployment(status))
        yield set_status


class TestCreateDeployment:

    def test_create_returns_202_and_dispatches(self, client, mock_service, mock_dispatcher):
        deployment = make_deployment()
        mock_service.create_deployment = AsyncMock(return_value=deployment)

        response = client.post(BASE, json={
            "project_id": "proj-1",
            "project_name": "My App",
            "files": [{"path": "index.html", "content": "<h1>hi</h1>"}],
        })

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["subdomain"] == "my-app-abc123"
        assert mock_service.create_deployment.call_args.kwargs["cpu_limit"] == 1000
        dispatched_id, files_json = mock_dispatcher.dispatch_deployment.call_args.args
        assert dispatched_id == deployment.id
        assert '"index.html"' in files_json

    def test_create_conflict_is_409(self, client, mock_service, mock_dispatcher):
        mock_service.create_deployment = AsyncMock(side_effect=DeploymentInProgressError("proj-1"))

        response = client.post(BASE, json={"project_id": "proj-1", "project_name": "My App"})

        assert response.status_code == 409
        assert response.json()["error_type"] == "DeploymentInProgressError"
        mock_dispatcher.dispatch_deployment.assert_not_called()

    def test_create_unqueued_build_is_503(self, client, mock_service, mock_dispatcher):
        deployment = make_deployment()
        mock_service.create_deployment = AsyncMock(return_value=deployment)
        mock_service.abandon_deployment = AsyncMock(return_value=True)
        mock_dispatcher.dispatch_deployment.return_value = None

        response = client.post(BASE, json={"project_id": "proj-1", "project_name": "My App"})

        assert response.status_code == 503
        assert response.json()["error_type"] == "ServiceUnavailableError"
        assert mock_service.abandon_deployment.call_args.args[1] == deployment.id

    def test_create_rejects_out_of_range_limits(self, client, mock_service, mock_dispatcher):
        response = client.post(BASE, json={
            "project_id": "proj-1",
            "project_name": "My App",
            "cpu_limit": 50,
        })

        assert response.status_code == 422


class TestReadEndpoints:

    def test_list_deployments(self, client, mock_service):
        mock_service.list_deployments = AsyncMock(return_value=([make_deployment("running")], 1))

        response = client.get(BASE, params={"status": "running", "size": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["status"] == "running"
        assert mock_service.list_deployments.call_args.kwargs["status"] == "running"

    def test_list_rejects_unknown_status(self, client, mock_service):
        response = client.get(BASE, params={"status": "exploded"})

        assert response.status_code == 422

    def test_get_unknown_deployment_is_404(self, client):
        deployment_id = uuid4()

        with patch(f"{ENDPOINTS}.DeploymentRepository") as mock_repo_cls:
            mock_repo_cls.return_value.get_by_id_or_raise = AsyncMock(
                side_effect=DeploymentNotFoundError(str(deployment_id))
            )
            response = client.get(f"{BASE}/{deployment_id}")

        assert response.status_code == 404

    def test_logs(self, client, mock_service):
        deployment = make_deployment("running", logs="Built image\n", container_id="abc")
        mock_service.get_logs = AsyncMock(return_value=(deployment, "listening"))

        response = client.get(f"{BASE}/{deployment.id}/logs", params={"tail": 20})

        assert response.status_code == 200
        assert response.json()["build_logs"] == "Built image\n"
        assert response.json()["container_logs"] == "listening"
        assert mock_service.get_logs.call_args.args[2] == 20

    def test_health(self, client, mock_service):
        mock_service.get_health = AsyncMock(
            return_value=ContainerHealth(status=HealthStatus.HEALTHY, uptime=30, state="running")
        )

        response = client.get(f"{BASE}/{uuid4()}/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["uptime"] == 30

    def test_detect_buildpack(self, client):
        response = client.post(f"{BASE}/buildpack/detect", json={
            "files": [{"path": "go.mod", "content": "module x"}],
        })

        assert response.status_code == 200
        assert response.json()["framework"] == "go"


class TestLifecycleEndpoints:

    def test_stop_claims_then_dispatches(self, client, mock_service, mock_dispatcher):
        deployment = make_deployment("stopping")
        mock_service.begin_stop = AsyncMock(return_value=deployment)

        response = client.post(f"{BASE}/{deployment.id}/stop")

        assert response.status_code == 202
        assert response.json()["status"] == "stopping"
        mock_dispatcher.dispatch_stop.assert_called_once_with(deployment.id)

    def test_stop_conflict_does_not_dispatch(self, client, mock_service, mock_dispatcher):
        deployment_id = uuid4()
        mock_service.begin_stop = AsyncMock(
            side_effect=InvalidStatusTransitionError(str(deployment_id), "stopping", "stopping")
        )

        response = client.post(f"{BASE}/{deployment_id}/stop")

        assert response.status_code == 409
        assert response.json()["current_status"] == "stopping"
        mock_dispatcher.dispatch_stop.assert_not_called()

    def test_restart(self, client, mock_service, mock_dispatcher, current_status):
        deployment = make_deployment("deploying")
        current_status("stopped")
        mock_service.begin_restart = AsyncMock(return_value=deployment)

        response = client.post(f"{BASE}/{deployment.id}/restart")

        assert response.status_code == 202
        assert mock_service.begin_restart.call_args.kwargs["from_status"] == "stopped"
        mock_dispatcher.dispatch_restart.assert_called_once_with(deployment.id)

    def test_remove(self, client, mock_service, mock_dispatcher, current_status):
        deployment = make_deployment("removing")
        current_status("running")
        mock_service.begin_remove = AsyncMock(return_value=deployment)

        response = client.delete(f"{BASE}/{deployment.id}")

        assert response.status_code == 202
        assert response.json()["status"] == "removing"
        assert mock_service.begin_remove.call_args.kwargs["from_status"] == "running"
        mock_dispatcher.dispatch_remove.assert_called_once_with(deployment.id)

    def test_unqueued_stop_reverts_claim(self, client, mock_service, mock_dispatcher):
        deployment = make_deployment("stopping")
        mock_service.begin_stop = AsyncMock(return_value=deployment)
        mock_service.release_claim = AsyncMock(return_value=True)
        mock_dispatcher.dispatch_stop.return_value = None

        response = client.post(f"{BASE}/{deployment.id}/stop")

        assert response.status_code == 503
        assert response.json()["error_type"] == "ServiceUnavailableError"
        assert mock_service.release_claim.call_args.args[1:] == (deployment.id, "stopping", "running")

    def test_unqueued_remove_reverts_to_prior_status(self, client, mock_service, mock_dispatcher, current_status):
        deployment = make_deployment("removing")
        current_status("failed")
        mock_service.begin_remove = AsyncMock(return_value=deployment)
        mock_service.release_claim = AsyncMock(return_value=True)
        mock_dispatcher.dispatch_remove.return_value = None

        response = client.delete(f"{BASE}/{deployment.id}")

        assert response.status_code == 503
        assert mock_service.release_claim.call_args.args[2:] == ("removing", "failed")

    def test_cancel(self, client, mock_service):
        deployment = make_deployment("failed", meta_data={"cancel_requested": True})
        mock_service.request_cancel = AsyncMock(return_value=deployment)

        response = client.post(f"{BASE}/{deployment.id}/cancel")

        assert response.status_code == 200
        assert response.json()["metadata"]["cancel_requested"] is True

    def test_timeout_is_504(self, client, mock_service):
        mock_service.get_health = AsyncMock(side_effect=CommandTimeoutError("docker inspect", 30))

        response = client.get(f"{BASE}/{uuid4()}/health")

        assert response.status_code == 504

    def test_invalid_uuid_is_422(self, client, mock_service):
        response = client.post(f"{BASE}/not-a-uuid/stop")

        assert response.status_code == 422


class TestHealthEndpoint:

    def test_healthy(self, client):
        with patch("app.main._database_healthy", new=AsyncMock(return_value=True)):
            response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_database_down(self, client):
        with patch("app.main._database_healthy", new=AsyncMock(return_value=False)):
            response = client.get("/api/health")

        assert response.status_code == 503
