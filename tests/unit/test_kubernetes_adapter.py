"""Unit tests for the Kubernetes orchestrator adapter.

The typed API objects are replaced with mocks; every call made through
``_call_api`` carries a ``_request_timeout`` keyword.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from hacklab.config.settings import IngressSettings, Settings
from hacklab.errors import (
    ConfigurationError,
    ExecError,
    OrchestratorPermanentError,
    OrchestratorTransientError,
    WaitTimeoutError,
)
from hacklab.models import CATEGORY_LABEL, KIND_LABEL, WORKLOAD_LABEL, WorkloadKind, WorkloadState
from hacklab.orchestrator.base import ProbeSpec, WorkloadSpec
from hacklab.orchestrator.kubernetes import KubernetesAdapter


def _adapter(settings: Settings, mock_api_client: MagicMock, metrics=None) -> KubernetesAdapter:
    adapter = KubernetesAdapter(settings, api_client=mock_api_client, metrics=metrics)
    adapter.core = MagicMock()
    adapter.apps = MagicMock()
    adapter.networking = MagicMock()
    adapter.version = MagicMock()
    return adapter


@pytest.fixture
def adapter(settings: Settings, mock_api_client: MagicMock) -> KubernetesAdapter:
    return _adapter(settings, mock_api_client)


def _spec(kind: WorkloadKind | None = None, name: str = "xss-u1-1", **overrides) -> WorkloadSpec:
    return WorkloadSpec(
        name=name,
        namespace="hacklab-u1",
        user_id="u1",
        kind=kind or WorkloadKind.for_lab("xss"),
        image="xss_lab:latest",
        **overrides,
    )


def _pod(
    name: str = "xss-u1-1-abc",
    *,
    phase: str = "Running",
    ready: bool = True,
    waiting_reason: str | None = None,
) -> client.V1Pod:
    state = None
    if waiting_reason is not None:
        state = client.V1ContainerState(
            waiting=client.V1ContainerStateWaiting(reason=waiting_reason, message="image not present"),
        )
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name),
        status=client.V1PodStatus(
            phase=phase,
            conditions=[client.V1PodCondition(type="Ready", status="True" if ready else "False")],
            container_statuses=[
                client.V1ContainerStatus(
                    name="lab",
                    image="xss_lab:latest",
                    image_id="",
                    ready=ready,
                    restart_count=0,
                    state=state,
                )
            ],
        ),
    )


def _named(*names: str) -> MagicMock:
    listing = MagicMock()
    listing.items = [_object(n) for n in names]
    return listing


def _object(name: str) -> MagicMock:
    item = MagicMock()
    item.metadata.name = name
    item.metadata.deletion_timestamp = None
    return item


def _exec_response(stdout: str = "", stderr: str = "", returncode: int | None = 0, *, still_open: bool = False) -> MagicMock:
    resp = MagicMock()
    resp.is_open.return_value = still_open
    resp.read_stdout.return_value = stdout
    resp.read_stderr.return_value = stderr
    resp.returncode = returncode
    return resp


class TestNamespaceAndPolicies:
    @pytest.mark.asyncio
    async def test_ensure_namespace_creates(self, adapter: KubernetesAdapter) -> None:
        name = await adapter.ensure_namespace("User_1")

        assert name == "hacklab-user-1"
        body = adapter.core.create_namespace.call_args.args[0]
        assert body.metadata.labels["hacklab.io/isolation"] == "strict"
        assert "_request_timeout" in adapter.core.create_namespace.call_args.kwargs

    @pytest.mark.asyncio
    async def test_ensure_namespace_conflict_is_ok(self, adapter: KubernetesAdapter) -> None:
        adapter.core.create_namespace.side_effect = ApiException(status=409)

        assert await adapter.ensure_namespace("u1") == "hacklab-u1"

    @pytest.mark.asyncio
    async def test_ensure_namespace_forbidden_is_permanent(self, adapter: KubernetesAdapter) -> None:
        adapter.core.create_namespace.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(OrchestratorPermanentError) as exc_info:
            await adapter.ensure_namespace("u1")

        assert exc_info.value.phase == "ensure_namespace"

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, adapter: KubernetesAdapter) -> None:
        adapter.core.create_namespace.side_effect = ProtocolError("connection reset")

        with pytest.raises(OrchestratorTransientError):
            await adapter.ensure_namespace("u1")

    @pytest.mark.asyncio
    async def test_isolation_policy_denies_everything(self, adapter: KubernetesAdapter) -> None:
        await adapter.apply_isolation_policy("hacklab-u1", "u1")

        namespace, policy = adapter.networking.create_namespaced_network_policy.call_args.args
        assert namespace == "hacklab-u1"
        assert policy.metadata.name == "default-deny-all"
        assert policy.spec.policy_types == ["Ingress", "Egress"]
        assert policy.spec.pod_selector.match_labels == {}

    @pytest.mark.asyncio
    async def test_allow_rules_for_lab(self, adapter: KubernetesAdapter) -> None:
        kind = WorkloadKind.for_lab("xss")

        await adapter.apply_allow_rules("hacklab-u1", kind, kind.selector())

        policies = [c.args[1] for c in adapter.networking.create_namespaced_network_policy.call_args_list]
        assert [p.metadata.name for p in policies] == ["allow-ingress-xss", "allow-dns-xss"]
        assert policies[0].spec.ingress[0].ports[0].port == 80
        assert len(policies[1].spec.egress) == 1

    @pytest.mark.asyncio
    async def test_allow_rules_for_os_permit_internet(self, adapter: KubernetesAdapter) -> None:
        kind = WorkloadKind.for_os("debian")

        await adapter.apply_allow_rules("hacklab-u1", kind, kind.selector())

        egress = adapter.networking.create_namespaced_network_policy.call_args_list[1].args[1]
        assert egress.metadata.name == "allow-dns-os-debian"
        assert len(egress.spec.egress) == 2


class TestDeployAndExpose:
    def test_deployment_labels_and_resources(self, adapter: KubernetesAdapter) -> None:
        spec = _spec(
            env={"FLAG_EASY": "abc"},
            requests={"memory": "256Mi"},
            limits={"memory": "512Mi"},
            readiness_probe=ProbeSpec(path="/"),
        )

        deployment = adapter.build_deployment(spec)

        labels = deployment.spec.template.metadata.labels
        assert labels[CATEGORY_LABEL] == "lab"
        assert labels[KIND_LABEL] == "xss"
        assert labels[WORKLOAD_LABEL] == "xss-u1-1"
        assert deployment.spec.replicas == 1
        container = deployment.spec.template.spec.containers[0]
        assert container.env[0].name == "FLAG_EASY"
        assert container.resources.limits == {"memory": "512Mi"}
        assert container.readiness_probe.http_get.port == 80
        assert container.liveness_probe is None

    @pytest.mark.asyncio
    async def test_deploy_conflict_is_transient(self, adapter: KubernetesAdapter) -> None:
        adapter.apps.create_namespaced_deployment.side_effect = ApiException(status=409)

        with pytest.raises(OrchestratorTransientError) as exc_info:
            await adapter.deploy_workload(_spec())

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_create_exposure(self, adapter: KubernetesAdapter) -> None:
        name = await adapter.create_exposure(_spec())

        assert name == "xss-u1-1-svc"
        service = adapter.core.create_namespaced_service.call_args.args[1]
        assert service.spec.type == "ClusterIP"
        assert service.spec.selector == {WORKLOAD_LABEL: "xss-u1-1"}
        assert service.spec.ports[0].port == 80

    @pytest.mark.asyncio
    async def test_api_errors_are_counted(self, settings: Settings, mock_api_client: MagicMock, metrics) -> None:
        adapter = _adapter(settings, mock_api_client, metrics=metrics)
        adapter.core.create_namespaced_service.side_effect = ApiException(status=503)

        with pytest.raises(OrchestratorTransientError):
            await adapter.create_exposure(_spec())

        assert metrics.registry.get_sample_value(
            "hacklab_test_orchestrator_errors_total",
            {"operation": "create_exposure", "retryable": "true"},
        ) == 1.0


class TestRoutes:
    @pytest.mark.asyncio
    async def test_development_route(self, adapter: KubernetesAdapter) -> None:
        url = await adapter.create_route(_spec(), "u1")

        assert url == "http://localhost:8100/u1/xss/"
        ingress = adapter.networking.create_namespaced_ingress.call_args.args[1]
        assert ingress.metadata.name == "xss-u1-1-route"
        assert ingress.spec.tls is None
        assert ingress.spec.rules[0].http.paths[0].path == "/u1/xss(/|$)(.*)"

    @pytest.mark.asyncio
    async def test_production_route_uses_tls(self, mock_api_client: MagicMock, lab_settings) -> None:
        settings = Settings(
            environment="production",
            ingress=IngressSettings(domain="labs.example.com"),
            lab=lab_settings,
        )
        adapter = _adapter(settings, mock_api_client)

        url = await adapter.create_route(_spec(WorkloadKind.for_os("debian"), "os-debian-u1-1", websocket=True), "u1")

        assert url == "https://labs.example.com/u1/os/debian/"
        ingress = adapter.networking.create_namespaced_ingress.call_args.args[1]
        assert ingress.spec.tls[0].hosts == ["labs.example.com"]
        annotations = ingress.metadata.annotations
        assert annotations["nginx.ingress.kubernetes.io/proxy-read-timeout"] == "3600"
        assert annotations["nginx.ingress.kubernetes.io/websocket-services"] == "os-debian-u1-1-svc"

    def test_production_localhost_domain_rejected(self, mock_api_client: MagicMock, settings: Settings) -> None:
        adapter = _adapter(settings, mock_api_client)
        adapter._settings = settings.model_copy(update={"environment": "production"})
        adapter._ingress = IngressSettings(domain="localhost")

        with pytest.raises(ConfigurationError):
            adapter.public_url("u1", WorkloadKind.for_lab("xss"))

    def test_custom_port(self, adapter: KubernetesAdapter) -> None:
        adapter._ingress = IngressSettings(domain="lab.local", port=80)

        assert adapter.public_url("u1", WorkloadKind.for_lab("csrf")) == "http://lab.local/u1/csrf/"


class TestReadiness:
    @pytest.mark.asyncio
    async def test_wait_ready_returns_when_pod_ready(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.side_effect = [
            client.V1PodList(items=[_pod(phase="Pending", ready=False)]),
            client.V1PodList(items=[_pod()]),
        ]

        await adapter.wait_ready("hacklab-u1", "xss-u1-1", timeout=1)

        assert adapter.core.list_namespaced_pod.call_count == 2
        assert adapter.core.list_namespaced_pod.call_args.kwargs["label_selector"] == f"{WORKLOAD_LABEL}=xss-u1-1"

    @pytest.mark.asyncio
    async def test_wait_ready_fails_fast_on_missing_image(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(
            items=[_pod(phase="Pending", ready=False, waiting_reason="ErrImageNeverPull")]
        )

        with pytest.raises(OrchestratorPermanentError, match="ErrImageNeverPull"):
            await adapter.wait_ready("hacklab-u1", "xss-u1-1", timeout=5)

    @pytest.mark.asyncio
    async def test_wait_ready_times_out(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[])

        with pytest.raises(WaitTimeoutError) as exc_info:
            await adapter.wait_ready("hacklab-u1", "xss-u1-1", timeout=0.05)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_wait_ready_tolerates_transient_poll_errors(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.side_effect = [
            ApiException(status=500),
            client.V1PodList(items=[_pod()]),
        ]

        await adapter.wait_ready("hacklab-u1", "xss-u1-1", timeout=1)


class TestTeardown:
    @pytest.mark.asyncio
    async def test_delete_sweeps_every_object_of_kind(self, adapter: KubernetesAdapter) -> None:
        adapter.networking.list_namespaced_ingress.return_value = _named("xss-u1-1-route", "xss-u1-2-route")

        deleted = await adapter.delete_routes("hacklab-u1", WorkloadKind.for_lab("xss"))

        assert deleted == 2
        selector = adapter.networking.list_namespaced_ingress.call_args.kwargs["label_selector"]
        assert selector == f"{CATEGORY_LABEL}=lab,{KIND_LABEL}=xss"

    @pytest.mark.asyncio
    async def test_category_wide_selector(self, adapter: KubernetesAdapter) -> None:
        adapter.apps.list_namespaced_deployment.return_value = _named()

        await adapter.delete_workloads("hacklab-u1", WorkloadKind.for_os())

        selector = adapter.apps.list_namespaced_deployment.call_args.kwargs["label_selector"]
        assert selector == f"{CATEGORY_LABEL}=os"

    @pytest.mark.asyncio
    async def test_delete_not_found_is_success(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_service.return_value = _named("xss-u1-1-svc")
        adapter.core.delete_namespaced_service.side_effect = ApiException(status=404)

        assert await adapter.delete_exposures("hacklab-u1", WorkloadKind.for_lab("xss")) == 0

    @pytest.mark.asyncio
    async def test_delete_in_missing_namespace(self, adapter: KubernetesAdapter) -> None:
        adapter.apps.list_namespaced_deployment.side_effect = ApiException(status=404)

        assert await adapter.delete_workloads("hacklab-gone", WorkloadKind.for_lab("xss")) == 0

    @pytest.mark.asyncio
    async def test_deployments_deleted_in_background(self, adapter: KubernetesAdapter) -> None:
        adapter.apps.list_namespaced_deployment.return_value = _named("xss-u1-1")

        await adapter.delete_workloads("hacklab-u1", WorkloadKind.for_lab("xss"))

        body = adapter.apps.delete_namespaced_deployment.call_args.kwargs["body"]
        assert body.propagation_policy == "Background"

    @pytest.mark.asyncio
    async def test_delete_kind_order(self, adapter: KubernetesAdapter) -> None:
        order: list[str] = []
        for api, method in (
            (adapter.networking, "list_namespaced_ingress"),
            (adapter.core, "list_namespaced_service"),
            (adapter.apps, "list_namespaced_deployment"),
        ):
            getattr(api, method).side_effect = lambda *a, _m=method, **kw: order.append(_m) or _named()

        await adapter.delete_kind("hacklab-u1", WorkloadKind.for_lab("xss"))

        assert order == ["list_namespaced_ingress", "list_namespaced_service", "list_namespaced_deployment"]

    @pytest.mark.asyncio
    async def test_delete_instance_by_name(self, adapter: KubernetesAdapter) -> None:
        await adapter.delete_instance("hacklab-u1", "xss-u1-1")

        assert adapter.networking.delete_namespaced_ingress.call_args.args == ("xss-u1-1-route", "hacklab-u1")
        assert adapter.core.delete_namespaced_service.call_args.args == ("xss-u1-1-svc", "hacklab-u1")
        assert adapter.apps.delete_namespaced_deployment.call_args.args == ("xss-u1-1", "hacklab-u1")
        adapter.networking.list_namespaced_ingress.assert_not_called()
        adapter.apps.list_namespaced_deployment.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_instance_tolerates_missing_objects(self, adapter: KubernetesAdapter) -> None:
        adapter.networking.delete_namespaced_ingress.side_effect = ApiException(status=404)
        adapter.core.delete_namespaced_service.side_effect = ApiException(status=404)

        await adapter.delete_instance("hacklab-u1", "xss-u1-1")

        adapter.apps.delete_namespaced_deployment.assert_called_once()

    @pytest.mark.asyncio
    async def test_delete_instance_forbidden(self, adapter: KubernetesAdapter) -> None:
        adapter.core.delete_namespaced_service.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(OrchestratorPermanentError) as exc_info:
            await adapter.delete_instance("hacklab-u1", "xss-u1-1")

        assert exc_info.value.phase == "delete_instance"
        adapter.apps.delete_namespaced_deployment.assert_not_called()

    @pytest.mark.asyncio
    async def test_wait_deleted_polls_until_gone(self, adapter: KubernetesAdapter) -> None:
        adapter.networking.list_namespaced_ingress.side_effect = [
            _named("xss-u1-1-route"),
            _named(),
        ]

        await adapter.wait_deleted("hacklab-u1", WorkloadKind.for_lab("xss"), timeout=1)

        assert adapter.networking.list_namespaced_ingress.call_count == 2

    @pytest.mark.asyncio
    async def test_wait_deleted_times_out(self, adapter: KubernetesAdapter) -> None:
        adapter.networking.list_namespaced_ingress.return_value = _named("xss-u1-1-route")

        with pytest.raises(WaitTimeoutError) as exc_info:
            await adapter.wait_deleted("hacklab-u1", WorkloadKind.for_lab("xss"), timeout=0.05)

        assert exc_info.value.details["remaining"] == ["xss-u1-1-route"]


class TestExecAndState:
    @pytest.mark.asyncio
    async def test_exec_targets_ready_pod(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod("xss-u1-1-abc")])

        resp = _exec_response(stdout="FLAG{easy}\n")
        with (
            patch("hacklab.orchestrator.kubernetes.client.ApiClient"),
            patch("hacklab.orchestrator.kubernetes.stream", return_value=resp) as mock_stream,
        ):
            output = await adapter.exec_in_workload("hacklab-u1", "xss-u1-1", ["cat", "/flag"])

        assert output == "FLAG{easy}\n"
        assert mock_stream.call_args.args[1:] == ("xss-u1-1-abc", "hacklab-u1")
        assert mock_stream.call_args.kwargs["command"] == ["cat", "/flag"]
        assert mock_stream.call_args.kwargs["_preload_content"] is False
        resp.run_forever.assert_called_once()
        resp.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_exec_ignores_stderr_on_success(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod()])
        resp = _exec_response(stdout="FLAG{easy}\n", stderr="warning: locale not set\n")

        with (
            patch("hacklab.orchestrator.kubernetes.client.ApiClient"),
            patch("hacklab.orchestrator.kubernetes.stream", return_value=resp),
        ):
            output = await adapter.exec_in_workload("hacklab-u1", "xss-u1-1", ["cat", "/flag"])

        assert output == "FLAG{easy}\n"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("stdout", "stderr", "returncode"),
        [
            ("", "cat: /usr/share/nginx/html/flag_easy.txt: No such file or directory\n", 1),
            ("", "cat: /usr/share/nginx/html/flag_easy.txt: No such file or directory\n", None),
            ("partial", "", 2),
        ],
    )
    async def test_failing_command_is_exec_error(
        self, adapter: KubernetesAdapter, stdout: str, stderr: str, returncode: int | None
    ) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod()])
        resp = _exec_response(stdout=stdout, stderr=stderr, returncode=returncode)

        with (
            patch("hacklab.orchestrator.kubernetes.client.ApiClient"),
            patch("hacklab.orchestrator.kubernetes.stream", return_value=resp),
            pytest.raises(ExecError) as exc_info,
        ):
            await adapter.exec_in_workload("hacklab-u1", "xss-u1-1", ["cat", "/flag"])

        assert exc_info.value.details["returncode"] == returncode
        resp.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_exec_that_never_finishes(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod()])
        resp = _exec_response(still_open=True)

        with (
            patch("hacklab.orchestrator.kubernetes.client.ApiClient"),
            patch("hacklab.orchestrator.kubernetes.stream", return_value=resp),
            pytest.raises(ExecError) as exc_info,
        ):
            await adapter.exec_in_workload("hacklab-u1", "xss-u1-1", ["cat", "/flag"])

        assert exc_info.value.retryable is True
        resp.read_stdout.assert_not_called()

    @pytest.mark.asyncio
    async def test_exec_failure_wrapped(self, adapter: KubernetesAdapter) -> None:
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[])
        adapter.core.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(ExecError) as exc_info:
            await adapter.exec_in_workload("hacklab-u1", "xss-u1-1", ["cat", "/flag"])

        assert exc_info.value.details["status"] == 404

    @pytest.mark.asyncio
    async def test_state_not_found(self, adapter: KubernetesAdapter) -> None:
        adapter.apps.read_namespaced_deployment.side_effect = ApiException(status=404)

        assert await adapter.get_workload_state("hacklab-u1", "xss-u1-1") is WorkloadState.NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("pod", "expected"),
        [
            (_pod(), WorkloadState.RUNNING),
            (_pod(phase="Pending", ready=False), WorkloadState.PENDING),
            (_pod(phase="Failed", ready=False), WorkloadState.FAILED),
        ],
    )
    async def test_state_from_pods(self, adapter: KubernetesAdapter, pod: client.V1Pod, expected: WorkloadState) -> None:
        adapter.apps.read_namespaced_deployment.return_value = _object("xss-u1-1")
        adapter.core.list_namespaced_pod.return_value = client.V1PodList(items=[pod])

        assert await adapter.get_workload_state("hacklab-u1", "xss-u1-1") is expected

    @pytest.mark.asyncio
    async def test_ping(self, adapter: KubernetesAdapter) -> None:
        assert await adapter.ping() is True

        adapter.version.get_code.side_effect = ApiException(status=0, reason="unreachable")
        assert await adapter.ping() is False
