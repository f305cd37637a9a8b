"""Kubernetes implementation of the orchestrator adapter.

Each user gets one namespace. Inside it, a lab or desktop is a
single-replica Deployment, a ClusterIP Service and an nginx Ingress, all
labelled with their category and kind so that teardown can sweep every
object of a kind, not just the last one created. A single instance can also
be removed by name without touching its siblings.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, cast

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.exceptions import HTTPError as TransportError
from websocket import WebSocketException

from hacklab.config.settings import INSECURE_INGRESS_DOMAINS, Settings
from hacklab.errors import (
    ConfigurationError,
    ExecError,
    OrchestratorError,
    OrchestratorPermanentError,
    OrchestratorTransientError,
    WaitTimeoutError,
)
from hacklab.models import (
    MANAGED_BY,
    MANAGED_BY_LABEL,
    TENANT_LABEL,
    USER_LABEL,
    WORKLOAD_LABEL,
    WorkloadCategory,
    WorkloadKind,
    WorkloadState,
)
from hacklab.naming import route_name, sanitize_name, service_name, user_namespace
from hacklab.observability import MetricsCollector, get_logger
from hacklab.orchestrator.base import OrchestratorAdapter, ProbeSpec, WorkloadSpec


log = get_logger(__name__)

# HTTP Status codes
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500

ISOLATION_POLICY_NAME = "default-deny-all"
EXPOSURE_PORT = 80
DNS_PORT = 53
NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"
OS_PROXY_TIMEOUT_SECONDS = "3600"

# Container waiting reasons that will not resolve by waiting longer
TERMINAL_WAITING_REASONS = frozenset(
    {
        "ErrImagePull",
        "ImagePullBackOff",
        "ErrImageNeverPull",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)
TERMINAL_POD_PHASES = frozenset({"Failed", "Unknown"})


@dataclass
class ExecResult:
    """What a one-shot command printed and how it exited."""

    stdout: str
    stderr: str
    returncode: int | None
    timed_out: bool = False


def _is_transient_status(status: int | None) -> bool:
    return (
        not status
        or status >= HTTP_SERVER_ERROR
        or status == HTTP_TOO_MANY_REQUESTS
    )


def _selector_string(labels: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class KubernetesAdapter(OrchestratorAdapter):
    """Drives namespaces, Deployments, Services, Ingresses and NetworkPolicies."""

    def __init__(
        self,
        settings: Settings,
        *,
        api_client: client.ApiClient | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._settings = settings
        self._k8s = settings.kubernetes
        self._ingress = settings.ingress
        self._lab = settings.lab
        self._metrics = metrics

        self._api_client = api_client or self._load_api_client()
        self.core = client.CoreV1Api(self._api_client)
        self.apps = client.AppsV1Api(self._api_client)
        self.networking = client.NetworkingV1Api(self._api_client)
        self.version = client.VersionApi(self._api_client)

        log.info(
            "kubernetes_adapter_initialized",
            in_cluster=self._k8s.in_cluster,
            namespace_prefix=self._k8s.namespace_prefix,
            ingress_class=self._k8s.ingress_class,
        )

    def _load_api_client(self) -> client.ApiClient:
        """Load Kubernetes config into a dedicated ApiClient."""
        config_obj = client.Configuration()
        if self._k8s.in_cluster:
            config.load_incluster_config(client_configuration=config_obj)
            log.info("k8s_config_loaded", mode="in_cluster")
        else:
            config.load_kube_config(
                config_file=self._k8s.kubeconfig,
                context=self._k8s.context,
                client_configuration=config_obj,
            )
            log.info("k8s_config_loaded", mode="kubeconfig", context=self._k8s.context)
        return client.ApiClient(config_obj)

    async def close(self) -> None:
        await asyncio.to_thread(self._api_client.close)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call_api(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run blocking Kubernetes client calls in a thread."""
        kwargs.setdefault("_request_timeout", self._k8s.api_timeout)
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except TransportError as exc:
            raise ApiException(status=0, reason=f"transport error: {exc}") from exc

    def _api_error(
        self,
        exc: ApiException,
        operation: str,
        *,
        conflict_is_transient: bool = False,
        **details: Any,
    ) -> OrchestratorError:
        """Classify an API failure as transient or permanent."""
        status = exc.status
        transient = _is_transient_status(status) or (
            conflict_is_transient and status == HTTP_CONFLICT
        )
        error_cls = OrchestratorTransientError if transient else OrchestratorPermanentError
        error = error_cls(
            f"{operation} failed: {status} {exc.reason}",
            phase=operation,
            details={"status": status, **details},
        )
        if self._metrics is not None:
            self._metrics.record_orchestrator_error(operation, error.retryable)
        log.warning(
            "k8s_api_error",
            operation=operation,
            status=status,
            reason=exc.reason,
            retryable=error.retryable,
            **details,
        )
        return error

    def workload_labels(self, spec: WorkloadSpec) -> dict[str, str]:
        """Labels stamped on every object belonging to ``spec``."""
        return {
            **spec.kind.selector(),
            USER_LABEL: sanitize_name(spec.user_id),
            TENANT_LABEL: "user",
            WORKLOAD_LABEL: spec.name,
            MANAGED_BY_LABEL: MANAGED_BY,
        }

    # ------------------------------------------------------------------
    # Namespace and network policy
    # ------------------------------------------------------------------

    async def ensure_namespace(self, user_id: str) -> str:
        name = user_namespace(user_id, self._k8s.namespace_prefix)
        namespace = client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=name,
                labels={
                    USER_LABEL: sanitize_name(user_id),
                    TENANT_LABEL: "user",
                    "hacklab.io/isolation": "strict",
                    MANAGED_BY_LABEL: MANAGED_BY,
                },
            )
        )
        try:
            await self._call_api(self.core.create_namespace, namespace)
            log.info("namespace_created", namespace=name)
        except ApiException as e:
            if e.status != HTTP_CONFLICT:  # Already exists is OK
                raise self._api_error(e, "ensure_namespace", namespace=name) from e
        return name

    async def _create_policy(self, namespace: str, policy: client.V1NetworkPolicy) -> None:
        name = policy.metadata.name
        try:
            await self._call_api(
                self.networking.create_namespaced_network_policy,
                namespace,
                policy,
            )
            log.debug("network_policy_created", namespace=namespace, policy=name)
        except ApiException as e:
            if e.status != HTTP_CONFLICT:  # Already exists is OK
                raise self._api_error(e, "apply_network_policy", namespace=namespace, policy=name) from e

    async def apply_isolation_policy(self, namespace: str, user_id: str) -> None:
        policy = client.V1NetworkPolicy(
            metadata=client.V1ObjectMeta(
                name=ISOLATION_POLICY_NAME,
                namespace=namespace,
                labels={USER_LABEL: sanitize_name(user_id), MANAGED_BY_LABEL: MANAGED_BY},
            ),
            spec=client.V1NetworkPolicySpec(
                pod_selector=client.V1LabelSelector(match_labels={}),
                policy_types=["Ingress", "Egress"],
            ),
        )
        await self._create_policy(namespace, policy)

    async def apply_allow_rules(
        self,
        namespace: str,
        kind: WorkloadKind,
        selector_labels: dict[str, str],
    ) -> None:
        pod_selector = client.V1LabelSelector(match_labels=dict(selector_labels))
        metadata_labels = {**kind.selector(), MANAGED_BY_LABEL: MANAGED_BY}

        ingress_policy = client.V1NetworkPolicy(
            metadata=client.V1ObjectMeta(
                name=f"allow-ingress-{kind.label}",
                namespace=namespace,
                labels=metadata_labels,
            ),
            spec=client.V1NetworkPolicySpec(
                pod_selector=pod_selector,
                policy_types=["Ingress"],
                ingress=[
                    client.V1NetworkPolicyIngressRule(
                        _from=[
                            client.V1NetworkPolicyPeer(
                                namespace_selector=client.V1LabelSelector(
                                    match_labels=dict(self._k8s.ingress_controller_labels)
                                )
                            )
                        ],
                        ports=[client.V1NetworkPolicyPort(port=EXPOSURE_PORT, protocol="TCP")],
                    )
                ],
            ),
        )

        egress_rules = [
            client.V1NetworkPolicyEgressRule(
                to=[
                    client.V1NetworkPolicyPeer(
                        namespace_selector=client.V1LabelSelector(
                            match_labels={NAMESPACE_NAME_LABEL: self._k8s.system_namespace}
                        )
                    )
                ],
                ports=[
                    client.V1NetworkPolicyPort(port=DNS_PORT, protocol="TCP"),
                    client.V1NetworkPolicyPort(port=DNS_PORT, protocol="UDP"),
                ],
            )
        ]
        if kind.category is WorkloadCategory.OS:
            # Desktops browse the internet.
            egress_rules.append(client.V1NetworkPolicyEgressRule())

        egress_policy = client.V1NetworkPolicy(
            metadata=client.V1ObjectMeta(
                name=f"allow-dns-{kind.label}",
                namespace=namespace,
                labels=metadata_labels,
            ),
            spec=client.V1NetworkPolicySpec(
                pod_selector=pod_selector,
                policy_types=["Egress"],
                egress=egress_rules,
            ),
        )

        await self._create_policy(namespace, ingress_policy)
        await self._create_policy(namespace, egress_policy)

    # ------------------------------------------------------------------
    # Workload, exposure, route
    # ------------------------------------------------------------------

    @staticmethod
    def _build_probe(probe: ProbeSpec | None, port: int) -> client.V1Probe | None:
        if probe is None:
            return None
        return client.V1Probe(
            http_get=client.V1HTTPGetAction(path=probe.path, port=port),
            initial_delay_seconds=probe.initial_delay_seconds,
            period_seconds=probe.period_seconds,
            failure_threshold=probe.failure_threshold,
        )

    def build_deployment(self, spec: WorkloadSpec) -> client.V1Deployment:
        labels = self.workload_labels(spec)
        container = client.V1Container(
            name=spec.kind.category.value,
            image=spec.image,
            image_pull_policy=spec.image_pull_policy,
            ports=[client.V1ContainerPort(container_port=spec.container_port, protocol="TCP")],
            env=[client.V1EnvVar(name=key, value=value) for key, value in spec.env.items()],
            resources=client.V1ResourceRequirements(
                requests=dict(spec.requests) or None,
                limits=dict(spec.limits) or None,
            ),
            readiness_probe=self._build_probe(spec.readiness_probe, spec.container_port),
            liveness_probe=self._build_probe(spec.liveness_probe, spec.container_port),
            security_context=client.V1SecurityContext(allow_privilege_escalation=False),
        )
        return client.V1Deployment(
            metadata=client.V1ObjectMeta(name=spec.name, namespace=spec.namespace, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=1,
                selector=client.V1LabelSelector(match_labels={WORKLOAD_LABEL: spec.name}),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container]),
                ),
            ),
        )

    async def deploy_workload(self, spec: WorkloadSpec) -> str:
        deployment = self.build_deployment(spec)
        try:
            await self._call_api(
                self.apps.create_namespaced_deployment,
                spec.namespace,
                deployment,
            )
        except ApiException as e:
            raise self._api_error(
                e,
                "deploy_workload",
                conflict_is_transient=True,
                namespace=spec.namespace,
                workload=spec.name,
            ) from e
        log.info(
            "workload_deployed",
            namespace=spec.namespace,
            workload=spec.name,
            kind=spec.kind.label,
            image=spec.image,
        )
        return spec.name

    async def create_exposure(self, spec: WorkloadSpec) -> str:
        name = service_name(spec.name)
        service = client.V1Service(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=spec.namespace,
                labels=self.workload_labels(spec),
            ),
            spec=client.V1ServiceSpec(
                type="ClusterIP",
                selector={WORKLOAD_LABEL: spec.name},
                ports=[
                    client.V1ServicePort(
                        name="http",
                        port=EXPOSURE_PORT,
                        target_port=spec.container_port,
                        protocol="TCP",
                    )
                ],
            ),
        )
        try:
            await self._call_api(self.core.create_namespaced_service, spec.namespace, service)
        except ApiException as e:
            raise self._api_error(
                e,
                "create_exposure",
                conflict_is_transient=True,
                namespace=spec.namespace,
                service=name,
            ) from e
        log.info("exposure_created", namespace=spec.namespace, service=name)
        return name

    def _resolve_domain(self) -> str:
        domain = (self._ingress.domain or "").strip()
        if not self._settings.is_production:
            return domain or "localhost"
        if not domain:
            msg = "ingress domain must be set in production"
            raise ConfigurationError(msg, phase="create_route")
        if any(insecure in domain for insecure in INSECURE_INGRESS_DOMAINS):
            msg = f"ingress domain {domain!r} cannot be used in production"
            raise ConfigurationError(msg, phase="create_route")
        return domain

    def public_url(self, user_slug: str, kind: WorkloadKind) -> str:
        """External URL for a user's route of ``kind``."""
        domain = self._resolve_domain()
        production = self._settings.is_production
        protocol = "https" if production else "http"
        port = self._ingress.port or (443 if production else 8100)
        default_port = (protocol == "https" and port == 443) or (protocol == "http" and port == 80)
        port_suffix = "" if default_port else f":{port}"
        return f"{protocol}://{domain}{port_suffix}/{user_slug}/{kind.route_segment}/"

    def build_ingress(self, spec: WorkloadSpec, user_slug: str, domain: str) -> client.V1Ingress:
        annotations = {
            "nginx.ingress.kubernetes.io/rewrite-target": "/$2",
            "nginx.ingress.kubernetes.io/use-regex": "true",
        }
        if spec.websocket:
            annotations.update(
                {
                    "nginx.ingress.kubernetes.io/proxy-read-timeout": OS_PROXY_TIMEOUT_SECONDS,
                    "nginx.ingress.kubernetes.io/proxy-send-timeout": OS_PROXY_TIMEOUT_SECONDS,
                    "nginx.ingress.kubernetes.io/proxy-connect-timeout": OS_PROXY_TIMEOUT_SECONDS,
                    "nginx.ingress.kubernetes.io/websocket-services": service_name(spec.name),
                    "nginx.ingress.kubernetes.io/proxy-buffering": "off",
                }
            )

        tls = None
        if self._settings.is_production:
            annotations["nginx.ingress.kubernetes.io/ssl-redirect"] = "true"
            annotations["nginx.ingress.kubernetes.io/force-ssl-redirect"] = "true"
            tls = [
                client.V1IngressTLS(
                    hosts=[domain],
                    secret_name=self._ingress.tls_secret_name,
                )
            ]

        path = client.V1HTTPIngressPath(
            path=f"/{user_slug}/{spec.kind.route_segment}(/|$)(.*)",
            path_type="ImplementationSpecific",
            backend=client.V1IngressBackend(
                service=client.V1IngressServiceBackend(
                    name=service_name(spec.name),
                    port=client.V1ServiceBackendPort(number=EXPOSURE_PORT),
                )
            ),
        )
        return client.V1Ingress(
            metadata=client.V1ObjectMeta(
                name=route_name(spec.name),
                namespace=spec.namespace,
                labels=self.workload_labels(spec),
                annotations=annotations,
            ),
            spec=client.V1IngressSpec(
                ingress_class_name=self._k8s.ingress_class,
                tls=tls,
                rules=[
                    client.V1IngressRule(
                        host=domain,
                        http=client.V1HTTPIngressRuleValue(paths=[path]),
                    )
                ],
            ),
        )

    async def create_route(self, spec: WorkloadSpec, user_slug: str) -> str:
        url = self.public_url(user_slug, spec.kind)
        ingress = self.build_ingress(spec, user_slug, self._resolve_domain())
        try:
            await self._call_api(
                self.networking.create_namespaced_ingress,
                spec.namespace,
                ingress,
            )
        except ApiException as e:
            raise self._api_error(
                e,
                "create_route",
                conflict_is_transient=True,
                namespace=spec.namespace,
                route=ingress.metadata.name,
            ) from e
        log.info("route_created", namespace=spec.namespace, route=ingress.metadata.name, url=url)
        return url

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @staticmethod
    def _pod_is_ready(pod: client.V1Pod) -> bool:
        status = pod.status
        if status is None or status.phase != "Running":
            return False
        conditions = status.conditions or []
        if not any(c.type == "Ready" and c.status == "True" for c in conditions):
            return False
        containers = status.container_statuses or []
        return bool(containers) and all(c.ready for c in containers)

    @staticmethod
    def _terminal_failure(pod: client.V1Pod) -> str | None:
        """Describe a failure that waiting will not fix, if any."""
        status = pod.status
        if status is None:
            return None
        if status.phase in TERMINAL_POD_PHASES:
            return f"pod phase {status.phase}: {status.reason or status.message or 'no reason'}"
        for container in status.container_statuses or []:
            waiting = container.state.waiting if container.state else None
            if waiting is not None and waiting.reason in TERMINAL_WAITING_REASONS:
                return f"container {container.name} {waiting.reason}: {waiting.message or ''}".strip()
        return None

    async def _list_workload_pods(self, namespace: str, workload_name: str) -> list[client.V1Pod]:
        pods = cast(
            client.V1PodList,
            await self._call_api(
                self.core.list_namespaced_pod,
                namespace,
                label_selector=f"{WORKLOAD_LABEL}={workload_name}",
            ),
        )
        return [pod for pod in pods.items or [] if pod.metadata.deletion_timestamp is None]

    async def wait_ready(self, namespace: str, workload_name: str, timeout: float) -> None:
        start = time.monotonic()
        last_phase: str | None = None
        while time.monotonic() - start < timeout:
            try:
                pods = await self._list_workload_pods(namespace, workload_name)
            except ApiException as e:
                if e.status == HTTP_NOT_FOUND:
                    pods = []
                elif _is_transient_status(e.status):
                    log.debug("wait_ready_poll_failed", workload=workload_name, status=e.status)
                    pods = []
                else:
                    raise self._api_error(e, "wait_ready", namespace=namespace, workload=workload_name) from e

            for pod in pods:
                failure = self._terminal_failure(pod)
                if failure is not None:
                    log.warning(
                        "workload_failed",
                        namespace=namespace,
                        workload=workload_name,
                        pod=pod.metadata.name,
                        failure=failure,
                    )
                    raise OrchestratorPermanentError(
                        f"workload {workload_name} failed: {failure}",
                        phase="wait_ready",
                        details={"namespace": namespace, "pod": pod.metadata.name},
                    )
                if self._pod_is_ready(pod):
                    log.info(
                        "workload_ready",
                        namespace=namespace,
                        workload=workload_name,
                        elapsed_seconds=round(time.monotonic() - start, 2),
                    )
                    return
                last_phase = pod.status.phase if pod.status else None

            await asyncio.sleep(self._lab.poll_interval_seconds)

        raise WaitTimeoutError(
            f"workload {workload_name} not ready after {timeout:.0f}s",
            phase="wait_ready",
            details={"namespace": namespace, "workload": workload_name, "last_phase": last_phase},
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _delete_matching(
        self,
        operation: str,
        namespace: str,
        kind: WorkloadKind,
        list_func: Any,
        delete_func: Any,
        **delete_kwargs: Any,
    ) -> int:
        try:
            listing = await self._call_api(
                list_func,
                namespace,
                label_selector=_selector_string(kind.selector()),
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:  # Namespace gone
                return 0
            raise self._api_error(e, operation, namespace=namespace, kind=kind.label) from e

        deleted = 0
        for item in listing.items or []:
            name = item.metadata.name
            try:
                await self._call_api(delete_func, name, namespace, **delete_kwargs)
                deleted += 1
            except ApiException as e:
                if e.status != HTTP_NOT_FOUND:  # Not found is OK
                    raise self._api_error(e, operation, namespace=namespace, name=name) from e
        if deleted:
            log.info(operation, namespace=namespace, kind=kind.label, count=deleted)
        return deleted

    async def delete_workloads(self, namespace: str, kind: WorkloadKind) -> int:
        return await self._delete_matching(
            "workloads_deleted",
            namespace,
            kind,
            self.apps.list_namespaced_deployment,
            self.apps.delete_namespaced_deployment,
            body=client.V1DeleteOptions(propagation_policy="Background"),
        )

    async def delete_exposures(self, namespace: str, kind: WorkloadKind) -> int:
        return await self._delete_matching(
            "exposures_deleted",
            namespace,
            kind,
            self.core.list_namespaced_service,
            self.core.delete_namespaced_service,
        )

    async def delete_routes(self, namespace: str, kind: WorkloadKind) -> int:
        return await self._delete_matching(
            "routes_deleted",
            namespace,
            kind,
            self.networking.list_namespaced_ingress,
            self.networking.delete_namespaced_ingress,
        )

    async def delete_instance(self, namespace: str, workload_name: str) -> None:
        targets = (
            (self.networking.delete_namespaced_ingress, route_name(workload_name), {}),
            (self.core.delete_namespaced_service, service_name(workload_name), {}),
            (
                self.apps.delete_namespaced_deployment,
                workload_name,
                {"body": client.V1DeleteOptions(propagation_policy="Background")},
            ),
        )
        for delete_func, name, kwargs in targets:
            try:
                await self._call_api(delete_func, name, namespace, **kwargs)
            except ApiException as e:
                if e.status != HTTP_NOT_FOUND:
                    raise self._api_error(e, "delete_instance", namespace=namespace, name=name) from e
        log.info("instance_deleted", namespace=namespace, workload=workload_name)

    async def wait_deleted(self, namespace: str, kind: WorkloadKind, timeout: float) -> None:
        start = time.monotonic()
        remaining: list[str] = []
        while time.monotonic() - start < timeout:
            try:
                listing = await self._call_api(
                    self.networking.list_namespaced_ingress,
                    namespace,
                    label_selector=_selector_string(kind.selector()),
                )
            except ApiException as e:
                if e.status == HTTP_NOT_FOUND:
                    return
                if not _is_transient_status(e.status):
                    raise self._api_error(e, "wait_deleted", namespace=namespace, kind=kind.label) from e
                listing = None

            if listing is not None:
                remaining = [item.metadata.name for item in listing.items or []]
                if not remaining:
                    log.debug("routes_gone", namespace=namespace, kind=kind.label)
                    return

            await asyncio.sleep(self._lab.delete_poll_interval_seconds)

        raise WaitTimeoutError(
            f"routes of kind {kind.label} still present after {timeout:.0f}s",
            phase="wait_deleted",
            details={"namespace": namespace, "remaining": remaining},
        )

    # ------------------------------------------------------------------
    # Exec and state
    # ------------------------------------------------------------------

    async def _resolve_pod_name(self, namespace: str, workload_name: str) -> str:
        pods = await self._list_workload_pods(namespace, workload_name)
        for pod in pods:
            if self._pod_is_ready(pod):
                return pod.metadata.name
        if pods:
            return pods[0].metadata.name
        # Accept a bare pod name too.
        pod = await self._call_api(self.core.read_namespaced_pod, workload_name, namespace)
        return pod.metadata.name

    def _exec_sync(self, namespace: str, pod_name: str, command: list[str]) -> ExecResult:
        # stream() patches the client's request method, so it gets its own ApiClient.
        stream_client = client.CoreV1Api(client.ApiClient(self._api_client.configuration))
        resp = stream(
            stream_client.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
            _request_timeout=self._k8s.api_timeout,
        )
        try:
            resp.run_forever(timeout=self._k8s.api_timeout)
            if resp.is_open():
                return ExecResult(stdout="", stderr="", returncode=None, timed_out=True)
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            try:
                returncode = resp.returncode
            except (TypeError, KeyError, IndexError, ValueError):
                # Empty or malformed status frame
                returncode = None
            return ExecResult(stdout=stdout, stderr=stderr, returncode=returncode)
        finally:
            resp.close()

    async def exec_in_workload(self, namespace: str, pod_name: str, command: list[str]) -> str:
        try:
            target = await self._resolve_pod_name(namespace, pod_name)
            result = await asyncio.to_thread(self._exec_sync, namespace, target, command)
        except ApiException as e:
            log.warning("exec_failed", namespace=namespace, pod=pod_name, status=e.status)
            raise ExecError(
                f"cannot exec in {pod_name}: {e.status} {e.reason}",
                phase="exec_in_workload",
                details={"namespace": namespace, "pod": pod_name, "status": e.status},
            ) from e
        except (TransportError, WebSocketException, OSError, ValueError) as e:
            log.warning("exec_failed", namespace=namespace, pod=pod_name, error=str(e))
            raise ExecError(
                f"cannot exec in {pod_name}: {e}",
                phase="exec_in_workload",
                details={"namespace": namespace, "pod": pod_name},
            ) from e

        details = {"namespace": namespace, "pod": target, "command": command}
        if result.timed_out:
            log.warning("exec_timed_out", namespace=namespace, pod=target)
            raise ExecError(
                f"command in {target} did not finish within {self._k8s.api_timeout}s",
                phase="exec_in_workload",
                retryable=True,
                details=details,
            )
        stderr = result.stderr.strip()
        nonzero = result.returncode is not None and result.returncode != 0
        if nonzero or (stderr and not result.stdout.strip()):
            log.warning(
                "exec_command_failed",
                namespace=namespace,
                pod=target,
                returncode=result.returncode,
                stderr=stderr[:200],
            )
            reason = stderr or f"exit code {result.returncode}"
            raise ExecError(
                f"command in {target} failed: {reason}",
                phase="exec_in_workload",
                details={**details, "returncode": result.returncode},
            )
        return result.stdout

    async def get_workload_state(self, namespace: str, workload_name: str) -> WorkloadState:
        try:
            deployment = await self._call_api(
                self.apps.read_namespaced_deployment,
                workload_name,
                namespace,
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return WorkloadState.NOT_FOUND
            raise self._api_error(e, "get_workload_state", namespace=namespace, workload=workload_name) from e
        if deployment.metadata.deletion_timestamp is not None:
            return WorkloadState.NOT_FOUND

        try:
            pods = await self._list_workload_pods(namespace, workload_name)
        except ApiException as e:
            raise self._api_error(e, "get_workload_state", namespace=namespace, workload=workload_name) from e

        if any(self._pod_is_ready(pod) for pod in pods):
            return WorkloadState.RUNNING
        if any(self._terminal_failure(pod) for pod in pods):
            return WorkloadState.FAILED
        return WorkloadState.PENDING

    async def ping(self) -> bool:
        try:
            await self._call_api(self.version.get_code)
        except ApiException as e:
            log.warning("k8s_ping_failed", status=e.status, reason=e.reason)
            return False
        return True
