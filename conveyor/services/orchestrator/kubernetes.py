"""Kubernetes implementation of the orchestrator interface."""

from typing import Any, Awaitable, Callable, Optional

import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.rest import ApiException

from conveyor.core.resilience import CircuitState, RetryConfig, is_transient_error, with_retry
from conveyor.errors import OrchestratorError
from conveyor.services.orchestrator.base import (
    ClaimSpec,
    ClaimStatus,
    IngressSpec,
    NetworkServiceSpec,
    Orchestrator,
    WorkloadSpec,
    WorkloadStatus,
)

logger = structlog.get_logger(__name__)


def _is_transient_k8s_error(error: BaseException) -> bool:
    if isinstance(error, ApiException):
        return error.status in (429, 500, 502, 503, 504)

    # aiohttp transport errors raised under kubernetes_asyncio
    if type(error).__name__ in (
        "ClientConnectorError",
        "ServerDisconnectedError",
        "ClientOSError",
    ):
        return True

    return is_transient_error(error)


class KubernetesOrchestrator(Orchestrator):
    """Drives core/v1, apps/v1 and networking/v1 through kubernetes_asyncio.

    Every API call is retried on 429/5xx and connection errors. Create calls
    fall back to a patch on 409 so repeated deploys converge on one object.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.networking = client.NetworkingV1Api(api_client)
        self._retry = retry_config or RetryConfig(base_delay_seconds=0.5, max_delay_seconds=10.0)
        self._circuit = CircuitState()

    @classmethod
    async def from_settings(cls, settings) -> "KubernetesOrchestrator":
        if settings.k8s_in_cluster:
            config.load_incluster_config()
        else:
            await config.load_kube_config(config_file=settings.kubeconfig_path)
        logger.info("k8s_client_initialized", in_cluster=settings.k8s_in_cluster)
        return cls(client.ApiClient())

    async def aclose(self) -> None:
        await self._api_client.close()

    async def _call(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        tolerate: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> Any:
        """Run one API call with retry; statuses in ``tolerate`` return None."""
        try:
            return await with_retry(
                lambda: fn(*args, **kwargs),
                service=f"k8s.{name}",
                circuit=self._circuit,
                config=self._retry,
                is_transient=_is_transient_k8s_error,
            )
        except ApiException as e:
            if e.status in tolerate:
                return None
            raise OrchestratorError(f"{name} failed: {e.status} {e.reason}") from e

    async def ensure_namespace(self, namespace: str) -> None:
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=namespace,
                labels={"app.kubernetes.io/managed-by": "conveyor"},
            )
        )
        await self._call("create_namespace", self.core.create_namespace, body, tolerate=(409,))

    async def delete_namespace(self, namespace: str) -> None:
        await self._call("delete_namespace", self.core.delete_namespace, namespace, tolerate=(404,))

    async def upsert_secret(self, namespace: str, name: str, data: dict[str, str]) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            type="Opaque",
            string_data=data,
        )
        try:
            await self._call("create_secret", self.core.create_namespaced_secret, namespace, body)
        except OrchestratorError as e:
            if not _is_conflict(e):
                raise
            await self._call(
                "replace_secret", self.core.replace_namespaced_secret, name, namespace, body
            )

    async def delete_secret(self, namespace: str, name: str) -> None:
        await self._call(
            "delete_secret",
            self.core.delete_namespaced_secret,
            name,
            namespace,
            tolerate=(404,),
        )

    async def get_workload_status(self, namespace: str, name: str) -> Optional[WorkloadStatus]:
        deployment = await self._call(
            "read_deployment",
            self.apps.read_namespaced_deployment,
            name,
            namespace,
            tolerate=(404,),
        )
        if deployment is None:
            return None
        status = deployment.status
        return WorkloadStatus(
            replicas=(deployment.spec.replicas if deployment.spec else None) or 0,
            ready_replicas=(status.ready_replicas if status else None) or 0,
            available_replicas=(status.available_replicas if status else None) or 0,
            updated_replicas=(status.updated_replicas if status else None) or 0,
            observed_generation=(status.observed_generation if status else None) or 0,
            generation=(deployment.metadata.generation if deployment.metadata else None) or 0,
        )

    async def create_workload(self, spec: WorkloadSpec) -> None:
        await self._call(
            "create_deployment",
            self.apps.create_namespaced_deployment,
            spec.namespace,
            _deployment_body(spec),
        )

    async def update_workload(self, spec: WorkloadSpec) -> None:
        # a full replace so mounts and env sources removed from the spec go away
        await self._call(
            "replace_deployment",
            self.apps.replace_namespaced_deployment,
            spec.name,
            spec.namespace,
            _deployment_body(spec),
        )

    async def delete_workload(self, namespace: str, name: str) -> None:
        await self._call(
            "delete_deployment",
            self.apps.delete_namespaced_deployment,
            name,
            namespace,
            tolerate=(404,),
        )

    async def upsert_network_service(self, spec: NetworkServiceSpec) -> None:
        body = client.V1Service(
            metadata=client.V1ObjectMeta(
                name=spec.name, namespace=spec.namespace, labels=spec.labels
            ),
            spec=client.V1ServiceSpec(
                type="ClusterIP",
                selector=spec.selector,
                ports=[
                    client.V1ServicePort(
                        name="http",
                        port=spec.port,
                        target_port=spec.target_port,
                        protocol="TCP",
                    )
                ],
            ),
        )
        try:
            await self._call(
                "create_service", self.core.create_namespaced_service, spec.namespace, body
            )
        except OrchestratorError as e:
            if not _is_conflict(e):
                raise
            await self._call(
                "patch_service",
                self.core.patch_namespaced_service,
                spec.name,
                spec.namespace,
                body,
            )

    async def delete_network_service(self, namespace: str, name: str) -> None:
        await self._call(
            "delete_service",
            self.core.delete_namespaced_service,
            name,
            namespace,
            tolerate=(404,),
        )

    async def upsert_ingress(self, spec: IngressSpec) -> None:
        body = _ingress_body(spec)
        try:
            await self._call(
                "create_ingress",
                self.networking.create_namespaced_ingress,
                spec.namespace,
                body,
            )
        except OrchestratorError as e:
            if not _is_conflict(e):
                raise
            await self._call(
                "replace_ingress",
                self.networking.replace_namespaced_ingress,
                spec.name,
                spec.namespace,
                body,
            )

    async def delete_ingress(self, namespace: str, name: str) -> None:
        await self._call(
            "delete_ingress",
            self.networking.delete_namespaced_ingress,
            name,
            namespace,
            tolerate=(404,),
        )

    async def create_claim(self, spec: ClaimSpec) -> None:
        body = client.V1PersistentVolumeClaim(
            metadata=client.V1ObjectMeta(
                name=spec.name, namespace=spec.namespace, labels=spec.labels
            ),
            spec=client.V1PersistentVolumeClaimSpec(
                access_modes=[spec.access_mode],
                storage_class_name=spec.storage_class,
                resources=client.V1VolumeResourceRequirements(
                    requests={"storage": f"{spec.size_mb}Mi"}
                ),
            ),
        )
        # an existing claim is left alone; its size only changes through resize
        await self._call(
            "create_pvc",
            self.core.create_namespaced_persistent_volume_claim,
            spec.namespace,
            body,
            tolerate=(409,),
        )

    async def get_claim_status(self, namespace: str, name: str) -> Optional[ClaimStatus]:
        claim = await self._call(
            "read_pvc",
            self.core.read_namespaced_persistent_volume_claim,
            name,
            namespace,
            tolerate=(404,),
        )
        if claim is None:
            return None
        status = claim.status
        capacity = (status.capacity or {}) if status else {}
        return ClaimStatus(
            phase=(status.phase if status else None) or "Pending",
            capacity_mb=quantity_to_mb(capacity.get("storage")),
        )

    async def resize_claim(self, namespace: str, name: str, size_mb: int) -> None:
        body = {"spec": {"resources": {"requests": {"storage": f"{size_mb}Mi"}}}}
        await self._call(
            "patch_pvc",
            self.core.patch_namespaced_persistent_volume_claim,
            name,
            namespace,
            body,
        )

    async def delete_claim(self, namespace: str, name: str) -> None:
        await self._call(
            "delete_pvc",
            self.core.delete_namespaced_persistent_volume_claim,
            name,
            namespace,
            tolerate=(404,),
        )


_BINARY_SUFFIXES = {"Ki": 2**10, "Mi": 2**20, "Gi": 2**30, "Ti": 2**40}
_DECIMAL_SUFFIXES = {"k": 10**3, "M": 10**6, "G": 10**9, "T": 10**12}


def quantity_to_mb(quantity: Optional[str]) -> int:
    """Whole MiB in a storage quantity such as ``1Gi`` or ``500Mi``."""
    if not quantity:
        return 0
    for suffixes in (_BINARY_SUFFIXES, _DECIMAL_SUFFIXES):
        for suffix, factor in suffixes.items():
            if quantity.endswith(suffix):
                return int(float(quantity[: -len(suffix)]) * factor) // 2**20
    return int(float(quantity)) // 2**20


def _is_conflict(error: OrchestratorError) -> bool:
    cause = error.__cause__
    return isinstance(cause, ApiException) and cause.status == 409


def _deployment_body(spec: WorkloadSpec) -> client.V1Deployment:
    container = client.V1Container(
        name=spec.container_name,
        image=spec.image,
        ports=[client.V1ContainerPort(name="http", container_port=spec.port, protocol="TCP")],
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )
    if spec.env_secret:
        container.env_from = [
            client.V1EnvFromSource(secret_ref=client.V1SecretEnvSource(name=spec.env_secret))
        ]
    if spec.health_path:
        probe_action = client.V1HTTPGetAction(path=spec.health_path, port=spec.port)
        container.liveness_probe = client.V1Probe(
            http_get=probe_action,
            initial_delay_seconds=30,
            period_seconds=10,
            timeout_seconds=5,
            failure_threshold=3,
        )
        container.readiness_probe = client.V1Probe(
            http_get=probe_action,
            initial_delay_seconds=5,
            period_seconds=5,
            timeout_seconds=3,
            failure_threshold=3,
        )

    pod_volumes = None
    if spec.volume_mounts:
        container.volume_mounts = [
            client.V1VolumeMount(name=m.name, mount_path=m.mount_path) for m in spec.volume_mounts
        ]
        pod_volumes = [
            client.V1Volume(
                name=m.name,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=m.claim_name
                ),
            )
            for m in spec.volume_mounts
        ]

    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=spec.name, namespace=spec.namespace, labels=spec.labels
        ),
        spec=client.V1DeploymentSpec(
            replicas=spec.replicas,
            selector=client.V1LabelSelector(match_labels=spec.selector),
            strategy=client.V1DeploymentStrategy(
                type="RollingUpdate",
                rolling_update=client.V1RollingUpdateDeployment(
                    max_unavailable=0, max_surge=1
                ),
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=spec.labels),
                spec=client.V1PodSpec(containers=[container], volumes=pod_volumes),
            ),
        ),
    )


def _ingress_body(spec: IngressSpec) -> client.V1Ingress:
    annotations = {}
    tls = None
    if spec.cert_issuer:
        annotations["cert-manager.io/cluster-issuer"] = spec.cert_issuer
        tls = [client.V1IngressTLS(hosts=spec.hosts, secret_name=f"{spec.name}-tls")]

    backend = client.V1IngressBackend(
        service=client.V1IngressServiceBackend(
            name=spec.service_name,
            port=client.V1ServiceBackendPort(number=spec.service_port),
        )
    )
    rules = [
        client.V1IngressRule(
            host=host,
            http=client.V1HTTPIngressRuleValue(
                paths=[client.V1HTTPIngressPath(path="/", path_type="Prefix", backend=backend)]
            ),
        )
        for host in spec.hosts
    ]
    return client.V1Ingress(
        metadata=client.V1ObjectMeta(
            name=spec.name,
            namespace=spec.namespace,
            labels=spec.labels,
            annotations=annotations,
        ),
        spec=client.V1IngressSpec(ingress_class_name=spec.ingress_class, tls=tls, rules=rules),
    )
