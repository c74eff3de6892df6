from typing import TYPE_CHECKING, Any, Literal, Mapping, Optional

from aws_cdk import (
    Duration,
    RemovalPolicy,
)
from aws_cdk import (
    aws_appmesh as appmesh,
)
from aws_cdk import (
    aws_ec2 as ec2,
)
from aws_cdk import (
    aws_ecs as ecs,
)
from aws_cdk import (
    aws_elasticloadbalancingv2 as elb,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_logs as logs,
)
from constructs import Construct

if TYPE_CHECKING:
    from supabase_aws.constructs.supabase_database import SupabaseDatabase
    from supabase_aws.constructs.supabase_mail import SupabaseMailBase

ENVOY_IMAGE = "public.ecr.aws/appmesh/aws-appmesh-envoy:v1.22.2.0-prod"
XRAY_DAEMON_IMAGE = "public.ecr.aws/xray/aws-xray-daemon:latest"

# Envoy runs as this UID/GID so the proxy does not intercept its own traffic
PROXY_UID = 1337
PROXY_GID = 1338

LoadBalancerType = Literal["Network", "Application"]


class SupabaseService(Construct):
    """A Supabase component running as a Fargate service.

    The service registers itself in the cluster's Cloud Map namespace under the
    lower-cased construct id. Optionally it is fronted by a public network or
    application load balancer, and joined to an App Mesh mesh with Envoy and
    X-Ray daemon sidecars.
    """

    def __init__(
        self,
        scope: Construct,
        id: str,
        *,
        cluster: ecs.ICluster,
        container_definition: Mapping[str, Any],
        cpu: Optional[int] = None,
        memory: Optional[int] = None,
        cpu_architecture: Optional[ecs.CpuArchitecture] = None,
        with_load_balancer: Optional[LoadBalancerType] = None,
        mesh: Optional[appmesh.IMesh] = None,
        **kwargs,
    ) -> None:
        if with_load_balancer not in (None, "Network", "Application"):
            raise ValueError(
                f"Invalid load balancer type '{with_load_balancer}'. Expected 'Network' or 'Application'."
            )

        port_mappings = container_definition.get("port_mappings") or []
        if not port_mappings:
            raise ValueError(f"Container definition for '{id}' must declare at least one port mapping.")

        super().__init__(scope, id, **kwargs)

        service_name = id.lower()
        cpu_architecture = cpu_architecture or ecs.CpuArchitecture.ARM64
        vpc = cluster.vpc

        self.listener_port = port_mappings[0].container_port
        self.virtual_node: Optional[appmesh.VirtualNode] = None
        self.virtual_service: Optional[appmesh.VirtualService] = None
        self.load_balancer: Optional[elb.BaseLoadBalancer] = None

        proxy_configuration = None
        if mesh is not None:
            proxy_configuration = ecs.AppMeshProxyConfiguration(
                container_name="envoy",
                properties=ecs.AppMeshProxyConfigurationProps(
                    ignored_uid=PROXY_UID,
                    ignored_gid=PROXY_GID,
                    app_ports=[self.listener_port],
                    proxy_ingress_port=15000,
                    proxy_egress_port=15001,
                    # Task metadata and instance metadata endpoints
                    egress_ignored_i_ps=["169.254.170.2", "169.254.169.254"],
                ),
            )

        self.task_definition = ecs.FargateTaskDefinition(
            self,
            "TaskDefinition",
            cpu=cpu,
            memory_limit_mib=memory,
            runtime_platform=ecs.RuntimePlatform(cpu_architecture=cpu_architecture),
            proxy_configuration=proxy_configuration,
        )

        log_group = logs.LogGroup(
            self,
            "Logs",
            removal_policy=RemovalPolicy.DESTROY,
            retention=logs.RetentionDays.ONE_MONTH,
        )

        logging = ecs.AwsLogDriver(log_group=log_group, stream_prefix="ecs")

        self.app_container = self.task_definition.add_container(
            "app",
            **{**container_definition, "essential": True, "logging": logging},
        )
        self.app_container.add_ulimits(ecs.Ulimit(name=ecs.UlimitName.NOFILE, soft_limit=65536, hard_limit=65536))

        self.service = ecs.FargateService(
            self,
            "Svc",
            cluster=cluster,
            task_definition=self.task_definition,
            circuit_breaker=ecs.DeploymentCircuitBreaker(rollback=True),
            capacity_provider_strategies=[
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE", base=1, weight=1),
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE_SPOT", base=0, weight=0),
            ],
            cloud_map_options=ecs.CloudMapOptions(
                dns_ttl=Duration.seconds(10),
                name=service_name,
            ),
            health_check_grace_period=Duration.seconds(10) if with_load_balancer else None,
        )

        cloud_map_service = self.service.cloud_map_service
        self.internal_dns_name = f"{cloud_map_service.service_name}.{cloud_map_service.namespace.namespace_name}"

        if with_load_balancer == "Network":
            health_check_port = port_mappings[-1].container_port
            self.service.connections.allow_from(
                ec2.Peer.ipv4(vpc.vpc_cidr_block), ec2.Port.tcp(health_check_port), "NLB healthcheck"
            )

            target_group = elb.NetworkTargetGroup(
                self,
                "TargetGroup",
                port=80,
                targets=[self.service.load_balancer_target(container_name="app")],
                health_check=elb.HealthCheck(
                    port=str(health_check_port),
                    interval=Duration.seconds(10),
                ),
                deregistration_delay=Duration.seconds(30),
                preserve_client_ip=True,
                vpc=vpc,
            )
            load_balancer = elb.NetworkLoadBalancer(self, "LoadBalancer", internet_facing=True, vpc=vpc)
            load_balancer.add_listener("Listener", port=80, default_target_groups=[target_group])
            self.load_balancer = load_balancer

        elif with_load_balancer == "Application":
            target_group = elb.ApplicationTargetGroup(
                self,
                "TargetGroup",
                port=80,
                targets=[self.service.load_balancer_target(container_name="app")],
                health_check=elb.HealthCheck(
                    interval=Duration.seconds(10),
                    timeout=Duration.seconds(5),
                ),
                deregistration_delay=Duration.seconds(30),
                vpc=vpc,
            )
            load_balancer = elb.ApplicationLoadBalancer(self, "LoadBalancer", internet_facing=True, vpc=vpc)
            load_balancer.add_listener("Listener", port=80, default_target_groups=[target_group])
            self.load_balancer = load_balancer

        if mesh is not None:
            self._add_to_mesh(mesh, cluster, service_name, logging)

    def _add_to_mesh(
        self, mesh: appmesh.IMesh, cluster: ecs.ICluster, service_name: str, logging: ecs.LogDriver
    ) -> None:
        self.virtual_node = appmesh.VirtualNode(
            self,
            "VirtualNode",
            virtual_node_name=self.node.id,
            service_discovery=appmesh.ServiceDiscovery.cloud_map(self.service.cloud_map_service),
            listeners=[appmesh.VirtualNodeListener.http(port=self.listener_port)],
            access_log=appmesh.AccessLog.from_file_path("/dev/stdout"),
            mesh=mesh,
        )

        self.virtual_service = appmesh.VirtualService(
            self,
            "VirtualService",
            virtual_service_name=f"{service_name}.{cluster.default_cloud_map_namespace.namespace_name}",
            virtual_service_provider=appmesh.VirtualServiceProvider.virtual_node(self.virtual_node),
        )

        task_role = self.task_definition.task_role
        task_role.add_managed_policy(iam.ManagedPolicy.from_aws_managed_policy_name("AWSAppMeshEnvoyAccess"))
        task_role.add_managed_policy(iam.ManagedPolicy.from_aws_managed_policy_name("AWSXRayDaemonWriteAccess"))

        proxy_container = self.task_definition.add_container(
            "envoy",
            image=ecs.ContainerImage.from_registry(ENVOY_IMAGE),
            user=str(PROXY_UID),
            cpu=80,
            memory_reservation_mib=128,
            essential=True,
            health_check=ecs.HealthCheck(
                command=["CMD-SHELL", "curl -s http://localhost:9901/server_info | grep state | grep -q LIVE"],
                interval=Duration.seconds(5),
                timeout=Duration.seconds(2),
                start_period=Duration.seconds(10),
                retries=3,
            ),
            environment={
                "APPMESH_VIRTUAL_NODE_NAME": f"mesh/{mesh.mesh_name}/virtualNode/{self.virtual_node.virtual_node_name}",
                "ENVOY_ADMIN_ACCESS_LOG_FILE": "/dev/null",
                "ENABLE_ENVOY_XRAY_TRACING": "1",
                "XRAY_SAMPLING_RATE": "1.00",
            },
            logging=logging,
        )
        proxy_container.add_ulimits(ecs.Ulimit(name=ecs.UlimitName.NOFILE, hard_limit=1024000, soft_limit=1024000))

        self.app_container.add_container_dependencies(
            ecs.ContainerDependency(
                container=proxy_container,
                condition=ecs.ContainerDependencyCondition.HEALTHY,
            )
        )

        self.task_definition.add_container(
            "xray-daemon",
            image=ecs.ContainerImage.from_registry(XRAY_DAEMON_IMAGE),
            user=str(PROXY_UID),
            cpu=16,
            memory_reservation_mib=64,
            essential=True,
            port_mappings=[ecs.PortMapping(container_port=2000, protocol=ecs.Protocol.UDP)],
            health_check=ecs.HealthCheck(
                # The daemon image has no shell; https://github.com/aws/aws-xray-daemon/issues/9
                command=["CMD", "/xray", "--version", "||", "exit 1"],
                interval=Duration.seconds(5),
                timeout=Duration.seconds(2),
                start_period=Duration.seconds(10),
                retries=3,
            ),
            logging=logging,
        )

    def _add_mesh_backend(self, virtual_service: Optional[appmesh.IVirtualService]) -> None:
        if virtual_service is not None and self.virtual_node is not None:
            self.virtual_node.add_backend(appmesh.Backend.virtual_service(virtual_service))

    def add_backend(self, backend: "SupabaseService") -> None:
        """Let this service call another Supabase service."""
        self.service.connections.allow_to(backend.service, ec2.Port.tcp(backend.listener_port))
        self._add_mesh_backend(backend.virtual_service)

    def add_database_backend(self, backend: "SupabaseDatabase") -> None:
        """Let this service connect to the database on its default port."""
        self.service.connections.allow_to_default_port(backend.cluster)
        self._add_mesh_backend(backend.virtual_service)

    def add_external_backend(self, backend: "SupabaseMailBase") -> None:
        """Route egress to a backend outside the VPC through the mesh."""
        self._add_mesh_backend(backend.virtual_service)
