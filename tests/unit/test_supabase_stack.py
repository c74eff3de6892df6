import aws_cdk as core
import aws_cdk.assertions as assertions
import pytest

from supabase_aws.stacks.supabase_stack import SupabaseStack

STACK_PREFIX = "alice"


def build_stack(**context):
    app = core.App()
    app.node.set_context("stack_prefix", STACK_PREFIX)
    app.node.set_context("tags", {"project": "supabase", "environment": "dev"})
    app.node.set_context("site_url", "https://app.example.com")
    app.node.set_context("sender_email", "noreply@example.com")
    for key, value in context.items():
        app.node.set_context(key, value)
    stack = SupabaseStack(app, f"{STACK_PREFIX}-Supabase", env={"account": "123456789012", "region": "us-east-1"})
    template = assertions.Template.from_stack(stack)
    return stack, template


def virtual_node_backends(template, name):
    nodes = template.find_resources("AWS::AppMesh::VirtualNode")
    for node in nodes.values():
        if node["Properties"]["VirtualNodeName"] == name:
            return node["Properties"]["Spec"].get("Backends", [])
    raise AssertionError(f"No virtual node named {name}")


@pytest.fixture(scope="module")
def stack_and_template():
    return build_stack()


@pytest.fixture(scope="module")
def mesh_stack_and_template():
    return build_stack(mesh=True, load_balancer="Network")


def test_cluster_has_fargate_capacity_providers(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties(
        "AWS::ECS::ClusterCapacityProviderAssociations",
        {"CapacityProviders": ["FARGATE", "FARGATE_SPOT"]},
    )


def test_cloud_map_namespace_created(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties("AWS::ServiceDiscovery::PrivateDnsNamespace", {"Name": "supabase.internal"})


def test_all_services_created(stack_and_template):
    stack, template = stack_and_template

    template.resource_count_is("AWS::ECS::Service", 6)
    for name in ["kong", "auth", "rest", "realtime", "storage", "meta"]:
        template.has_resource_properties("AWS::ServiceDiscovery::Service", {"Name": name})


def test_kong_behind_application_load_balancer_by_default(stack_and_template):
    stack, template = stack_and_template

    template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 1)
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {"Type": "application"})
    assert stack.kong.load_balancer is not None

    outputs = template.find_outputs("*")
    assert any("ApiUrl" in key for key in outputs)


def test_no_mesh_by_default(stack_and_template):
    stack, template = stack_and_template

    assert stack.mesh is None
    template.resource_count_is("AWS::AppMesh::Mesh", 0)
    template.resource_count_is("AWS::AppMesh::VirtualNode", 0)


def test_kong_can_reach_every_component(stack_and_template):
    stack, template = stack_and_template

    for port in [9999, 3000, 4000, 5000, 8080]:
        template.has_resource_properties(
            "AWS::EC2::SecurityGroupIngress", {"IpProtocol": "tcp", "FromPort": port, "ToPort": port}
        )


def test_services_can_reach_database(stack_and_template):
    stack, template = stack_and_template

    ingress = template.find_resources(
        "AWS::EC2::SecurityGroupIngress", {"Properties": {"FromPort": 5432, "ToPort": 5432}}
    )
    assert len(ingress) == 5


def test_api_keys_generated(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties("Custom::ApiKey", {"Role": "anon"})
    template.has_resource_properties("Custom::ApiKey", {"Role": "service_role"})


def test_storage_bucket_is_private(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties(
        "AWS::S3::Bucket",
        {
            "PublicAccessBlockConfiguration": {
                "BlockPublicAcls": True,
                "BlockPublicPolicy": True,
                "IgnorePublicAcls": True,
                "RestrictPublicBuckets": True,
            }
        },
    )


def test_tags_applied(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties(
        "AWS::ECS::Cluster",
        {"Tags": assertions.Match.array_with([{"Key": "project", "Value": "supabase"}])},
    )


def test_auth_gets_smtp_credentials(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties(
        "AWS::ECS::TaskDefinition",
        {
            "ContainerDefinitions": [
                assertions.Match.object_like(
                    {
                        "Environment": assertions.Match.array_with(
                            [{"Name": "GOTRUE_SMTP_HOST", "Value": "email-smtp.us-east-1.amazonaws.com"}]
                        ),
                        "Secrets": assertions.Match.array_with(
                            [assertions.Match.object_like({"Name": "GOTRUE_SMTP_PASS"})]
                        ),
                    }
                )
            ]
        },
    )


def test_images_can_be_overridden():
    stack, template = build_stack(images={"auth": "example.com/gotrue:test"})

    template.has_resource_properties(
        "AWS::ECS::TaskDefinition",
        {"ContainerDefinitions": [assertions.Match.object_like({"Image": "example.com/gotrue:test"})]},
    )


def test_load_balancer_can_be_disabled():
    stack, template = build_stack(load_balancer="None")

    template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 0)
    outputs = template.find_outputs("*")
    assert not any("ApiUrl" in key for key in outputs)


def test_x86_architecture():
    stack, template = build_stack(cpu_architecture="X86_64")

    template.all_resources_properties(
        "AWS::ECS::TaskDefinition", {"RuntimePlatform": {"CpuArchitecture": "X86_64"}}
    )


class TestMeshDeployment:
    def test_mesh_created(self, mesh_stack_and_template):
        stack, template = mesh_stack_and_template

        template.resource_count_is("AWS::AppMesh::Mesh", 1)
        # six services, the database and the SMTP relay
        template.resource_count_is("AWS::AppMesh::VirtualNode", 8)
        template.resource_count_is("AWS::AppMesh::VirtualService", 8)

    def test_kong_behind_network_load_balancer(self, mesh_stack_and_template):
        stack, template = mesh_stack_and_template

        template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {"Type": "network"})
        template.has_resource_properties(
            "AWS::ElasticLoadBalancingV2::TargetGroup", {"HealthCheckPort": "8100", "Protocol": "TCP"}
        )

    def test_kong_mesh_backends(self, mesh_stack_and_template):
        stack, template = mesh_stack_and_template

        assert len(virtual_node_backends(template, "Kong")) == 5

    def test_auth_mesh_backends(self, mesh_stack_and_template):
        stack, template = mesh_stack_and_template

        # database and SMTP relay
        assert len(virtual_node_backends(template, "Auth")) == 2

    def test_storage_mesh_backends(self, mesh_stack_and_template):
        stack, template = mesh_stack_and_template

        # database and REST
        assert len(virtual_node_backends(template, "Storage")) == 2

    def test_every_task_runs_sidecars(self, mesh_stack_and_template):
        stack, template = mesh_stack_and_template

        template.all_resources_properties(
            "AWS::ECS::TaskDefinition",
            {
                "ProxyConfiguration": {"ContainerName": "envoy", "Type": "APPMESH"},
                "ContainerDefinitions": [
                    assertions.Match.object_like({"Name": "app"}),
                    assertions.Match.object_like({"Name": "envoy"}),
                    assertions.Match.object_like({"Name": "xray-daemon"}),
                ],
            },
        )


def test_realtime_encryption_key_is_generated(stack_and_template):
    stack, template = stack_and_template

    template.has_resource_properties(
        "AWS::SecretsManager::Secret",
        {
            "Description": "Supabase - Realtime encryption key",
            "GenerateSecretString": {"PasswordLength": 16, "ExcludePunctuation": True},
        },
    )
    template.has_resource_properties(
        "AWS::ECS::TaskDefinition",
        {
            "ContainerDefinitions": [
                assertions.Match.object_like(
                    {
                        "Environment": assertions.Match.not_(
                            assertions.Match.array_with([assertions.Match.object_like({"Name": "DB_ENC_KEY"})])
                        ),
                        "Secrets": assertions.Match.array_with(
                            [
                                {
                                    "Name": "DB_ENC_KEY",
                                    "ValueFrom": {"Ref": assertions.Match.string_like_regexp("RealtimeEncKey")},
                                }
                            ]
                        ),
                    }
                )
            ]
        },
    )
