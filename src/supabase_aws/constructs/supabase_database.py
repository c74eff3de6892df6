from typing import Optional

from aws_cdk import (
    CfnOutput,
    RemovalPolicy,
)
from aws_cdk import (
    aws_appmesh as appmesh,
)
from aws_cdk import (
    aws_ec2 as ec2,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_rds as rds,
)
from aws_cdk import (
    aws_secretsmanager as secretsmanager,
)
from aws_cdk import (
    custom_resources as cr,
)
from constructs import Construct

DATABASE_PORT = 5432
MASTER_USERNAME = "supabase_admin"


def _create_role(role: str, options: str) -> str:
    return f"""
        DO $$
        BEGIN
            CREATE ROLE {role} {options};
        EXCEPTION WHEN duplicate_object THEN
            RAISE NOTICE 'Role {role} already exists';
        END $$;
    """


class SupabaseDatabase(Construct):
    def __init__(
        self,
        scope: Construct,
        id: str,
        *,
        vpc: ec2.IVpc,
        mesh: Optional[appmesh.IMesh] = None,
        min_capacity: float = 0.5,
        max_capacity: float = 4,
        **kwargs,
    ) -> None:
        super().__init__(scope, id, **kwargs)

        self.port = DATABASE_PORT
        self.virtual_node: Optional[appmesh.VirtualNode] = None
        self.virtual_service: Optional[appmesh.VirtualService] = None

        # Master credentials in Secrets Manager
        self.secret = secretsmanager.Secret(
            self,
            "Secret",
            description="Supabase - Database master credentials",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template=f'{{"username": "{MASTER_USERNAME}"}}',
                generate_string_key="password",
                exclude_punctuation=True,
            ),
        )

        # Aurora Serverless v2 cluster
        self.cluster = rds.DatabaseCluster(
            self,
            "Cluster",
            engine=rds.DatabaseClusterEngine.aurora_postgres(version=rds.AuroraPostgresEngineVersion.VER_15_3),
            writer=rds.ClusterInstance.serverless_v2("Writer"),
            vpc=vpc,
            port=DATABASE_PORT,
            credentials=rds.Credentials.from_secret(self.secret),
            default_database_name="postgres",
            serverless_v2_min_capacity=min_capacity,
            serverless_v2_max_capacity=max_capacity,
            storage_encrypted=True,
            enable_data_api=True,
            removal_policy=RemovalPolicy.SNAPSHOT,
        )

        # Roles and schemas the Supabase services expect to find
        password = self.secret.secret_value_from_json("password").unsafe_unwrap()
        statements = [
            ("AnonRole", _create_role("anon", "NOLOGIN NOINHERIT")),
            ("AuthenticatedRole", _create_role("authenticated", "NOLOGIN NOINHERIT")),
            ("ServiceRole", _create_role("service_role", "NOLOGIN NOINHERIT")),
            ("AuthenticatorRole", _create_role("authenticator", f"WITH LOGIN NOINHERIT PASSWORD '{password}'")),
            ("AuthenticatorGrant", "GRANT anon, authenticated, service_role TO authenticator;"),
            ("AuthAdminRole", _create_role("supabase_auth_admin", f"WITH LOGIN CREATEROLE PASSWORD '{password}'")),
            ("AuthAdminGrant", f"GRANT supabase_auth_admin TO {MASTER_USERNAME};"),
            ("AuthSchema", "CREATE SCHEMA IF NOT EXISTS auth AUTHORIZATION supabase_auth_admin;"),
            (
                "StorageAdminRole",
                _create_role("supabase_storage_admin", f"WITH LOGIN CREATEROLE PASSWORD '{password}'"),
            ),
            ("StorageAdminGrant", f"GRANT supabase_storage_admin TO {MASTER_USERNAME};"),
            ("StorageSchema", "CREATE SCHEMA IF NOT EXISTS storage AUTHORIZATION supabase_storage_admin;"),
            ("RealtimeSchema", "CREATE SCHEMA IF NOT EXISTS _realtime;"),
        ]

        policy = cr.AwsCustomResourcePolicy.from_statements(
            [
                iam.PolicyStatement(actions=["rds-data:ExecuteStatement"], resources=[self.cluster.cluster_arn]),
                iam.PolicyStatement(actions=["secretsmanager:GetSecretValue"], resources=[self.secret.secret_arn]),
            ]
        )

        # Data API statements run one at a time, in order
        previous = self.cluster
        for name, sql in statements:
            init = cr.AwsCustomResource(
                self,
                f"Init{name}",
                on_create=cr.AwsSdkCall(
                    service="RDSDataService",
                    action="executeStatement",
                    parameters={
                        "secretArn": self.secret.secret_arn,
                        "database": "postgres",
                        "resourceArn": self.cluster.cluster_arn,
                        "sql": sql,
                    },
                    physical_resource_id=cr.PhysicalResourceId.of(f"{id}-Init-{name}"),
                    # Role statements carry the master password
                    logging=cr.Logging.with_data_hidden(),
                ),
                policy=policy,
            )
            init.node.add_dependency(previous)
            previous = init

        self.initialization = previous

        if mesh is not None:
            hostname = self.cluster.cluster_endpoint.hostname
            self.virtual_node = appmesh.VirtualNode(
                self,
                "VirtualNode",
                virtual_node_name=id,
                service_discovery=appmesh.ServiceDiscovery.dns(hostname, appmesh.DnsResponseType.ENDPOINTS),
                listeners=[appmesh.VirtualNodeListener.tcp(port=DATABASE_PORT)],
                mesh=mesh,
            )
            self.virtual_service = appmesh.VirtualService(
                self,
                "VirtualService",
                virtual_service_name=hostname,
                virtual_service_provider=appmesh.VirtualServiceProvider.virtual_node(self.virtual_node),
            )

        CfnOutput(self, "DatabaseEndpoint", value=self.cluster.cluster_endpoint.hostname)
        CfnOutput(self, "DatabaseSecretArn", value=self.secret.secret_arn)
