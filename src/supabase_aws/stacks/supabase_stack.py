from aws_cdk import (
    CfnOutput,
    RemovalPolicy,
    Stack,
    Tags,
)
from aws_cdk import aws_appmesh as appmesh
from aws_cdk import (
    aws_ec2 as ec2,
)
from aws_cdk import (
    aws_ecs as ecs,
)
from aws_cdk import (
    aws_s3 as s3,
)
from aws_cdk import (
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

from supabase_aws.constructs.supabase_database import SupabaseDatabase
from supabase_aws.constructs.supabase_jwt import SupabaseJwt
from supabase_aws.constructs.supabase_mail import SesSmtp
from supabase_aws.constructs.supabase_service import SupabaseService

NAMESPACE_NAME = "supabase.internal"

DEFAULT_IMAGES = {
    "kong": "public.ecr.aws/u3p7q2r8/kong:latest",
    "auth": "public.ecr.aws/supabase/gotrue:v2.110.0",
    "rest": "public.ecr.aws/supabase/postgrest:v11.2.0",
    "realtime": "public.ecr.aws/supabase/realtime:v2.25.27",
    "storage": "public.ecr.aws/supabase/storage-api:v0.43.11",
    "meta": "public.ecr.aws/supabase/postgres-meta:v0.74.2",
}

CPU_ARCHITECTURES = {
    "ARM64": ecs.CpuArchitecture.ARM64,
    "X86_64": ecs.CpuArchitecture.X86_64,
}


class SupabaseStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Retrieve the 'tags' context value (expected to be a dict)
        # And apply to all resources in the stack
        context_tags = self.node.try_get_context("tags")
        if context_tags and isinstance(context_tags, dict):
            for key, value in context_tags.items():
                Tags.of(self).add(key, value)

        site_url = self.node.try_get_context("site_url") or "http://localhost:3000"
        sender_email = self.node.try_get_context("sender_email") or "noreply@example.com"
        sender_name = self.node.try_get_context("sender_name") or "Supabase"
        load_balancer = self.node.try_get_context("load_balancer") or "Application"
        if load_balancer == "None":
            load_balancer = None
        cpu_architecture = CPU_ARCHITECTURES[self.node.try_get_context("cpu_architecture") or "ARM64"]
        images = {**DEFAULT_IMAGES, **(self.node.try_get_context("images") or {})}

        self.vpc = ec2.Vpc(self, "Vpc", max_azs=2, nat_gateways=1)

        self.cluster = ecs.Cluster(
            self,
            "Cluster",
            vpc=self.vpc,
            enable_fargate_capacity_providers=True,
            default_cloud_map_namespace=ecs.CloudMapNamespaceOptions(name=NAMESPACE_NAME),
        )

        # Context passed on the CLI arrives as a string
        self.mesh = None
        if str(self.node.try_get_context("mesh")).lower() == "true":
            self.mesh = appmesh.Mesh(self, "Mesh")

        # Secrets
        jwt = SupabaseJwt(self, "Jwt")
        anon_key = jwt.generate_api_key("AnonKey", "anon")
        service_role_key = jwt.generate_api_key("ServiceRoleKey", "service_role")

        realtime_key_base = secretsmanager.Secret(
            self,
            "RealtimeSecretKeyBase",
            description="Supabase - Realtime secret key base",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                password_length=64,
                exclude_punctuation=True,
            ),
        )
        realtime_enc_key = secretsmanager.Secret(
            self,
            "RealtimeEncKey",
            description="Supabase - Realtime encryption key",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                password_length=16,
                exclude_punctuation=True,
            ),
        )

        # Backing resources
        self.database = SupabaseDatabase(self, "Database", vpc=self.vpc, mesh=self.mesh)
        self.mail = SesSmtp(self, "Smtp", mesh=self.mesh)

        self.bucket = s3.Bucket(
            self,
            "Bucket",
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            encryption=s3.BucketEncryption.S3_MANAGED,
            enforce_ssl=True,
            removal_policy=RemovalPolicy.RETAIN,
        )

        db_host = self.database.cluster.cluster_endpoint.hostname
        db_port = str(self.database.port)
        db_secret = self.database.secret
        jwt_secret = ecs.Secret.from_secrets_manager(jwt.secret)
        db_password = ecs.Secret.from_secrets_manager(db_secret, "password")

        common = {
            "cluster": self.cluster,
            "cpu_architecture": cpu_architecture,
            "mesh": self.mesh,
        }

        # Supabase Auth (GoTrue)
        self.auth = SupabaseService(
            self,
            "Auth",
            container_definition={
                "image": ecs.ContainerImage.from_registry(images["auth"]),
                "port_mappings": [ecs.PortMapping(container_port=9999)],
                "environment": {
                    "GOTRUE_API_HOST": "0.0.0.0",
                    "GOTRUE_API_PORT": "9999",
                    "API_EXTERNAL_URL": f"{site_url}/auth/v1",
                    "GOTRUE_DB_DRIVER": "postgres",
                    "GOTRUE_DB_DATABASE_URL": f"postgres://supabase_auth_admin@{db_host}:{db_port}/postgres",
                    "GOTRUE_SITE_URL": site_url,
                    "GOTRUE_URI_ALLOW_LIST": "",
                    "GOTRUE_DISABLE_SIGNUP": "false",
                    "GOTRUE_JWT_ADMIN_ROLES": "service_role",
                    "GOTRUE_JWT_AUD": "authenticated",
                    "GOTRUE_JWT_DEFAULT_GROUP_NAME": "authenticated",
                    "GOTRUE_JWT_EXP": "3600",
                    "GOTRUE_EXTERNAL_EMAIL_ENABLED": "true",
                    "GOTRUE_MAILER_AUTOCONFIRM": "false",
                    "GOTRUE_SMTP_ADMIN_EMAIL": sender_email,
                    "GOTRUE_SMTP_HOST": self.mail.host,
                    "GOTRUE_SMTP_PORT": str(self.mail.port),
                    "GOTRUE_SMTP_SENDER_NAME": sender_name,
                    "GOTRUE_MAILER_URLPATHS_INVITE": "/auth/v1/verify",
                    "GOTRUE_MAILER_URLPATHS_CONFIRMATION": "/auth/v1/verify",
                    "GOTRUE_MAILER_URLPATHS_RECOVERY": "/auth/v1/verify",
                    "GOTRUE_MAILER_URLPATHS_EMAIL_CHANGE": "/auth/v1/verify",
                    "GOTRUE_EXTERNAL_PHONE_ENABLED": "false",
                },
                "secrets": {
                    "GOTRUE_JWT_SECRET": jwt_secret,
                    "PGPASSWORD": db_password,
                    "GOTRUE_SMTP_USER": ecs.Secret.from_secrets_manager(self.mail.secret, "username"),
                    "GOTRUE_SMTP_PASS": ecs.Secret.from_secrets_manager(self.mail.secret, "password"),
                },
            },
            **common,
        )

        # Supabase REST (PostgREST)
        self.rest = SupabaseService(
            self,
            "Rest",
            container_definition={
                "image": ecs.ContainerImage.from_registry(images["rest"]),
                "port_mappings": [ecs.PortMapping(container_port=3000)],
                "environment": {
                    "PGRST_DB_URI": f"postgres://authenticator@{db_host}:{db_port}/postgres",
                    "PGRST_DB_SCHEMAS": "public,storage,graphql_public",
                    "PGRST_DB_ANON_ROLE": "anon",
                    "PGRST_DB_USE_LEGACY_GUCS": "false",
                    "PGRST_APP_SETTINGS_JWT_EXP": "3600",
                },
                "secrets": {
                    "PGRST_JWT_SECRET": jwt_secret,
                    "PGRST_APP_SETTINGS_JWT_SECRET": jwt_secret,
                    "PGPASSWORD": db_password,
                },
            },
            **common,
        )

        # Supabase Realtime
        self.realtime = SupabaseService(
            self,
            "Realtime",
            container_definition={
                "image": ecs.ContainerImage.from_registry(images["realtime"]),
                "port_mappings": [ecs.PortMapping(container_port=4000)],
                "environment": {
                    "PORT": "4000",
                    "DB_HOST": db_host,
                    "DB_PORT": db_port,
                    "DB_USER": "supabase_admin",
                    "DB_NAME": "postgres",
                    "DB_AFTER_CONNECT_QUERY": "SET search_path TO _realtime",
                    "FLY_ALLOC_ID": "fly123",
                    "FLY_APP_NAME": "realtime",
                    "ERL_AFLAGS": "-proto_dist inet_tcp",
                    "ENABLE_TAILSCALE": "false",
                    "DNS_NODES": "''",
                    "RLIMIT_NOFILE": "10000",
                },
                "secrets": {
                    "DB_PASSWORD": db_password,
                    "API_JWT_SECRET": jwt_secret,
                    "SECRET_KEY_BASE": ecs.Secret.from_secrets_manager(realtime_key_base),
                    "DB_ENC_KEY": ecs.Secret.from_secrets_manager(realtime_enc_key),
                },
            },
            **common,
        )

        # Supabase Storage
        self.storage = SupabaseService(
            self,
            "Storage",
            container_definition={
                "image": ecs.ContainerImage.from_registry(images["storage"]),
                "port_mappings": [ecs.PortMapping(container_port=5000)],
                "environment": {
                    "POSTGREST_URL": f"http://{self.rest.internal_dns_name}:{self.rest.listener_port}",
                    "DATABASE_URL": f"postgres://supabase_storage_admin@{db_host}:{db_port}/postgres",
                    "FILE_SIZE_LIMIT": "52428800",
                    "STORAGE_BACKEND": "s3",
                    "GLOBAL_S3_BUCKET": self.bucket.bucket_name,
                    "TENANT_ID": "stub",
                    "IS_MULTITENANT": "false",
                    "REGION": self.region,
                },
                "secrets": {
                    "ANON_KEY": ecs.Secret.from_secrets_manager(anon_key),
                    "SERVICE_KEY": ecs.Secret.from_secrets_manager(service_role_key),
                    "PGRST_JWT_SECRET": jwt_secret,
                    "PGPASSWORD": db_password,
                },
            },
            **common,
        )
        self.bucket.grant_read_write(self.storage.task_definition.task_role)

        # Supabase Meta (postgres-meta)
        self.meta = SupabaseService(
            self,
            "Meta",
            container_definition={
                "image": ecs.ContainerImage.from_registry(images["meta"]),
                "port_mappings": [ecs.PortMapping(container_port=8080)],
                "environment": {
                    "PG_META_PORT": "8080",
                    "PG_META_DB_HOST": db_host,
                    "PG_META_DB_PORT": db_port,
                    "PG_META_DB_NAME": "postgres",
                    "PG_META_DB_USER": "supabase_admin",
                },
                "secrets": {
                    "PG_META_DB_PASSWORD": db_password,
                },
            },
            **common,
        )

        # API gateway (Kong); 8100 is the status listener used for health checks
        self.kong = SupabaseService(
            self,
            "Kong",
            container_definition={
                "image": ecs.ContainerImage.from_registry(images["kong"]),
                "port_mappings": [
                    ecs.PortMapping(container_port=8000),
                    ecs.PortMapping(container_port=8100),
                ],
                "environment": {
                    "KONG_DNS_ORDER": "LAST,A,CNAME",
                    "KONG_PLUGINS": "request-transformer,cors,key-auth,acl",
                    "KONG_STATUS_LISTEN": "0.0.0.0:8100",
                    "SUPABASE_AUTH_URL": f"http://{self.auth.internal_dns_name}:{self.auth.listener_port}/",
                    "SUPABASE_REST_URL": f"http://{self.rest.internal_dns_name}:{self.rest.listener_port}/",
                    "SUPABASE_REALTIME_URL": (
                        f"http://{self.realtime.internal_dns_name}:{self.realtime.listener_port}/socket/"
                    ),
                    "SUPABASE_STORAGE_URL": f"http://{self.storage.internal_dns_name}:{self.storage.listener_port}/",
                    "SUPABASE_META_HOST": f"http://{self.meta.internal_dns_name}:{self.meta.listener_port}/",
                },
                "secrets": {
                    "SUPABASE_ANON_KEY": ecs.Secret.from_secrets_manager(anon_key),
                    "SUPABASE_SERVICE_KEY": ecs.Secret.from_secrets_manager(service_role_key),
                },
            },
            with_load_balancer=load_balancer,
            **common,
        )

        # Network reachability
        for backend in (self.auth, self.rest, self.realtime, self.storage, self.meta):
            self.kong.add_backend(backend)

        for service in (self.auth, self.rest, self.realtime, self.storage, self.meta):
            service.add_database_backend(self.database)
            service.service.node.add_dependency(self.database.initialization)

        self.auth.add_external_backend(self.mail)
        self.storage.add_backend(self.rest)

        if self.kong.load_balancer is not None:
            CfnOutput(self, "ApiUrl", value=f"http://{self.kong.load_balancer.load_balancer_dns_name}")

        CfnOutput(self, "JwtSecretArn", value=jwt.secret.secret_arn)
        CfnOutput(self, "AnonKeySecretArn", value=anon_key.secret_arn)
        CfnOutput(self, "ServiceRoleKeySecretArn", value=service_role_key.secret_arn)
