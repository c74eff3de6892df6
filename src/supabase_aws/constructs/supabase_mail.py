import os
from typing import Optional

from aws_cdk import (
    CustomResource,
    Duration,
    SecretValue,
    Stack,
)
from aws_cdk import (
    aws_appmesh as appmesh,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_lambda as _lambda,
)
from aws_cdk import (
    aws_secretsmanager as secretsmanager,
)
from aws_cdk import (
    custom_resources as cr,
)
from constructs import Construct

FUNCTIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir, "functions")


class SupabaseMailBase(Construct):
    """An SMTP server outside the VPC that Supabase Auth sends mail through."""

    host: str
    port: int
    secret: secretsmanager.ISecret

    def __init__(self, scope: Construct, id: str, **kwargs) -> None:
        super().__init__(scope, id, **kwargs)
        self.virtual_node: Optional[appmesh.VirtualNode] = None
        self.virtual_service: Optional[appmesh.VirtualService] = None

    def _add_to_mesh(self, mesh: appmesh.IMesh) -> None:
        self.virtual_node = appmesh.VirtualNode(
            self,
            "VirtualNode",
            virtual_node_name=self.node.id,
            service_discovery=appmesh.ServiceDiscovery.dns(self.host),
            listeners=[appmesh.VirtualNodeListener.tcp(port=self.port)],
            mesh=mesh,
        )
        self.virtual_service = appmesh.VirtualService(
            self,
            "VirtualService",
            virtual_service_name=self.host,
            virtual_service_provider=appmesh.VirtualServiceProvider.virtual_node(self.virtual_node),
        )


class SesSmtp(SupabaseMailBase):
    """Amazon SES SMTP interface with generated SMTP credentials."""

    def __init__(
        self,
        scope: Construct,
        id: str,
        *,
        region: Optional[str] = None,
        mesh: Optional[appmesh.IMesh] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, id, **kwargs)

        region = region or Stack.of(self).region
        self.host = f"email-smtp.{region}.amazonaws.com"
        self.port = 465

        user = iam.User(self, "User")
        user.add_to_policy(
            iam.PolicyStatement(
                actions=["ses:SendRawEmail"],
                resources=["*"],
            )
        )

        access_key = iam.AccessKey(self, "AccessKey", user=user)

        access_key_secret = secretsmanager.Secret(
            self,
            "AccessKeySecret",
            description="Supabase - SES SMTP access key",
            secret_object_value={
                "accessKeyId": SecretValue.unsafe_plain_text(access_key.access_key_id),
                "secretAccessKey": access_key.secret_access_key,
            },
        )

        # Derive the SMTP password from the secret access key
        password_function = _lambda.Function(
            self,
            "PasswordFunction",
            runtime=_lambda.Runtime.PYTHON_3_11,
            handler="index.handler",
            code=_lambda.Code.from_asset(os.path.join(FUNCTIONS_DIR, "smtp_password")),
            timeout=Duration.seconds(30),
            description="Supabase - Generate SES SMTP password",
        )
        access_key_secret.grant_read(password_function)

        provider = cr.Provider(self, "PasswordProvider", on_event_handler=password_function)

        password = CustomResource(
            self,
            "Password",
            service_token=provider.service_token,
            resource_type="Custom::SmtpPassword",
            properties={
                "SecretId": access_key_secret.secret_arn,
                "Region": region,
            },
        )

        self.secret = secretsmanager.Secret(
            self,
            "Secret",
            description="Supabase - SMTP credentials",
            secret_object_value={
                "username": SecretValue.unsafe_plain_text(access_key.access_key_id),
                "password": SecretValue.resource_attribute(password.get_att_string("Password")),
                "host": SecretValue.unsafe_plain_text(self.host),
            },
        )

        if mesh is not None:
            self._add_to_mesh(mesh)
