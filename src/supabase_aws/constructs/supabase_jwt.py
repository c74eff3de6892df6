import os

from aws_cdk import (
    CustomResource,
    Duration,
    SecretValue,
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

TEN_YEARS = Duration.days(3650)


class SupabaseJwt(Construct):
    """JWT signing secret and the API keys derived from it."""

    def __init__(self, scope: Construct, id: str, *, issuer: str = "supabase", **kwargs) -> None:
        super().__init__(scope, id, **kwargs)

        self.issuer = issuer

        self.secret = secretsmanager.Secret(
            self,
            "Secret",
            description="Supabase - JWT Secret",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                password_length=64,
                exclude_punctuation=True,
            ),
        )

        api_key_function = _lambda.Function(
            self,
            "ApiKeyFunction",
            runtime=_lambda.Runtime.PYTHON_3_11,
            handler="index.handler",
            code=_lambda.Code.from_asset(os.path.join(FUNCTIONS_DIR, "api_key")),
            timeout=Duration.seconds(30),
            description="Supabase - Generate API key",
        )
        self.secret.grant_read(api_key_function)

        self.provider = cr.Provider(self, "ApiKeyProvider", on_event_handler=api_key_function)

    def generate_api_key(self, id: str, role: str, expires_in: Duration = TEN_YEARS) -> secretsmanager.Secret:
        """Sign a long-lived token for ``role`` and keep it in its own secret."""
        api_key = CustomResource(
            self,
            f"{id}Token",
            service_token=self.provider.service_token,
            resource_type="Custom::ApiKey",
            properties={
                "JwtSecretArn": self.secret.secret_arn,
                "Role": role,
                "Issuer": self.issuer,
                "ExpiresIn": expires_in.to_seconds(),
            },
        )

        return secretsmanager.Secret(
            self,
            id,
            description=f"Supabase - API key for {role}",
            secret_string_value=SecretValue.resource_attribute(api_key.get_att_string("Value")),
        )
