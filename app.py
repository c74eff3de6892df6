#!/usr/bin/env python3
import os
import sys
import tomllib

import aws_cdk as cdk

from supabase_aws.stacks.supabase_stack import SupabaseStack

# Initialize the CDK app which loads the built-in context (from cdk.json and CLI)
app = cdk.App()

# Load TOML configuration from config.toml when present
# Values passed with -c on the CLI take precedence
config_file_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.toml")
if os.path.exists(config_file_path):
    print(f"Loading config file at: {config_file_path}")
    try:
        with open(config_file_path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError:
        sys.exit(f"Error: Config file '{config_file_path}' contains invalid TOML.")

    for key, value in config.items():
        if app.node.try_get_context(key) is None:
            app.node.set_context(key, value)
else:
    print(f"No config file at {config_file_path}, using CDK context only")

# All the required context keys
required_context = ["stack_prefix", "site_url", "sender_email"]

for key in required_context:
    value = app.node.try_get_context(key)
    if not value:
        sys.exit(
            f"Error: Missing required context variable '{key}'. "
            f"Please pass it via the CLI (e.g., -c {key}=your_value) or define it in config.toml."
        )

load_balancer = app.node.try_get_context("load_balancer")
if load_balancer is not None and load_balancer not in ["Network", "Application", "None"]:
    sys.exit(
        f"Error: Invalid load_balancer '{load_balancer}'. It must be one of 'Network', 'Application' or 'None'."
    )

cpu_architecture = app.node.try_get_context("cpu_architecture")
if cpu_architecture is not None and cpu_architecture not in ["ARM64", "X86_64"]:
    sys.exit(f"Error: Invalid cpu_architecture '{cpu_architecture}'. It must be either 'ARM64' or 'X86_64'.")

images = app.node.try_get_context("images")
if images is not None and not isinstance(images, dict):
    sys.exit("Error: 'images' must be a table mapping component names to image URIs.")

stack_prefix = app.node.try_get_context("stack_prefix")

SupabaseStack(
    app,
    f"{stack_prefix}-Supabase",
    env=cdk.Environment(account=os.getenv("CDK_DEFAULT_ACCOUNT"), region=os.getenv("CDK_DEFAULT_REGION")),
)

app.synth()
