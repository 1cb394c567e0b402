"""CDK application entry point for the ec2deploy state backend.

This module initializes and configures the AWS CDK application that
deploys the bucket and lock table ec2deploy keeps its state in.
"""
import aws_cdk as cdk
from ec2deployinfra.state_backend_stack import StateBackendStack

app = cdk.App()

state_stack = StateBackendStack(
    app,
    "Ec2DeployStateBackend",
    tags={
        "Project": "ec2deployinfra",
    },
)

app.synth()
