"""Module for defining the ec2deploy state backend using AWS CDK.

This module contains the CDK stack definition for the S3 bucket that holds
applied state and the DynamoDB table that serializes writers to it.

It does not define the deployment hosts themselves; these are
created by the ec2deploy reconciler.
"""

import aws_cdk as cdk
import aws_cdk.aws_dynamodb as dynamodb
import aws_cdk.aws_s3 as s3
from constructs import Construct


class StateBackendStack(cdk.Stack):
    """CDK Stack for the ec2deploy remote state store.

    Creates the state bucket and lock table.
    """

    def __init__(
        self,
        scope: Construct,
        id: str,
        **kwargs,
    ) -> None:
        """Initialize the state backend stack.

        Args:
            scope: The parent construct.
            id: The construct ID.
            **kwargs: Additional keyword arguments passed to the parent Stack.
        """
        super().__init__(scope, id, **kwargs)

        # Versioned so an overwritten state can be recovered
        self.bucket = s3.Bucket(
            self,
            "StateBucket",
            versioned=True,
            encryption=s3.BucketEncryption.S3_MANAGED,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            removal_policy=cdk.RemovalPolicy.RETAIN,
        )

        # Same key layout as Terraform's S3 backend lock table
        self.lock_table = dynamodb.Table(
            self,
            "LockTable",
            partition_key=dynamodb.Attribute(
                name="LockID", type=dynamodb.AttributeType.STRING
            ),
            billing_mode=dynamodb.BillingMode.PAY_PER_REQUEST,
            removal_policy=cdk.RemovalPolicy.DESTROY,
        )

        # Outputs with exact environment variable names expected by settings class
        cdk.CfnOutput(
            self,
            "Ec2DeployStateBucket",
            value=self.bucket.bucket_name,
            description="S3 bucket for ec2deploy state",
            export_name="EC2-DEPLOY-STATE-BUCKET",
        )

        cdk.CfnOutput(
            self,
            "Ec2DeployLockTable",
            value=self.lock_table.table_name,
            description="DynamoDB table for ec2deploy state locks",
            export_name="EC2-DEPLOY-LOCK-TABLE",
        )
