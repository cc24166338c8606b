"""
State Storage Bootstrap - separate Pulumi program for the state backend
Creates S3 bucket, DynamoDB lock table and secrets key; run once with a local backend
"""

import os
import sys

import pulumi

# Share the modules package with the platform program
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.state_storage import create_state_storage_resources

config = pulumi.Config()
project_name = config.get("project_name") or "secure-platform"
aws_region = pulumi.Config("aws").get("region") or "eu-west-1"

tags = {
    "Project": project_name,
    "ManagedBy": "pulumi",
    "Purpose": "state-storage-bootstrap"
}

state = create_state_storage_resources(project_name, aws_region, tags)

# Exports
pulumi.export("bucket_name", state["bucket_name_output"])
pulumi.export("dynamodb_table_name", state["dynamodb_table_name_output"])
pulumi.export("kms_key_arn", state["kms_key_arn"])
pulumi.export("backend_config", state["backend_config"])
pulumi.export("backend_configuration_commands", state["configuration_commands"])
