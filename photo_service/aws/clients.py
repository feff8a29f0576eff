import boto3
from ..core.config import Settings, settings as default_settings

def s3(settings: Settings = default_settings):
    """Create an S3 client using our configured region/endpoint/creds."""
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        endpoint_url=settings.aws_endpoint_url,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
    )

def dynamodb_table(settings: Settings = default_settings):
    """Return a DynamoDB Table handle for the configured table name."""
    return boto3.resource(
        "dynamodb",
        region_name=settings.aws_region,
        endpoint_url=settings.aws_endpoint_url,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
    ).Table(settings.table_name)
