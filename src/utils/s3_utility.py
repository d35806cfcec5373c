"""S3 helpers for fetching message attachments stored by reference."""

import logging
import os
import urllib.parse
from typing import Tuple
from urllib.parse import urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

S3_BUCKET = os.getenv("S3_BUCKET_NAME", "")


def get_s3_client():
    """Get properly configured S3 client with AWS4-HMAC-SHA256 signature"""
    return boto3.client(
        's3',
        region_name=os.getenv("AWS_REGION"),
        config=Config(
            signature_version='s3v4',
            region_name=os.getenv("AWS_REGION"),
            retries={'max_attempts': 3, 'mode': 'standard'},
            max_pool_connections=50
        )
    )


def parse_s3_url(s3_url: str) -> Tuple[str, str]:
    """
    Split an S3 URL into (bucket, key).

    Accepts s3://bucket/key, virtual-hosted https URLs (bucket.s3.region.amazonaws.com/key)
    and path-style https URLs (s3.region.amazonaws.com/bucket/key).
    """
    if s3_url.startswith('s3://'):
        path_parts = s3_url[5:].split('/', 1)
        bucket_name = path_parts[0]
        source_key = path_parts[1] if len(path_parts) > 1 else ""
    elif s3_url.startswith('https://'):
        parsed = urlparse(s3_url)
        if not parsed.netloc.endswith('.amazonaws.com'):
            raise ValueError(f"Invalid S3 URL format: {s3_url}")
        if '.s3.' in parsed.netloc or '.s3-' in parsed.netloc:
            bucket_name = parsed.netloc.split('.s3', 1)[0] or S3_BUCKET
            source_key = urllib.parse.unquote(parsed.path.lstrip('/'))
        elif parsed.netloc.startswith('s3.') or parsed.netloc.startswith('s3-'):
            path_parts = parsed.path.lstrip('/').split('/', 1)
            bucket_name = path_parts[0] if path_parts[0] else S3_BUCKET
            source_key = urllib.parse.unquote(path_parts[1]) if len(path_parts) > 1 else ""
        else:
            raise ValueError(f"Invalid S3 URL format: {s3_url}")
    else:
        raise ValueError(f"Unsupported URL format: {s3_url}")

    if not source_key:
        raise ValueError("No file key found in URL")
    return bucket_name, source_key


def get_s3_file(s3_url: str) -> bytes:
    """
    Get file bytes from S3 storage using various URL formats.

    Args:
        s3_url: S3 URL (presigned URL or s3:// format)

    Returns:
        bytes: Binary content of the S3 object
    """
    bucket_name, source_key = parse_s3_url(s3_url)
    try:
        s3_client = get_s3_client()
        s3_response = s3_client.get_object(Bucket=bucket_name, Key=source_key)
        binary_data = s3_response['Body'].read()
        logger.info(f"Retrieved {len(binary_data)} bytes from {source_key}")
        return binary_data
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Failed to get S3 file {s3_url}: {e}")
        raise
