"""
Optional S3 publishing for converted documents.

When an S3 bucket is configured, completed outputs are uploaded and clients
receive a presigned URL instead of the local download route. Every function
here degrades to a no-op (returning False/None) when the bucket or
credentials are missing, so the pipeline keeps working without S3.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

logger = logging.getLogger(__name__)

# S3 client (lazy initialization)
_s3_client = None


def _get_s3_client():
    """
    Get or create the S3 client.

    Returns:
        boto3 S3 client or None if it could not be created

    Note:
        Credentials are not checked up front; credential errors surface during
        actual upload operations.
    """
    global _s3_client
    if _s3_client is None:
        try:
            _s3_client = boto3.client("s3")
        except (BotoCoreError, NoCredentialsError) as e:
            logger.warning(f"Failed to create S3 client: {e}")
            _s3_client = None
    return _s3_client


def output_key(job_id: str, filename: str) -> str:
    """S3 object key for a job's converted output."""
    return f"outputs/{job_id}/{filename}"


def upload_to_s3(file_path: Path, s3_key: str, bucket: str) -> bool:
    """
    Upload a converted file to S3.

    Args:
        file_path: Path to the local file
        s3_key: S3 object key (path within the bucket)
        bucket: Target bucket name; empty disables the upload

    Returns:
        True if upload was successful, False otherwise
    """
    if not bucket:
        logger.debug("S3 bucket not configured, skipping upload")
        return False

    client = _get_s3_client()
    if client is None:
        logger.warning("S3 client not available, skipping upload")
        return False

    try:
        logger.info(f"Uploading {file_path} to s3://{bucket}/{s3_key}")
        client.upload_file(str(file_path), bucket, s3_key)
        logger.info(f"Upload successful: s3://{bucket}/{s3_key}")
        return True
    except (ClientError, BotoCoreError, S3UploadFailedError) as e:
        logger.error(f"S3 upload failed: {e}")
        return False


def generate_presigned_url(s3_key: str, bucket: str, expiration: int = 3600, download_name: Optional[str] = None) -> Optional[str]:
    """
    Generate a presigned URL for downloading a file from S3.

    Args:
        s3_key: S3 object key (path within the bucket)
        bucket: Bucket holding the object
        expiration: URL expiration time in seconds (default: 3600 = 1 hour)
        download_name: Filename suggested to the browser

    Returns:
        Presigned URL string, or None if generation fails
    """
    if not bucket:
        return None

    client = _get_s3_client()
    if client is None:
        logger.warning("S3 client not available")
        return None

    params = {"Bucket": bucket, "Key": s3_key}
    if download_name:
        params["ResponseContentDisposition"] = f'attachment; filename="{download_name}"'

    try:
        url = client.generate_presigned_url("get_object", Params=params, ExpiresIn=expiration)
        logger.info(f"Generated presigned URL for {s3_key} (expires in {expiration}s)")
        return url
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Failed to generate presigned URL: {e}")
        return None


def is_s3_configured(bucket: str) -> bool:
    """
    Check if S3 publishing is configured and a client is available.

    Returns:
        True if a bucket is configured and a client could be created
    """
    return bool(bucket) and _get_s3_client() is not None


def publish_output(file_path: Path, job_id: str, filename: str, bucket: str, expiration: int = 3600) -> Optional[str]:
    """
    Upload ``file_path`` and return a presigned download URL.

    Returns:
        The URL, or None when S3 is not configured or any step failed
    """
    if not is_s3_configured(bucket):
        return None
    key = output_key(job_id, filename)
    if not upload_to_s3(file_path, key, bucket):
        return None
    return generate_presigned_url(key, bucket, expiration=expiration, download_name=filename)
