"""Copies run logs to S3."""

import os
from typing import List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from rdsupgrader.errors import ProviderCallError


class LogShippingService:
    """Uploads a local log directory to an S3 bucket, keeping relative paths."""

    def __init__(self, s3_client, logger):
        self.client = s3_client
        self.logger = logger

    @staticmethod
    def split_destination(destination: str) -> Tuple[str, str]:
        """Split ``bucket`` or ``bucket/prefix`` (optionally ``s3://``-prefixed)."""
        clean = destination.strip()
        if clean.startswith("s3://"):
            clean = clean[len("s3://"):]
        bucket, _, prefix = clean.partition("/")
        return bucket, prefix.strip("/")

    @staticmethod
    def join_key(*parts: Optional[str]) -> str:
        return "/".join(part.strip("/") for part in parts if part and part.strip("/"))

    def upload_directory(self, local_dir: str, destination: str, prefix: Optional[str] = None) -> str:
        bucket, base_prefix = self.split_destination(destination)
        key_prefix = self.join_key(base_prefix, prefix)
        uploaded: List[str] = []

        for current_root, _dirs, files in os.walk(local_dir):
            for file_name in sorted(files):
                path = os.path.join(current_root, file_name)
                relative = os.path.relpath(path, local_dir).replace(os.sep, "/")
                key = self.join_key(key_prefix, relative)
                try:
                    self.client.upload_file(path, bucket, key)
                except (ClientError, BotoCoreError) as exc:
                    raise ProviderCallError(
                        f"Could not upload {path} to s3://{bucket}/{key}: {exc}",
                        operation="upload_file",
                    ) from exc
                uploaded.append(key)

        location = f"s3://{self.join_key(bucket, key_prefix)}/"
        self.logger.info("Uploaded %s log file(s) to %s", len(uploaded), location)
        return location
