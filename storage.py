"""
S3 object store for finished archives.

put_stream() is the only operation the workers need: it streams a readable
binary file to `s3://<bucket>/<key>` and returns how many bytes were read from
it. The upload is all-or-nothing from the caller's point of view: any failure
(including the multipart finalize step) raises UploadError and no byte count
is reported.
"""

from __future__ import annotations

from typing import BinaryIO, Optional

import logging

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from consumer import UploadError
from settings import Settings

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/gzip"

class CountingReader:
  """ Wraps a binary stream and counts the bytes handed out by read() """

  def __init__(self, stream: BinaryIO):
    self.stream = stream
    self.bytes_read = 0

  def read(self, size: int = -1) -> bytes:
    chunk = self.stream.read(size)
    self.bytes_read += len(chunk)
    return chunk

def create_s3_client(settings: Settings, max_pool_connections: Optional[int] = None):
  """ One client shared by every worker thread; boto3 clients are thread safe """
  session = boto3.Session(
    aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
    aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
    region_name=settings.AWS_REGION or None,
  )
  return session.client(
    "s3",
    endpoint_url=settings.S3_ENDPOINT_URL or None,
    config=Config(
      max_pool_connections=max_pool_connections or settings.WORKERS,
      # a failed upload fails the job; no silent retries
      retries={"total_max_attempts": 1},
    ),
  )

class S3ObjectStore:
  def __init__(self, client, bucket: str):
    self.client = client
    self.bucket = bucket

  def put_stream(self, key: str, stream: BinaryIO) -> int:
    reader = CountingReader(stream)
    try:
      self.client.upload_fileobj(
        reader,
        self.bucket,
        key,
        ExtraArgs={"ContentType": ARCHIVE_CONTENT_TYPE},
      )
    except (BotoCoreError, ClientError, S3UploadFailedError) as e:
      raise UploadError(f"Upload to s3://{self.bucket}/{key} failed: {e}") from e
    except OSError as e:
      raise UploadError(f"Reading archive for s3://{self.bucket}/{key} failed: {e}") from e

    logger.debug("Stored s3://%s/%s (%s bytes)", self.bucket, key, reader.bytes_read)
    return reader.bytes_read
