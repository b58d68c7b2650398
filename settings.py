"""
Runtime configuration and logging for the organization archiver.

Every value can be set from the environment; the command line in archiver.py
overrides the organization, bucket and tuning knobs for a single run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import logging
import os
import sys
import time

@dataclass
class Settings:
  # GitHub API
  GITHUB_TOKEN: Optional[str] = os.getenv("GITHUB_TOKEN")
  GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
  GITHUB_RATELIMIT_URL: str = os.getenv("GITHUB_RATE_LIMIT_ENDPOINT", "https://api.github.com/rate_limit")
  REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))
  PER_PAGE: int = int(os.getenv("GITHUB_PER_PAGE", "30"))
  CHECK_TOKEN: bool = os.getenv("CHECK_TOKEN", "1") == "1"

  # What to archive and where to
  ORGANIZATION: Optional[str] = os.getenv("GITHUB_ORG")
  BUCKET: Optional[str] = os.getenv("ARCHIVE_BUCKET")
  CLONE_PROTOCOL: str = os.getenv("CLONE_PROTOCOL", "ssh")

  # S3 (falls back to the boto3 credential chain when the keys are unset)
  AWS_ACCESS_KEY_ID: Optional[str] = os.getenv("AWS_ACCESS_KEY_ID")
  AWS_SECRET_ACCESS_KEY: Optional[str] = os.getenv("AWS_SECRET_ACCESS_KEY")
  AWS_REGION: Optional[str] = os.getenv("AWS_REGION")
  S3_ENDPOINT_URL: Optional[str] = os.getenv("S3_ENDPOINT_URL")

  # Worker pool
  WORKERS: int = int(os.getenv("ARCHIVE_WORKERS", "50"))
  QUEUE_SIZE: int = int(os.getenv("ARCHIVE_QUEUE_SIZE", "100"))
  WORKSPACE_ROOT: Optional[str] = os.getenv("ARCHIVE_WORKSPACE_ROOT")

  LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

  def missing(self) -> list[str]:
    """ Names of the required values that are not set """
    required = {
      "GITHUB_TOKEN": self.GITHUB_TOKEN,
      "ORGANIZATION": self.ORGANIZATION,
      "BUCKET": self.BUCKET,
    }
    return [name for name, value in required.items() if not value]

SETTINGS = Settings()

# ----------------------------------------------------------------------------
# LOGS
# ----------------------------------------------------------------------------

def setup_logging(level_name: str = SETTINGS.LOG_LEVEL) -> None:
  level = getattr(logging, level_name.upper(), logging.INFO)
  logging.basicConfig(
    level=level,
    format="%(asctime)sZ | %(levelname)-8s | %(threadName)s | %(message)s",
    stream=sys.stdout,
  )

  logging.Formatter.converter = time.gmtime
