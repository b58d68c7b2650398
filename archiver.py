"""
Archive every repository of a GitHub organization to S3.

Wires the pieces together for one run:
  producer.py  - lists the organization's repositories page by page
  consumer.py  - worker pool: clone, tar, upload, clean up
  storage.py   - S3 streaming upload

Environment variables (see settings.py for the full list):
  GITHUB_TOKEN             (required)
  GITHUB_ORG               (or --org)
  ARCHIVE_BUCKET           (or --bucket)
  AWS_ACCESS_KEY_ID        (optional, boto3 credential chain otherwise)
  AWS_SECRET_ACCESS_KEY    (optional)
  ARCHIVE_WORKERS          (default: 50)
  LOG_LEVEL                (default: INFO)

Usage:
  github-archive --org acme --bucket acme-github-archive
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from consumer import (
  ArchiveJob,
  GitCloner,
  JobOutcome,
  TarArchiver,
  WorkerPool,
  WorkQueue,
  WorkspaceCleanupError,
  report_outcome,
)
from producer import (
  CLONE_PROTOCOLS,
  GitHubClient,
  GitHubError,
  RepositoryDescriptor,
  format_duration,
  publish_repositories,
  snapshot_timestamp,
)
from settings import SETTINGS, Settings, setup_logging
from storage import S3ObjectStore, create_s3_client

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_BAD_CONFIG = 2

# ----------------------------------------------------------------------------
# RUN
# ----------------------------------------------------------------------------

@dataclass
class Run:
  snapshot_timestamp: str
  organization: str
  bucket: str
  work_queue: WorkQueue

  @classmethod
  def create(cls, organization: str, bucket: str, queue_size: int = 0, now: Optional[datetime] = None) -> Run:
    return cls(
      snapshot_timestamp=snapshot_timestamp(now),
      organization=organization,
      bucket=bucket,
      work_queue=WorkQueue(maxsize=queue_size),
    )

def run_archive(
  run: Run,
  client: GitHubClient,
  job: Callable[[RepositoryDescriptor], JobOutcome],
  workers: int = 50,
  per_page: int = 30,
  protocol: str = "ssh",
  report: Callable[[JobOutcome], None] = report_outcome,
) -> int:
  """ Runs the whole pipeline and blocks until every queued job is done.

  Returns how many repositories were published. Raises the enumeration error
  (GitHubError) after the already-queued jobs have drained, or
  WorkspaceCleanupError if a worker could not clean up. Job failures are only
  reported, never raised. Any other interruption (Ctrl-C) aborts the queue so
  only in-flight jobs finish before it propagates.
  """
  start = time.time()
  logger.info("Archiving org=%s to bucket=%s snapshot=%s", run.organization, run.bucket, run.snapshot_timestamp)

  pool = WorkerPool(run.work_queue, job, size=workers, report=report)
  pool.start()

  try:
    published = publish_repositories(
      client,
      run.organization,
      run.snapshot_timestamp,
      run.work_queue,
      per_page=per_page,
      protocol=protocol,
    )
  except GitHubError:
    raise
  except BaseException:
    # interrupted: queued jobs are dropped, in-flight ones finish
    run.work_queue.abort()
    raise
  finally:
    run.work_queue.close()
    pool.join()
    pool.raise_if_aborted()

  logger.info("Run snapshot=%s finished: %s repositories in %s", run.snapshot_timestamp, published, format_duration(time.time() - start))
  return published

# ----------------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
  p = argparse.ArgumentParser(
    prog="github-archive",
    description="Archive every repository of a GitHub organization to S3",
  )
  p.add_argument("--org", help="Organization (default: $GITHUB_ORG)")
  p.add_argument("--bucket", help="Upload bucket (default: $ARCHIVE_BUCKET)")
  p.add_argument("--workers", type=int, help="Concurrent archive jobs (default: $ARCHIVE_WORKERS or 50)")
  p.add_argument("--per-page", type=int, help="Repositories per listing page (default: 30)")
  p.add_argument("--clone-protocol", choices=CLONE_PROTOCOLS, help="Clone over ssh or https (default: ssh)")
  p.add_argument("--workspace-root", help="Directory for temporary workspaces (default: system temp)")
  p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
  p.add_argument("--skip-token-check", action="store_true", help="Do not call /rate_limit before starting")
  return p

def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
  base = base or SETTINGS
  overrides = {
    "ORGANIZATION": args.org,
    "BUCKET": args.bucket,
    "WORKERS": args.workers,
    "PER_PAGE": args.per_page,
    "CLONE_PROTOCOL": args.clone_protocol,
    "WORKSPACE_ROOT": args.workspace_root,
    "LOG_LEVEL": args.log_level,
  }
  settings = dataclasses.replace(base, **{k: v for k, v in overrides.items() if v is not None})
  if args.skip_token_check:
    settings = dataclasses.replace(settings, CHECK_TOKEN=False)
  return settings

def main(argv: Optional[Sequence[str]] = None) -> int:
  args = build_parser().parse_args(argv)
  settings = settings_from_args(args)
  setup_logging(settings.LOG_LEVEL)

  missing = settings.missing()
  if missing:
    logger.error("Missing configuration: %s", ", ".join(missing))
    logger.error("Set GITHUB_TOKEN, GITHUB_ORG/--org and ARCHIVE_BUCKET/--bucket and try again.")
    return EXIT_BAD_CONFIG

  if settings.WORKERS < 1:
    logger.error("--workers must be at least 1 (got %s)", settings.WORKERS)
    return EXIT_BAD_CONFIG

  if settings.CLONE_PROTOCOL not in CLONE_PROTOCOLS:
    logger.error("Unknown clone protocol %r (expected one of %s)", settings.CLONE_PROTOCOL, ", ".join(CLONE_PROTOCOLS))
    return EXIT_BAD_CONFIG

  client = GitHubClient(
    token=settings.GITHUB_TOKEN,
    api_url=settings.GITHUB_API_URL,
    timeout=settings.REQUEST_TIMEOUT_SECONDS,
  )

  if settings.CHECK_TOKEN:
    try:
      client.validate_token(settings.GITHUB_RATELIMIT_URL)
    except GitHubError as e:
      logger.error("Token validation failed: %s", e)
      return EXIT_RUN_FAILED

  store = S3ObjectStore(create_s3_client(settings), settings.BUCKET)
  job = ArchiveJob(GitCloner(), TarArchiver(), store, workspace_root=settings.WORKSPACE_ROOT)
  run = Run.create(settings.ORGANIZATION, settings.BUCKET, queue_size=settings.QUEUE_SIZE)

  try:
    run_archive(
      run,
      client,
      job,
      workers=settings.WORKERS,
      per_page=settings.PER_PAGE,
      protocol=settings.CLONE_PROTOCOL,
    )
  except WorkspaceCleanupError as e:
    logger.critical("Run aborted: %s", e)
    return EXIT_RUN_FAILED
  except GitHubError as e:
    logger.error("Listing repositories of %s failed: %s", settings.ORGANIZATION, e)
    return EXIT_RUN_FAILED
  except KeyboardInterrupt:
    logger.info("Interrupted by user. Exiting...")
    return EXIT_RUN_FAILED

  return EXIT_OK

# ----------------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------------

if __name__ == "__main__":
  sys.exit(main())
