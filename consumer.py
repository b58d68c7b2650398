"""
Repository archive consumer with:
- a fixed pool of worker threads draining one shared work queue
- one isolated temporary workspace per job, removed on every exit path
- `git clone` and `tar czf` run as subprocesses, combined output kept for diagnostics
- streamed upload of the finished tarball to the object store
- per-job failure isolation: a failed job is reported and the worker moves on
- run-fatal abort when a workspace cannot be removed

Object keys:
  {snapshot}/{owner}/{name}-{snapshot}.tar.gz
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from producer import RepositoryDescriptor

logger = logging.getLogger(__name__)

# Blocking queue calls wake up this often to notice an aborted run
QUEUE_POLL_TIMEOUT_S = 0.5

# How much of a failing tool's output ends up in the error message
DIAGNOSTIC_TAIL_CHARS = 2000

WORKSPACE_PREFIX = "gh-archive-"

# -------------------- Errors --------------------

class ArchiveJobError(RuntimeError):
  """ A single job failed; reported, never fatal for the run """

class WorkspaceError(ArchiveJobError):
  pass

class CloneError(ArchiveJobError):
  pass

class CompressError(ArchiveJobError):
  pass

class UploadError(ArchiveJobError):
  pass

class WorkspaceCleanupError(RuntimeError):
  """ A workspace could not be removed; aborts the whole run """

class RunAborted(RuntimeError):
  pass

# -------------------- Workspace --------------------

@contextmanager
def workspace(root: Optional[str] = None) -> Iterator[Path]:
  try:
    path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))
  except OSError as e:
    raise WorkspaceError(f"Cannot create workspace: {e}") from e

  try:
    yield path
  finally:
    release_workspace(path)

def release_workspace(path: Path) -> None:
  try:
    shutil.rmtree(path)
  except OSError as e:
    raise WorkspaceCleanupError(f"Cannot remove workspace {path}: {e}") from e

# -------------------- External tools --------------------

def run_command(args: Sequence[str], error_type: type[ArchiveJobError], cwd: Optional[Path] = None, env: Optional[dict] = None) -> str:
  """ Runs a tool to completion and returns its combined stdout/stderr.
      Raises `error_type` when the tool is missing or exits non-zero."""
  try:
    result = subprocess.run(
      list(args),
      cwd=cwd,
      env=env,
      stdout=subprocess.PIPE,
      stderr=subprocess.STDOUT,
      text=True,
      # tools may print paths in any encoding
      errors="replace",
    )
  except OSError as e:
    raise error_type(f"{args[0]} could not be started: {e}") from e

  output = result.stdout or ""
  if result.returncode != 0:
    raise error_type(
      f"{args[0]} exited with status {result.returncode}: {output.strip()[-DIAGNOSTIC_TAIL_CHARS:]}"
    )
  return output

class GitCloner:
  def __init__(self, git: str = "git"):
    self.git = git

  def clone(self, url: str, destination: Path) -> None:
    # Fail instead of waiting on a credential prompt nobody will answer
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    run_command(
      [self.git, "clone", "--quiet", url, str(destination)],
      CloneError,
      cwd=destination.parent,
      env=env,
    )

class TarArchiver:
  def __init__(self, tar: str = "tar"):
    self.tar = tar

  def compress(self, source: Path, archive: Path) -> None:
    run_command(
      [self.tar, "czf", str(archive), "-C", str(source.parent), source.name],
      CompressError,
      cwd=source.parent,
    )

# -------------------- Archive job --------------------

def archive_filename(repo: RepositoryDescriptor) -> str:
  return f"{repo.slug}.tar.gz"

def archive_key(repo: RepositoryDescriptor) -> str:
  return f"{repo.snapshot_timestamp}/{repo.owner}/{repo.name}-{repo.snapshot_timestamp}.tar.gz"

@dataclass(frozen=True)
class JobOutcome:
  descriptor: RepositoryDescriptor
  bytes_uploaded: int = 0
  error: Optional[BaseException] = None

  @property
  def ok(self) -> bool:
    return self.error is None

class ArchiveJob:
  """ clone -> compress -> upload for one repository, inside a private workspace.

  The collaborators are anything with the right method:
    cloner.clone(url, destination)
    compressor.compress(source_dir, archive_path)
    store.put_stream(key, binary_stream) -> bytes written
  """

  def __init__(self, cloner, compressor, store, workspace_root: Optional[str] = None):
    self.cloner = cloner
    self.compressor = compressor
    self.store = store
    self.workspace_root = workspace_root

  def run(self, repo: RepositoryDescriptor) -> int:
    with workspace(self.workspace_root) as tmp:
      clone_dir = tmp / repo.slug
      self.cloner.clone(repo.clone_url, clone_dir)

      archive = tmp / archive_filename(repo)
      self.compressor.compress(clone_dir, archive)

      key = archive_key(repo)
      try:
        with archive.open("rb") as fh:
          return self.store.put_stream(key, fh)
      except OSError as e:
        raise UploadError(f"Cannot read archive {archive.name}: {e}") from e

  def __call__(self, repo: RepositoryDescriptor) -> JobOutcome:
    try:
      n = self.run(repo)
    except ArchiveJobError as e:
      return JobOutcome(repo, 0, e)
    return JobOutcome(repo, n)

# -------------------- Queue --------------------

_CLOSED = object()

class WorkQueue:
  """ One producer, many consumers, with a close-and-drain signal.

  close() appends an end marker; every consumer that reaches it puts it back
  for the next one, so all of them see the end after the remaining items.
  """

  def __init__(self, maxsize: int = 0):
    self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
    self._aborted = threading.Event()

  @property
  def aborted(self) -> bool:
    return self._aborted.is_set()

  def abort(self) -> None:
    self._aborted.set()

  def put(self, item: RepositoryDescriptor) -> None:
    self._put(item)

  def close(self) -> None:
    try:
      self._put(_CLOSED)
    except RunAborted:
      # consumers already stop on abort without seeing the end marker
      return

  def _put(self, item) -> None:
    while True:
      if self.aborted:
        raise RunAborted("Run aborted; no more work is accepted")
      try:
        self._queue.put(item, timeout=QUEUE_POLL_TIMEOUT_S)
        return
      except queue.Full:
        continue

  def get(self) -> Optional[RepositoryDescriptor]:
    while True:
      if self.aborted:
        return None
      try:
        item = self._queue.get(timeout=QUEUE_POLL_TIMEOUT_S)
      except queue.Empty:
        continue
      if item is _CLOSED:
        # the slot we just freed guarantees room for it
        self._queue.put(_CLOSED)
        return None
      return item

# -------------------- Worker pool --------------------

def report_outcome(outcome: JobOutcome) -> None:
  repo = outcome.descriptor
  if outcome.ok:
    logger.info("Successfully uploaded %s (%d bytes)", repo.clone_url, outcome.bytes_uploaded)
  else:
    logger.error("Error while archiving %s: %s", repo.clone_url, outcome.error)

class WorkerPool:
  def __init__(
    self,
    work_queue: WorkQueue,
    job: Callable[[RepositoryDescriptor], JobOutcome],
    size: int = 50,
    report: Callable[[JobOutcome], None] = report_outcome,
  ):
    if size < 1:
      raise ValueError("Worker pool needs at least one worker")
    self.work_queue = work_queue
    self.job = job
    self.size = size
    self.report = report
    self._threads: list[threading.Thread] = []
    self._fatal_error: Optional[WorkspaceCleanupError] = None
    self._lock = threading.Lock()

  @property
  def fatal_error(self) -> Optional[WorkspaceCleanupError]:
    return self._fatal_error

  def start(self) -> None:
    if self._threads:
      raise RuntimeError("Worker pool already started")
    for i in range(self.size):
      t = threading.Thread(target=self._worker, name=f"archive-worker-{i}", daemon=True)
      self._threads.append(t)
      t.start()
    logger.info("Started %s archive workers", self.size)

  def join(self) -> None:
    for t in self._threads:
      t.join()

  def raise_if_aborted(self) -> None:
    if self._fatal_error is not None:
      raise self._fatal_error

  def _abort(self, error: WorkspaceCleanupError) -> None:
    with self._lock:
      if self._fatal_error is None:
        self._fatal_error = error
    self.work_queue.abort()

  def _worker(self) -> None:
    while True:
      repo = self.work_queue.get()
      if repo is None:
        return

      try:
        outcome = self.job(repo)
      except WorkspaceCleanupError as e:
        logger.critical("Workspace cleanup failed for %s: %s. Aborting run.", repo.full_name, e)
        self._abort(e)
        return
      except Exception as e:
        logger.exception("Unexpected error for repository=%s", repo.full_name)
        outcome = JobOutcome(repo, 0, e)

      self.report(outcome)
