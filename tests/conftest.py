"""
Pytest configuration and shared fakes.

The fakes stand in for the four external collaborators: the GitHub listing
API (through a fake requests session), `git clone`, `tar` and S3.
"""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from consumer import CloneError, CompressError, UploadError
from producer import GitHubClient


FIXED_NOW = datetime(2024, 3, 9, 14, 5, 7, tzinfo=timezone.utc)
FIXED_SNAPSHOT = "20240309140507"


def repo_entry(owner: str, name: str) -> dict:
  return {
    "name": name,
    "full_name": f"{owner}/{name}",
    "owner": {"login": owner, "type": "Organization"},
    "ssh_url": f"git@github.com:{owner}/{name}.git",
    "clone_url": f"https://github.com/{owner}/{name}.git",
  }


class FakeResponse:
  def __init__(self, status_code: int = 200, payload=None, next_page: Optional[int] = None, json_error: bool = False):
    self.status_code = status_code
    self._payload = payload
    self._json_error = json_error
    self.text = "not json" if json_error else json.dumps(payload)
    self.links = {}
    if next_page is not None:
      self.links["next"] = {
        "url": f"https://api.github.com/organizations/1/repos?per_page=30&page={next_page}",
        "rel": "next",
      }

  def json(self):
    if self._json_error:
      raise ValueError("Expecting value: line 1 column 1 (char 0)")
    return self._payload


class FakeSession:
  """Replays canned responses (or raises canned exceptions) in order."""

  def __init__(self, responses):
    self.headers = {}
    self.responses = list(responses)
    self.calls = []

  def get(self, url, params=None, timeout=None):
    self.calls.append({"url": url, "params": params, "timeout": timeout})
    item = self.responses.pop(0)
    if isinstance(item, BaseException):
      raise item
    return item


def listing(owner: str, pages: list[list[str]]) -> FakeSession:
  """A session serving `pages` of repository names for one organization."""
  responses = []
  for i, names in enumerate(pages, start=1):
    next_page = i + 1 if i < len(pages) else None
    responses.append(FakeResponse(payload=[repo_entry(owner, n) for n in names], next_page=next_page))
  return FakeSession(responses)


class FakeCloner:
  def __init__(self, fail_for: Optional[set[str]] = None):
    self.fail_for = fail_for or set()
    self.calls = []
    self._lock = threading.Lock()

  def clone(self, url: str, destination: Path) -> None:
    with self._lock:
      self.calls.append((url, destination))
    if any(url.endswith(f"/{name}.git") for name in self.fail_for):
      raise CloneError(f"git exited with status 128: fatal: repository '{url}' not found")
    destination.mkdir()
    (destination / "README.md").write_text(f"# {destination.name}\n")


class FakeCompressor:
  def __init__(self, fail: bool = False, write: bool = True):
    self.fail = fail
    self.write = write
    self.calls = []
    self._lock = threading.Lock()

  def compress(self, source: Path, archive: Path) -> None:
    with self._lock:
      self.calls.append((source, archive))
    if self.fail:
      raise CompressError("tar exited with status 2: tar: Error is not recoverable")
    if self.write:
      archive.write_bytes(b"tarball:" + source.name.encode())


class FakeStore:
  def __init__(self, fail: bool = False):
    self.fail = fail
    self.objects: dict[str, bytes] = {}
    self._lock = threading.Lock()

  def put_stream(self, key: str, stream) -> int:
    data = stream.read()
    if self.fail:
      raise UploadError(f"Upload to s3://bucket/{key} failed: connection reset")
    with self._lock:
      self.objects[key] = data
    return len(data)


class FakeS3Client:
  """Just enough of a boto3 S3 client for S3ObjectStore."""

  def __init__(self, error: Optional[Exception] = None):
    self.error = error
    self.uploads = []
    self._lock = threading.Lock()

  def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
    if self.error is not None:
      raise self.error
    chunks = []
    while True:
      chunk = fileobj.read(4)
      if not chunk:
        break
      chunks.append(chunk)
    with self._lock:
      self.uploads.append({"bucket": bucket, "key": key, "body": b"".join(chunks), "extra": ExtraArgs})


class ConcurrencyProbe:
  """Wraps a job and records how many calls overlap."""

  def __init__(self, job, delay: float = 0.01):
    self.job = job
    self.delay = delay
    self.active = 0
    self.max_active = 0
    self.seen = []
    self.threads = set()
    self._lock = threading.Lock()

  def __call__(self, repo):
    with self._lock:
      self.active += 1
      self.max_active = max(self.max_active, self.active)
      self.seen.append(repo.name)
      self.threads.add(threading.current_thread().name)
    try:
      time.sleep(self.delay)
      return self.job(repo)
    finally:
      with self._lock:
        self.active -= 1


@pytest.fixture
def workspace_root(tmp_path) -> Path:
  root = tmp_path / "workspaces"
  root.mkdir()
  return root


@pytest.fixture
def fake_cloner() -> FakeCloner:
  return FakeCloner()


@pytest.fixture
def fake_compressor() -> FakeCompressor:
  return FakeCompressor()


@pytest.fixture
def fake_store() -> FakeStore:
  return FakeStore()


@pytest.fixture
def make_client():
  """Builds a GitHubClient around a FakeSession."""
  def _make(session: FakeSession, token: Optional[str] = "ghp_test") -> GitHubClient:
    return GitHubClient(token=token, api_url="https://api.github.com", timeout=5, session=session)
  return _make
