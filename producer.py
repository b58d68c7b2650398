"""

What does this module do?

- Walks GitHub's paginated `GET /orgs/{org}/repos` listing from the first page until no `next` link is returned
- Turns every listed repository into an immutable RepositoryDescriptor tagged with the run's snapshot timestamp
- Pushes descriptors onto the shared work queue in page order, as soon as each page arrives
- Fails fast: the first page that errors aborts the listing (the caller decides what that means for the run)
- Logs progress in a readable way (without leaking the token)

"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, TYPE_CHECKING
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import logging

import requests

if TYPE_CHECKING:
  from consumer import WorkQueue

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "%Y%m%d%H%M%S"
CLONE_PROTOCOLS = ("ssh", "https")

# ----------------------------------------------------------------------------
# HELPERS
# ----------------------------------------------------------------------------

def format_duration(seconds: float) -> str:
  if seconds < 60:
    return f"{seconds:.2f}s"
  if seconds < 3600:
    m = seconds / 60
    return f"{m:.2f}m"
  h = seconds / 3600
  return f"{h:.2f}h"

def now_utc() -> datetime:
  return datetime.now(timezone.utc)

def snapshot_timestamp(now: Optional[datetime] = None) -> str:
  """ Sortable, second-granularity identifier shared by every archive of one run """
  return (now or now_utc()).strftime(SNAPSHOT_FORMAT)

# ----------------------------------------------------------------------------
# GITHUB: REST client
# ----------------------------------------------------------------------------

class GitHubError(RuntimeError):
  pass

class GitHubClient:
  def __init__(self, token: Optional[str], api_url: str, timeout: float, session: Optional[requests.Session] = None):
    self.session = session or requests.Session()
    self.session.headers.update({
      "Accept": "application/vnd.github+json",
      "User-Agent": "github-org-archiver/1.0",
    })
    if token:
      self.session.headers["Authorization"] = f"Bearer {token}"
    self.api_url = api_url.rstrip("/")
    self.timeout = timeout

  def list_org_repositories(self, org: str, page: int, per_page: int) -> tuple[list[dict], Optional[int]]:
    """ Fetches one page of the organization's repositories.
        Returns (entries, next_page); next_page is None on the last page.
        Throws GitHubError on HTTP/payload errors."""

    url = f"{self.api_url}/orgs/{org}/repos"
    try:
      resp = self.session.get(
        url,
        params={"page": page, "per_page": per_page},
        timeout=self.timeout,
      )
    except requests.RequestException as e:
      raise GitHubError(f"Network error: {e}") from e

    if resp.status_code == 401:
      raise GitHubError("Unauthorized (401): invalid or expired token")

    if resp.status_code == 403:
      raise GitHubError("Forbidden (403): token lacks access or rate limit exceeded")

    if resp.status_code == 404:
      raise GitHubError(f"Organization not found (404): {org}")

    if resp.status_code >= 400:
      raise GitHubError(f"HTTP {resp.status_code}: {resp.text[:500]}")

    try:
      payload = resp.json()
    except ValueError as e:
      raise GitHubError(f"Invalid JSON: {e}") from e

    if not isinstance(payload, list):
      raise GitHubError(f"Unexpected payload for page {page}: expected a list, got {type(payload).__name__}")

    return payload, _next_page(resp)

  def validate_token(self, ratelimit_url: str) -> None:
    try:
      r = self.session.get(ratelimit_url, timeout=self.timeout)
    except requests.RequestException as e:
      raise GitHubError(f"Cannot reach GitHub API: {e}") from e

    if r.status_code == 401:
      raise GitHubError("Invalid or expired GitHub token (401)")

    if r.status_code >= 400:
      raise GitHubError(f"GitHub rate_limit error {r.status_code}: {r.text}")

    try:
      data = r.json()
    except ValueError as e:
      raise GitHubError(f"Invalid JSON: {e}") from e
    rem = data.get("resources", {}).get("core", {}).get("remaining")
    reset = data.get("resources", {}).get("core", {}).get("reset")
    logger.info("GitHub token OK: remaining=%s, reset_unix=%s", rem, reset)

def _next_page(resp: requests.Response) -> Optional[int]:
  link = (resp.links or {}).get("next")
  if not link:
    return None
  pages = parse_qs(urlparse(link.get("url", "")).query).get("page")
  if not pages:
    raise GitHubError(f"Malformed next link: {link.get('url')!r}")
  try:
    return int(pages[0])
  except ValueError as e:
    raise GitHubError(f"Malformed next link: {link.get('url')!r}") from e

# ----------------------------------------------------------------------------
# DESCRIPTORS
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class RepositoryDescriptor:
  snapshot_timestamp: str
  owner: str
  name: str
  clone_url: str

  @classmethod
  def from_api(cls, entry: dict, snapshot_timestamp: str, protocol: str = "ssh") -> RepositoryDescriptor:
    url_field = "ssh_url" if protocol == "ssh" else "clone_url"
    try:
      return cls(
        snapshot_timestamp=snapshot_timestamp,
        owner=entry["owner"]["login"],
        name=entry["name"],
        clone_url=entry[url_field],
      )
    except (KeyError, TypeError) as e:
      raise GitHubError(f"Malformed repository entry (missing {e})") from e

  @property
  def full_name(self) -> str:
    return f"{self.owner}/{self.name}"

  @property
  def slug(self) -> str:
    return f"{self.owner}-{self.name}-{self.snapshot_timestamp}"

# ----------------------------------------------------------------------------
# ENUMERATION
# ----------------------------------------------------------------------------

def iter_repositories(
  client: GitHubClient,
  org: str,
  snapshot_timestamp: str,
  per_page: int = 30,
  protocol: str = "ssh",
) -> Iterator[RepositoryDescriptor]:
  """ Lazily yields every repository of `org`, page by page.
  - Page order and order within a page are preserved
  - A failing page raises GitHubError; nothing after it is yielded
  """

  if protocol not in CLONE_PROTOCOLS:
    raise ValueError(f"Unknown clone protocol: {protocol}")

  page: Optional[int] = 1
  while page is not None:
    entries, next_page = client.list_org_repositories(org, page, per_page)
    logger.info("Listed org=%s page=%s repositories=%s has_next=%s", org, page, len(entries), next_page is not None)
    for entry in entries:
      yield RepositoryDescriptor.from_api(entry, snapshot_timestamp, protocol)
    page = next_page

def publish_repositories(
  client: GitHubClient,
  org: str,
  snapshot_timestamp: str,
  work_queue: WorkQueue,
  per_page: int = 30,
  protocol: str = "ssh",
) -> int:
  """ Feeds the work queue; returns how many repositories were published.
  The queue is left open; closing it is the coordinator's job, on success and on failure alike.
  """
  published = 0
  for repo in iter_repositories(client, org, snapshot_timestamp, per_page, protocol):
    work_queue.put(repo)
    published += 1
    logger.debug("Enqueued %s", repo.full_name)
  logger.info("Enumeration of org=%s complete: %s repositories", org, published)
  return published
