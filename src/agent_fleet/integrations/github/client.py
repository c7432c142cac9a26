"""GitHub issues as the external tracker."""

import logging
from typing import Callable, List, Optional, TypeVar

from github import Github, GithubException, RateLimitExceededException
from github.Issue import Issue
from github.Repository import Repository

from ...core.config import GitHubConfig
from ...errors import TrackerUnavailable
from ..tracker import IssueState, merge_labels

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server-side errors and rate limiting are worth retrying; other 4xx are not
_TRANSIENT_STATUSES = {429}


def _is_rate_limited(e: GithubException) -> bool:
    """A 403 is only transient when GitHub says the rate limit is spent."""
    if isinstance(e, RateLimitExceededException):
        return True
    if e.status != 403:
        return False
    headers = {k.lower(): v for k, v in (e.headers or {}).items()}
    return str(headers.get("x-ratelimit-remaining")) == "0"


class GitHubIssueTracker:
    """GitHub API client for issue operations."""

    def __init__(self, config: GitHubConfig, client: Optional[Github] = None):
        self.config = config
        self.gh = client or Github(config.token)
        self._repo: Optional[Repository] = None

    @property
    def repo(self) -> Repository:
        # Resolved lazily so constructing the tracker never touches the network
        if self._repo is None:
            self._repo = self._guard(lambda: self.gh.get_repo(f"{self.config.owner}/{self.config.repo}"))
        return self._repo

    def _guard(self, call: Callable[[], T]) -> T:
        try:
            return call()
        except GithubException as e:
            if e.status is None or e.status >= 500 or e.status in _TRANSIENT_STATUSES or _is_rate_limited(e):
                raise TrackerUnavailable(f"GitHub returned {e.status}: {e.data}", e) from e
            raise
        except OSError as e:
            # requests' connection and timeout errors derive from OSError
            raise TrackerUnavailable(f"GitHub unreachable: {e}", e) from e

    def _issue(self, ref: str) -> Issue:
        return self._guard(lambda: self.repo.get_issue(int(ref)))

    def create_issue(self, title: str, body: str) -> str:
        issue = self._guard(lambda: self.repo.create_issue(
            title=title,
            body=body,
            labels=list(self.config.labels),
        ))
        logger.info(f"Created GitHub issue #{issue.number}: {title}")
        return str(issue.number)

    def update_issue(self, ref: str, state: IssueState, labels: List[str]) -> None:
        issue = self._issue(ref)
        current = [label.name for label in issue.labels]
        self._guard(lambda: issue.edit(
            state=IssueState(state).value,
            labels=merge_labels(current, labels),
        ))

    def add_comment(self, ref: str, body: str) -> None:
        issue = self._issue(ref)
        self._guard(lambda: issue.create_comment(body))

    def get_issue(self, ref: str) -> IssueState:
        return IssueState(self._issue(ref).state)
