"""Issue tracker boundary.

The core reaches the remote tracker only through four operations. Adapters
raise ``TrackerUnavailable`` for transient transport failures so the
synchronizer can retry them; any other exception is treated as permanent.
"""

import itertools
import logging
import threading
from enum import Enum
from typing import Dict, List, Optional, Protocol

from ..errors import TrackerUnavailable

logger = logging.getLogger(__name__)

# Label prefixes owned by the synchronizer; other labels on an issue are kept
MANAGED_LABEL_PREFIXES = ("status:", "persona:", "priority:")


class IssueState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class IssueTracker(Protocol):
    def create_issue(self, title: str, body: str) -> str:
        ...

    def update_issue(self, ref: str, state: IssueState, labels: List[str]) -> None:
        ...

    def add_comment(self, ref: str, body: str) -> None:
        ...

    def get_issue(self, ref: str) -> IssueState:
        ...


def merge_labels(existing: List[str], managed: List[str]) -> List[str]:
    """Replace the synchronizer's labels, keep everyone else's."""
    kept = [label for label in existing if not label.startswith(MANAGED_LABEL_PREFIXES)]
    return kept + [label for label in managed if label not in kept]


class MemoryIssueTracker:
    """In-process tracker for local runs and dry runs.

    ``available`` can be flipped off to simulate an outage.
    """

    def __init__(self):
        self.issues: Dict[str, Dict] = {}
        self.comments: Dict[str, List[str]] = {}
        self.available = True
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _check(self) -> None:
        if not self.available:
            raise TrackerUnavailable("memory tracker is offline")

    def _issue(self, ref: str) -> Dict:
        try:
            return self.issues[ref]
        except KeyError:
            raise KeyError(f"No issue {ref}") from None

    def create_issue(self, title: str, body: str) -> str:
        self._check()
        with self._lock:
            ref = str(next(self._ids))
            self.issues[ref] = {"title": title, "body": body, "state": IssueState.OPEN, "labels": []}
            self.comments[ref] = []
        return ref

    def update_issue(self, ref: str, state: IssueState, labels: List[str]) -> None:
        self._check()
        with self._lock:
            issue = self._issue(ref)
            issue["state"] = IssueState(state)
            issue["labels"] = merge_labels(issue["labels"], labels)

    def add_comment(self, ref: str, body: str) -> None:
        self._check()
        with self._lock:
            self._issue(ref)
            self.comments[ref].append(body)

    def get_issue(self, ref: str) -> IssueState:
        self._check()
        return self._issue(ref)["state"]


def build_tracker(config) -> IssueTracker:
    """Create the tracker adapter named by ``TrackerConfig.provider``."""
    if config.provider == "github":
        from .github.client import GitHubIssueTracker
        return GitHubIssueTracker(config.github)
    if config.provider == "jira":
        from .jira.client import JiraIssueTracker
        return JiraIssueTracker(config.jira)
    if config.provider == "memory":
        return MemoryIssueTracker()
    raise ValueError(f"Unknown tracker provider: {config.provider}")


def describe(tracker: Optional[IssueTracker]) -> str:
    return type(tracker).__name__ if tracker is not None else "none"
