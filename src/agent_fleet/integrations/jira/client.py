"""JIRA as the external tracker."""

import logging
from typing import Callable, List, Optional, TypeVar

from jira import JIRA, JIRAError
from jira.resources import Issue

from ...core.config import JIRAConfig
from ...errors import TrackerUnavailable
from ..tracker import IssueState, merge_labels

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JiraIssueTracker:
    """JIRA API client for ticket operations."""

    def __init__(self, config: JIRAConfig, client: Optional[JIRA] = None):
        self.config = config
        self._jira = client

    @property
    def jira(self) -> JIRA:
        if self._jira is None:
            self._jira = self._guard(lambda: JIRA(
                server=self.config.server,
                basic_auth=(self.config.email, self.config.api_token),
            ))
        return self._jira

    def _guard(self, call: Callable[[], T]) -> T:
        try:
            return call()
        except JIRAError as e:
            if e.status_code is None or e.status_code >= 500 or e.status_code == 429:
                raise TrackerUnavailable(f"JIRA returned {e.status_code}: {e.text}", e) from e
            raise
        except OSError as e:
            raise TrackerUnavailable(f"JIRA unreachable: {e}", e) from e

    def _issue(self, ref: str) -> Issue:
        return self._guard(lambda: self.jira.issue(ref))

    def create_issue(self, title: str, body: str) -> str:
        fields = {
            "project": {"key": self.config.project},
            "summary": title,
            "description": body,
            "issuetype": {"name": self.config.issue_type},
        }
        if self.config.labels:
            fields["labels"] = list(self.config.labels)
        issue = self._guard(lambda: self.jira.create_issue(fields=fields))
        logger.info(f"Created JIRA ticket {issue.key}: {title}")
        return issue.key

    def update_issue(self, ref: str, state: IssueState, labels: List[str]) -> None:
        issue = self._issue(ref)
        current = list(issue.fields.labels or [])
        self._guard(lambda: issue.update(fields={"labels": merge_labels(current, labels)}))

        if _state_of(issue) == IssueState(state):
            return
        transition = "done" if IssueState(state) == IssueState.CLOSED else "reopen"
        transition_id = self.config.transitions.get(transition)
        if not transition_id:
            raise ValueError(f"No JIRA transition configured for '{transition}'")
        self._guard(lambda: self.jira.transition_issue(issue, transition_id))

    def add_comment(self, ref: str, body: str) -> None:
        self._guard(lambda: self.jira.add_comment(ref, body))

    def get_issue(self, ref: str) -> IssueState:
        return _state_of(self._issue(ref))


def _state_of(issue: Issue) -> IssueState:
    category = issue.fields.status.statusCategory.key
    return IssueState.CLOSED if category == "done" else IssueState.OPEN
