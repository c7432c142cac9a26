"""Tests for the GitHub and JIRA tracker adapters."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from github import GithubException, RateLimitExceededException
from jira import JIRAError

from agent_fleet.core.config import GitHubConfig, JIRAConfig, TrackerConfig
from agent_fleet.errors import TrackerUnavailable
from agent_fleet.integrations.github.client import GitHubIssueTracker
from agent_fleet.integrations.jira.client import JiraIssueTracker
from agent_fleet.integrations.tracker import IssueState, MemoryIssueTracker, build_tracker, describe


def _jira_issue(labels=None, category="new"):
    issue = MagicMock()
    issue.fields.labels = labels or []
    issue.fields.status.statusCategory.key = category
    return issue


@pytest.fixture
def gh():
    return MagicMock()


@pytest.fixture
def github_tracker(gh):
    return GitHubIssueTracker(GitHubConfig(token="t", owner="acme", repo="shop"), client=gh)


@pytest.fixture
def jira_client():
    return MagicMock()


@pytest.fixture
def jira_tracker(jira_client):
    config = JIRAConfig(
        server="https://acme.atlassian.net",
        email="bot@acme.io",
        api_token="token",
        project="FLEET",
        transitions={"done": "31", "reopen": "11"},
    )
    return JiraIssueTracker(config, client=jira_client)


class TestGitHubIssueTracker:
    def test_repo_resolved_lazily(self, github_tracker, gh):
        gh.get_repo.assert_not_called()
        github_tracker.repo
        github_tracker.repo
        gh.get_repo.assert_called_once_with("acme/shop")

    def test_create_issue(self, github_tracker, gh):
        repo = gh.get_repo.return_value
        repo.create_issue.return_value.number = 7

        ref = github_tracker.create_issue("[QA] Verify", "body")

        assert ref == "7"
        repo.create_issue.assert_called_once_with(title="[QA] Verify", body="body", labels=["agent-fleet"])

    def test_update_issue_keeps_foreign_labels(self, github_tracker, gh):
        issue = gh.get_repo.return_value.get_issue.return_value
        issue.labels = [SimpleNamespace(name="bug"), SimpleNamespace(name="status:ready")]

        github_tracker.update_issue("7", IssueState.CLOSED, ["status:completed"])

        gh.get_repo.return_value.get_issue.assert_called_once_with(7)
        issue.edit.assert_called_once_with(state="closed", labels=["bug", "status:completed"])

    def test_add_comment(self, github_tracker, gh):
        issue = gh.get_repo.return_value.get_issue.return_value

        github_tracker.add_comment("7", "Agent reasoning: use a queue")

        issue.create_comment.assert_called_once_with("Agent reasoning: use a queue")

    def test_get_issue_state(self, github_tracker, gh):
        gh.get_repo.return_value.get_issue.return_value.state = "closed"
        assert github_tracker.get_issue("7") == IssueState.CLOSED

    @pytest.mark.parametrize("status", [500, 502, 429])
    def test_transient_errors(self, github_tracker, gh, status):
        gh.get_repo.return_value.get_issue.side_effect = GithubException(status, {"message": "nope"})
        with pytest.raises(TrackerUnavailable):
            github_tracker.get_issue("7")

    def test_exhausted_rate_limit_is_transient(self, github_tracker, gh):
        gh.get_repo.return_value.get_issue.side_effect = GithubException(
            403, {"message": "API rate limit exceeded"}, {"X-RateLimit-Remaining": "0"},
        )
        with pytest.raises(TrackerUnavailable):
            github_tracker.get_issue("7")

    def test_rate_limit_exception_is_transient(self, github_tracker, gh):
        gh.get_repo.return_value.get_issue.side_effect = RateLimitExceededException(
            403, {"message": "API rate limit exceeded"}, None,
        )
        with pytest.raises(TrackerUnavailable):
            github_tracker.get_issue("7")

    def test_forbidden_is_permanent(self, github_tracker, gh):
        gh.get_repo.return_value.get_issue.side_effect = GithubException(
            403, {"message": "Resource not accessible by integration"}, {"X-RateLimit-Remaining": "4999"},
        )
        with pytest.raises(GithubException):
            github_tracker.get_issue("7")

    def test_connection_error_is_transient(self, github_tracker, gh):
        gh.get_repo.side_effect = ConnectionError("reset by peer")
        with pytest.raises(TrackerUnavailable, match="unreachable"):
            github_tracker.create_issue("t", "b")

    def test_not_found_is_permanent(self, github_tracker, gh):
        gh.get_repo.return_value.get_issue.side_effect = GithubException(404, {"message": "Not Found"})
        with pytest.raises(GithubException):
            github_tracker.get_issue("999")


class TestJiraIssueTracker:
    def test_create_issue(self, jira_tracker, jira_client):
        jira_client.create_issue.return_value.key = "FLEET-12"

        ref = jira_tracker.create_issue("[DEVELOPER] Build", "body")

        assert ref == "FLEET-12"
        fields = jira_client.create_issue.call_args.kwargs["fields"]
        assert fields["project"] == {"key": "FLEET"}
        assert fields["summary"] == "[DEVELOPER] Build"
        assert fields["issuetype"] == {"name": "Task"}
        assert fields["labels"] == ["agent-fleet"]

    def test_close_transitions_issue(self, jira_tracker, jira_client):
        issue = _jira_issue(labels=["team-a", "status:in_progress"])
        jira_client.issue.return_value = issue

        jira_tracker.update_issue("FLEET-12", IssueState.CLOSED, ["status:completed"])

        issue.update.assert_called_once_with(fields={"labels": ["team-a", "status:completed"]})
        jira_client.transition_issue.assert_called_once_with(issue, "31")

    def test_reopen(self, jira_tracker, jira_client):
        issue = _jira_issue(category="done")
        jira_client.issue.return_value = issue

        jira_tracker.update_issue("FLEET-12", IssueState.OPEN, ["status:ready"])

        jira_client.transition_issue.assert_called_once_with(issue, "11")

    def test_no_transition_when_state_matches(self, jira_tracker, jira_client):
        jira_client.issue.return_value = _jira_issue(category="indeterminate")

        jira_tracker.update_issue("FLEET-12", IssueState.OPEN, ["status:in_progress"])

        jira_client.transition_issue.assert_not_called()

    def test_missing_transition_is_permanent(self, jira_client):
        config = JIRAConfig(server="https://x", email="e", api_token="t", project="P")
        tracker = JiraIssueTracker(config, client=jira_client)
        jira_client.issue.return_value = _jira_issue()

        with pytest.raises(ValueError, match="No JIRA transition"):
            tracker.update_issue("P-1", IssueState.CLOSED, [])

    def test_get_issue_state(self, jira_tracker, jira_client):
        jira_client.issue.return_value = _jira_issue(category="done")
        assert jira_tracker.get_issue("FLEET-12") == IssueState.CLOSED

    def test_server_error_is_transient(self, jira_tracker, jira_client):
        jira_client.add_comment.side_effect = JIRAError(status_code=503, text="maintenance")
        with pytest.raises(TrackerUnavailable):
            jira_tracker.add_comment("FLEET-12", "hello")

    def test_client_error_is_permanent(self, jira_tracker, jira_client):
        jira_client.add_comment.side_effect = JIRAError(status_code=400, text="bad field")
        with pytest.raises(JIRAError):
            jira_tracker.add_comment("FLEET-12", "hello")


class TestBuildTracker:
    def test_memory(self):
        tracker = build_tracker(TrackerConfig(provider="memory"))
        assert isinstance(tracker, MemoryIssueTracker)
        assert describe(tracker) == "MemoryIssueTracker"
        assert describe(None) == "none"

    def test_github(self):
        config = TrackerConfig(provider="github", github={"token": "t", "owner": "o", "repo": "r"})
        assert isinstance(build_tracker(config), GitHubIssueTracker)

    def test_memory_tracker_outage(self):
        tracker = MemoryIssueTracker()
        ref = tracker.create_issue("t", "b")
        tracker.available = False
        with pytest.raises(TrackerUnavailable):
            tracker.add_comment(ref, "x")
        tracker.available = True
        tracker.add_comment(ref, "x")
        assert tracker.comments[ref] == ["x"]
