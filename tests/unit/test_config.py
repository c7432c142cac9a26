"""Tests for configuration and workflow loading."""

import os
from datetime import date

import pytest
from pydantic import ValidationError

from agent_fleet.core.config import (
    AgentDefinition,
    FleetConfig,
    TrackerConfig,
    WorkflowDefinition,
    _expand_env_vars,
    load_config,
    load_workflow,
)
from agent_fleet.core.task import Persona, TaskPriority, TaskStatus


WORKFLOW_YAML = """
id: checkout
description: Checkout feature
tasks:
  - id: design
    title: Design checkout
    persona: architect
  - id: build
    title: Build checkout
    persona: Developer
    priority: HIGH
    depends_on: [design]
  - id: ship
    title: Ship checkout
    persona: Release Manager
    depends_on: [build]
sprints:
  - id: s1
    name: Sprint 1
    start_date: 2026-01-05
    end_date: 2026-01-16
    task_ids: [design, build]
"""


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "checkout.yaml"
    path.write_text(WORKFLOW_YAML)
    return path


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert isinstance(config, FleetConfig)
        assert config.tracker.provider == "memory"
        assert config.sync.max_retries == 2

    def test_full_config(self, tmp_path):
        path = tmp_path / "fleet.yaml"
        path.write_text(
            "assignment:\n"
            "  agent_timeout_seconds: 900\n"
            "cache:\n"
            "  backend: memory\n"
            "sync:\n"
            "  max_retries: 5\n"
            "agents:\n"
            "  - id: dev\n"
            "    persona: developer\n"
            "    replicas: 3\n"
            "  - id: rm\n"
            "    persona: release_manager\n"
        )

        config = load_config(path)

        assert config.assignment.agent_timeout_seconds == 900
        assert config.cache.backend == "memory"
        assert config.sync.max_retries == 5
        assert config.agents[0].persona == Persona.DEVELOPER
        assert config.agents[0].agent_ids() == ["dev-1", "dev-2", "dev-3"]
        assert config.agents[1].persona == Persona.RELEASE_MANAGER
        assert config.agents[1].agent_ids() == ["rm"]

    def test_env_vars_are_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AF_TEST_TOKEN", "secret-token")
        path = tmp_path / "fleet.yaml"
        path.write_text(
            "tracker:\n"
            "  provider: github\n"
            "  github:\n"
            "    token: ${AF_TEST_TOKEN}\n"
            "    owner: acme\n"
            "    repo: shop\n"
        )

        config = load_config(path)

        assert config.tracker.github.token == "secret-token"

    def test_cached_until_file_changes(self, tmp_path):
        path = tmp_path / "fleet.yaml"
        path.write_text("sync:\n  max_retries: 1\n")
        first = load_config(path)
        assert load_config(path) is first

        path.write_text("sync:\n  max_retries: 2\n")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 5))

        assert load_config(path).sync.max_retries == 2

    def test_state_paths(self, tmp_path):
        config = FleetConfig(workspace=tmp_path)
        assert config.tasks_path == tmp_path / ".fleet" / "tasks"
        assert config.cache_path == tmp_path / ".fleet" / "cache"
        assert config.logs_path == tmp_path / ".fleet" / "logs"


class TestValidation:
    def test_tracker_section_required_for_provider(self):
        with pytest.raises(ValidationError, match="no 'jira' section"):
            TrackerConfig(provider="jira")

    def test_negative_timeout_rejected(self, tmp_path):
        path = tmp_path / "fleet.yaml"
        path.write_text("assignment:\n  agent_timeout_seconds: -5\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            FleetConfig(sync={"max_retries": -1})

    def test_unknown_persona_rejected(self):
        with pytest.raises(ValidationError):
            AgentDefinition(id="x", persona="wizard")

    def test_log_level_normalized(self):
        assert FleetConfig(logging={"level": "debug"}).logging.level == "DEBUG"


class TestExpandEnvVars:
    def test_nested(self, monkeypatch):
        monkeypatch.setenv("AF_TEST_OWNER", "acme")
        data = {"a": ["${AF_TEST_OWNER}", "plain"], "b": {"c": "${AF_TEST_OWNER}"}}
        assert _expand_env_vars(data) == {"a": ["acme", "plain"], "b": {"c": "acme"}}

    def test_unset_variable_is_kept_literally(self, monkeypatch):
        monkeypatch.delenv("AF_TEST_MISSING", raising=False)
        assert _expand_env_vars({"x": "${AF_TEST_MISSING}"}) == {"x": "${AF_TEST_MISSING}"}


class TestLoadWorkflow:
    def test_tasks_and_sprints(self, workflow_file):
        workflow = load_workflow(workflow_file)

        assert workflow.id == "checkout"
        tasks = workflow.to_tasks()
        assert [t.id for t in tasks] == ["design", "build", "ship"]
        assert all(t.status == TaskStatus.PENDING for t in tasks)
        assert all(t.workflow_id == "checkout" for t in tasks)
        assert tasks[1].priority == TaskPriority.HIGH
        assert tasks[1].depends_on == ["design"]
        assert tasks[2].persona == Persona.RELEASE_MANAGER

        sprints = workflow.to_sprints()
        assert sprints[0].start_date == date(2026, 1, 5)
        assert sprints[0].task_ids == ["design", "build"]

    def test_id_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "hotfix.yaml"
        path.write_text("tasks:\n  - id: fix\n    title: Fix it\n    persona: developer\n")
        assert load_workflow(path).id == "hotfix"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "missing.yaml")

    def test_duplicate_task_ids_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate task id"):
            WorkflowDefinition(
                id="wf",
                tasks=[
                    {"id": "a", "title": "A", "persona": "qa"},
                    {"id": "a", "title": "A again", "persona": "qa"},
                ],
            )

    def test_fresh_tasks_each_call(self, workflow_file):
        workflow = load_workflow(workflow_file)
        first = workflow.to_tasks()
        first[0].mark_ready()
        assert workflow.to_tasks()[0].status == TaskStatus.PENDING
