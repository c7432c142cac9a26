"""Shared fixtures for unit tests."""

import logging

import pytest

from agent_fleet.core.assignment import AgentAssignmentManager
from agent_fleet.core.config import clear_config_cache
from agent_fleet.core.context import OrchestrationContext
from agent_fleet.core.scheduler import DependencyScheduler
from agent_fleet.utils.rich_logging import PACKAGE_LOGGER


@pytest.fixture
def ctx():
    return OrchestrationContext()


@pytest.fixture
def scheduler(ctx):
    return DependencyScheduler(ctx)


@pytest.fixture
def assignments(ctx, scheduler):
    return AgentAssignmentManager(ctx, scheduler, agent_timeout_seconds=60)


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """CLI commands install handlers on the package logger; undo that for caplog."""
    yield
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
