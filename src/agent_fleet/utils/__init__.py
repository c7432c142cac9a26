"""Shared utility functions for agent fleet."""

from .atomic_io import atomic_write_json, atomic_write_model
from .error_handling import log_and_ignore, log_and_reraise
