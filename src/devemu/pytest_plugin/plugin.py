"""
pytest plugin entry point (registered under the `pytest11` entry point group).
"""

from .fixtures import devemu_settings, emulator_session
from .options import pytest_addoption

__all__ = ["devemu_settings", "emulator_session", "pytest_addoption"]
