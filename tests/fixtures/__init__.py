"""
Test fixtures for tasker.

Provides fake clocks, fake processes and registry seed helpers.
"""

from .registry_fixtures import (
    FakeClock,
    FakeProcess,
    FakeProcessTable,
    RegistryFixtures,
)

__all__ = [
    "FakeClock",
    "FakeProcess",
    "FakeProcessTable",
    "RegistryFixtures",
]
