"""Test doubles for the deployment pipeline."""

from infracore.testing.fakes import (
    FailureInjector,
    FakeInspector,
    FakeRunner,
    RecordingStrategy,
    StaticProbe,
)

__all__ = [
    "FailureInjector",
    "FakeInspector",
    "FakeRunner",
    "RecordingStrategy",
    "StaticProbe",
]
