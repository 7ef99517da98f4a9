"""
Controllers Package

Contains the polling sequencer and the telemetry session.
"""

from .polling_sequencer import PollingSequencer, SequencerConfig, SequencerState
from .session import SessionConfig, SessionState, TelemetrySession

__all__ = [
    'PollingSequencer',
    'SequencerConfig',
    'SequencerState',
    'SessionConfig',
    'SessionState',
    'TelemetrySession',
]
