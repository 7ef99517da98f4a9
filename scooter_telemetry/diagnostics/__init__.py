"""
Diagnostics Package

Frame history, error recording, the heuristic field scanner and the
active command sweep.
"""

from .context import DiagnosticContext, DiagnosticReport
from .scanner import CalibrationTarget, ScanReport, scan, scan_many, suggest_layout
from .command_scanner import CommandScanner, SweepPhase, SweepReport, build_sweep

__all__ = [
    'DiagnosticContext',
    'DiagnosticReport',
    'CalibrationTarget',
    'ScanReport',
    'scan',
    'scan_many',
    'suggest_layout',
    'CommandScanner',
    'SweepPhase',
    'SweepReport',
    'build_sweep',
]
