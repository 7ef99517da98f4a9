"""
Command Sweep Tests
"""

import asyncio

import pytest

from scooter_telemetry.communication.frames import FrameKind
from scooter_telemetry.communication.protocol import build_frame, validate_frame
from scooter_telemetry.communication.transport_base import MockTransport
from scooter_telemetry.controllers.polling_sequencer import SequencerConfig
from scooter_telemetry.diagnostics.command_scanner import CommandScanner, SweepPhase, build_sweep
from scooter_telemetry.diagnostics.context import DiagnosticContext
from scooter_telemetry.utils.error_handler import ErrorKind

GET_INFO = build_frame(0x22, 0x01)
INFO_RESPONSE = build_frame(0x22, 0x01, b"\x2a")


def answer_get_info(data: bytes):
    return INFO_RESPONSE if data == GET_INFO else None


class TestBuildSweep:
    """Test request list construction."""

    def test_all_phases(self):
        """Simple, subopcode and payload requests, in that order."""
        requests = build_sweep()
        phases = [r.phase for r in requests]
        assert phases.count(SweepPhase.SIMPLE) == 23
        assert phases.count(SweepPhase.SUBOPCODE) == 32
        assert phases.count(SweepPhase.PAYLOAD) == 16
        assert phases == sorted(phases, key=list(SweepPhase).index)

    def test_frames_are_valid(self):
        """Every request carries a correct checksum."""
        assert all(validate_frame(r.data) for r in build_sweep())

    def test_labels_and_encoding(self):
        """Labels name the bytes that were varied."""
        requests = {r.label: r for r in build_sweep()}
        assert requests["simple_20"].data == build_frame(0x20)
        assert requests["sub_22_01"].data == GET_INFO
        assert requests["data_23_02_FF"].data == build_frame(0x23, 0x02, b"\xff")

    def test_phase_selection(self):
        """Only the selected phases are built."""
        requests = build_sweep([SweepPhase.PAYLOAD])
        assert len(requests) == 16
        assert {r.phase for r in requests} == {SweepPhase.PAYLOAD}


class TestCommandScanner:
    """Test the paced sweep."""

    @pytest.fixture
    def transport(self):
        return MockTransport()

    @pytest.fixture
    def diagnostics(self):
        return DiagnosticContext()

    @pytest.fixture
    def scanner(self, transport, diagnostics):
        scanner = CommandScanner(transport.send, response_window=0.001, diagnostics=diagnostics)
        transport.set_data_callback(scanner.on_frame)
        return scanner

    def test_window_follows_polling_interval(self):
        """Without an override the wait is the polling command interval."""
        async def send(data):
            pass

        assert CommandScanner(send).response_window == 0.5
        assert CommandScanner(send, SequencerConfig(command_interval=0.2)).response_window == 0.2
        assert CommandScanner(send, response_window=0.05).response_window == 0.05

    @pytest.mark.asyncio
    async def test_answers_attributed(self, transport, scanner, diagnostics):
        """An answer is recorded against the request that caused it."""
        transport.set_auto_response(answer_get_info)
        await transport.connect("mock")

        report = await scanner.run(build_sweep([SweepPhase.SUBOPCODE]))

        assert len(transport.get_tx_log()) == 32
        assert not report.cancelled
        assert [r.request.label for r in report.answered] == ["sub_22_01"]
        assert report.answered[0].responses[0].data == INFO_RESPONSE
        assert report.kind_counts == {FrameKind.PROTOCOL_RESPONSE: 1}
        assert len(diagnostics.frames) == 1

        text = report.format()
        assert "32/32 requests sent, 1 answered" in text
        assert "[sub_22_01] 55 AA 02 22 01 21" in text

    @pytest.mark.asyncio
    async def test_keep_alive_is_not_an_answer(self, transport, scanner):
        """Keep-alives arriving during a window are ignored."""
        transport.set_auto_response(lambda data: b"\x00\x01")
        await transport.connect("mock")

        report = await scanner.run(build_sweep([SweepPhase.PAYLOAD]))

        assert report.answered == []
        assert "No request was answered" in report.format()

    def test_frames_outside_a_window(self, scanner):
        """Frames with no outstanding request are only counted."""
        scanner.on_frame(bytes([0x08, 0, 0xF4, 0x01, 0, 0, 0xE0, 0x01]))
        assert scanner.unattributed == 1

    @pytest.mark.asyncio
    async def test_write_failures(self, transport, scanner, diagnostics):
        """A failed write is recorded and the sweep continues."""
        await transport.connect("mock")
        transport.fail_next_sends(2)

        report = await scanner.run(build_sweep([SweepPhase.PAYLOAD]))

        assert len(report.results) == report.planned == 16
        assert [r.request.label for r in report.failed] == ["data_22_01_00", "data_22_01_01"]
        assert diagnostics.error_count(ErrorKind.TRANSPORT_WRITE_FAILURE) == 2
        assert len(transport.get_tx_log()) == 14

    @pytest.mark.asyncio
    async def test_stop(self, transport, diagnostics):
        """stop() ends the sweep before the next request."""
        await transport.connect("mock")
        scanner = CommandScanner(transport.send, response_window=0.5, diagnostics=diagnostics)

        task = asyncio.create_task(scanner.run())
        await asyncio.sleep(0.05)
        assert scanner.is_running
        scanner.stop()
        report = await asyncio.wait_for(task, timeout=1.0)

        assert report.cancelled
        assert len(report.results) == 1
        assert len(transport.get_tx_log()) == 1
        assert not scanner.is_running
        assert "Sweep cancelled: 1/71" in report.format()
