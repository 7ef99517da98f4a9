"""
Telemetry Decoder

Turns one classified frame into a PartialUpdate using the field layouts of
the selected DeviceProfile.

Decoding never raises: a frame that is too short, fails its checksum or
carries an unknown opcode yields an empty (or smaller) update, and the
reason is recorded to the diagnostic context when one is attached.
"""

from typing import TYPE_CHECKING, Optional, Union
import logging

from .calibration import DECODABLE_FRAME_KINDS, DEFAULT_PROFILE, DeviceProfile, FrameLayout
from .frames import FrameKind, RawFrame, classify
from .protocol import format_hex, parse_header, validate_frame
from .telemetry import EMPTY_UPDATE, FieldUpdate, PartialUpdate
from ..utils.error_handler import ErrorKind

if TYPE_CHECKING:
    from ..diagnostics.context import DiagnosticContext

logger = logging.getLogger(__name__)

# Header(2) + Length(1) + Checksum(1); the length byte counts the rest
RESPONSE_OVERHEAD = 4


class TelemetryDecoder:
    """
    Per frame kind / opcode decoder.

    Example usage:
        decoder = TelemetryDecoder(profile=get_profile("default"))
        update = decoder.decode(classify(data), data)
        if not update.is_empty:
            aggregator.apply(update)
    """

    def __init__(
        self,
        profile: Optional[DeviceProfile] = None,
        diagnostics: Optional["DiagnosticContext"] = None,
    ):
        """
        Initialize decoder.

        Args:
            profile: Calibration profile (default: built-in default profile)
            diagnostics: Context receiving decode errors
        """
        self._profile = profile or DEFAULT_PROFILE
        self._diagnostics = diagnostics

    @property
    def profile(self) -> DeviceProfile:
        return self._profile

    def select_profile(self, profile: DeviceProfile) -> None:
        """Switch calibration. Takes effect from the next frame."""
        if profile is not self._profile:
            logger.info(f"Calibration profile: {self._profile.name} -> {profile.name}")
            self._profile = profile

    def decode(self, kind: FrameKind, data: bytes) -> PartialUpdate:
        """
        Decode a classified frame.

        Args:
            kind: Result of classify(data)
            data: Frame bytes

        Returns:
            PartialUpdate with the fields this frame carries (possibly empty)
        """
        try:
            if kind is FrameKind.PROTOCOL_RESPONSE:
                return self._decode_response(data)
            if kind in DECODABLE_FRAME_KINDS:
                layout = self._profile.layout_for_frame(kind)
                if layout is None:
                    return EMPTY_UPDATE
                return self._apply_layout(layout, data, len(data))
            return EMPTY_UPDATE
        except Exception as e:
            logger.exception(f"Unexpected decode failure for {kind.name}")
            self._record(ErrorKind.MALFORMED_FRAME, f"Decode failure: {e}", data)
            return EMPTY_UPDATE

    def decode_frame(self, frame: Union[RawFrame, bytes]) -> tuple[FrameKind, PartialUpdate]:
        """Classify and decode in one step."""
        data = frame.data if isinstance(frame, RawFrame) else bytes(frame)
        kind = classify(data)
        return kind, self.decode(kind, data)

    def _decode_response(self, data: bytes) -> PartialUpdate:
        """Decode a 55 AA response frame."""
        if not validate_frame(data):
            self._record(ErrorKind.CHECKSUM_MISMATCH, "Response checksum mismatch", data)
            return EMPTY_UPDATE

        header = parse_header(data)
        if header is None or len(data) < header.length + RESPONSE_OVERHEAD:
            self._record(ErrorKind.MALFORMED_FRAME, "Response shorter than its length byte", data)
            return EMPTY_UPDATE

        layout = self._profile.layout_for_response(header.opcode, header.subopcode)
        if layout is None:
            sub = f"/0x{header.subopcode:02X}" if header.subopcode is not None else ""
            self._record(
                ErrorKind.UNRECOGNIZED_OPCODE,
                f"No layout for opcode 0x{header.opcode:02X}{sub}",
                data,
            )
            return EMPTY_UPDATE

        # Fields must end before the checksum byte
        return self._apply_layout(layout, data, len(data) - 1)

    def _apply_layout(self, layout: FrameLayout, data: bytes, limit: int) -> PartialUpdate:
        updates = []
        for telemetry_field, encoding in layout.fields.items():
            value = encoding.decode(data, limit)
            if value is None:
                continue
            if telemetry_field.value_type is int:
                value = int(round(value))
            updates.append(FieldUpdate(telemetry_field, value))

        if updates:
            logger.debug(
                "Decoded " + ", ".join(f"{u.field.value}={u.value}" for u in updates)
            )
        return PartialUpdate(updates=tuple(updates), authoritative=layout.authoritative)

    def _record(self, kind: ErrorKind, message: str, data: bytes) -> None:
        if self._diagnostics is not None:
            self._diagnostics.record(kind, message, source="decoder", details=format_hex(data))
        else:
            logger.debug(f"{message}: {format_hex(data)}")
