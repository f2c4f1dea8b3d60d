"""NMEA 2000 message model and serial wire format encoders."""

import base64
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, Field, ValidationError, validator
import structlog

from .exceptions import MessageFormatError, UnknownFormatError

logger = structlog.get_logger(__name__)

# Largest payload a fast-packet sequence can carry (6 + 31 * 7 bytes)
FAST_PACKET_MAX_LENGTH = 223

_HEX_SEPARATORS = re.compile(r"[\s,:]+")


class N2KMessage(BaseModel):
    """Decoded NMEA 2000 message as published by the host."""

    pgn: int = Field(..., ge=0, le=0x3FFFF, description="Parameter group number")
    prio: int = Field(2, ge=0, le=7, description="CAN priority")
    src: int = Field(0, ge=0, le=255, description="Source address")
    dst: int = Field(255, ge=0, le=255, description="Destination address (255 = broadcast)")
    timestamp: Optional[datetime] = Field(None, description="Time the message was received")
    data: bytes = Field(..., description="PGN payload bytes")

    @validator("data", pre=True)
    def coerce_data(cls, v):
        """Accept bytes, a list of byte values or a hex string."""
        if isinstance(v, (bytes, bytearray)):
            return bytes(v)
        if isinstance(v, (list, tuple)):
            try:
                return bytes(int(b) for b in v)
            except (TypeError, ValueError):
                raise ValueError(f"Payload values must be integers 0-255, got {v!r}")
        if isinstance(v, str):
            text = v.strip()
            try:
                if _HEX_SEPARATORS.search(text):
                    return bytes(int(part, 16) for part in _HEX_SEPARATORS.split(text) if part)
                return bytes.fromhex(text)
            except ValueError:
                raise ValueError(f"Invalid hex payload: {v!r}")
        raise ValueError(f"Unsupported payload type: {type(v).__name__}")

    @classmethod
    def from_json(cls, payload: Union[str, bytes, Dict[str, Any]]) -> "N2KMessage":
        """
        Build a message from its JSON form.

        Args:
            payload: JSON text or an already parsed mapping

        Returns:
            Validated message

        Raises:
            MessageFormatError: If the payload is not a valid message
        """
        try:
            if isinstance(payload, (str, bytes, bytearray)):
                payload = json.loads(payload)
            if not isinstance(payload, dict):
                raise MessageFormatError(f"Expected a JSON object, got {type(payload).__name__}")
            return cls(**payload)
        except json.JSONDecodeError as e:
            raise MessageFormatError(f"Invalid JSON: {e.msg}") from e
        except UnicodeDecodeError as e:
            raise MessageFormatError(f"Invalid JSON encoding: {e.reason}") from e
        except ValidationError as e:
            raise MessageFormatError(f"Invalid message: {e.errors()}") from e


class MessageFormat(str, Enum):
    """Serial wire formats a server can produce."""

    ACTISENSE = "actisense"
    YDGW = "ydgw"
    DIGITAL_YACHT = "digitalYacht"


class Delimiter(str, Enum):
    """Line terminators appended after each encoded message."""

    NONE = "None"
    LF = "LF"
    CRLF = "CRLF"


DELIMITERS: Dict[Delimiter, bytes] = {
    Delimiter.NONE: b"",
    Delimiter.LF: b"\n",
    Delimiter.CRLF: b"\r\n",
}

Encoder = Callable[[N2KMessage], bytes]


def as_message(message: Union[N2KMessage, Dict[str, Any], str, bytes]) -> N2KMessage:
    """Return ``message`` as an N2KMessage, parsing its JSON form if needed."""
    if isinstance(message, N2KMessage):
        return message
    return N2KMessage.from_json(message)


def _format_timestamp(timestamp: Optional[datetime]) -> str:
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    elif timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    else:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{timestamp.microsecond // 1000:03d}Z"


def encode_can_id(pgn: int, prio: int, src: int, dst: int) -> int:
    """
    Pack a 29-bit extended CAN identifier.

    Args:
        pgn: Parameter group number
        prio: Priority (0-7)
        src: Source address
        dst: Destination address, only used for PDU1 PGNs

    Returns:
        CAN identifier
    """
    can_id = ((prio & 0x7) << 26) | (src & 0xFF)
    if ((pgn >> 8) & 0xFF) < 240:
        can_id |= ((pgn & 0x3FF00) << 8) | ((dst & 0xFF) << 8)
    else:
        can_id |= (pgn & 0x3FFFF) << 8
    return can_id


def fast_packet_frames(data: bytes, sequence: int = 0) -> List[bytes]:
    """
    Split a payload into NMEA 2000 fast-packet CAN frames.

    Payloads of 8 bytes or less fit a single frame and are returned as is.

    Args:
        data: PGN payload
        sequence: Sequence id (0-7) stored in the top bits of each frame

    Returns:
        List of frame payloads, each 8 bytes long for multi-frame output
    """
    if len(data) <= 8:
        return [data]
    if len(data) > FAST_PACKET_MAX_LENGTH:
        raise MessageFormatError(
            f"Payload of {len(data)} bytes exceeds fast-packet limit of {FAST_PACKET_MAX_LENGTH}"
        )

    seq = (sequence & 0x7) << 5
    frames = [bytes([seq, len(data)]) + data[:6]]
    counter = 1
    for offset in range(6, len(data), 7):
        chunk = data[offset:offset + 7]
        frames.append(bytes([seq | counter]) + chunk.ljust(7, b"\xff"))
        counter += 1
    return frames


def encode_actisense(message: N2KMessage) -> bytes:
    """Encode in the Actisense/canboat plain text format."""
    fields = [
        _format_timestamp(message.timestamp),
        str(message.prio),
        str(message.pgn),
        str(message.src),
        str(message.dst),
        str(len(message.data)),
    ]
    fields.extend(f"{b:02x}" for b in message.data)
    return ",".join(fields).encode("ascii")


def encode_ikonvert(message: N2KMessage) -> bytes:
    """Encode as a Digital Yacht iKonvert ``!PDGY`` sentence."""
    payload = base64.b64encode(message.data).decode("ascii")
    return f"!PDGY,{message.pgn},{message.dst},{payload}".encode("ascii")


def encode_ydgw(message: N2KMessage) -> bytes:
    """
    Encode in the Yacht Devices RAW format.

    One line per CAN frame; fast-packet payloads produce several lines
    separated by CRLF, the gateway's own line ending.
    """
    can_id = encode_can_id(message.pgn, message.prio, message.src, message.dst)
    # Sequence id stays 0 so encoding has no state between messages
    lines = [
        f"{can_id:08X} " + " ".join(f"{b:02X}" for b in frame)
        for frame in fast_packet_frames(message.data)
    ]
    return "\r\n".join(lines).encode("ascii")


FORMAT_ENCODERS: Dict[MessageFormat, Encoder] = {
    MessageFormat.ACTISENSE: encode_actisense,
    MessageFormat.YDGW: encode_ydgw,
    MessageFormat.DIGITAL_YACHT: encode_ikonvert,
}


def resolve_encoder(format_name: Union[str, MessageFormat]) -> Encoder:
    """
    Look up the encoder for a format name.

    Raises:
        UnknownFormatError: If the format has no encoder
    """
    try:
        fmt = MessageFormat(format_name)
    except ValueError:
        raise UnknownFormatError(str(format_name)) from None
    return FORMAT_ENCODERS[fmt]


def resolve_delimiter(name: Union[str, Delimiter, None]) -> bytes:
    """
    Resolve a delimiter name to its terminator bytes.

    Unknown names resolve to no terminator.
    """
    try:
        return DELIMITERS[Delimiter(name)]
    except ValueError:
        logger.warning("Unknown line delimiter, using none", line_delimiter=name)
        return b""


def encode(message: Union[N2KMessage, Dict[str, Any], str, bytes],
           format_name: Union[str, MessageFormat]) -> bytes:
    """
    Encode a message in the given wire format.

    Args:
        message: Message or its JSON form
        format_name: One of the MessageFormat values

    Returns:
        Encoded bytes without any line terminator
    """
    return resolve_encoder(format_name)(as_message(message))
