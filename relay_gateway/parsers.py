# -*- coding: utf-8 -*-

# RelayGate
# Based on kiro-openai-gateway by Jwadow (https://github.com/Jwadow/kiro-openai-gateway)
# Original Copyright (C) 2025 Jwadow
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Stream parsers.

Contains the AWS binary event stream decoder and the reassembly of
streamed tool call fragments.

Bedrock's ``invoke-with-response-stream`` answers with the binary
``application/vnd.amazon.eventstream`` framing. Every frame is

    total_length(4) | headers_length(4) | prelude_crc(4) | headers | payload | message_crc(4)

and a ``chunk`` event carries ``{"bytes": "<base64>"}`` whose decoded
content is one Anthropic stream event.
"""

import base64
import binascii
import json
import struct
import zlib
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from relay_gateway.exceptions import StreamReadError
from relay_gateway.models import Function, Tool
from relay_gateway.utils import generate_tool_call_id

_PRELUDE_LENGTH = 12
_CRC_LENGTH = 4

# Header value type -> fixed size in bytes (None means 2-byte length prefix)
_HEADER_VALUE_SIZES = {
    0: 0,      # bool true
    1: 0,      # bool false
    2: 1,      # byte
    3: 2,      # short
    4: 4,      # integer
    5: 8,      # long
    6: None,   # byte array
    7: None,   # string
    8: 8,      # timestamp
    9: 16,     # uuid
}


def _parse_headers(data: bytes) -> Dict[str, Any]:
    """Decodes the header section of one frame."""
    headers: Dict[str, Any] = {}
    pos = 0
    while pos < len(data):
        name_length = data[pos]
        pos += 1
        name = data[pos:pos + name_length].decode("utf-8")
        pos += name_length
        value_type = data[pos]
        pos += 1

        if value_type not in _HEADER_VALUE_SIZES:
            raise StreamReadError(f"unknown event stream header type {value_type}")

        size = _HEADER_VALUE_SIZES[value_type]
        if value_type == 0:
            value: Any = True
        elif value_type == 1:
            value = False
        elif size is None:
            (length,) = struct.unpack(">H", data[pos:pos + 2])
            pos += 2
            raw = data[pos:pos + length]
            pos += length
            value = raw.decode("utf-8") if value_type == 7 else raw
        else:
            raw = data[pos:pos + size]
            pos += size
            if value_type in (2, 3, 4, 5, 8):
                value = int.from_bytes(raw, "big", signed=True)
            else:
                value = raw.hex()

        headers[name] = value
    return headers


class AwsEventStreamParser:
    """
    Incremental decoder of AWS binary event stream frames.

    Feed raw body chunks; complete frames are returned, partial ones stay
    buffered until more bytes arrive.

    Example:
        >>> parser = AwsEventStreamParser()
        >>> for event in parser.feed(chunk):
        ...     handle(event)
    """

    def __init__(self):
        self.buffer = b""

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """
        Adds bytes and decodes every complete frame.

        Returns:
            Decoded Anthropic events of ``chunk`` frames

        Raises:
            StreamReadError: Corrupt frame or an exception frame from AWS
        """
        self.buffer += chunk
        events = []

        while len(self.buffer) >= _PRELUDE_LENGTH:
            total_length, headers_length, prelude_crc = struct.unpack(">III", self.buffer[:_PRELUDE_LENGTH])
            if zlib.crc32(self.buffer[:8]) & 0xFFFFFFFF != prelude_crc:
                raise StreamReadError("event stream prelude checksum mismatch")
            if len(self.buffer) < total_length:
                break

            frame = self.buffer[:total_length]
            self.buffer = self.buffer[total_length:]

            (message_crc,) = struct.unpack(">I", frame[-_CRC_LENGTH:])
            if zlib.crc32(frame[:-_CRC_LENGTH]) & 0xFFFFFFFF != message_crc:
                raise StreamReadError("event stream message checksum mismatch")

            headers_end = _PRELUDE_LENGTH + headers_length
            headers = _parse_headers(frame[_PRELUDE_LENGTH:headers_end])
            payload = frame[headers_end:-_CRC_LENGTH]

            event = self._process_frame(headers, payload)
            if event is not None:
                events.append(event)

        return events

    def _process_frame(self, headers: Dict[str, Any], payload: bytes) -> Optional[Dict[str, Any]]:
        message_type = headers.get(":message-type", "event")

        if message_type in ("exception", "error"):
            error_type = headers.get(":exception-type") or headers.get(":error-code") or "exception"
            try:
                message = json.loads(payload).get("message", "")
            except (json.JSONDecodeError, AttributeError):
                message = payload.decode("utf-8", errors="replace")
            raise StreamReadError(f"{error_type}: {message}")

        if headers.get(":event-type") != "chunk":
            logger.debug(f"Skipping event stream frame of type {headers.get(':event-type')}")
            return None

        try:
            wrapper = json.loads(payload)
            return json.loads(base64.b64decode(wrapper["bytes"]))
        except (json.JSONDecodeError, KeyError, TypeError, binascii.Error) as e:
            logger.warning(f"Failed to decode event stream chunk: {e}")
            return None

    def reset(self) -> None:
        self.buffer = b""


def encode_event_stream_frame(headers: Dict[str, str], payload: bytes) -> bytes:
    """
    Encodes one frame with string headers.

    Used to replay Bedrock streams in tests and by local fakes.
    """
    header_bytes = b""
    for name, value in headers.items():
        name_raw = name.encode("utf-8")
        value_raw = value.encode("utf-8")
        header_bytes += bytes([len(name_raw)]) + name_raw + bytes([7])
        header_bytes += struct.pack(">H", len(value_raw)) + value_raw

    total_length = _PRELUDE_LENGTH + len(header_bytes) + len(payload) + _CRC_LENGTH
    prelude = struct.pack(">II", total_length, len(header_bytes))
    prelude += struct.pack(">I", zlib.crc32(prelude) & 0xFFFFFFFF)
    message = prelude + header_bytes + payload
    return message + struct.pack(">I", zlib.crc32(message) & 0xFFFFFFFF)


def normalize_tool_arguments(arguments: Any, tool_name: str = "") -> str:
    """
    Normalizes tool call arguments to a JSON object string.

    Empty arguments become ``"{}"``, dicts are serialized, unparsable
    strings are returned unchanged.

    Args:
        arguments: Raw arguments (string, dict or None)
        tool_name: Tool name for logging

    Returns:
        JSON string
    """
    if arguments is None:
        return "{}"
    if isinstance(arguments, (dict, list)):
        return json.dumps(arguments, ensure_ascii=False)
    if not isinstance(arguments, str):
        logger.warning(f"Tool '{tool_name}' has unexpected arguments type: {type(arguments)}")
        return "{}"
    if not arguments.strip():
        return "{}"
    return arguments


def parse_tool_arguments(arguments: Any) -> Tuple[Any, bool]:
    """
    Decodes tool call arguments into an object.

    Returns:
        (decoded value, success flag); undecodable input yields ({}, False)
    """
    if isinstance(arguments, dict):
        return arguments, True
    if not arguments:
        return {}, True
    try:
        return json.loads(arguments), True
    except (json.JSONDecodeError, TypeError):
        return {}, False


class ToolCallAccumulator:
    """
    Reassembles streamed tool call fragments.

    A fragment with an ``index`` belongs to the tool call at that index (a
    new one is started when the index is first seen); a fragment without an
    index extends the last tool call. Argument fragments are concatenated in
    arrival order.

    Example:
        >>> acc = ToolCallAccumulator()
        >>> acc.add_delta(Tool(index=0, id="c1", function=Function(name="w", arguments='{"a":')))
        >>> acc.add_delta(Tool(index=0, function=Function(arguments=' 1}')))
        >>> acc.finalize()[0].function.arguments
        '{"a": 1}'
    """

    def __init__(self):
        self._calls: List[Tool] = []
        self._by_index: Dict[int, Tool] = {}

    def __len__(self) -> int:
        return len(self._calls)

    @property
    def calls(self) -> List[Tool]:
        return self._calls

    def start(self, tool_id: Optional[str], name: str, arguments: str = "") -> Tool:
        """Starts a new tool call at ``index = len(calls)``."""
        index = len(self._calls)
        call = Tool(
            id=tool_id or generate_tool_call_id(),
            type="function",
            function=Function(name=name, arguments=arguments),
            index=index,
        )
        self._calls.append(call)
        self._by_index[index] = call
        return call

    def append_arguments(self, fragment: str) -> None:
        """Appends an argument fragment to the last tool call."""
        if not self._calls:
            logger.warning("Tool call argument fragment received before any tool call")
            return
        last = self._calls[-1]
        last.function.arguments = (last.function.arguments or "") + fragment

    def add_delta(self, delta: Tool) -> None:
        """Merges one OpenAI tool call delta."""
        fragment = delta.function.arguments or ""
        if not isinstance(fragment, str):
            fragment = json.dumps(fragment, ensure_ascii=False)

        if delta.index is None:
            if not self._calls:
                self.start(delta.id, delta.function.name, fragment)
            else:
                self.append_arguments(fragment)
            return

        call = self._by_index.get(delta.index)
        if call is None:
            call = Tool(
                id=delta.id or generate_tool_call_id(),
                type=delta.type or "function",
                function=Function(name=delta.function.name, arguments=fragment),
                index=delta.index,
            )
            self._calls.append(call)
            self._by_index[delta.index] = call
            return

        if delta.id and not call.id:
            call.id = delta.id
        if delta.function.name and not call.function.name:
            call.function.name = delta.function.name
        call.function.arguments = (call.function.arguments or "") + fragment

    def finalize(self) -> List[Tool]:
        """Returns the tool calls with empty arguments replaced by ``"{}"``."""
        for call in self._calls:
            call.function.arguments = normalize_tool_arguments(call.function.arguments, call.function.name)
        return self._calls
