# -*- coding: utf-8 -*-

"""
Unit tests for reasoning-content routing.
"""

import pytest

from relay_gateway.models import Message, StreamDelta
from relay_gateway.reasoning import normalize_reasoning_format, set_reasoning_content


class TestNormalizeReasoningFormat:
    """Tests for normalize_reasoning_format."""

    @pytest.mark.parametrize("raw,expected", [
        ("reasoning_content", "reasoning_content"),
        ("THINKING", "thinking"),
        ("reasoning", "reasoning"),
        ("", "reasoning"),
        ("bogus", "reasoning"),
    ])
    def test_formats(self, raw, expected):
        assert normalize_reasoning_format(raw) == expected


class TestSetReasoningContent:
    """Tests for set_reasoning_content."""

    def test_only_selected_field_is_set(self):
        """
        What it does: Writes reasoning into a message that had another field set.
        Purpose: Exactly one reasoning field is populated.
        """
        message = Message(role="assistant", reasoning="old")

        set_reasoning_content(message, "thinking", "new")

        assert message.thinking == "new"
        assert message.reasoning is None
        assert message.reasoning_content is None

    def test_stream_delta(self):
        delta = StreamDelta()
        set_reasoning_content(delta, "reasoning_content", "step")
        assert delta.reasoning_content == "step"
        assert delta.reasoning is None
