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

"""Relay modes (what kind of operation a request performs)."""

from enum import IntEnum


class RelayMode(IntEnum):
    UNKNOWN = 0
    CHAT_COMPLETIONS = 1
    COMPLETIONS = 2
    EMBEDDINGS = 3
    MODERATIONS = 4
    IMAGES_GENERATIONS = 5
    IMAGES_EDITS = 6
    EDITS = 7
    AUDIO_SPEECH = 8
    AUDIO_TRANSCRIPTION = 9
    AUDIO_TRANSLATION = 10
    RERANK = 11
    CLAUDE_MESSAGES = 12
    VIDEO_GENERATIONS = 13


_PATH_PREFIXES = (
    ("/v1/chat/completions", RelayMode.CHAT_COMPLETIONS),
    ("/v1/completions", RelayMode.COMPLETIONS),
    ("/v1/embeddings", RelayMode.EMBEDDINGS),
    ("/v1/moderations", RelayMode.MODERATIONS),
    ("/v1/images/generations", RelayMode.IMAGES_GENERATIONS),
    ("/v1/images/edits", RelayMode.IMAGES_EDITS),
    ("/v1/edits", RelayMode.EDITS),
    ("/v1/audio/speech", RelayMode.AUDIO_SPEECH),
    ("/v1/audio/transcriptions", RelayMode.AUDIO_TRANSCRIPTION),
    ("/v1/audio/translations", RelayMode.AUDIO_TRANSLATION),
    ("/v1/rerank", RelayMode.RERANK),
    ("/v1/messages", RelayMode.CLAUDE_MESSAGES),
    ("/v1/videos/generations", RelayMode.VIDEO_GENERATIONS),
)


def get_by_path(path: str) -> RelayMode:
    """
    Resolves the relay mode from a request path.

    Embeddings also match the legacy ``/v1/engines/{model}/embeddings`` form.

    Args:
        path: URL path of the inbound request

    Returns:
        Matching RelayMode, or RelayMode.UNKNOWN
    """
    for prefix, mode in _PATH_PREFIXES:
        if path.startswith(prefix):
            return mode
    if path.startswith("/v1/engines") and path.endswith("/embeddings"):
        return RelayMode.EMBEDDINGS
    return RelayMode.UNKNOWN
