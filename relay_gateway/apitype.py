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
Backend API type codes.

The integer values are stable and persisted by the surrounding system;
new backends are appended, never inserted.
"""

from enum import IntEnum


class APIType(IntEnum):
    OPENAI = 0
    ANTHROPIC = 1
    PALM = 2
    BAIDU = 3
    ZHIPU = 4
    ALI = 5
    XUNFEI = 6
    AIPROXY_LIBRARY = 7
    TENCENT = 8
    GEMINI = 9
    OLLAMA = 10
    AWS_CLAUDE = 11
    COZE = 12
    COHERE = 13
    CLOUDFLARE = 14
    DEEPL = 15
    VERTEX_AI = 16
    PROXY = 17
    REPLICATE = 18
    DEEPSEEK = 19
    GROQ = 20
    MISTRAL = 21
    MOONSHOT = 22
    XAI = 23
    TOGETHER_AI = 24
    OPENROUTER = 25
    SILICONFLOW = 26
    DOUBAO = 27
    STEPFUN = 28
    NOVITA = 29
    AI360 = 30
    LINGYIWANWU = 31
    BAICHUAN = 32
    MINIMAX = 33
    XUNFEI_V2 = 34

    DUMMY = 35  # only for counting, keep last
