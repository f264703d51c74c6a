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
AWS Bedrock Claude adaptor.

Requests are Claude Messages bodies without ``model``/``stream`` plus
``anthropic_version: bedrock-2023-05-31``, signed with SigV4 and sent to
``invoke`` or ``invoke-with-response-stream``. Streams use the AWS binary
event stream framing; each ``chunk`` frame carries one Anthropic stream
event, so the Claude stream translation is reused unchanged.
"""

import re
from typing import Any, AsyncIterator, Dict
from urllib.parse import quote

import httpx
from loguru import logger

from relay_gateway.adaptors import anthropic
from relay_gateway.adaptors.base import Adaptor, AdaptorResponse
from relay_gateway.adaptors.common import raise_for_upstream_status
from relay_gateway.exceptions import ConfigMissingError, ModelUnsupportedError, StreamReadError
from relay_gateway.http_client import send_request
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import ClaudeRequest, GeneralOpenAIRequest, Usage
from relay_gateway.parsers import AwsEventStreamParser
from relay_gateway.relaymode import RelayMode
from relay_gateway.signing import sign_aws_v4

BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"

# https://docs.aws.amazon.com/bedrock/latest/userguide/model-ids.html
AWS_MODEL_ID_MAP: Dict[str, str] = {
    "claude-instant-1.2": "anthropic.claude-instant-v1",
    "claude-2.0": "anthropic.claude-v2",
    "claude-2.1": "anthropic.claude-v2:1",
    "claude-3-haiku-20240307": "anthropic.claude-3-haiku-20240307-v1:0",
    "claude-3-sonnet-20240229": "anthropic.claude-3-sonnet-20240229-v1:0",
    "claude-3-opus-20240229": "anthropic.claude-3-opus-20240229-v1:0",
    "claude-opus-4-20250514": "anthropic.claude-opus-4-20250514-v1:0",
    "claude-3-5-sonnet-20240620": "anthropic.claude-3-5-sonnet-20240620-v1:0",
    "claude-3-5-sonnet-20241022": "anthropic.claude-3-5-sonnet-20241022-v2:0",
    "claude-3-5-sonnet-latest": "anthropic.claude-3-5-sonnet-20241022-v2:0",
    "claude-3-5-haiku-20241022": "anthropic.claude-3-5-haiku-20241022-v1:0",
    "claude-3-7-sonnet-latest": "anthropic.claude-3-7-sonnet-20250219-v1:0",
    "claude-3-7-sonnet-20250219": "anthropic.claude-3-7-sonnet-20250219-v1:0",
    "claude-sonnet-4-20250514": "anthropic.claude-sonnet-4-20250514-v1:0",
}

_INFERENCE_PROFILE_ARN = re.compile(r"arn:aws:bedrock.+claude")


def aws_model_id(model_name: str) -> str:
    """
    Bedrock model id of a Claude model name.

    Inference profile ARNs pass through unchanged.

    Raises:
        ModelUnsupportedError: Unknown model
    """
    if _INFERENCE_PROFILE_ARN.match(model_name):
        return model_name
    model_id = AWS_MODEL_ID_MAP.get(model_name)
    if model_id is None:
        raise ModelUnsupportedError(f"model {model_name} not found on AWS Bedrock")
    return model_id


def to_bedrock_body(claude_request: Dict[str, Any]) -> Dict[str, Any]:
    """Drops the fields Bedrock takes from the URL and adds anthropic_version."""
    body = {key: value for key, value in claude_request.items() if key not in ("model", "stream")}
    body["anthropic_version"] = BEDROCK_ANTHROPIC_VERSION
    return body


async def iter_event_stream(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Decodes the Anthropic events carried by an AWS event stream body."""
    parser = AwsEventStreamParser()
    try:
        async for chunk in response.aiter_bytes():
            for event in parser.feed(chunk):
                yield event
    except httpx.HTTPError as e:
        raise StreamReadError(f"failed to read upstream stream: {e}")


class AwsClaudeAdaptor(Adaptor):
    """Claude on AWS Bedrock with static access keys from the channel config."""

    channel_name = "aws"
    pricing_file = "aws"

    def get_request_url(self, meta: Meta) -> str:
        region = meta.config.region
        if not region:
            raise ConfigMissingError("AWS region is not configured")
        action = "invoke-with-response-stream" if meta.is_stream else "invoke"
        model_id = quote(aws_model_id(meta.actual_model_name), safe="")
        base_url = meta.base_url or f"https://bedrock-runtime.{region}.amazonaws.com"
        return f"{base_url}/model/{model_id}/{action}"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        headers["Content-Type"] = "application/json"
        headers["Accept"] = "application/vnd.amazon.eventstream" if meta.is_stream else "application/json"

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        ctx.request_model = request.model if request is not None else ""
        claude_request = await anthropic.convert_request(request, self.meta, ctx)
        return to_bedrock_body(claude_request.model_dump(exclude_none=True))

    async def convert_claude_request(self, request: ClaudeRequest, ctx: RelayContext) -> Any:
        native = anthropic.convert_claude_native_request(request, self.meta, ctx)
        ctx.original_claude_request = request
        return to_bedrock_body(native.model_dump(exclude_none=True))

    async def do_request(self, meta: Meta, body: bytes, ctx: RelayContext) -> httpx.Response:
        if not meta.config.ak or not meta.config.sk:
            raise ConfigMissingError("AWS access key or secret key is not configured")

        url = self.get_request_url(meta)
        headers: Dict[str, str] = {}
        self.setup_request_header(headers, meta)
        signed = sign_aws_v4("POST", url, headers, body, meta.config.ak, meta.config.sk, meta.config.region, "bedrock")

        logger.debug(f"[{self.channel_name}] POST {url}")
        return await send_request("POST", url, headers=signed, content=body, stream=meta.is_stream)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)
        native = meta.mode == RelayMode.CLAUDE_MESSAGES and not ctx.claude_messages_conversion

        if meta.is_stream:
            usage = Usage()
            events = iter_event_stream(response)
            if native:
                stream = anthropic.claude_native_stream(events, response, meta, ctx, usage)
            else:
                stream = anthropic.convert_claude_stream(events, response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        try:
            body = await response.aread()
        finally:
            await response.aclose()

        if native:
            return await anthropic.handle_claude_native_body(body, response.status_code, meta)
        return await anthropic.handle_claude_body(body, response.status_code, meta, ctx)
