# -*- coding: utf-8 -*-

"""
Unit tests for AWS SigV4, Tencent TC3 and Xunfei Spark request signing.
"""

import base64
import hashlib
import hmac
import re
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

from relay_gateway.signing import sha256_hex, sign_aws_v4, sign_tc3, sign_xunfei_url

SIGNING_TIME = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)
BEDROCK_URL = "https://bedrock-runtime.us-east-1.amazonaws.com/model/anthropic.claude-3-haiku/invoke"


def _sign(body: bytes = b"{}", **overrides) -> dict:
    values = dict(
        method="POST",
        url=BEDROCK_URL,
        headers={"Content-Type": "application/json"},
        body=body,
        access_key="AKIDEXAMPLE",
        secret_key="secret",
        region="us-east-1",
        service="bedrock",
        now=SIGNING_TIME,
    )
    values.update(overrides)
    return sign_aws_v4(**values)


class TestAwsV4:
    """Tests for sign_aws_v4."""

    def test_headers(self):
        """
        What it does: Signs a Bedrock request.
        Purpose: Date, payload hash and the credential scope appear in the headers.
        """
        headers = _sign(b'{"a":1}')

        assert headers["Host"] == "bedrock-runtime.us-east-1.amazonaws.com"
        assert headers["X-Amz-Date"] == "20240501T123000Z"
        assert headers["X-Amz-Content-Sha256"] == sha256_hex(b'{"a":1}')
        assert headers["Content-Type"] == "application/json"
        assert headers["Authorization"].startswith(
            "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20240501/us-east-1/bedrock/aws4_request, "
        )

    def test_signed_headers_sorted(self):
        authorization = _sign()["Authorization"]
        signed = re.search(r"SignedHeaders=([^,]+)", authorization).group(1)
        assert signed == "content-type;host;x-amz-content-sha256;x-amz-date"

    def test_signature_is_hex(self):
        signature = re.search(r"Signature=([0-9a-f]+)$", _sign()["Authorization"]).group(1)
        assert len(signature) == 64

    def test_deterministic(self):
        assert _sign()["Authorization"] == _sign()["Authorization"]

    def test_depends_on_body_and_secret(self):
        base = _sign()["Authorization"]
        assert _sign(b'{"b":2}')["Authorization"] != base
        assert _sign(secret_key="other")["Authorization"] != base

    def test_input_headers_untouched(self):
        headers = {"Content-Type": "application/json"}
        _sign(headers=headers)
        assert headers == {"Content-Type": "application/json"}

    def test_query_and_path_encoding(self):
        """
        What it does: Signs URLs differing only in query order.
        Purpose: The canonical query string is sorted, so the signatures match.
        """
        first = _sign(url="https://s3.test/bucket/key?b=2&a=1", service="s3", double_encode_path=False)
        second = _sign(url="https://s3.test/bucket/key?a=1&b=2", service="s3", double_encode_path=False)
        assert first["Authorization"] == second["Authorization"]


class TestTc3:
    """Tests for sign_tc3."""

    def test_format(self):
        authorization = sign_tc3(
            "AKID", "key", "hunyuan.tencentcloudapi.com", "ChatCompletions", b"{}", 1714566600
        )

        assert authorization.startswith(
            "TC3-HMAC-SHA256 Credential=AKID/2024-05-01/hunyuan/tc3_request, "
            "SignedHeaders=content-type;host;x-tc-action, Signature="
        )
        assert len(authorization.rsplit("Signature=", 1)[1]) == 64

    def test_depends_on_inputs(self):
        args = ("AKID", "key", "hunyuan.tencentcloudapi.com", "ChatCompletions", b"{}", 1714566600)
        base = sign_tc3(*args)

        assert sign_tc3(*args) == base
        assert sign_tc3("AKID", "key", "hunyuan.tencentcloudapi.com", "GetEmbedding", b"{}", 1714566600) != base
        assert sign_tc3("AKID", "key", "hunyuan.tencentcloudapi.com", "ChatCompletions", b"[]", 1714566600) != base
        assert sign_tc3("AKID", "other", "hunyuan.tencentcloudapi.com", "ChatCompletions", b"{}", 1714566600) != base


class TestXunfeiUrl:
    """Tests for sign_xunfei_url."""

    SPARK_URL = "wss://spark-api.xf-yun.com/v3.5/chat"

    def test_query(self):
        """
        What it does: Signs a Spark WebSocket URL at a fixed time.
        Purpose: host, date and a base64 authorization with an HMAC over the request line are appended.
        """
        signed = sign_xunfei_url(self.SPARK_URL, "apikey", "apisecret", now=SIGNING_TIME)
        query = parse_qs(urlparse(signed).query)

        assert signed.startswith(self.SPARK_URL + "?")
        assert query["host"] == ["spark-api.xf-yun.com"]
        assert query["date"] == ["Wed, 01 May 2024 12:30:00 GMT"]

        expected = base64.b64encode(hmac.new(
            b"apisecret",
            b"host: spark-api.xf-yun.com\ndate: Wed, 01 May 2024 12:30:00 GMT\nGET /v3.5/chat HTTP/1.1",
            hashlib.sha256,
        ).digest()).decode("ascii")
        authorization = base64.b64decode(query["authorization"][0]).decode("utf-8")
        assert authorization == (
            'hmac username="apikey", algorithm="hmac-sha256", '
            f'headers="host date request-line", signature="{expected}"'
        )

    def test_depends_on_secret_and_path(self):
        base = sign_xunfei_url(self.SPARK_URL, "apikey", "apisecret", now=SIGNING_TIME)

        assert sign_xunfei_url(self.SPARK_URL, "apikey", "apisecret", now=SIGNING_TIME) == base
        assert sign_xunfei_url(self.SPARK_URL, "apikey", "other", now=SIGNING_TIME) != base
        assert sign_xunfei_url("wss://spark-api.xf-yun.com/v1.1/chat", "apikey", "apisecret", now=SIGNING_TIME) != base
