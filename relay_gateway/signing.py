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
Request signing for cloud vendors.

- AWS Signature Version 4 (Bedrock, S3 compatible object stores)
- Tencent Cloud TC3-HMAC-SHA256
- Xunfei Spark WebSocket URL signatures
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Dict, Optional
from urllib.parse import quote, urlencode, urlparse

AWS_ALGORITHM = "AWS4-HMAC-SHA256"
TC3_ALGORITHM = "TC3-HMAC-SHA256"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


# ==================================================================================================
# AWS SigV4
# ==================================================================================================

def _canonical_query(query: str) -> str:
    if not query:
        return ""
    pairs = []
    for item in query.split("&"):
        key, _, value = item.partition("=")
        pairs.append((quote(key, safe="-_.~"), quote(value, safe="-_.~")))
    return "&".join(f"{k}={v}" for k, v in sorted(pairs))


def sign_aws_v4(
    method: str,
    url: str,
    headers: Dict[str, str],
    body: bytes,
    access_key: str,
    secret_key: str,
    region: str,
    service: str,
    now: Optional[datetime] = None,
    double_encode_path: bool = True,
) -> Dict[str, str]:
    """
    Signs a request with AWS Signature Version 4.

    Args:
        method: HTTP method
        url: Full URL; path segments must already be percent-encoded
        headers: Headers to send; all of them are signed
        body: Exact request body
        access_key: AWS access key id
        secret_key: AWS secret access key
        region: AWS region
        service: Service name (bedrock, s3)
        now: Signing time (defaults to the current UTC time)
        double_encode_path: Encode the path again for the canonical request,
            required by every service except S3

    Returns:
        New header dict including Host, X-Amz-Date, X-Amz-Content-Sha256
        and Authorization
    """
    now = now or datetime.now(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")

    parsed = urlparse(url)
    payload_hash = sha256_hex(body)

    signed = {k.lower(): v.strip() for k, v in headers.items()}
    signed["host"] = parsed.netloc
    signed["x-amz-date"] = amz_date
    signed["x-amz-content-sha256"] = payload_hash

    path = parsed.path or "/"
    canonical_uri = quote(path, safe="/-_.~") if double_encode_path else path

    signed_header_names = ";".join(sorted(signed))
    canonical_headers = "".join(f"{name}:{signed[name]}\n" for name in sorted(signed))
    canonical_request = "\n".join([
        method.upper(),
        canonical_uri,
        _canonical_query(parsed.query),
        canonical_headers,
        signed_header_names,
        payload_hash,
    ])

    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join([
        AWS_ALGORITHM,
        amz_date,
        scope,
        sha256_hex(canonical_request.encode("utf-8")),
    ])

    k_date = _hmac_sha256(f"AWS4{secret_key}".encode("utf-8"), date_stamp)
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    k_signing = hmac.new(k_service, b"aws4_request", hashlib.sha256).digest()
    signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    result = dict(headers)
    result["Host"] = parsed.netloc
    result["X-Amz-Date"] = amz_date
    result["X-Amz-Content-Sha256"] = payload_hash
    result["Authorization"] = (
        f"{AWS_ALGORITHM} Credential={access_key}/{scope}, "
        f"SignedHeaders={signed_header_names}, Signature={signature}"
    )
    return result


# ==================================================================================================
# Tencent TC3
# ==================================================================================================

def sign_tc3(
    secret_id: str,
    secret_key: str,
    host: str,
    action: str,
    body: bytes,
    timestamp: int,
    content_type: str = "application/json; charset=utf-8",
) -> str:
    """
    Builds a Tencent Cloud TC3-HMAC-SHA256 Authorization header.

    The service name is the first label of the host
    (``hunyuan.tencentcloudapi.com`` -> ``hunyuan``).

    Args:
        secret_id: SecretId
        secret_key: SecretKey
        host: API host
        action: X-TC-Action value
        body: Exact request body
        timestamp: Unix time also sent as X-TC-Timestamp
        content_type: Content-Type header value

    Returns:
        Authorization header value
    """
    service = host.split(".")[0]
    date = datetime.fromtimestamp(timestamp, timezone.utc).strftime("%Y-%m-%d")

    canonical_headers = f"content-type:{content_type}\nhost:{host}\nx-tc-action:{action.lower()}\n"
    signed_headers = "content-type;host;x-tc-action"
    canonical_request = "\n".join([
        "POST",
        "/",
        "",
        canonical_headers,
        signed_headers,
        sha256_hex(body),
    ])

    credential_scope = f"{date}/{service}/tc3_request"
    string_to_sign = "\n".join([
        TC3_ALGORITHM,
        str(timestamp),
        credential_scope,
        sha256_hex(canonical_request.encode("utf-8")),
    ])

    secret_date = _hmac_sha256(f"TC3{secret_key}".encode("utf-8"), date)
    secret_service = _hmac_sha256(secret_date, service)
    secret_signing = _hmac_sha256(secret_service, "tc3_request")
    signature = hmac.new(secret_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    return (
        f"{TC3_ALGORITHM} Credential={secret_id}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )


# ==================================================================================================
# Xunfei Spark
# ==================================================================================================

def sign_xunfei_url(url: str, api_key: str, api_secret: str, now: Optional[datetime] = None) -> str:
    """
    Appends the Spark ``host``/``date``/``authorization`` query to a WebSocket URL.

    The signature is an HMAC-SHA256 over the host, the date and the
    request line, keyed with the API secret.

    Args:
        url: Unsigned ``wss://`` URL
        api_key: APIKey of the Spark app
        api_secret: APISecret of the Spark app
        now: Signing time (defaults to the current time)

    Returns:
        Signed URL
    """
    now = now or datetime.now(timezone.utc)
    parsed = urlparse(url)
    date = format_datetime(now.astimezone(timezone.utc), usegmt=True)

    string_to_sign = f"host: {parsed.netloc}\ndate: {date}\nGET {parsed.path} HTTP/1.1"
    signature = base64.b64encode(_hmac_sha256(api_secret.encode("utf-8"), string_to_sign)).decode("ascii")
    authorization = (
        f'hmac username="{api_key}", algorithm="hmac-sha256", '
        f'headers="host date request-line", signature="{signature}"'
    )

    query = urlencode({
        "host": parsed.netloc,
        "date": date,
        "authorization": base64.b64encode(authorization.encode("utf-8")).decode("ascii"),
    })
    return f"{url}?{query}"
