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
Object storage for generated images.

Image backends that answer with base64 blobs have them uploaded here so
callers receive URLs. The bundled implementation speaks the S3 PUT API
(Cloudflare R2 by default) signed with SigV4.
"""

import base64
import binascii
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from loguru import logger

from relay_gateway.config import settings
from relay_gateway.exceptions import ConfigMissingError, UpstreamError
from relay_gateway.http_client import send_request
from relay_gateway.models import ImageResponse
from relay_gateway.signing import sign_aws_v4


class ObjectStorage(ABC):
    """Stores a blob and returns its public URL."""

    @abstractmethod
    async def put(self, data: bytes, content_type: str = "image/png") -> str:
        ...


class S3ObjectStorage(ObjectStorage):
    """
    S3 compatible storage (Cloudflare R2, MinIO, AWS S3).

    Objects are written under ``images/<uuid>.<ext>`` with a public-read ACL
    and addressed through ``public_url``.
    """

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        public_url: str,
        region: str = "auto",
    ):
        self.endpoint = endpoint.rstrip("/")
        self.bucket = bucket
        self.access_key = access_key
        self.secret_key = secret_key
        self.public_url = public_url.rstrip("/")
        self.region = region

    async def put(self, data: bytes, content_type: str = "image/png") -> str:
        extension = content_type.split("/")[-1] or "bin"
        key = f"images/{uuid.uuid4().hex}.{extension}"
        url = f"{self.endpoint}/{self.bucket}/{key}"

        headers = sign_aws_v4(
            "PUT",
            url,
            {"Content-Type": content_type, "x-amz-acl": "public-read"},
            data,
            self.access_key,
            self.secret_key,
            self.region,
            "s3",
            double_encode_path=False,
        )
        response = await send_request("PUT", url, headers=headers, content=data)
        if response.status_code >= 400:
            raise UpstreamError(
                f"object upload failed with status {response.status_code}: {response.text[:200]}",
                status_code=500,
            )

        logger.debug(f"Uploaded {len(data)} bytes to {key}")
        return f"{self.public_url}/{key}"


def storage_from_settings(account_id: str = "") -> ObjectStorage:
    """
    Builds the R2 storage from CLOUDFLARE_R2_* settings.

    Args:
        account_id: Account id used when CLOUDFLARE_R2_ACCOUNT_ID is unset

    Raises:
        ConfigMissingError: Credentials, bucket or public URL missing
    """
    account = settings.r2_account_id or account_id
    if not all([settings.r2_access_key_id, settings.r2_secret_access_key, account,
                settings.r2_bucket, settings.r2_public_url]):
        raise ConfigMissingError("missing Cloudflare R2 configuration")

    return S3ObjectStorage(
        endpoint=f"https://{account}.r2.cloudflarestorage.com",
        bucket=settings.r2_bucket,
        access_key=settings.r2_access_key_id,
        secret_key=settings.r2_secret_access_key,
        public_url=settings.r2_public_url,
    )


async def upload_base64_images(
    response: ImageResponse,
    storage: Optional[ObjectStorage] = None,
    content_type: str = "image/png",
) -> ImageResponse:
    """
    Replaces ``b64_json`` images by uploaded URLs.

    Args:
        response: Image response, modified in place
        storage: Target storage (defaults to the R2 settings)
        content_type: MIME type of the blobs

    Returns:
        The same response
    """
    pending = [item for item in response.data if item.b64_json]
    if not pending:
        return response

    storage = storage or storage_from_settings()
    for item in pending:
        try:
            blob = base64.b64decode(item.b64_json)
        except (binascii.Error, ValueError) as e:
            logger.error(f"Error decoding base64 image: {e}")
            raise UpstreamError(f"invalid base64 image from upstream: {e}", status_code=500)
        item.url = await storage.put(blob, content_type)
        item.b64_json = None
    return response
