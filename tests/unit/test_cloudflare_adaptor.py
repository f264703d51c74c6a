# -*- coding: utf-8 -*-

"""
Unit tests for the Cloudflare Workers AI adaptor and the S3 object storage
used for generated images.
"""

import base64
import json

import httpx
import pytest

from relay_gateway.adaptors.cloudflare import CloudflareAdaptor, convert_image_request, extract_image, is_ai_gateway
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import ConfigMissingError, RequestInvalidError, UpstreamError
from relay_gateway.models import ImageData, ImageRequest, ImageResponse
from relay_gateway.object_storage import ObjectStorage, S3ObjectStorage, storage_from_settings, upload_base64_images
from relay_gateway.relaymode import RelayMode

GATEWAY_URL = "https://gateway.ai.cloudflare.com/v1/acc/gw/workers-ai"
FLUX = "@cf/black-forest-labs/flux-1-schnell"


class MemoryStorage(ObjectStorage):
    """Keeps uploaded blobs in a list."""

    def __init__(self):
        self.blobs = []

    async def put(self, data: bytes, content_type: str = "image/png") -> str:
        self.blobs.append((data, content_type))
        return f"https://cdn.test/{len(self.blobs)}.png"


class TestUrls:
    """Tests for account API and AI Gateway URLs."""

    def test_gateway_detection(self):
        assert is_ai_gateway(GATEWAY_URL)
        assert not is_ai_gateway("https://api.cloudflare.com")

    def test_account_api(self, meta_factory):
        meta = meta_factory(api_type=APIType.CLOUDFLARE, base_url="https://api.cloudflare.com", config={"user_id": "acc1"})
        assert CloudflareAdaptor().get_request_url(meta) == (
            "https://api.cloudflare.com/client/v4/accounts/acc1/ai/v1/chat/completions"
        )

    def test_account_api_image(self, meta_factory):
        meta = meta_factory(
            api_type=APIType.CLOUDFLARE,
            base_url="https://api.cloudflare.com",
            config={"user_id": "acc1"},
            model=FLUX,
            mode=RelayMode.IMAGES_GENERATIONS,
        )
        assert CloudflareAdaptor().get_request_url(meta) == f"https://api.cloudflare.com/client/v4/accounts/acc1/ai/run/{FLUX}"

    def test_gateway_urls(self, meta_factory):
        chat = meta_factory(api_type=APIType.CLOUDFLARE, base_url=GATEWAY_URL)
        image = meta_factory(api_type=APIType.CLOUDFLARE, base_url=GATEWAY_URL, model=FLUX, mode=RelayMode.IMAGES_GENERATIONS)

        assert CloudflareAdaptor().get_request_url(chat) == f"{GATEWAY_URL}/v1/chat/completions"
        assert CloudflareAdaptor().get_request_url(image) == f"{GATEWAY_URL}/{FLUX}"

    def test_missing_account(self, meta_factory):
        meta = meta_factory(api_type=APIType.CLOUDFLARE, base_url="https://api.cloudflare.com")
        with pytest.raises(ConfigMissingError):
            CloudflareAdaptor().get_request_url(meta)


class TestImages:
    """Tests for image generation."""

    def test_request_body(self):
        body = convert_image_request(ImageRequest(model=FLUX, prompt="a lake", size="512x768"), FLUX)
        assert body == {"prompt": "a lake", "width": 512, "height": 768, "steps": 4}

    def test_invalid_size(self):
        with pytest.raises(RequestInvalidError):
            convert_image_request(ImageRequest(prompt="x", size="axb"), "@cf/stabilityai/stable-diffusion-xl-base-1.0")

    def test_extract_raw_bytes(self):
        assert extract_image(b"\x89PNG", "@cf/stabilityai/stable-diffusion-xl-base-1.0") == b"\x89PNG"

    def test_extract_json_image(self):
        raw = json.dumps({"result": {"image": base64.b64encode(b"img").decode()}, "success": True}).encode()
        assert extract_image(raw, FLUX) == b"img"

    def test_extract_errors(self):
        raw = json.dumps({"errors": [{"code": 5006, "message": "bad input"}], "success": False}).encode()
        with pytest.raises(UpstreamError) as exc_info:
            extract_image(raw, FLUX)
        assert "5006" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_image_uploaded(self, meta_factory, relay_ctx):
        """
        What it does: Handles a raw-bytes image answer.
        Purpose: The picture is uploaded and only its URL is returned.
        """
        storage = MemoryStorage()
        adaptor = CloudflareAdaptor(storage=storage)
        meta = meta_factory(
            api_type=APIType.CLOUDFLARE,
            model="@cf/stabilityai/stable-diffusion-xl-base-1.0",
            mode=RelayMode.IMAGES_GENERATIONS,
        )

        result = await adaptor.do_response(httpx.Response(200, content=b"\x89PNG"), meta, relay_ctx)

        assert result.body["data"] == [{"url": "https://cdn.test/1.png"}]
        assert storage.blobs == [(b"\x89PNG", "image/png")]

    @pytest.mark.asyncio
    async def test_chat_delegates_to_openai_handler(self, meta_factory, relay_ctx):
        body = json.dumps({
            "id": "c1",
            "object": "chat.completion",
            "created": 1,
            "model": "@cf/meta/llama-3-8b-instruct",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3},
        }).encode("utf-8")
        meta = meta_factory(api_type=APIType.CLOUDFLARE, model="@cf/meta/llama-3-8b-instruct")

        result = await CloudflareAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)

        assert result.body["choices"][0]["message"]["content"] == "ok"


class TestObjectStorage:
    """Tests for S3ObjectStorage and upload_base64_images."""

    @pytest.mark.asyncio
    async def test_put_signs_and_returns_public_url(self, mock_upstream):
        storage = S3ObjectStorage(
            endpoint="https://acc.r2.test",
            bucket="images-bucket",
            access_key="AK",
            secret_key="SK",
            public_url="https://cdn.test/",
        )

        url = await storage.put(b"data", "image/png")

        sent = mock_upstream.last_request
        assert sent.method == "PUT"
        assert str(sent.url).startswith("https://acc.r2.test/images-bucket/images/")
        assert str(sent.url).endswith(".png")
        assert sent.headers["x-amz-acl"] == "public-read"
        assert sent.headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AK/")
        assert "/auto/s3/aws4_request" in sent.headers["Authorization"]
        assert url.startswith("https://cdn.test/images/")

    @pytest.mark.asyncio
    async def test_put_failure(self, mock_upstream):
        mock_upstream.respond_json({"error": "denied"}, status_code=403)
        storage = S3ObjectStorage("https://acc.r2.test", "b", "AK", "SK", "https://cdn.test")

        with pytest.raises(UpstreamError):
            await storage.put(b"data")

    @pytest.mark.asyncio
    async def test_upload_base64_images(self):
        storage = MemoryStorage()
        response = ImageResponse(data=[
            ImageData(b64_json=base64.b64encode(b"one").decode()),
            ImageData(url="https://already.test/x.png"),
        ])

        await upload_base64_images(response, storage)

        assert response.data[0].url == "https://cdn.test/1.png"
        assert response.data[0].b64_json is None
        assert response.data[1].url == "https://already.test/x.png"
        assert storage.blobs == [(b"one", "image/png")]

    def test_storage_from_settings_requires_config(self):
        with pytest.raises(ConfigMissingError):
            storage_from_settings()
