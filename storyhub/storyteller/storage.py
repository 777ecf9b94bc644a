"""
Audio Storage
Uploads narration audio to Cloudflare R2 through its S3-compatible API.
"""

import asyncio
from typing import Optional

from storyhub.config import ConfigurationError, config
from storyhub.utils.logging import storage_logger as logger


AUDIO_CONTENT_TYPE = "audio/mpeg"


def audio_object_key(scenario_slug: str) -> str:
    return f"stories/audio/{scenario_slug}.mp3"


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and an object key with exactly one slash between them."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


class AudioStorage:
    """Service for narration uploads."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        public_url: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket or config.CLOUDFLARE_R2_BUCKET_NAME
        self.public_url = public_url or config.CLOUDFLARE_R2_PUBLIC_URL
        self.endpoint_url = endpoint_url or config.r2_endpoint_url
        self.access_key_id = access_key_id or config.CLOUDFLARE_R2_ACCESS_KEY_ID
        self.secret_access_key = secret_access_key or config.CLOUDFLARE_R2_SECRET_ACCESS_KEY
        self._client = client

    def ensure_configured(self):
        if not self.bucket or not self.public_url:
            raise ConfigurationError("Missing R2 bucket name or public URL in environment variables")
        if self._client is None and not (self.endpoint_url and self.access_key_id and self.secret_access_key):
            raise ConfigurationError("Missing R2 credentials in environment variables")

    @property
    def client(self):
        if self._client is None:
            self.ensure_configured()
            import boto3
            from botocore.config import Config
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                region_name="auto",
                config=Config(signature_version="s3v4")
            )
        return self._client

    async def upload_audio(self, audio: bytes, scenario_slug: str) -> str:
        """Upload narration for a scenario and return its public URL."""
        self.ensure_configured()
        key = audio_object_key(scenario_slug)

        # boto3 is blocking
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=audio,
            ContentType=AUDIO_CONTENT_TYPE
        )

        url = join_url(self.public_url, key)
        logger.info("Audio uploaded", key=key, size=len(audio))
        return url
