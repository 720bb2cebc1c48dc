"""URL Signing Utility.

Provides the UrlSigner class used to build and check expiring HMAC-SHA256
signed download URLs for the local blob storage backend.
"""

import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass

logger = logging.getLogger(__name__)

__all__ = [
    "SignedUrlParams",
    "UrlSigner",
]


@dataclass
class Message:
    path: str
    expires: int
    nonce: str
    download_name: str = ""

    def __post_init__(self) -> None:
        if "|" in self.path:
            raise ValueError("Path cannot contain pipe character")

    def encode(self) -> str:
        """Encode the message into a string."""
        return f"{self.path}|{self.expires}|{self.nonce}|{self.download_name}"

    def sign(self, secret_key: bytes) -> str:
        """Generate signature for the message."""
        return hmac.new(
            secret_key, self.encode().encode("utf-8"), hashlib.sha256
        ).hexdigest()


@dataclass
class SignedUrlParams:
    """Query parameters attached to a signed URL."""

    signature: str
    expires: int
    """Expiry as a unix timestamp in seconds."""

    nonce: str


class UrlSigner:
    """Helper for signing and verifying URLs."""

    def __init__(self, secret_key: str) -> None:
        """Initialize with a secret key.

        Args:
            secret_key: The secret key used for HMAC generation.
        """
        if not secret_key:
            raise ValueError("Secret key cannot be empty")
        self.secret_key = secret_key.encode("utf-8")

    def sign(
        self, path: str, ttl_seconds: int, download_name: str = ""
    ) -> SignedUrlParams:
        """Sign a path so that it is valid for ttl_seconds.

        Args:
            path: The resource path to sign.
            ttl_seconds: How long the signature stays valid.
            download_name: Optional file name the URL should be served as.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires = int(time.time()) + ttl_seconds
        nonce = uuid.uuid4().hex
        signature = Message(path, expires, nonce, download_name).sign(self.secret_key)
        return SignedUrlParams(signature=signature, expires=expires, nonce=nonce)

    def verify(
        self,
        path: str,
        signature: str,
        expires: int,
        nonce: str,
        download_name: str = "",
    ) -> bool:
        """Verify the signature for a path.

        Returns:
            True if the signature matches and has not expired.
        """
        if not signature or not expires or not nonce:
            return False

        if int(time.time()) > expires:
            logger.info(f"Signature for {path} expired at {expires}")
            return False

        expected = Message(path, expires, nonce, download_name).sign(self.secret_key)
        return hmac.compare_digest(expected, signature)
