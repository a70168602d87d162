"""
Encryption service for message content.
Uses Fernet symmetric encryption so stored and pushed payloads are opaque.

The messaging core never looks inside content: routes encode before calling
send() and decode only for an authorized participant.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def is_encryption_enabled() -> bool:
    return bool(settings.ENCRYPTION_KEY)


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured or invalid
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encode_content(text: str) -> str:
    """
    Encode plaintext message content for storage.

    Returns the Fernet token as text, or the input unchanged when no key is
    configured.

    Raises:
        EncryptionError: If text is empty or encryption fails
    """
    if not text or not isinstance(text, str):
        raise EncryptionError("Content must be a non-empty string")

    if not is_encryption_enabled():
        return text

    try:
        return _get_fernet().encrypt(text.encode("utf-8")).decode("ascii")
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt content", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decode_content(payload: str) -> str:
    """
    Decode stored content back to plaintext.

    Unsent messages carry empty content, which decodes to "".

    Raises:
        EncryptionError: If the payload is not a valid token for the key
    """
    if not payload:
        return ""

    if not is_encryption_enabled():
        return payload

    try:
        return _get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Content decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted content") from e
    except (UnicodeError, ValueError) as e:
        raise EncryptionError(f"Decryption failed: {e}") from e


def validate_encryption_config() -> bool:
    """Round-trip a probe value; False if the key is missing or broken."""
    if not is_encryption_enabled():
        logger.warning("ENCRYPTION_KEY not set, message content stored as given")
        return False

    try:
        probe = "encryption_probe_12345"
        is_valid = decode_content(encode_content(probe)) == probe
        if is_valid:
            logger.info("Encryption configuration validated successfully")
        else:
            logger.error("Encryption validation failed - data mismatch")
        return is_valid
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def generate_new_key() -> str:
    """Generate a new Fernet key for ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("utf-8")
