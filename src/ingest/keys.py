"""
Storage key generation.

Keys are random (uuid4, 122 bits from os.urandom) rather than counters so that
restarts and parallel instances writing to the same bucket never collide.
"""
import uuid

DEFAULT_KEY_PREFIX = "telemetry"


class KeyGenerator:
    """Produces a fresh, collision-resistant object key per call."""

    def __init__(self, prefix: str = DEFAULT_KEY_PREFIX):
        self.prefix = prefix.strip("/")

    def next(self) -> str:
        """
        Return a new storage key.

        Returns:
            "<prefix>/<32 hex chars>", or just the hex string when no prefix is set
        """
        token = uuid.uuid4().hex
        if not self.prefix:
            return token
        return f"{self.prefix}/{token}"
