"""
Unit tests for storage key generation.
"""
import re

import pytest

from src.ingest.keys import KeyGenerator, DEFAULT_KEY_PREFIX


@pytest.mark.unit
class TestKeyGenerator:
    """Test suite for KeyGenerator."""

    def test_default_prefix(self):
        key = KeyGenerator().next()
        assert key.startswith(f"{DEFAULT_KEY_PREFIX}/")

    def test_key_format(self):
        key = KeyGenerator("snapshots").next()
        assert re.fullmatch(r"snapshots/[0-9a-f]{32}", key)

    def test_prefix_slashes_trimmed(self):
        key = KeyGenerator("/fleet/snapshots/").next()
        assert key.startswith("fleet/snapshots/")
        assert "//" not in key

    def test_empty_prefix_gives_bare_token(self):
        key = KeyGenerator("").next()
        assert re.fullmatch(r"[0-9a-f]{32}", key)

    def test_consecutive_keys_differ(self):
        generator = KeyGenerator()
        assert generator.next() != generator.next()

    def test_million_keys_are_unique(self):
        """No collisions across 10^6 keys."""
        generator = KeyGenerator()
        n = 1_000_000
        keys = {generator.next() for _ in range(n)}
        assert len(keys) == n

    def test_independent_generators_do_not_collide(self):
        """Two generators (e.g. two processes) draw from the same random space."""
        first = {KeyGenerator().next() for _ in range(10_000)}
        second = {KeyGenerator().next() for _ in range(10_000)}
        assert first.isdisjoint(second)
