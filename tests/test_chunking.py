"""Tests for packet-aligned stream resegmentation."""

from __future__ import annotations

import random

import pytest

from tello_relay.chunking import StreamChunker, frame_unit_size


def test_frame_unit_is_largest_packet_multiple_within_budget() -> None:
    assert frame_unit_size() == 3948
    assert frame_unit_size(188, 4096) % 188 == 0
    assert frame_unit_size(188, 188) == 188
    assert frame_unit_size(100, 1050) == 1000


@pytest.mark.parametrize("packet_size, budget", [(0, 4096), (188, 100), (-1, 10)])
def test_frame_unit_rejects_invalid_sizes(packet_size: int, budget: int) -> None:
    with pytest.raises(ValueError):
        frame_unit_size(packet_size, budget)


def test_chunker_emits_two_units_from_ten_thousand_bytes() -> None:
    chunker = StreamChunker(frame_unit_size())

    units = chunker.feed(bytes(10_000))

    assert [len(unit) for unit in units] == [3948, 3948]
    assert len(chunker) == 2104


def test_chunker_completes_unit_across_feeds() -> None:
    chunker = StreamChunker(10)

    assert chunker.feed(b"abcd") == []
    assert chunker.feed(b"efg") == []
    units = chunker.feed(b"hijklm")

    assert units == [b"abcdefghij"]
    assert chunker.pending == b"klm"


def test_chunker_preserves_byte_order_for_arbitrary_blocks() -> None:
    rng = random.Random(1234)
    chunker = StreamChunker(376)
    fed = bytearray()
    emitted = bytearray()

    for _ in range(200):
        block = bytes(rng.randrange(256) for _ in range(rng.randrange(0, 900)))
        fed += block
        for unit in chunker.feed(block):
            assert len(unit) == 376
            emitted += unit
        assert len(chunker) < 376

    assert bytes(emitted) + chunker.pending == bytes(fed)


def test_chunker_reset_reports_dropped_bytes() -> None:
    chunker = StreamChunker(8)
    chunker.feed(b"12345")

    assert chunker.reset() == 5
    assert chunker.pending == b""
    assert chunker.feed(b"abcdefgh") == [b"abcdefgh"]


def test_chunker_ignores_empty_blocks() -> None:
    chunker = StreamChunker(4)

    assert chunker.feed(b"") == []
    assert len(chunker) == 0


def test_chunker_requires_positive_unit() -> None:
    with pytest.raises(ValueError):
        StreamChunker(0)
