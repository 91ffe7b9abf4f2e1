"""
Tests for the Docker attach stream decoder.
"""

from backend.app.grading.frames import (
    STDERR, STDIN, STDOUT, Frame, demux, encode_frame, iter_frames,
)


class TestIterFrames:
    def test_reads_frames_in_order(self):
        buffer = encode_frame(STDOUT, b"hello\n") + encode_frame(STDERR, b"oops") + encode_frame(STDOUT, b"bye")

        frames = list(iter_frames(buffer))

        assert frames == [
            Frame(STDOUT, b"hello\n"),
            Frame(STDERR, b"oops"),
            Frame(STDOUT, b"bye"),
        ]

    def test_header_layout(self):
        frame = encode_frame(STDERR, b"abc")

        assert frame[:8] == bytes([2, 0, 0, 0, 0, 0, 0, 3])
        assert frame[8:] == b"abc"

    def test_empty_buffer(self):
        assert list(iter_frames(b"")) == []

    def test_stops_on_short_header(self):
        buffer = encode_frame(STDOUT, b"ok") + bytes([1, 0, 0])

        assert list(iter_frames(buffer)) == [Frame(STDOUT, b"ok")]

    def test_stops_on_truncated_payload(self):
        truncated = encode_frame(STDOUT, b"0123456789")[:-4]
        buffer = encode_frame(STDERR, b"first") + truncated

        assert list(iter_frames(buffer)) == [Frame(STDERR, b"first")]

    def test_zero_length_frame(self):
        buffer = encode_frame(STDOUT, b"") + encode_frame(STDOUT, b"x")

        assert list(iter_frames(buffer)) == [Frame(STDOUT, b""), Frame(STDOUT, b"x")]

    def test_large_payload_length(self):
        payload = b"a" * 70000
        frames = list(iter_frames(encode_frame(STDOUT, payload)))

        assert len(frames) == 1
        assert frames[0].payload == payload


class TestDemux:
    def test_routes_by_channel(self):
        buffer = (
            encode_frame(STDOUT, b"1\n")
            + encode_frame(STDERR, b"warn\n")
            + encode_frame(STDOUT, b"2\n")
        )

        stdout, stderr = demux(buffer)

        assert stdout == b"1\n2\n"
        assert stderr == b"warn\n"

    def test_ignores_stdin_and_unknown_channels(self):
        buffer = encode_frame(STDIN, b"in") + encode_frame(7, b"??") + encode_frame(STDOUT, b"out")

        assert demux(buffer) == (b"out", b"")

    def test_partial_trailing_frame_keeps_earlier_output(self):
        buffer = encode_frame(STDOUT, b"done") + encode_frame(STDERR, b"Killed")[:10]

        assert demux(buffer) == (b"done", b"")

    def test_multibyte_text_split_across_frames(self):
        text = "héllo".encode("utf-8")
        buffer = encode_frame(STDOUT, text[:2]) + encode_frame(STDOUT, text[2:])

        stdout, _ = demux(buffer)

        assert stdout.decode("utf-8") == "héllo"
