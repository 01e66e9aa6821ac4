"""Tests for the headless PCM-clock output."""

import pytest

from termtune.exceptions import DecodeError
from termtune.media.output import PcmClockOutput, PcmClockStream

from .conftest import FakeClock


@pytest.fixture
def stream(clock: FakeClock) -> PcmClockStream:
    return PcmClockStream(10_000, sample_rate=44100, buffer_size=4096, clock=clock)


class TestPcmClockStream:
    def test_position_advances_in_whole_buffers(self, stream, clock):
        stream.play()

        clock.advance(0.05)  # less than one 4096-frame buffer
        assert stream.position_ms() == 0

        clock.advance(0.05)
        assert stream.position_ms() == 4096 * 1000 // 44100

    def test_pause_freezes_position(self, stream, clock):
        stream.play()
        clock.advance(1.0)
        stream.pause()
        frozen = stream.position_ms()

        clock.advance(5.0)

        assert stream.position_ms() == frozen
        assert not stream.playing

    def test_seek_is_clamped(self, stream):
        stream.seek(99_999)
        assert stream.position_ms() == 10_000
        assert stream.ended

        stream.seek(-10)
        assert stream.position_ms() == 0

    def test_plays_to_the_end(self, stream, clock):
        stream.play()

        clock.advance(11.0)

        assert stream.ended
        assert stream.position_ms() == 10_000

    def test_closed_stream_does_not_play(self, stream, clock):
        stream.close()
        stream.play()
        clock.advance(1.0)

        assert stream.position_ms() == 0

    def test_volume_is_clamped(self, stream):
        stream.set_volume(2.0)
        assert stream.volume == 1.0


class TestPcmClockOutput:
    def test_opens_stream_with_probed_duration(self, tmp_path, clock):
        path = tmp_path / "a.audio"
        path.write_bytes(b"x")
        output = PcmClockOutput(probe=lambda p: 1234, clock=clock, buffer_size=1024)

        stream = output.open(path)

        assert stream.duration_ms == 1234
        assert stream.buffer_size == 1024

    def test_probe_error_is_decode_error(self, tmp_path):
        def probe(path):
            raise ValueError("not audio")

        with pytest.raises(DecodeError, match="not audio"):
            PcmClockOutput(probe=probe).open(tmp_path / "a.audio")

    def test_zero_duration_is_decode_error(self, tmp_path):
        with pytest.raises(DecodeError):
            PcmClockOutput(probe=lambda p: 0).open(tmp_path / "a.audio")

    def test_real_probe_rejects_garbage(self, tmp_path):
        path = tmp_path / "a.audio"
        path.write_bytes(b"not audio at all" * 32)

        with pytest.raises(DecodeError):
            PcmClockOutput().open(path)
