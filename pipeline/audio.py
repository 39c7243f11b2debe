"""Audio and image payload helpers shared by the route layer and the CLI."""

from __future__ import annotations

import base64
import re
import struct

_DATA_URL_PREFIX_RE = re.compile(r"^data:image/(png|jpeg|jpg);base64,")

WAV_HEADER_BYTES = 44


def strip_data_url(value: str) -> str:
    """Drop a leading ``data:image/(png|jpeg|jpg);base64,`` prefix if present."""
    return _DATA_URL_PREFIX_RE.sub("", value or "", count=1)


def pcm_to_wav(pcm: bytes, sample_rate: int = 24000, channels: int = 1, sample_width: int = 2) -> bytes:
    """Wrap raw little-endian PCM in a 44-byte RIFF/WAVE header."""
    byte_rate = sample_rate * channels * sample_width
    block_align = channels * sample_width
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        sample_width * 8,
        b"data",
        len(pcm),
    )
    return header + pcm


def pcm_base64_to_wav_base64(audio_base64: str, **kwargs: int) -> str:
    wav = pcm_to_wav(base64.b64decode(audio_base64), **kwargs)
    return base64.b64encode(wav).decode("ascii")
