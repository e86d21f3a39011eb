from __future__ import annotations

import subprocess

from common.errors import EncodingError


def normalize_audio(
    data: bytes,
    input_sample_rate: int = 16000,
    input_channels: int = 1,
    input_encoding: str = "pcm_s16le",
    target_sample_rate: int = 16000,
    target_channels: int = 1,
) -> bytes:
    """Convert incoming audio to the segmenter's 16-bit PCM format.

    Audio already in the target format is returned as-is; anything else goes
    through ffmpeg. A conversion failure drops the frame with EncodingError.
    """
    if (
        input_sample_rate == target_sample_rate
        and input_channels == target_channels
        and input_encoding == "pcm_s16le"
    ):
        return data

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel", "error",
        "-f", _ffmpeg_format(input_encoding),
        "-ar", str(input_sample_rate),
        "-ac", str(input_channels),
        "-i", "pipe:0",
        "-f", "s16le",
        "-ar", str(target_sample_rate),
        "-ac", str(target_channels),
        "pipe:1",
    ]
    try:
        result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise EncodingError(f"Audio conversion failed: {exc}") from exc
    return result.stdout


def _ffmpeg_format(encoding: str) -> str:
    mapping = {
        "pcm_s16le": "s16le",
        "pcm_f32le": "f32le",
        "wav": "wav",
        "ogg": "ogg",
        "mp3": "mp3",
    }
    return mapping.get(encoding, "s16le")
