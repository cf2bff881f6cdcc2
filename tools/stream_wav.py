# tools/stream_wav.py
"""
Stream a 16-bit WAV file through a TranscriptionController and print
what comes back. Uses the same env config as the server (.env is loaded).

    pip install -e .
    python tools/stream_wav.py hello.wav [--speed 4] [--segment-every-ms 2000]
"""
import argparse
import asyncio
import wave

from dotenv import load_dotenv

from audio.frame_generator import split_pcm_into_frames
from audio.source import InMemoryFrameSource, SegmentBoundary
from config import AppConfig
from constants import AudioFormat
from observability.logger import set_log_level
from orchestrator.controller import TranscriptionController
from server.app import build_provider_factory


def read_wav(path: str) -> tuple[bytes, AudioFormat]:
    with wave.open(path, "rb") as wf:
        if wf.getsampwidth() != 2:
            raise SystemExit(f"{path}: expected 16-bit PCM, got {wf.getsampwidth() * 8}-bit")
        fmt = AudioFormat(sample_rate_hz=wf.getframerate(), channels=wf.getnchannels())
        return wf.readframes(wf.getnframes()), fmt


async def main(path: str, speed: float, segment_every_ms: int) -> None:
    config = AppConfig.load_from_env()
    set_log_level(config.log_level)

    pcm, fmt = read_wav(path)
    print("sample_rate:", fmt.sample_rate_hz, "channels:", fmt.channels)

    source = InMemoryFrameSource()
    controller = TranscriptionController(
        provider=build_provider_factory(config)(),
        frame_source=source,
        options=config.transcription_options(),
    )
    controller.on_partial(lambda r: print("partial:", r.text))
    controller.on_transcript(lambda r: print("FINAL:", r.text))
    controller.on_error(lambda e: print("error:", type(e).__name__, e))
    controller.on_status_change(lambda s: print("status:", s.value))

    connect_task = asyncio.create_task(controller.connect())

    frames = split_pcm_into_frames(pcm, audio_format=fmt, keep_partial=True)
    segment_start = 0
    source.publish_vad(True)
    for frame in frames:
        source.publish_frame(frame)
        if segment_every_ms > 0 and frame.ts_ms - segment_start >= segment_every_ms:
            source.publish_segment(SegmentBoundary(start_ms=segment_start, end_ms=frame.ts_ms))
            segment_start = frame.ts_ms
        await asyncio.sleep(fmt.frame_ms / 1000 / speed)
    source.publish_vad(False)

    await connect_task
    await controller.force_endpoint()
    await asyncio.sleep(1.0)
    await controller.shutdown()
    await controller.wait_idle()


if __name__ == "__main__":
    load_dotenv()
    parser = argparse.ArgumentParser()
    parser.add_argument("path")
    parser.add_argument("--speed", type=float, default=1.0)
    parser.add_argument("--segment-every-ms", type=int, default=0)
    args = parser.parse_args()
    asyncio.run(main(args.path, args.speed, args.segment_every_ms))
