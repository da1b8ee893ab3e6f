from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

import soundfile as sf

from echoscan import settings
from echoscan.config import AudioDeviceConfig, EngineConfig
from echoscan.dsp.chirp import generate_chirp
from echoscan.dsp.smoothing import rms_level
from echoscan.engine import RangeEstimator, RangeSample
from echoscan.errors import EchoScanError


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="echoscan acoustic rangefinder")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("devices", help="List audio devices")

    p_chirp = sub.add_parser("generate-chirp", help="Save probe chirp to wav file")
    p_chirp.add_argument("output", type=Path)
    p_chirp.add_argument("--sr", type=int, default=None, help="Sample rate (default from config)")
    _add_engine_flags(p_chirp)

    p_tone = sub.add_parser("tone", help="Play test beep")
    p_tone.add_argument("--freq", type=float, default=440.0)
    p_tone.add_argument("--ms", type=float, default=1000.0, help="Beep duration in milliseconds")
    _add_audio_flags(p_tone)

    p_mon = sub.add_parser("monitor", help="Show live mic RMS levels")
    _add_audio_flags(p_mon, capture_only=True)

    p_scan = sub.add_parser("scan", help="Continuous ranging")
    _add_audio_flags(p_scan)
    _add_engine_flags(p_scan)
    p_scan.add_argument("--count", type=int, default=0, help="Stop after N results (0 = until Ctrl+C)")
    p_scan.add_argument("--simulate", action="store_true", help="Use a simulated echo instead of audio devices")
    p_scan.add_argument("--echo-delay-ms", type=float, default=10.0, help="Round-trip delay of the simulated echo")
    p_scan.add_argument("--noise", type=float, default=0.01, help="Noise level of the simulated capture")

    p_config = sub.add_parser("config", help="View or edit configuration")
    p_config.add_argument("--show", action="store_true", help="Show current configuration")
    p_config.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Persist an engine setting (repeatable), e.g. --set rec_ms=150",
    )

    return parser.parse_args(argv)


def _add_audio_flags(parser: argparse.ArgumentParser, capture_only: bool = False):
    if not capture_only:
        parser.add_argument("--play-device", type=str, default=None, help="Playback device index or name")
    parser.add_argument("--rec-device", type=str, default=None, help="Input device index or name")
    parser.add_argument("--sr", type=int, default=None, help="Sample rate (default from config file)")
    parser.add_argument("--frames", type=int, default=None, help="Frames per buffer")


def _add_engine_flags(parser: argparse.ArgumentParser):
    parser.add_argument("--pulse-ms", type=float, default=None, help="Chirp duration (ms)")
    parser.add_argument("--start", type=float, default=None, help="Start frequency (Hz)")
    parser.add_argument("--end", type=float, default=None, help="End frequency (Hz)")
    parser.add_argument("--rec-ms", type=float, default=None, help="Recording window (ms)")
    parser.add_argument("--blind-ms", type=float, default=None, help="Blind zone (ms)")
    parser.add_argument("--noise-gate", type=float, default=None, help="Noise gate amplitude (0-1)")
    parser.add_argument("--alpha", type=float, default=None, help="Smoothing coefficient (0-1]")


def _build_audio_cfg(args: argparse.Namespace) -> AudioDeviceConfig:
    # Start with config from file
    cfg = AudioDeviceConfig.from_file()
    cfg.sample_rate = settings.get_sample_rate()

    # Override with command-line arguments if provided
    if getattr(args, "play_device", None) is not None:
        cfg.play_device = _parse_device(args.play_device)
    if getattr(args, "rec_device", None) is not None:
        cfg.rec_device = _parse_device(args.rec_device)
    if getattr(args, "sr", None) is not None:
        cfg.sample_rate = args.sr
    if getattr(args, "frames", None) is not None:
        cfg.frames_per_buffer = args.frames

    return cfg


def _build_engine_cfg(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_settings(
        pulse_ms=args.pulse_ms,
        start_freq=args.start,
        end_freq=args.end,
        rec_ms=args.rec_ms,
        blind_ms=args.blind_ms,
        noise_gate=args.noise_gate,
        smoothing_alpha=args.alpha,
    )


def _parse_device(value: str | None) -> int | str | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return value


def _fmt_distance(value: float | None) -> str:
    return "   ---  " if value is None else f"{value:6.3f} m"


def _print_sample(sample: RangeSample):
    print(
        f"[{sample.cycle:04d}] raw={_fmt_distance(sample.raw_distance_m)} "
        f"smoothed={_fmt_distance(sample.smoothed_distance_m)} "
        f"conf={sample.confidence:5.3f} peak={sample.peak_amplitude:5.3f} rms={sample.mic_rms:.4f}"
    )


def cmd_devices():
    from echoscan.io import audio

    devices = audio.list_devices()
    defaults = audio.default_devices()
    print("Default input/output:", defaults)
    for idx, dev in enumerate(devices):
        mark = []
        if defaults["default_input"] == idx:
            mark.append("IN")
        if defaults["default_output"] == idx:
            mark.append("OUT")
        marker = "*" if mark else " "
        print(f"{marker} [{idx:02d}] {dev['name']} :: in={dev['max_input_channels']} out={dev['max_output_channels']} sr={dev['default_samplerate']}")


def cmd_generate_chirp(args: argparse.Namespace):
    cfg = _build_engine_cfg(args)
    sr = args.sr or settings.get_sample_rate()
    chirp = generate_chirp(sr, cfg.pulse_ms, cfg.start_freq, cfg.end_freq)
    sf.write(args.output, chirp, sr)
    print(f"Saved {args.output} ({len(chirp)/sr*1000:.1f} ms, {cfg.start_freq:.0f}-{cfg.end_freq:.0f} Hz)")


def cmd_tone(args: argparse.Namespace):
    from echoscan.io.audio import InputCapture, OutputPlayback

    cfg_audio = _build_audio_cfg(args)
    with RangeEstimator() as engine:
        engine.initialize(InputCapture(cfg_audio), OutputPlayback(cfg_audio))
        if engine.play_test_beep(duration_ms=args.ms, frequency_hz=args.freq):
            # Let the tone drain before the output stream closes.
            time.sleep(args.ms / 1000.0 + 0.1)
        else:
            print("Test beep failed, see log")


def cmd_monitor(args: argparse.Namespace):
    from echoscan.io import audio

    cfg_audio = _build_audio_cfg(args)
    print("Press Ctrl+C to stop")

    def on_audio(samples, status):
        if status:
            print(f"Audio status: {status}")
            return
        level = rms_level(samples)
        print(f"RMS: {level:.5f}", end="\r", flush=True)

    try:
        audio.monitor_microphone(cfg_audio, on_audio)
    except KeyboardInterrupt:
        print("\nStopped")


def cmd_scan(args: argparse.Namespace):
    cfg = _build_engine_cfg(args)
    engine = RangeEstimator(cfg)

    if args.simulate:
        from echoscan.io.simulated import SimulatedEchoDevice

        sr = args.sr or settings.get_sample_rate()
        device = SimulatedEchoDevice(
            sample_rate=sr,
            echo_delay_ms=args.echo_delay_ms,
            record_ms=cfg.rec_ms,
            noise_level=args.noise,
        )
        engine.initialize(device)
        print(f"Simulated echo at {args.echo_delay_ms:.1f} ms round trip")
    else:
        from echoscan.io.audio import InputCapture, OutputPlayback

        cfg_audio = _build_audio_cfg(args)
        engine.initialize(InputCapture(cfg_audio), OutputPlayback(cfg_audio))

    print(
        f"Chirp {cfg.start_freq:.0f}-{cfg.end_freq:.0f} Hz, {cfg.pulse_ms:.0f} ms; "
        f"window {cfg.rec_ms:.0f} ms; blind {cfg.blind_ms:.1f} ms"
    )
    print("Press Ctrl+C to stop")

    received = 0
    engine.start_continuous_scan()
    try:
        for sample in engine.results():
            _print_sample(sample)
            received += 1
            if args.count and received >= args.count:
                break
    except KeyboardInterrupt:
        print()
    finally:
        engine.stop()
    print(f"Stopped after {received} results")


def cmd_config(args: argparse.Namespace):
    """Show or edit configuration."""
    config_file = settings.get_config_file_path()

    if args.set:
        values = {}
        for item in args.set:
            key, sep, value = item.partition("=")
            if not sep:
                raise SystemExit(f"Expected KEY=VALUE, got {item!r}")
            values[key.strip()] = value.strip()
        unknown = sorted(set(values) - set(settings.ENGINE_KEYS))
        if unknown:
            raise SystemExit(f"Unknown setting(s): {', '.join(unknown)}")
        if settings.set_engine_settings(values):
            print(f"✓ Saved {', '.join(sorted(values))} to {config_file}")
        else:
            print(f"✗ Failed to save settings to {config_file}")
            return

    if args.show or args.set:
        config_settings = settings.load_settings()
        print()
        print("=" * 60)
        print(f"echoscan configuration ({config_file})")
        print("=" * 60)
        for key, value in config_settings.items():
            print(f"  {key:20s}: {value}")
        print("=" * 60)


def main(argv: list[str] | None = None):
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        if args.command == "devices":
            cmd_devices()
        elif args.command == "generate-chirp":
            cmd_generate_chirp(args)
        elif args.command == "tone":
            cmd_tone(args)
        elif args.command == "monitor":
            cmd_monitor(args)
        elif args.command == "scan":
            cmd_scan(args)
        elif args.command == "config":
            cmd_config(args)
        else:
            raise SystemExit(f"Unknown command {args.command}")
    except EchoScanError as e:
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
