from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from .audio import SAMPLE_RATE, read_wav
from .config import StyleParams
from .errors import XformedError
from .features import analyze
from .logging_utils import configure_logging, debug_enabled, log_exception
from .melody import extract_melody_features
from .synth import render
from .timeline import NoteTimeline

_LOGGER = logging.getLogger("xformed.cli")
_CONSOLE = Console()


def _write_or_print(payload: str, output: str | None) -> None:
    if output is None:
        _CONSOLE.print_json(payload)
        return
    target = Path(output)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(payload, encoding="utf-8")
    _CONSOLE.print(f"Wrote {target}")


def load_timeline(path: str | Path) -> NoteTimeline:
    """Load a timeline from a .mid/.midi file or a JSON dump of NoteTimeline."""
    source = Path(path)
    if source.suffix.lower() in (".mid", ".midi"):
        return NoteTimeline.from_midi_bytes(source.read_bytes())
    return NoteTimeline.model_validate_json(source.read_text(encoding="utf-8"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xformed")
    sub = parser.add_subparsers(dest="command", required=True)

    features = sub.add_parser("features", help="Analyze a wav file and dump its feature report.")
    features.add_argument("--input", required=True, type=str)
    features.add_argument("--frame-size", type=int, default=2048)
    features.add_argument("--hop-size", type=int, default=512)
    features.add_argument("--output", type=str, default=None)

    melody = sub.add_parser("melody", help="Track f0 and onsets of a wav file.")
    melody.add_argument("--input", required=True, type=str)
    melody.add_argument("--output", type=str, default=None)

    synth = sub.add_parser("render", help="Render a timeline (.json or .mid) to wav.")
    synth.add_argument("--input", required=True, type=str)
    synth.add_argument("--output", type=str, default="out.wav")
    synth.add_argument("--midi", type=str, default=None, help="Also write the timeline as MIDI.")
    synth.add_argument("--sample-rate", type=int, default=SAMPLE_RATE)
    synth.add_argument("--layering", type=str, default="saw,sine")
    synth.add_argument("--swing", type=float, default=0.0)
    synth.add_argument("--humanize", type=float, default=0.1)
    synth.add_argument("--polyphony", type=int, default=1)
    synth.add_argument("--percussion", action="store_true")
    synth.add_argument("--scale", choices=["major", "minor"], default="major")
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        if args.command == "features":
            report = analyze(read_wav(args.input), args.frame_size, args.hop_size)
            _write_or_print(report.model_dump_json(indent=2), args.output)
            return 0

        if args.command == "melody":
            extraction = extract_melody_features(read_wav(args.input))
            _write_or_print(extraction.model_dump_json(indent=2), args.output)
            return 0

        if args.command == "render":
            timeline = load_timeline(args.input)
            style = StyleParams(
                layering=args.layering,
                swing=args.swing,
                humanize=args.humanize,
                polyphony=args.polyphony,
                percussion=args.percussion,
                scale=args.scale,
            )
            audio = render(timeline, args.sample_rate, style)
            path = audio.save(args.output)
            _CONSOLE.print(f"Wrote {path} ({audio.duration:.2f}s, sr={audio.sample_rate})")
            if args.midi:
                _CONSOLE.print(f"Wrote {timeline.save_midi(args.midi)}")
            return 0

        parser.print_help()
        return 1
    except (XformedError, OSError, ValueError) as exc:
        _LOGGER.warning("xformed CLI failed: %s", exc, exc_info=debug_enabled())
        log_exception("xformed CLI", exc)
        _CONSOLE.print(f"[red]xformed failed:[/red] {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
