from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from beatgrid.util.config import default_config_path, load_config
from beatgrid.util.logging_setup import configure_logging

logger = logging.getLogger(__name__)


@dataclass
class DoctorResult:
    ok: bool
    notes: list[str]


def _doctor() -> DoctorResult:
    notes: list[str] = []
    ok = True

    try:
        import numpy

        notes.append(f"numpy: OK ({numpy.__version__})")
    except ImportError:
        ok = False
        notes.append("numpy: MISSING (needed for rendering)")

    try:
        import sounddevice as sd

        out = sd.query_devices(kind="output")
        notes.append(f"sounddevice: OK (default output: {out['name']})")
    except (ImportError, OSError) as e:
        ok = False
        notes.append(f"sounddevice: UNAVAILABLE ({e}); live playback disabled, exports still work")
    except Exception as e:
        notes.append(f"sounddevice: no output device ({e})")

    try:
        import mido  # noqa: F401

        notes.append("mido: OK")
    except ImportError:
        notes.append("mido: MISSING (needed for export_midi)")

    notes.append(f"config: {default_config_path()}")
    notes.append(f"python: {sys.version.split()[0]}")
    notes.append(f"platform: {sys.platform}")
    return DoctorResult(ok=ok, notes=notes)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="beatgrid",
        add_help=True,
        formatter_class=argparse.RawTextHelpFormatter,
        description="beatgrid - sample-based step sequencer with deterministic loop export\n",
    )

    p.add_argument("--version", action="store_true", help="Print version and exit.")
    p.add_argument("--config", default=None, help="Path to config JSON (default: ~/.config/beatgrid/config.json)")
    p.add_argument(
        "--headless",
        action="store_true",
        help="Run a headless script (new_session/pattern/tick/... + export_*).",
    )
    p.add_argument("--script", default=None, help="Path to headless script (.txt), or - for stdin")

    sub = p.add_subparsers(dest="cmd")
    sub.add_parser("doctor", help="Check optional deps and the audio output device.")
    sub.add_parser("devices", help="List audio devices (sounddevice).")

    render = sub.add_parser("render", help="Render a loop YAML to drum-loop-<timestamp>.wav.")
    render.add_argument("loop", help="Path to loop YAML")
    render.add_argument("--out", default=None, help="Output directory (default: config export_dir)")

    play = sub.add_parser("play", help="Play a loop YAML on the audio device.")
    play.add_argument("loop", help="Path to loop YAML")
    play.add_argument("--seconds", type=float, default=None, help="Stop after N seconds (default: until Ctrl-C)")

    return p


def main(argv: list[str] | None = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(default_level="INFO")

    if args.version:
        try:
            from importlib.metadata import version

            v = version("beatgrid")
        except Exception:
            v = "0.0.0"
        print(f"beatgrid {v}")
        return

    cfg = load_config(Path(args.config).expanduser() if args.config else None)

    if args.headless:
        if not args.script:
            raise SystemExit("ERROR: --headless requires --script <path>")

        from beatgrid.cli.headless import HeadlessRunner, read_lines_from_path_or_stdin

        base = Path(args.script).expanduser().resolve().parent if args.script != "-" else Path.cwd()
        r = HeadlessRunner(config=cfg, strict=True)
        try:
            r.run_lines(read_lines_from_path_or_stdin(args.script), base_dir=base)
        finally:
            r.close()
        if r.ctx.last_export:
            print(r.ctx.last_export)
        return

    if args.cmd == "doctor":
        res = _doctor()
        status = "OK" if res.ok else "MISSING_DEPS"
        print(f"beatgrid doctor: {status}")
        for n in res.notes:
            print(f"- {n}")
        return

    if args.cmd == "devices":
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise SystemExit(f"ERROR: sounddevice not available ({e})")
        print(sd.query_devices())
        return

    if args.cmd == "render":
        from beatgrid.audio.voice import CollectingSink
        from beatgrid.io.loop_yaml import load_loop_yaml, machine_from_loop

        spec = load_loop_yaml(args.loop)
        machine = machine_from_loop(spec, cfg, sink=CollectingSink(cfg.sample_rate, cfg.channels))
        try:
            res = machine.export_loop(args.out)
        finally:
            machine.close()
        if not res.ok:
            raise SystemExit(f"ERROR: export failed ({res.error})")
        print(res.path)
        return

    if args.cmd == "play":
        from beatgrid.io.loop_yaml import load_loop_yaml, machine_from_loop

        spec = load_loop_yaml(args.loop)
        machine = machine_from_loop(spec, cfg)
        try:
            machine.start_audio()
            machine.start()
            print(f"playing '{spec.name}' at {machine.bpm:g} bpm, {machine.num_bars} bar(s); Ctrl-C to stop")
            if args.seconds is not None:
                time.sleep(max(0.0, args.seconds))
            else:
                while True:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            pass
        finally:
            machine.close()
        return

    parser.print_help()


if __name__ == "__main__":
    main()
