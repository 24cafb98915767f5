"""ChordStage CLI entry point."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
import uuid
from pathlib import Path

import click

from chordstage import __version__, config, log_config
from chordstage.autoscroll import compute_scroll_rate
from chordstage.chord_classifier import LineKind, classify_for_display
from chordstage.errors import ChordStageError, DataNotFound, TransportUnavailable
from chordstage.models import ContentTheme, Participant, ParticipantRole, PerformancePosition, Session, Song
from chordstage.offline import OfflineSyncAdapter, TcpRelayTransport, UdpBroadcastTransport
from chordstage.renderers import DisplayModel, PlainTextRenderer, RenderOptions, get_display_renderer, render_song
from chordstage.session import LiveSession
from chordstage.store import InMemoryDataProvider, JsonSongStore, PreferenceStore
from chordstage.transposer import prefers_sharps, transpose_section_content

ROLE_CHOICES = [r.value for r in ParticipantRole]


def _read_input(source: str | None) -> str:
    """Read text from a file path, or stdin when *source* is None or ``-``."""
    if source is None or source == "-":
        return sys.stdin.read()
    try:
        return Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        click.echo(f"  ERROR: Could not read '{source}' — {exc}", err=True)
        sys.exit(1)


def _load_song_file(path: str) -> Song:
    try:
        with open(path, encoding="utf-8") as f:
            return Song.from_dict(json.load(f))
    except (OSError, ValueError, KeyError, TypeError) as exc:
        click.echo(f"  ERROR: Could not load song '{path}' — {exc}", err=True)
        sys.exit(1)


# ── CLI group ──────────────────────────────────────────────────────────────────

@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="chordstage")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool) -> None:
    """ChordStage — synchronized chord/lyric display for live performance."""
    log_config.setup_logging(logging.DEBUG if verbose else logging.WARNING)


# ── classify subcommand ────────────────────────────────────────────────────────

@main.command()
@click.argument("source", required=False, metavar="FILE")
def classify(source: str | None) -> None:
    """
    Label every line of FILE (or stdin) as chords or lyrics.

    \b
    Examples:
      chordstage classify verse.txt
      printf 'C G Am F\\nHello there\\n' | chordstage classify
    """
    for line in _read_input(source).splitlines():
        kind = classify_for_display(line)
        label = "CHORD" if kind is LineKind.CHORD else "LYRIC"
        click.echo(f"{label:<5} | {line}")


# ── transpose subcommand ───────────────────────────────────────────────────────

@main.command()
@click.argument("source", required=False, metavar="FILE")
@click.option("--from", "from_key", required=True, metavar="KEY", help="Current key, e.g. C or F#m.")
@click.option("--to", "to_key", required=True, metavar="KEY", help="Target key.")
@click.option(
    "--sharps/--flats",
    "sharps",
    default=None,
    help="Spelling of transposed notes. Defaults to flats for flat keys, sharps otherwise.",
)
@click.option("--grid", is_flag=True, help="Treat the input as a chord-grid payload.")
def transpose(
    source: str | None,
    from_key: str,
    to_key: str,
    sharps: bool | None,
    grid: bool,
) -> None:
    """
    Transpose the chord lines of FILE (or stdin) from one key to another.

    Lyric lines, rests and repeat symbols are left as they are.

    \b
    Examples:
      chordstage transpose song.txt --from C --to D
      chordstage transpose bars.json --grid --from G --to Bb
    """
    prefer = prefers_sharps(to_key) if sharps is None else sharps
    theme = ContentTheme.CHORD_GRID if grid else ContentTheme.PLAIN
    text = _read_input(source)
    click.echo(transpose_section_content(text, from_key, to_key, prefer, theme), nl=False)
    if not text.endswith("\n"):
        click.echo()


# ── render subcommand ──────────────────────────────────────────────────────────

@main.command()
@click.argument("song_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option(
    "--role",
    type=click.Choice(ROLE_CHOICES, case_sensitive=False),
    default=ParticipantRole.NONE.value,
    show_default=True,
    help="Performer role that filters the content.",
)
@click.option("--section", "section_index", type=int, default=None, metavar="N",
              help="Arrangement index to show (0-based). Defaults to all sections.")
@click.option("--simplify", is_flag=True, help="Reduce every chord to its basic triad.")
@click.option("--bars-per-line", type=click.IntRange(1, 16), default=config.DEFAULT_BARS_PER_LINE,
              show_default=True, help="Chord-grid bars per row.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--output", "-o", default=None, metavar="PATH",
              help="Write to PATH instead of stdout.")
def render(
    song_file: str,
    role: str,
    section_index: int | None,
    simplify: bool,
    bars_per_line: int,
    output_format: str,
    output: str | None,
) -> None:
    """
    Render a song JSON file the way a performer in ROLE would see it.

    \b
    Examples:
      chordstage render song.json --role bassist
      chordstage render song.json --role vocalist --section 2
      chordstage render song.json --format json -o display.json
    """
    song = _load_song_file(song_file)
    position = PerformancePosition(current_song_id=song.id, show_all_sections=section_index is None)
    if section_index is not None:
        ordered = song.ordered_arrangements()
        if not 0 <= section_index < len(ordered):
            click.echo(
                f"  ERROR: Section {section_index} out of range (song has {len(ordered)}).",
                err=True,
            )
            sys.exit(1)
        arrangement = ordered[section_index]
        position = PerformancePosition(
            current_song_id=song.id,
            current_arrangement_id=arrangement.id,
            current_section_id=arrangement.section_id,
        )

    options = RenderOptions(simplify_chords=simplify, bars_per_line=bars_per_line)
    models = render_song(song, position, ParticipantRole.parse(role), options)
    title = f"{song.title} ({song.current_key})" if song.title else song.id
    content = get_display_renderer(output_format).render(title=title, models=models)

    if output is None:
        click.echo(content, nl=False)
        return
    try:
        Path(output).write_text(content, encoding="utf-8")
    except OSError as exc:
        click.echo(f"  ERROR: Could not write output file — {exc}", err=True)
        sys.exit(1)
    click.echo(f"Done!  Wrote '{output}'.")


# ── scroll-rate subcommand ─────────────────────────────────────────────────────

@main.command("scroll-rate")
@click.option("--tempo", type=click.IntRange(1, 400), default=config.DEFAULT_TEMPO,
              show_default=True, help="Tempo in BPM.")
@click.option("--time-signature", default=config.DEFAULT_TIME_SIGNATURE, show_default=True,
              metavar="N/M", help="Song time signature.")
@click.option("--speed", type=click.FloatRange(config.MIN_SCROLL_SPEED, config.MAX_SCROLL_SPEED),
              default=config.DEFAULT_SCROLL_SPEED, show_default=True, help="Scroll speed multiplier.")
@click.option("--line-height", type=click.FloatRange(min=1), default=config.BASELINE_LINE_HEIGHT_PX,
              show_default=True, metavar="PX", help="Line height in pixels.")
def scroll_rate(tempo: int, time_signature: str, speed: float, line_height: float) -> None:
    """
    Show the auto-scroll velocity for a tempo and time signature.

    \b
    Examples:
      chordstage scroll-rate --tempo 120 --time-signature 4/4
      chordstage scroll-rate --tempo 90 --time-signature 6/8 --speed 1.5
    """
    rate = compute_scroll_rate(tempo, time_signature, speed, line_height)
    click.echo(f"  Beats per line   : {rate.beats_per_line}")
    click.echo(f"  Seconds per line : {rate.seconds_per_line:.2f}")
    click.echo(f"  Pixels per second: {rate.pixels_per_second:.2f}")
    click.echo(f"  Pixels per tick  : {rate.pixels_per_tick:.3f}  "
               f"({int(config.SCROLL_TICK_SEC * 1000)} ms tick)")


# ── offline subcommands ────────────────────────────────────────────────────────

def _transports(port: int, udp: bool) -> list:
    tiers: list = [TcpRelayTransport(port=port)]
    if udp:
        tiers.insert(0, UdpBroadcastTransport())
    return tiers


def _echo_display(models: list[DisplayModel]) -> None:
    click.echo(PlainTextRenderer().render(title="", models=models))


def _fail_offline(exc: Exception) -> None:
    click.echo(f"  ERROR: {exc}", err=True)
    if log_config.LOG_FILE_PATH:
        click.echo(f"  Details in {log_config.LOG_FILE_PATH}", err=True)
    sys.exit(1)


async def _read_commands(session: LiveSession) -> None:
    """Drive MD navigation from stdin: next, prev, song N, section N, quit."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        parts = line.strip().split()
        if not parts:
            continue
        cmd, args = parts[0].lower(), parts[1:]
        if cmd in ("q", "quit", "exit"):
            return
        if cmd in ("n", "next"):
            await session.next_section()
        elif cmd in ("p", "prev"):
            await session.previous_section()
        elif cmd == "section" and args and args[0].isdigit():
            await session.go_to(int(args[0]))
        elif cmd == "song" and args and args[0].isdigit():
            await session.change_song(int(args[0]))
        elif cmd == "tempo" and args and args[0].isdigit():
            await session.set_tempo(int(args[0]))
        elif cmd == "scroll":
            await session.toggle_auto_scroll()
        else:
            click.echo("  Commands: next | prev | section N | song N | tempo BPM | scroll | quit")


@main.command("offline-host")
@click.option("--setlist", "setlist_id", required=True, metavar="ID", help="Setlist to perform.")
@click.option("--data-dir", default=config.DATA_DIR, show_default=True, metavar="DIR",
              type=click.Path(file_okay=False), help="Local song store.")
@click.option("--port", type=click.IntRange(0, 65535), default=config.TCP_SYNC_PORT,
              show_default=True, help="TCP relay port.")
@click.option("--no-udp", is_flag=True, help="Skip the UDP broadcast tier.")
def offline_host(setlist_id: str, data_dir: str, port: int, no_udp: bool) -> None:
    """
    Lead an offline session as musical director from the local song store.

    Type navigation commands on stdin (next, prev, section N, song N, quit).
    """
    device_id = f"md-{uuid.uuid4().hex[:8]}"
    store = JsonSongStore(data_dir)
    try:
        store.get_setlist(setlist_id)
    except DataNotFound as exc:
        click.echo(f"  ERROR: {exc}", err=True)
        sys.exit(1)

    async def run() -> None:
        session = LiveSession(
            session=Session(id=setlist_id, owner_id=device_id),
            participant=Participant(id=device_id, name="MD", is_owner=True),
            provider=store,
            setlist_id=setlist_id,
            preferences=PreferenceStore(Path(data_dir) / "preferences.json"),
            on_display=_echo_display,
        )
        await session.start()
        adapter = OfflineSyncAdapter(device_id, _transports(port, not no_udp))
        try:
            await session.go_offline(adapter, as_md=True)
            click.echo(f"chordstage v{__version__}  MD over {adapter.active.name if adapter.active else '?'}")
            await _read_commands(session)
        finally:
            await session.close()

    try:
        asyncio.run(run())
    except TransportUnavailable as exc:
        _fail_offline(exc)
    except KeyboardInterrupt:
        click.echo()


@main.command("offline-join")
@click.option("--address", default=None, metavar="HOST[:PORT]",
              help="MD address for the TCP tier (UDP needs none).")
@click.option("--port", type=click.IntRange(1, 65535), default=config.TCP_SYNC_PORT,
              show_default=True, help="TCP relay port when --address has none.")
@click.option(
    "--role",
    type=click.Choice(ROLE_CHOICES, case_sensitive=False),
    default=ParticipantRole.NONE.value,
    show_default=True,
    help="Performer role that filters the content.",
)
@click.option("--no-udp", is_flag=True, help="Skip the UDP broadcast tier.")
def offline_join(address: str | None, port: int, role: str, no_udp: bool) -> None:
    """
    Follow an offline musical director on the local network.

    The display is printed again every time the MD moves.
    """
    device_id = f"guest-{uuid.uuid4().hex[:8]}"

    async def run() -> None:
        session = LiveSession(
            session=Session(id="offline", owner_id=""),
            participant=Participant(id=device_id, role=ParticipantRole.parse(role)),
            provider=InMemoryDataProvider(),
            on_display=_echo_display,
        )
        adapter = OfflineSyncAdapter(device_id, _transports(port, not no_udp))
        try:
            await session.go_offline(adapter, as_md=False, address=address)
            click.echo(f"chordstage v{__version__}  following MD over "
                       f"{adapter.active.name if adapter.active else '?'} (Ctrl+C to leave)")
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.Event().wait()
        finally:
            await session.close()

    try:
        asyncio.run(run())
    except ChordStageError as exc:
        _fail_offline(exc)
    except KeyboardInterrupt:
        click.echo()
