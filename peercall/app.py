"""
peercall command line entry point.

    peercall call ROOM [--video]
    peercall listen ROOM [--auto-answer]
"""

import argparse
import asyncio
import sys
import threading
from pathlib import Path

from peercall.config import Config, validate_stun_servers
from peercall.core.call_state import CallPhase, CallStateMachine
from peercall.core.errors import CallStateError, DeviceError, RelayUnavailable
from peercall.core.media import MediaAcquirer, RemoteAudioPlayer
from peercall.core.websocket_relay import WebSocketRelay
from peercall.directory import RoomDirectory
from peercall.logging_config import setup_logging, get_logger, get_default_log_file

logger = get_logger("app")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peercall",
        description="peercall - peer-to-peer audio/video calls",
    )
    parser.add_argument(
        "--relay-url",
        type=str,
        default=None,
        help="Signaling relay websocket URL (saved to config).",
    )
    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Path to config directory (default: ~/.peercall). Used for config.json and rooms.json.",
    )
    parser.add_argument(
        "--stun",
        action="append",
        default=None,
        metavar="URL",
        help="STUN server URL, repeatable (default: from config).",
    )
    parser.add_argument(
        "--audio-input-device",
        type=int,
        default=None,
        help="Audio input device index (saved to config).",
    )
    parser.add_argument(
        "--display-name",
        type=str,
        default=None,
        help="Name sent to the other participant with each call (saved to config).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Path to log file (default: ~/.peercall/logs/peercall.log).",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable logging to file.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    call = commands.add_parser("call", help="Call the other participant of a room.")
    call.add_argument("room", help="Room id.")
    call.add_argument("--video", action="store_true", help="Video call (default: audio).")

    listen = commands.add_parser("listen", help="Wait for calls in a room.")
    listen.add_argument("room", help="Room id.")
    listen.add_argument(
        "--auto-answer", action="store_true", help="Accept incoming calls without asking."
    )
    return parser


def run_app(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    args = parser.parse_args(argv)

    log_file = None
    if not args.no_log_file:
        log_file = Path(args.log_file) if args.log_file else get_default_log_file()
    setup_logging(level=args.log_level, log_file=log_file, console=True)

    logger.info("peercall starting")
    logger.debug(f"Command line arguments: {argv}")

    config_dir = Path(args.config_dir) if args.config_dir else Path.home() / ".peercall"
    config_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Using config directory: {config_dir}")

    try:
        config = Config(config_path=config_dir / "config.json")
    except ValueError as exc:
        parser.error(f"invalid config: {exc}")

    if args.audio_input_device is not None:
        config.audio_input_device = args.audio_input_device
        logger.info(f"Saved audio input device {args.audio_input_device} to config")
    if args.relay_url:
        config.relay_url = args.relay_url
        logger.info(f"Saved relay URL {args.relay_url} to config")
    if args.display_name is not None:
        config.display_name = args.display_name
        logger.info(f"Saved display name {args.display_name!r} to config")
    config.save()

    stun_servers = config.stun_servers
    if args.stun:
        try:
            stun_servers = validate_stun_servers(args.stun)
        except ValueError as exc:
            parser.error(str(exc))

    if not config.relay_url:
        parser.error("no relay URL configured, pass --relay-url")

    try:
        return asyncio.run(run_session(args, config, config_dir, stun_servers))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


def read_line(prompt: str) -> asyncio.Future:
    """Read a line from stdin on a daemon thread, so shutdown never waits on it."""
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _read() -> None:
        try:
            line = input(prompt)
        except EOFError:
            line = ""
        try:
            loop.call_soon_threadsafe(_resolve, line)
        except RuntimeError:
            pass  # loop already closed

    def _resolve(line: str) -> None:
        if not future.done():
            future.set_result(line)

    threading.Thread(target=_read, name="Prompt", daemon=True).start()
    return future


async def run_session(args, config: Config, config_dir: Path, stun_servers: list[str]) -> int:
    relay = WebSocketRelay(config.relay_url)
    try:
        await relay.start()
    except RelayUnavailable as exc:
        logger.error(str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    directory = RoomDirectory(config_dir / "rooms.json")
    directory.load()

    auto_answer = args.command == "listen" and (args.auto_answer or config.auto_answer)
    machine = CallStateMachine(
        relay,
        config.local_id,
        acquirer=MediaAcquirer(config),
        stun_servers=stun_servers,
        directory=directory,
        auto_answer=auto_answer,
        display_name=config.display_name,
    )

    finished = asyncio.Event()
    exit_code = 0
    players: list[RemoteAudioPlayer] = []
    prompts: set[asyncio.Task] = set()

    def on_state_changed(phase: CallPhase, session) -> None:
        label = session.peer.label if session and session.peer else args.room
        print(f"[{phase.name}] {label}")
        if phase == CallPhase.ACTIVE and session.remote_stream:
            audio = session.remote_stream.audio_track
            if audio is not None:
                player = RemoteAudioPlayer(audio)
                try:
                    player.start()
                    players.append(player)
                except DeviceError as exc:
                    logger.warning(f"Remote audio not played: {exc}")
        if phase == CallPhase.ENDED:
            for player in players:
                asyncio.ensure_future(player.stop())
            players.clear()
            if args.command == "call":
                finished.set()

    def on_error(session, error) -> None:
        nonlocal exit_code
        exit_code = 1
        print(f"Error: {error}", file=sys.stderr)

    def on_relay_lost(room_id: str, error: RelayUnavailable) -> None:
        nonlocal exit_code
        exit_code = 1
        print(f"Signaling lost: {error}", file=sys.stderr)
        finished.set()

    async def ask_to_answer(kind: str) -> None:
        reply = await read_line(f"Accept {kind} call? [y/N] ")
        try:
            if reply.strip().lower() in ("y", "yes"):
                await machine.accept_call(args.room)
            else:
                await machine.reject_call()
        except CallStateError as exc:
            print(f"Call is gone: {exc}")

    def on_incoming_call(room_id: str, call_id: str, kind: str) -> None:
        caller = directory.other_participant(room_id)
        who = caller.label if caller else "unknown caller"
        print(f"Incoming {kind} call from {who} in room {room_id}")
        if not machine.auto_answer:
            task = asyncio.ensure_future(ask_to_answer(kind))
            prompts.add(task)
            task.add_done_callback(prompts.discard)

    machine.on_state_changed = on_state_changed
    machine.on_error = on_error
    machine.on_relay_lost = on_relay_lost
    machine.on_incoming_call = on_incoming_call

    try:
        if args.command == "call":
            await machine.start_call(args.room, "video" if args.video else "audio")
        else:
            machine.listen(args.room)
            print(f"Listening for calls in room {args.room} (Ctrl-C to quit)")
        await finished.wait()
    except RelayUnavailable as exc:
        logger.error(str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        for task in prompts:
            task.cancel()
        await machine.shutdown()
        for player in players:
            await player.stop()
        await relay.stop()
        logger.info("peercall stopped")

    return exit_code


def main() -> None:
    sys.exit(run_app())
