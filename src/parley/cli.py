import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from parley.config import ParleyConfig
from parley.domain.errors import ParleyError
from parley.log_format import configure_logging

ENV_FILE_PATH = Path.home() / ".config" / "parley" / "env"

CLIENT_COMMANDS = ("listen", "send", "stop", "new-thread", "status", "say")

logger = logging.getLogger(__name__)

_pending_submits: set[asyncio.Task] = set()


def _load_env_file() -> None:
    if not ENV_FILE_PATH.exists():
        return
    with open(ENV_FILE_PATH) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            value = value.strip("'\"")
            if key not in os.environ:
                os.environ[key] = value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Voice conversation assistant")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--ephemeral", action="store_true", help="Keep history in memory only")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("listen", help="Start listening")
    subparsers.add_parser("send", help="Send the current transcript")
    subparsers.add_parser("stop", help="Stop speaking")
    subparsers.add_parser("new-thread", help="Start a new conversation thread")
    subparsers.add_parser("status", help="Query engine status")

    say_parser = subparsers.add_parser("say", help="Submit typed text as a command")
    say_parser.add_argument("text", nargs="+", help="Command text")

    return parser


def main() -> None:
    _load_env_file()
    args = build_parser().parse_args()

    config = ParleyConfig()
    if args.ephemeral:
        config.ephemeral = True

    configure_logging(verbose=args.verbose, log_file=config.log_file)

    if args.command in CLIENT_COMMANDS:
        asyncio.run(_run_client_command(args, config))
    else:
        asyncio.run(_run_daemon(config))


def request_for(args: argparse.Namespace) -> tuple[str, dict | None]:
    if args.command == "say":
        return "say", {"text": " ".join(args.text)}
    return args.command, None


async def _run_client_command(args: argparse.Namespace, config: ParleyConfig) -> None:
    from parley.adapters.unix_control import UnixSocketControlClient

    client = UnixSocketControlClient(socket_path=config.socket_path)
    action, payload = request_for(args)

    try:
        result = await client.send_command(action, payload)
    except (ConnectionRefusedError, FileNotFoundError):
        print("Parley is not running", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(result, indent=2))
    if result.get("status") != "ok":
        sys.exit(1)


async def handle_control_command(cmd, assistant, auto_listen: bool = False) -> None:
    """Apply one control request to the running assistant and answer it."""
    engine = assistant.engine
    orchestrator = assistant.orchestrator

    if cmd.action == "listen":
        engine.start_listening()
        cmd.respond({"status": "ok", "action": cmd.action})
    elif cmd.action == "send":
        engine.send()
        cmd.respond({"status": "ok", "action": cmd.action})
    elif cmd.action == "stop":
        engine.stop_speaking()
        cmd.respond({"status": "ok", "action": cmd.action})
    elif cmd.action == "new-thread":
        thread = orchestrator.new_thread()
        if auto_listen:
            engine.start_listening()
        cmd.respond({"status": "ok", "action": cmd.action, "thread_id": thread.id})
    elif cmd.action == "status":
        thread = orchestrator.active_thread()
        cmd.respond({
            "status": "ok",
            "action": cmd.action,
            "engine": engine.snapshot().to_dict(),
            "thread_id": thread.id,
            "turns": len(orchestrator.active_turns()),
        })
    elif cmd.action == "say":
        text = (cmd.payload or {}).get("text", "")
        task = asyncio.create_task(_submit_typed(cmd, orchestrator, text))
        _pending_submits.add(task)
        task.add_done_callback(_pending_submits.discard)
    else:
        cmd.respond({"status": "error", "action": cmd.action, "error": f"Unknown action: {cmd.action}"})


async def _submit_typed(cmd, orchestrator, text: str) -> None:
    try:
        turn = await orchestrator.submit(text)
    except ParleyError as exc:
        cmd.respond({"status": "error", "action": cmd.action, "error": str(exc)})
        return
    if turn is None:
        cmd.respond({"status": "error", "action": cmd.action, "error": "Reply superseded by a new thread"})
        return
    cmd.respond({"status": "ok", "action": cmd.action, "reply": turn.assistant_reply})


async def _run_daemon(config: ParleyConfig) -> None:
    from parley.factory import create_assistant
    from parley.health import has_critical_failures, run_startup_checks

    results = run_startup_checks(config)
    if has_critical_failures(results):
        logger.error("Critical health check failures, aborting startup")
        sys.exit(1)

    assistant = create_assistant(config)
    engine = assistant.engine
    control = assistant.control

    engine.add_interrupt_listener(lambda text: logger.info("Interrupted by user: '%s'", text[:50]))
    engine.add_error_listener(lambda exc: logger.warning("Engine error: %s", exc))

    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logger.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logger.info("Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await control.start()

    async def control_loop() -> None:
        async for cmd in control.commands():
            try:
                await handle_control_command(cmd, assistant, auto_listen=config.auto_listen_on_start)
            except Exception as exc:
                logger.exception("Control command %s failed", cmd.action)
                cmd.respond({"status": "error", "action": cmd.action, "error": str(exc)})

    engine_task = asyncio.create_task(engine.run())
    control_task = asyncio.create_task(control_loop())

    if config.auto_listen_on_start:
        engine.start_listening()

    try:
        await shutdown_event.wait()
    finally:
        engine_task.cancel()
        control_task.cancel()
        try:
            await asyncio.wait_for(engine_task, timeout=3.0)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        try:
            await asyncio.wait_for(control_task, timeout=1.0)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        await assistant.speech_sink.close()
        await control.stop()
        close = getattr(assistant.store, "close", None)
        if close is not None:
            close()
