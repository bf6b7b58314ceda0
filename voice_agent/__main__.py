"""
Console demo.

Usage:
    python -m voice_agent [--profile NAME] [--ingest PATH ...] [--json-logs]

Every typed line is fed to the agent as a final transcript; the reply is
printed once its simulated playback finishes. Commands:
    /latency   average stage latencies
    /clear     clear conversation history
    /quit      exit
"""

import argparse
import asyncio
import sys
from dataclasses import replace
from typing import Callable

from logging_setup import setup_logging
from .config import get_config
from .errors import TurnStage
from .event_bus import BusEvent, EventType
from .runtime import build_runtime


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m voice_agent", description="Voice agent console demo")
    parser.add_argument("--profile", help="agent profile name (overrides AGENT_PROFILE)")
    parser.add_argument("--ingest", action="append", default=[], metavar="PATH", help="document to preload")
    parser.add_argument("--json-logs", action="store_true", help="emit JSON logs instead of text")
    return parser.parse_args(argv)


def turn_listener(runtime, turn_done: asyncio.Event) -> Callable[[BusEvent], None]:
    """
    Build the bus handler that ends the console wait for a turn.

    A capture failure is only reported: the turn it hit may still be
    reasoning or speaking, so it is neither reset nor treated as finished.
    """
    def _on_turn_finished(event: BusEvent) -> None:
        if event.type == EventType.TURN_ERROR:
            print(f"[error] {event.get('category')}", flush=True)
            if event.get("stage") == TurnStage.CAPTURE:
                return
            runtime.orchestrator.reset_turn()
        turn_done.set()

    return _on_turn_finished


async def main(argv=None) -> int:
    args = _parse_args(argv)
    config = get_config()
    if args.profile:
        config = replace(config, agent_profile=args.profile)
    setup_logging(level=config.log_level, use_json=args.json_logs)

    runtime = build_runtime(config, on_spoken=lambda text: print(f"agent> {text}", flush=True))
    turn_done = asyncio.Event()

    on_turn_finished = turn_listener(runtime, turn_done)
    runtime.bus.subscribe(EventType.TURN_COMPLETED, on_turn_finished)
    runtime.bus.subscribe(EventType.TURN_ERROR, on_turn_finished)

    try:
        for path in args.ingest:
            document_id, document = runtime.ingest_file(path)
            print(f"[indexed] {document.name} as {document_id}", flush=True)

        runtime.orchestrator.start_listening()
        print(f"Profile: {runtime.profile.name}. Type a message, /quit to exit.", flush=True)

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                break
            if text == "/clear":
                runtime.orchestrator.clear_history()
                print("[history cleared]", flush=True)
                continue
            if text == "/latency":
                print(runtime.orchestrator.get_average_latencies() or "[no completed turns]", flush=True)
                continue

            turn_done.clear()
            if runtime.submit_utterance(text) is None:
                print("[busy] still answering the previous message", flush=True)
                continue
            await turn_done.wait()
    finally:
        await runtime.aclose()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
